"""
Flow units, unit-tagged flow values and the process-wide unit preference.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Union

logger = logging.getLogger(__name__)

# 1 CMS = 35.3147 CFS
CMS_TO_CFS = 35.3147
CFS_TO_CMS = 1.0 / CMS_TO_CFS


class FlowUnit(str, Enum):
    """Supported streamflow units."""

    CFS = "CFS"
    CMS = "CMS"

    @classmethod
    def parse(cls, value: Union[str, "FlowUnit"]) -> "FlowUnit":
        """
        Parse a unit string as delivered by the forecast API or stored settings.

        Accepts the enum itself, the canonical names in any case, and the
        unit symbols used in forecast payloads (``ft³/s``, ``m³/s``).

        Raises:
            ValueError: If the unit is not recognized
        """
        if isinstance(value, FlowUnit):
            return value

        normalized = str(value).strip().lower().replace(" ", "")
        if normalized in _UNIT_ALIASES:
            return _UNIT_ALIASES[normalized]
        raise ValueError(f"Unknown flow unit: {value!r}")


_UNIT_ALIASES = {
    "cfs": FlowUnit.CFS,
    "ft³/s": FlowUnit.CFS,
    "ft3/s": FlowUnit.CFS,
    "ft^3/s": FlowUnit.CFS,
    "cms": FlowUnit.CMS,
    "m³/s": FlowUnit.CMS,
    "m3/s": FlowUnit.CMS,
    "m^3/s": FlowUnit.CMS,
}


def convert_flow(
    value: float, from_unit: Union[str, FlowUnit], to_unit: Union[str, FlowUnit]
) -> float:
    """Convert a flow value between CFS and CMS."""
    source = FlowUnit.parse(from_unit)
    target = FlowUnit.parse(to_unit)

    if source == target:
        return value
    if source == FlowUnit.CMS:
        return value * CMS_TO_CFS
    return value * CFS_TO_CMS


@dataclass(frozen=True)
class FlowValue:
    """A flow amount together with the unit it is measured in."""

    amount: float
    unit: FlowUnit

    def to(self, unit: Union[str, FlowUnit]) -> "FlowValue":
        """Return this value expressed in ``unit``."""
        target = FlowUnit.parse(unit)
        if target == self.unit:
            return self
        return FlowValue(convert_flow(self.amount, self.unit, target), target)

    def formatted(self, decimals: int = 0) -> str:
        """Display string such as ``'1250 CFS'``."""
        return f"{self.amount:.{decimals}f} {self.unit.value}"

    def __str__(self) -> str:
        return self.formatted()


UnitListener = Callable[[FlowUnit, FlowUnit], None]


class UnitPreference:
    """
    Holds the user's active flow unit.

    The value is read synchronously wherever a flow is cached, so that a
    cached amount is always tagged with the unit active at that moment.
    Listeners are called with ``(old_unit, new_unit)`` after a change.
    """

    def __init__(self, unit: Union[str, FlowUnit] = FlowUnit.CFS):
        self._unit = FlowUnit.parse(unit)
        self._listeners: List[UnitListener] = []

    @property
    def current_unit(self) -> FlowUnit:
        return self._unit

    @property
    def is_cfs(self) -> bool:
        return self._unit == FlowUnit.CFS

    @property
    def is_cms(self) -> bool:
        return self._unit == FlowUnit.CMS

    def add_listener(self, listener: UnitListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: UnitListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_unit(self, unit: Union[str, FlowUnit]) -> bool:
        """
        Change the active unit.

        Returns:
            True if the unit changed and listeners were notified
        """
        new_unit = FlowUnit.parse(unit)
        if new_unit == self._unit:
            return False

        old_unit = self._unit
        self._unit = new_unit
        logger.info(f"Flow unit changed from {old_unit.value} to {new_unit.value}")

        for listener in list(self._listeners):
            listener(old_unit, new_unit)
        return True
