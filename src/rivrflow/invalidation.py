"""
Unit-change invalidation shared by both providers.
"""

import logging
from typing import Optional

from .favorites_provider import FavoritesProvider
from .reach_provider import ReachDataProvider
from .units import FlowUnit, UnitPreference

logger = logging.getLogger(__name__)


class UnitChangeCoordinator:
    """
    Clears unit-dependent data in both providers when the unit changes.

    Both clears run in the same synchronous step as the change, before any
    other task can read a flow, and each one schedules its own refresh.
    """

    def __init__(
        self,
        units: UnitPreference,
        reach_provider: Optional[ReachDataProvider] = None,
        favorites_provider: Optional[FavoritesProvider] = None,
    ):
        self._units = units
        self._reach_provider = reach_provider
        self._favorites_provider = favorites_provider
        self._attached = False
        self.attach()

    @property
    def is_attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        if not self._attached:
            self._units.add_listener(self._on_unit_changed)
            self._attached = True

    def detach(self) -> None:
        if self._attached:
            self._units.remove_listener(self._on_unit_changed)
            self._attached = False

    def _on_unit_changed(self, old_unit: FlowUnit, new_unit: FlowUnit) -> None:
        logger.info(
            f"Invalidating unit-dependent caches ({old_unit.value} -> {new_unit.value})"
        )
        if self._reach_provider is not None:
            self._reach_provider.clear_unit_dependent_caches()
        if self._favorites_provider is not None:
            self._favorites_provider.clear_unit_dependent_caches()
