"""
Configuration for the forecast and favorites providers.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional

ENV_PREFIX = "RIVRFLOW_"


@dataclass
class ProviderConfig:
    """
    Tunable timings and thresholds shared by the providers.

    Delays are in seconds. The defaults match what the mobile client ships with:
    a short pause before the startup refresh so cached favorites render first,
    and a pacing delay between sequential favorite refreshes so the upstream
    API is not hit in a burst.
    """

    startup_refresh_delay: float = 0.5
    refresh_pacing_delay: float = 0.2
    unit_change_refresh_delay: float = 0.3
    reach_cache_max_age: timedelta = field(default_factory=lambda: timedelta(days=180))
    stale_flow_after: timedelta = field(default_factory=lambda: timedelta(hours=2))
    search_threshold: int = 4

    def __post_init__(self) -> None:
        for name in (
            "startup_refresh_delay",
            "refresh_pacing_delay",
            "unit_change_refresh_delay",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProviderConfig":
        """
        Build a config from ``RIVRFLOW_*`` environment variables.

        Recognized variables:
            RIVRFLOW_STARTUP_REFRESH_DELAY: seconds (float)
            RIVRFLOW_REFRESH_PACING_DELAY: seconds (float)
            RIVRFLOW_UNIT_CHANGE_REFRESH_DELAY: seconds (float)
            RIVRFLOW_REACH_CACHE_MAX_AGE_DAYS: days (int)
            RIVRFLOW_STALE_FLOW_AFTER_HOURS: hours (float)
            RIVRFLOW_SEARCH_THRESHOLD: favorites count (int)

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        config = cls()

        def _get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        try:
            value = _get("STARTUP_REFRESH_DELAY")
            if value is not None:
                config.startup_refresh_delay = float(value)
            value = _get("REFRESH_PACING_DELAY")
            if value is not None:
                config.refresh_pacing_delay = float(value)
            value = _get("UNIT_CHANGE_REFRESH_DELAY")
            if value is not None:
                config.unit_change_refresh_delay = float(value)
            value = _get("REACH_CACHE_MAX_AGE_DAYS")
            if value is not None:
                config.reach_cache_max_age = timedelta(days=int(value))
            value = _get("STALE_FLOW_AFTER_HOURS")
            if value is not None:
                config.stale_flow_after = timedelta(hours=float(value))
            value = _get("SEARCH_THRESHOLD")
            if value is not None:
                config.search_threshold = int(value)
        except ValueError as e:
            raise ValueError(f"Invalid {ENV_PREFIX}* setting: {e}") from e

        config.__post_init__()
        return config
