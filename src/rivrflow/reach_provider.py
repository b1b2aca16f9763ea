"""
Phased forecast loading for the currently displayed reach.

The overview (reach identity and current flow) is fetched first so the page
can render, then each forecast category and the supplementary data are merged
into the same snapshot as they arrive. Partial results never erase series that
were loaded earlier.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from .cache import CacheRegistry, cache_key
from .config import ProviderConfig
from .daily import DailyFlowForecast, process_forecast_data
from .models import (
    CATEGORY_UNKNOWN,
    MEDIUM_RANGE,
    SERIES_TYPES,
    ForecastCategory,
    LoadingPhase,
    ReachData,
    ReachSnapshot,
    merge_snapshots,
)
from .notifier import BackgroundTasks, ChangeNotifier
from .services import ForecastService
from .units import FlowValue, UnitPreference

logger = logging.getLogger(__name__)


class ReachDataProvider(ChangeNotifier):
    """
    Owns the forecast snapshot of one reach and the values derived from it.

    Every load captures a generation number when it starts. Switching to a
    different reach, or clearing the provider, advances the generation, and a
    load that finishes under an older generation drops its result without
    touching the loading flags, phase or error.

    Args:
        forecast_service: Fetches snapshots and computes derived values
        units: The active flow-unit preference
        config: Delays and thresholds; defaults to ``ProviderConfig()``
    """

    def __init__(
        self,
        forecast_service: ForecastService,
        units: UnitPreference,
        config: Optional[ProviderConfig] = None,
    ):
        super().__init__()
        self._forecast_service = forecast_service
        self._units = units
        self._config = config or ProviderConfig()

        self._snapshot: Optional[ReachSnapshot] = None
        self._session_cache: Dict[str, ReachSnapshot] = {}
        self._phase = LoadingPhase.NONE
        self._error: Optional[str] = None

        self._loading = False
        self._loading_overview = False
        self._loading_supplementary = False
        self._loading_categories: Dict[ForecastCategory, bool] = {
            category: False for category in ForecastCategory
        }

        self._generation = 0
        self._active_reach_id: Optional[str] = None
        self._overview_in_flight: Dict[str, "asyncio.Task[ReachSnapshot]"] = {}

        self._caches = CacheRegistry()
        self._current_flow = self._caches.table("current_flow", unit_sensitive=True)
        self._flow_category = self._caches.table("flow_category", unit_sensitive=True)
        self._daily = self._caches.table("daily_forecast", unit_sensitive=True)
        self._location = self._caches.table("formatted_location")
        self._forecast_types = self._caches.table("available_forecast_types")

        self._tasks = BackgroundTasks("reach_provider")

    # State

    @property
    def snapshot(self) -> Optional[ReachSnapshot]:
        return self._snapshot

    @property
    def current_reach(self) -> Optional[ReachData]:
        return self._snapshot.reach if self._snapshot else None

    @property
    def has_data(self) -> bool:
        return self._snapshot is not None

    @property
    def phase(self) -> LoadingPhase:
        return self._phase

    @property
    def error_message(self) -> Optional[str]:
        return self._error

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def is_loading_overview(self) -> bool:
        return self._loading_overview

    @property
    def is_loading_supplementary(self) -> bool:
        return self._loading_supplementary

    def is_loading_category(self, category: Union[str, ForecastCategory]) -> bool:
        return self._loading_categories[ForecastCategory(category)]

    @property
    def is_loading_hourly(self) -> bool:
        return self._loading_categories[ForecastCategory.HOURLY]

    @property
    def is_loading_daily(self) -> bool:
        return self._loading_categories[ForecastCategory.MEDIUM]

    @property
    def is_loading_extended(self) -> bool:
        return self._loading_categories[ForecastCategory.EXTENDED]

    @property
    def any_category_loading(self) -> bool:
        return any(self._loading_categories.values())

    @property
    def has_overview_data(self) -> bool:
        return self._snapshot is not None and self._snapshot.reach.has_location_data

    @property
    def has_supplementary_data(self) -> bool:
        return self._snapshot is not None and self._snapshot.reach.has_return_periods

    def _has_category(self, category: ForecastCategory) -> bool:
        return self._snapshot is not None and self._snapshot.has_series(
            category.series_type
        )

    @property
    def has_hourly_forecast(self) -> bool:
        return self._has_category(ForecastCategory.HOURLY)

    @property
    def has_daily_forecast(self) -> bool:
        return self._has_category(ForecastCategory.MEDIUM)

    @property
    def has_extended_forecast(self) -> bool:
        return self._has_category(ForecastCategory.EXTENDED)

    def category_loading_state(self) -> Dict[str, Dict[str, Any]]:
        """Loading and availability per forecast category, for spinners."""
        return {
            category.value: {
                "loading": self._loading_categories[category],
                "available": self._has_category(category),
                "type": category.series_type,
            }
            for category in ForecastCategory
        }

    def cache_stats(self) -> Dict[str, Any]:
        return {
            "session_cached": len(self._session_cache),
            "session_reaches": list(self._session_cache),
            "computed": self._caches.stats(),
        }

    # Generation bookkeeping

    def _begin(self, reach_id: str) -> int:
        """Start a load for ``reach_id`` and return the generation it runs under."""
        if reach_id != self._active_reach_id:
            self._generation += 1
            self._active_reach_id = reach_id
            if self._snapshot is not None and self._snapshot.reach_id != reach_id:
                self._snapshot = None
                self._phase = LoadingPhase.NONE
            self._reset_loading_flags()
            logger.debug(f"Switched to reach {reach_id} (generation {self._generation})")
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _discard(self, what: str, reach_id: str) -> bool:
        logger.debug(f"Discarding superseded {what} result for reach {reach_id}")
        return False

    def _reset_loading_flags(self) -> None:
        self._loading = False
        self._loading_overview = False
        self._loading_supplementary = False
        for category in self._loading_categories:
            self._loading_categories[category] = False

    def _adopt(self, snapshot: ReachSnapshot, cache: bool = True) -> None:
        """Make ``snapshot`` current and rebuild its derived values."""
        self._snapshot = snapshot
        if cache:
            self._session_cache[snapshot.reach_id] = snapshot
        self._caches.invalidate_reach(snapshot.reach_id)
        self._update_computed_caches()

    def _update_computed_caches(self) -> None:
        if self._snapshot is None:
            return
        self.current_flow()
        self.flow_category()
        self.formatted_location()
        self.available_forecast_types()

    # Loading

    async def load_overview(self, reach_id: str) -> bool:
        """
        Load the minimum needed to render a reach: identity and current flow.

        A session-cached snapshot is adopted as-is (phase ``complete``) without
        fetching. A fetch failure sets the error and resets the phase to ``none``.
        """
        generation = self._begin(reach_id)
        self._error = None

        cached = self._session_cache.get(reach_id)
        if cached is not None:
            logger.debug(f"Using session-cached snapshot for reach {reach_id}")
            self._adopt(cached, cache=False)
            self._loading_overview = False
            self._phase = LoadingPhase.COMPLETE
            self.notify_listeners()
            return True

        self._loading_overview = True
        self._phase = LoadingPhase.OVERVIEW
        self.notify_listeners()

        try:
            snapshot = await self._fetch_overview(reach_id)
        except Exception as e:
            if not self._is_current(generation):
                return self._discard("overview", reach_id)
            logger.error(f"Failed to load overview for reach {reach_id}: {e}", exc_info=True)
            self._error = str(e)
            self._loading_overview = False
            self._phase = LoadingPhase.NONE
            self.notify_listeners()
            return False

        if not self._is_current(generation):
            return self._discard("overview", reach_id)

        if self._snapshot is not None and self._snapshot.reach_id == reach_id:
            # Categories may have merged while the overview was in flight
            self._adopt(
                merge_snapshots(self._snapshot, snapshot),
                cache=reach_id in self._session_cache,
            )
        else:
            self._adopt(snapshot, cache=False)
            self._phase = LoadingPhase.OVERVIEW
        self._loading_overview = False
        self.notify_listeners()
        return True

    async def _fetch_overview(self, reach_id: str) -> ReachSnapshot:
        """Fetch the overview, sharing one request between concurrent callers."""
        task = self._overview_in_flight.get(reach_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._forecast_service.fetch_overview(reach_id)
            )
            self._overview_in_flight[reach_id] = task
            task.add_done_callback(lambda t: self._forget_overview(reach_id, t))
        return await asyncio.shield(task)

    def _forget_overview(self, reach_id: str, task: "asyncio.Task[ReachSnapshot]") -> None:
        if self._overview_in_flight.get(reach_id) is task:
            del self._overview_in_flight[reach_id]

    async def load_category(
        self, reach_id: str, category: Union[str, ForecastCategory]
    ) -> bool:
        """
        Load one forecast category and merge it into the current snapshot.

        Runs the overview first when nothing is loaded yet; if that fails the
        category reports failure and the phase is left to the overview. Fetch
        failures are logged and leave the snapshot untouched.
        """
        category = ForecastCategory(category)
        generation = self._begin(reach_id)
        self._loading_categories[category] = True
        self.notify_listeners()

        if self._snapshot is None:
            if not await self.load_overview(reach_id):
                if self._is_current(generation):
                    self._loading_categories[category] = False
                    self.notify_listeners()
                return False

        try:
            partial = await self._forecast_service.fetch_category(
                reach_id, category.series_type
            )
        except Exception as e:
            if not self._is_current(generation):
                return self._discard(category.value, reach_id)
            logger.warning(f"Failed to load {category.value} forecast for reach {reach_id}: {e}")
            self._loading_categories[category] = False
            self.notify_listeners()
            return False

        if not self._is_current(generation) or self._snapshot is None:
            return self._discard(category.value, reach_id)

        self._adopt(merge_snapshots(self._snapshot, partial))
        self._loading_categories[category] = False
        self.notify_listeners()
        return True

    async def load_hourly_forecast(self, reach_id: str) -> bool:
        return await self.load_category(reach_id, ForecastCategory.HOURLY)

    async def load_daily_forecast(self, reach_id: str) -> bool:
        return await self.load_category(reach_id, ForecastCategory.MEDIUM)

    async def load_extended_forecast(self, reach_id: str) -> bool:
        return await self.load_category(reach_id, ForecastCategory.EXTENDED)

    async def load_supplementary_data(self, reach_id: str) -> bool:
        """
        Add return periods and forecast summaries to the loaded snapshot.

        Supplementary data is optional: a failure keeps the snapshot, leaves
        the error alone and never drops the phase below ``overview``.
        """
        generation = self._begin(reach_id)
        if self._snapshot is None:
            if not await self.load_overview(reach_id):
                return False

        previous_phase = self._phase
        self._loading_supplementary = True
        self._phase = LoadingPhase.SUPPLEMENTARY
        self.notify_listeners()

        try:
            enriched = await self._forecast_service.fetch_supplementary(
                reach_id, self._snapshot
            )
        except Exception as e:
            if not self._is_current(generation):
                return self._discard("supplementary", reach_id)
            logger.warning(f"Supplementary data unavailable for reach {reach_id}: {e}")
            self._loading_supplementary = False
            if previous_phase in (LoadingPhase.COMPLETE, LoadingPhase.SPECIFIC):
                self._phase = previous_phase
            else:
                self._phase = LoadingPhase.OVERVIEW
            self.notify_listeners()
            return False

        if not self._is_current(generation) or self._snapshot is None:
            return self._discard("supplementary", reach_id)

        self._adopt(merge_snapshots(self._snapshot, enriched))
        self._loading_supplementary = False
        self._phase = LoadingPhase.COMPLETE
        self.notify_listeners()
        return True

    async def comprehensive_refresh(self, reach_id: str) -> bool:
        """
        Reload everything for a reach, bypassing the session cache.

        Steps run one after another so each merge sees the previous result:
        overview, hourly, medium, extended, supplementary. Only an overview
        failure aborts; later failures are tolerated.
        """
        generation = self._begin(reach_id)
        self._session_cache.pop(reach_id, None)
        self._caches.invalidate_reach(reach_id)

        if not await self.load_overview(reach_id):
            return False

        for category in ForecastCategory:
            if not self._is_current(generation):
                return False
            await self.load_category(reach_id, category)

        if not self._is_current(generation):
            return False
        await self.load_supplementary_data(reach_id)

        logger.info(f"Comprehensive refresh finished for reach {reach_id}")
        return self._is_current(generation)

    async def load_reach(self, reach_id: str) -> bool:
        """Load the complete snapshot in one call (session cache first)."""
        generation = self._begin(reach_id)
        self._error = None

        cached = self._session_cache.get(reach_id)
        if cached is not None:
            self._adopt(cached, cache=False)
            self._phase = LoadingPhase.COMPLETE
            self.notify_listeners()
            return True

        self._loading = True
        self.notify_listeners()

        try:
            snapshot = await self._forecast_service.fetch_complete(reach_id)
        except Exception as e:
            if not self._is_current(generation):
                return self._discard("complete", reach_id)
            logger.error(f"Failed to load reach {reach_id}: {e}", exc_info=True)
            self._error = str(e)
            self._loading = False
            self._phase = LoadingPhase.NONE
            self.notify_listeners()
            return False

        if not self._is_current(generation):
            return self._discard("complete", reach_id)

        self._adopt(snapshot)
        self._loading = False
        self._phase = LoadingPhase.COMPLETE
        self.notify_listeners()
        return True

    async def load_specific_forecast(self, reach_id: str, series_type: str) -> bool:
        """
        Load a single series type (``short_range``, ``medium_range``, ...).

        Raises:
            ValueError: If ``series_type`` is not a known series type
        """
        if series_type not in SERIES_TYPES:
            raise ValueError(f"Unknown series type: {series_type!r}")

        generation = self._begin(reach_id)
        self._loading = True
        self._error = None
        self.notify_listeners()

        try:
            partial = await self._forecast_service.fetch_category(reach_id, series_type)
        except Exception as e:
            if not self._is_current(generation):
                return self._discard(series_type, reach_id)
            logger.error(f"Failed to load {series_type} for reach {reach_id}: {e}", exc_info=True)
            self._error = str(e)
            self._loading = False
            if self._snapshot is None:
                self._phase = LoadingPhase.NONE
            self.notify_listeners()
            return False

        if not self._is_current(generation):
            return self._discard(series_type, reach_id)

        if self._snapshot is not None:
            partial = merge_snapshots(self._snapshot, partial)
        self._adopt(partial)
        self._loading = False
        self._phase = LoadingPhase.SPECIFIC
        self.notify_listeners()
        return True

    async def refresh_current_reach(self) -> bool:
        if self._snapshot is None:
            return False
        return await self.comprehensive_refresh(self._snapshot.reach_id)

    # Derived values

    def current_flow(self, preferred_type: Optional[str] = None) -> Optional[FlowValue]:
        """Current flow in the active unit, memoized per reach, variant and unit."""
        snapshot = self._snapshot
        if snapshot is None:
            return None
        unit = self._units.current_unit
        return self._current_flow.get_or_compute(
            cache_key(snapshot.reach_id, preferred_type, unit),
            lambda: self._forecast_service.compute_current_flow(
                snapshot, unit, preferred_type
            ),
        )

    def flow_category(self, preferred_type: Optional[str] = None) -> str:
        snapshot = self._snapshot
        if snapshot is None:
            return CATEGORY_UNKNOWN
        unit = self._units.current_unit
        return self._flow_category.get_or_compute(
            cache_key(snapshot.reach_id, preferred_type, unit),
            lambda: self._forecast_service.compute_flow_category(
                snapshot, unit, preferred_type
            ),
        )

    def formatted_location(self) -> str:
        snapshot = self._snapshot
        if snapshot is None:
            return ""
        return self._location.get_or_compute(
            cache_key(snapshot.reach_id), lambda: snapshot.reach.formatted_location
        )

    def available_forecast_types(self) -> List[str]:
        snapshot = self._snapshot
        if snapshot is None:
            return []
        types = self._forecast_types.get_or_compute(
            cache_key(snapshot.reach_id),
            lambda: self._forecast_service.available_forecast_types(snapshot),
        )
        return list(types)

    def has_ensemble_data(self) -> bool:
        if self._snapshot is None:
            return False
        return self._forecast_service.has_ensemble_data(self._snapshot)

    def ensemble_summary(self, series_type: str = MEDIUM_RANGE) -> Dict[str, Any]:
        if self._snapshot is None:
            return {}
        return self._forecast_service.ensemble_summary(self._snapshot, series_type)

    def daily_forecast(self, series_type: str = MEDIUM_RANGE) -> List[DailyFlowForecast]:
        """Daily summaries of an ensemble series in the active unit."""
        snapshot = self._snapshot
        if snapshot is None:
            return []
        unit = self._units.current_unit
        return self._daily.get_or_compute(
            cache_key(snapshot.reach_id, series_type, unit),
            lambda: process_forecast_data(
                snapshot.ensemble(series_type), snapshot.reach, unit, series_type
            ),
        )

    # Invalidation and reset

    def clear_unit_dependent_caches(self, reschedule: bool = True) -> None:
        """
        Drop every value measured in the previous unit.

        Flow, category and daily memos go, and so does the whole session cache.
        Location and forecast-type memos and the phase are kept. When a reach is
        displayed, a refresh is scheduled after ``unit_change_refresh_delay``.
        """
        self._caches.clear_unit_dependent()
        self._session_cache.clear()
        logger.debug("Cleared unit-dependent reach caches")
        self.notify_listeners()

        if reschedule and self._snapshot is not None:
            self._tasks.schedule(
                self.refresh_current_reach,
                delay=self._config.unit_change_refresh_delay,
                label="refresh_current_reach",
            )

    def clear_current_reach(self) -> None:
        """Forget the displayed reach but keep the session cache."""
        self._generation += 1
        self._active_reach_id = None
        self._snapshot = None
        self._caches.clear_all()
        self._error = None
        self._phase = LoadingPhase.NONE
        self._reset_loading_flags()
        self.notify_listeners()

    def clear(self) -> None:
        """Full reset, including the session cache."""
        self._session_cache.clear()
        self.clear_current_reach()

    def clear_error(self) -> None:
        if self._error is not None:
            self._error = None
            self.notify_listeners()

    async def wait_for_background_tasks(self) -> None:
        await self._tasks.wait()

    def close(self) -> None:
        """Cancel any scheduled background refresh."""
        self._tasks.cancel()
