"""
Favorites list with session-only live data and paced background refresh.

The persisted favorites only hold reach ids, their order and user overlays.
Flow, river name, coordinates and return periods are fetched per session and
layered on top when the list is read; they are never written back to the
favorites store.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from .cache import CacheRegistry, cache_key
from .config import ProviderConfig
from .models import (
    CATEGORY_UNKNOWN,
    Favorite,
    ReachData,
    SelectedReach,
    parse_return_periods,
)
from .notifier import BackgroundTasks, ChangeNotifier
from .services import (
    FavoritesStore,
    ForecastService,
    KeyValueStore,
    ReachMetadataCache,
    ReturnPeriodService,
)
from .units import FlowValue, UnitPreference

logger = logging.getLogger(__name__)

CUSTOM_NAMES_KEY = "favorite_custom_names"
CUSTOM_IMAGES_KEY = "favorite_custom_images"


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marks an argument that was not supplied, as opposed to one cleared with None
UNSET: Any = _Unset()


@dataclass
class SessionEnrichment:
    """Per-reach live data gathered during this session."""

    flows: Dict[str, FlowValue] = field(default_factory=dict)
    updated: Dict[str, datetime] = field(default_factory=dict)
    river_names: Dict[str, str] = field(default_factory=dict)
    coordinates: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    # ``None`` marks a field the user cleared, hiding the stored value
    custom_names: Dict[str, Optional[str]] = field(default_factory=dict)
    custom_images: Dict[str, Optional[str]] = field(default_factory=dict)
    return_periods: Dict[str, Dict[int, float]] = field(default_factory=dict)

    def _maps(self) -> Dict[str, Dict[str, Any]]:
        return {
            "flow": self.flows,
            "updated": self.updated,
            "river_name": self.river_names,
            "coordinates": self.coordinates,
            "custom_name": self.custom_names,
            "custom_image": self.custom_images,
            "return_periods": self.return_periods,
        }

    def record_refresh(
        self,
        reach_id: str,
        flow: Optional[FlowValue],
        river_name: Optional[str],
        coordinates: Optional[Tuple[float, float]],
        when: datetime,
    ) -> None:
        """Store the results of one refresh together."""
        if flow is None:
            self.flows.pop(reach_id, None)
        else:
            self.flows[reach_id] = flow
        self.updated[reach_id] = when
        if river_name:
            self.river_names[reach_id] = river_name
        if coordinates is not None:
            self.coordinates[reach_id] = coordinates

    def purge(self, reach_id: str) -> None:
        for values in self._maps().values():
            values.pop(reach_id, None)

    def clear_flows(self) -> None:
        self.flows.clear()
        self.updated.clear()

    def fields_for(self, reach_id: str) -> Dict[str, Any]:
        """Every enrichment value currently held for ``reach_id``."""
        return {
            name: values[reach_id]
            for name, values in self._maps().items()
            if reach_id in values
        }


@dataclass(frozen=True)
class EnrichedFavorite:
    """A persisted favorite with this session's live data overlaid."""

    reach_id: str
    display_order: int
    river_name: Optional[str] = None
    custom_name: Optional[str] = None
    custom_image: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    flow: Optional[FlowValue] = None
    last_updated: Optional[datetime] = None
    return_periods: Optional[Dict[int, float]] = None
    is_refreshing: bool = False
    stale_after: timedelta = timedelta(hours=2)

    @property
    def display_name(self) -> str:
        """Custom name, then river name, then the station id."""
        if self.custom_name:
            return self.custom_name
        if self.river_name:
            return self.river_name
        return f"Station {self.reach_id}"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def is_flow_data_stale(self) -> bool:
        if self.last_updated is None:
            return True
        return datetime.now(timezone.utc) - self.last_updated > self.stale_after

    @property
    def formatted_flow(self) -> str:
        if self.flow is None:
            return "No data"
        return self.flow.formatted()


@dataclass(frozen=True)
class FavoritesDiff:
    """Reach ids added and removed between two favorites lists."""

    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed)


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of refreshing several favorites."""

    refreshed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.refreshed) + len(self.failed)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


class FavoritesProvider(ChangeNotifier):
    """
    Owns the ordered favorites list and its session enrichment.

    Args:
        favorites_store: Persistent favorites list
        forecast_service: Fetches current-flow data for a favorite
        local_store: Device storage for the custom name and image overlays
        reach_cache: Reach metadata cache consulted before fetching return periods
        return_period_service: Fetches return periods on a cache miss
        units: The active flow-unit preference
        config: Delays and thresholds; defaults to ``ProviderConfig()``
    """

    def __init__(
        self,
        favorites_store: FavoritesStore,
        forecast_service: ForecastService,
        local_store: KeyValueStore,
        reach_cache: ReachMetadataCache,
        return_period_service: ReturnPeriodService,
        units: UnitPreference,
        config: Optional[ProviderConfig] = None,
    ):
        super().__init__()
        self._favorites_store = favorites_store
        self._forecast_service = forecast_service
        self._local_store = local_store
        self._reach_cache = reach_cache
        self._return_period_service = return_period_service
        self._units = units
        self._config = config or ProviderConfig()

        self._favorites: List[Favorite] = []
        self._favorite_ids: Set[str] = set()
        self._enrichment = SessionEnrichment()
        self._refreshing: Set[str] = set()
        self._in_flight: Dict[str, "asyncio.Task[bool]"] = {}

        self._loading = False
        self._error: Optional[str] = None

        self._caches = CacheRegistry()
        self._flow_category = self._caches.table("flow_category", unit_sensitive=True)

        self._tasks = BackgroundTasks("favorites_provider")

    # State

    @property
    def favorites(self) -> List[EnrichedFavorite]:
        return self.enriched_view()

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def error_message(self) -> Optional[str]:
        return self._error

    @property
    def favorites_count(self) -> int:
        return len(self._favorites)

    @property
    def is_empty(self) -> bool:
        return not self._favorites

    @property
    def should_show_search(self) -> bool:
        return len(self._favorites) >= self._config.search_threshold

    def is_favorite(self, reach_id: str) -> bool:
        return reach_id in self._favorite_ids

    def is_refreshing(self, reach_id: str) -> bool:
        return reach_id in self._refreshing

    def enrichment_for(self, reach_id: str) -> Dict[str, Any]:
        fields = self._enrichment.fields_for(reach_id)
        if reach_id in self._refreshing:
            fields["refreshing"] = True
        return fields

    # Storage

    def _set_favorites(self, favorites: List[Favorite]) -> None:
        self._favorites = list(favorites)
        self._favorite_ids = {f.reach_id for f in self._favorites}

    async def _load_favorites(self) -> None:
        self._set_favorites(await self._favorites_store.list())
        logger.debug(f"Loaded {len(self._favorites)} favorites from storage")
        self.notify_listeners()

    async def _load_overlays(self) -> None:
        self._enrichment.custom_names = await self._read_overlay(CUSTOM_NAMES_KEY)
        self._enrichment.custom_images = await self._read_overlay(CUSTOM_IMAGES_KEY)

    async def _read_overlay(self, key: str) -> Dict[str, Optional[str]]:
        raw = await self._local_store.get(key)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable overlay {key}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring overlay {key}: expected an object")
            return {}
        return {str(k): str(v) if v else None for k, v in data.items()}

    async def _persist_overlays(self) -> None:
        try:
            await self._local_store.set(
                CUSTOM_NAMES_KEY, json.dumps(self._enrichment.custom_names)
            )
            await self._local_store.set(
                CUSTOM_IMAGES_KEY, json.dumps(self._enrichment.custom_images)
            )
        except Exception as e:
            logger.warning(f"Failed to persist favorite overlays: {e}")

    # Lifecycle

    async def initialize_and_refresh(self) -> bool:
        """
        Load overlays and the favorites list, then schedule a paced refresh.

        The refresh starts after ``startup_refresh_delay`` so the list renders
        with whatever is already known first. A storage failure is terminal:
        the error is set and no refresh is scheduled.
        """
        self._loading = True
        self._error = None
        self.notify_listeners()

        try:
            await self._load_overlays()
            await self._load_favorites()
        except Exception as e:
            logger.error(f"Failed to load favorites: {e}", exc_info=True)
            self._error = str(e)
            return False
        finally:
            self._loading = False
            self.notify_listeners()

        self._tasks.schedule(
            self.refresh_all_sequential,
            delay=self._config.startup_refresh_delay,
            label="startup refresh",
        )
        return True

    # Mutations

    async def add(self, reach_id: str, custom_name: Optional[str] = None) -> bool:
        return await self._add(reach_id, custom_name=custom_name)

    async def add_with_known_coordinates(
        self,
        reach_id: str,
        latitude: float,
        longitude: float,
        river_name: Optional[str] = None,
        custom_name: Optional[str] = None,
    ) -> bool:
        return await self._add(
            reach_id,
            custom_name=custom_name,
            river_name=river_name,
            coordinates=(latitude, longitude),
        )

    async def add_from_map(
        self, selection: SelectedReach, current_flow: Optional[FlowValue] = None
    ) -> bool:
        return await self._add(
            selection.reach_id,
            river_name=selection.river_name,
            coordinates=(selection.latitude, selection.longitude),
            flow=current_flow,
        )

    async def _add(
        self,
        reach_id: str,
        custom_name: Optional[str] = None,
        river_name: Optional[str] = None,
        coordinates: Optional[Tuple[float, float]] = None,
        flow: Optional[FlowValue] = None,
    ) -> bool:
        reach_id = str(reach_id).strip()
        if self.is_favorite(reach_id):
            logger.warning(f"Reach {reach_id} is already a favorite")
            return False

        try:
            if not await self._favorites_store.add(reach_id):
                return False
        except Exception as e:
            logger.error(f"Failed to add favorite {reach_id}: {e}", exc_info=True)
            self._error = str(e)
            self.notify_listeners()
            return False

        if river_name:
            self._enrichment.river_names[reach_id] = river_name
        if coordinates is not None:
            self._enrichment.coordinates[reach_id] = coordinates
        if flow is not None:
            self._enrichment.flows[reach_id] = flow.to(self._units.current_unit)
            self._enrichment.updated[reach_id] = datetime.now(timezone.utc)
        if custom_name:
            self._enrichment.custom_names[reach_id] = custom_name
            await self._persist_overlays()

        try:
            await self._load_favorites()
        except Exception as e:
            logger.warning(f"Could not reload favorites after adding {reach_id}: {e}")
            self._set_favorites(
                self._favorites + [Favorite(reach_id, display_order=len(self._favorites))]
            )
            self.notify_listeners()

        if not (river_name and coordinates is not None and flow is not None):
            self._tasks.schedule(
                lambda: self.refresh_one(reach_id), label=f"enrich {reach_id}"
            )

        logger.info(f"Added favorite {reach_id}")
        return True

    async def remove(self, reach_id: str) -> bool:
        """Remove a favorite and every piece of session data held for it."""
        try:
            if not await self._favorites_store.remove(reach_id):
                return False
        except Exception as e:
            logger.error(f"Failed to remove favorite {reach_id}: {e}", exc_info=True)
            self._error = str(e)
            self.notify_listeners()
            return False

        # Must happen before the next await so an in-flight refresh sees the removal
        self._set_favorites([f for f in self._favorites if f.reach_id != reach_id])
        self._in_flight.pop(reach_id, None)
        self._enrichment.purge(reach_id)
        self._refreshing.discard(reach_id)
        self._caches.invalidate_reach(reach_id)
        self.notify_listeners()
        await self._persist_overlays()

        try:
            await self._load_favorites()
        except Exception as e:
            logger.warning(f"Could not reload favorites after removing {reach_id}: {e}")

        logger.info(f"Removed favorite {reach_id}")
        return True

    async def reorder(self, old_index: int, new_index: int) -> bool:
        """
        Move a favorite, updating the visible order before persisting it.

        If persisting fails the canonical order is reloaded from storage.

        Raises:
            ValueError: If either index is out of range
        """
        count = len(self._favorites)
        if not (0 <= old_index < count and 0 <= new_index < count):
            raise ValueError(
                f"Reorder indices out of range: {old_index} -> {new_index} ({count} favorites)"
            )

        previous = list(self._favorites)
        reordered = list(self._favorites)
        reordered.insert(new_index, reordered.pop(old_index))
        reordered = [replace(f, display_order=i) for i, f in enumerate(reordered)]
        self._set_favorites(reordered)
        self.notify_listeners()

        try:
            persisted = await self._favorites_store.reorder(reordered)
        except Exception as e:
            logger.warning(f"Failed to persist favorites order: {e}")
            persisted = False

        if persisted:
            return True

        logger.warning("Rolling back favorites reorder")
        try:
            await self._load_favorites()
        except Exception as e:
            logger.error(f"Could not reload favorites order: {e}", exc_info=True)
            self._set_favorites(previous)
            self.notify_listeners()
        return False

    async def update_custom_fields(
        self, reach_id: str, custom_name: Any = UNSET, custom_image: Any = UNSET
    ) -> bool:
        """
        Set or clear the custom name and image of a favorite.

        Omitted arguments are left alone; ``None`` (or an empty string) clears
        the field, including a value the favorites store still holds. Overlays
        are saved to local storage immediately.
        """
        if not self.is_favorite(reach_id):
            return False

        for value, overlay in (
            (custom_name, self._enrichment.custom_names),
            (custom_image, self._enrichment.custom_images),
        ):
            if value is not UNSET:
                overlay[reach_id] = value or None

        await self._persist_overlays()
        self.notify_listeners()
        return True

    # Refresh

    async def refresh_one(self, reach_id: str) -> bool:
        """
        Refresh the live data of one favorite.

        Concurrent calls for the same reach share one in-flight refresh.

        Returns:
            True if flow data was stored
        """
        task = self._in_flight.get(reach_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._refresh(reach_id))
            self._in_flight[reach_id] = task
            task.add_done_callback(lambda t: self._forget_in_flight(reach_id, t))
        return await asyncio.shield(task)

    def _forget_in_flight(self, reach_id: str, task: "asyncio.Task[bool]") -> None:
        if self._in_flight.get(reach_id) is task:
            del self._in_flight[reach_id]

    async def _refresh(self, reach_id: str) -> bool:
        self._refreshing.add(reach_id)
        self.notify_listeners()

        try:
            snapshot = await self._forecast_service.fetch_overview(reach_id)
            if not self.is_favorite(reach_id):
                logger.debug(f"Favorite {reach_id} removed during refresh, dropping result")
                return False

            reach = snapshot.reach
            flow = self._forecast_service.compute_current_flow(
                snapshot, self._units.current_unit
            )
            self._enrichment.record_refresh(
                reach_id,
                flow,
                river_name=reach.river_name or None,
                coordinates=(reach.latitude, reach.longitude)
                if reach.has_location_data
                else None,
                when=datetime.now(timezone.utc),
            )
            self._caches.invalidate_reach(reach_id)
            self.notify_listeners()

            await self._load_return_periods(reach_id, reach)
            return True
        except Exception as e:
            logger.warning(f"Failed to refresh favorite {reach_id}: {e}")
            return False
        finally:
            self._refreshing.discard(reach_id)
            self.notify_listeners()

    async def _load_return_periods(self, reach_id: str, reach: ReachData) -> None:
        """Cache-first return periods; failures only cost the flow category."""
        try:
            cached = await self._reach_cache.get(reach_id)
            if cached is not None and cached.has_return_periods:
                logger.debug(f"Using cached return periods for reach {reach_id}")
                periods = cached.return_periods or {}
            else:
                raw = await self._return_period_service.fetch_return_periods(reach_id)
                periods = parse_return_periods(raw)
                record = cached.merge_with(reach) if cached is not None else reach
                await self._reach_cache.store(record.with_return_periods(periods))
        except Exception as e:
            logger.warning(f"Return periods unavailable for reach {reach_id}: {e}")
            return

        if not self.is_favorite(reach_id):
            return
        self._enrichment.return_periods[reach_id] = dict(periods)
        self._flow_category.invalidate_reach(reach_id)
        self.notify_listeners()

    async def refresh_all_sequential(self) -> RefreshResult:
        """
        Refresh favorites one at a time with ``refresh_pacing_delay`` between them.

        Used at startup so the upstream API sees a trickle of requests and the
        list fills in progressively.
        """
        reach_ids = [f.reach_id for f in self._favorites]
        logger.info(f"Refreshing {len(reach_ids)} favorites sequentially")

        refreshed: List[str] = []
        failed: List[str] = []
        for index, reach_id in enumerate(reach_ids):
            if not self.is_favorite(reach_id):
                continue
            if await self.refresh_one(reach_id):
                refreshed.append(reach_id)
            else:
                failed.append(reach_id)
            if index < len(reach_ids) - 1 and self._config.refresh_pacing_delay > 0:
                await asyncio.sleep(self._config.refresh_pacing_delay)

        logger.info(f"Sequential refresh done: {len(refreshed)} ok, {len(failed)} failed")
        return RefreshResult(refreshed=refreshed, failed=failed)

    async def refresh_all_concurrent(self) -> RefreshResult:
        """Refresh every favorite at once (pull-to-refresh)."""
        self._error = None
        self._caches.clear_all()
        reach_ids = [f.reach_id for f in self._favorites]

        results = await asyncio.gather(
            *(self.refresh_one(reach_id) for reach_id in reach_ids),
            return_exceptions=True,
        )

        refreshed: List[str] = []
        failed: List[str] = []
        for reach_id, result in zip(reach_ids, results):
            if isinstance(result, BaseException):
                logger.warning(f"Refresh of favorite {reach_id} raised: {result}")
                failed.append(reach_id)
            elif result:
                refreshed.append(reach_id)
            else:
                failed.append(reach_id)

        logger.info(f"Concurrent refresh done: {len(refreshed)} ok, {len(failed)} failed")
        return RefreshResult(refreshed=refreshed, failed=failed)

    def clear_unit_dependent_caches(self, reschedule: bool = True) -> None:
        """
        Drop every flow measured in the previous unit and schedule a refresh.

        Names, coordinates and overlays are kept.
        """
        self._enrichment.clear_flows()
        self._caches.clear_unit_dependent()
        logger.debug("Cleared unit-dependent favorite data")
        self.notify_listeners()

        if reschedule and self._favorites:
            self._tasks.schedule(
                self.refresh_all_concurrent,
                delay=self._config.unit_change_refresh_delay,
                label="refresh after unit change",
            )

    # Views

    def enriched_view(self) -> List[EnrichedFavorite]:
        """The persisted list with session data overlaid, in display order."""
        enrichment = self._enrichment
        view = []
        for favorite in self._favorites:
            reach_id = favorite.reach_id
            latitude, longitude = enrichment.coordinates.get(reach_id, (None, None))
            view.append(
                EnrichedFavorite(
                    reach_id=reach_id,
                    display_order=favorite.display_order,
                    river_name=enrichment.river_names.get(reach_id),
                    custom_name=enrichment.custom_names.get(reach_id, favorite.custom_name),
                    custom_image=enrichment.custom_images.get(
                        reach_id, favorite.custom_image
                    ),
                    latitude=latitude,
                    longitude=longitude,
                    flow=enrichment.flows.get(reach_id),
                    last_updated=enrichment.updated.get(reach_id),
                    return_periods=enrichment.return_periods.get(reach_id),
                    is_refreshing=reach_id in self._refreshing,
                    stale_after=self._config.stale_flow_after,
                )
            )
        return view

    def favorites_with_coordinates(self) -> List[EnrichedFavorite]:
        return [f for f in self.enriched_view() if f.has_coordinates]

    def filter(self, query: str) -> List[EnrichedFavorite]:
        """Favorites whose display name or reach id contains ``query``."""
        favorites = self.enriched_view()
        query = query.strip().lower()
        if not query:
            return favorites
        return [
            f
            for f in favorites
            if query in f.display_name.lower() or query in f.reach_id.lower()
        ]

    def flow_category(self, reach_id: str) -> str:
        """Flow category of a favorite from its session flow and return periods."""
        unit = self._units.current_unit

        def compute() -> str:
            flow = self._enrichment.flows.get(reach_id)
            periods = self._enrichment.return_periods.get(reach_id)
            if flow is None or not periods:
                return CATEGORY_UNKNOWN
            return ReachData(reach_id, return_periods=periods).flow_category(flow)

        return self._flow_category.get_or_compute(cache_key(reach_id, unit=unit), compute)

    def diff(
        self, old_list: Iterable[Union[str, Favorite, EnrichedFavorite]]
    ) -> FavoritesDiff:
        """Reach ids added and removed relative to ``old_list``."""
        old_ids = [getattr(item, "reach_id", item) for item in old_list]
        new_ids = [f.reach_id for f in self._favorites]
        old_set, new_set = set(old_ids), set(new_ids)
        return FavoritesDiff(
            added=[r for r in new_ids if r not in old_set],
            removed=[r for r in old_ids if r not in new_set],
        )

    def clear_error(self) -> None:
        if self._error is not None:
            self._error = None
            self.notify_listeners()

    async def wait_for_background_tasks(self) -> None:
        await self._tasks.wait()

    def close(self) -> None:
        self._tasks.cancel()
