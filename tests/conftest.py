"""
Shared fakes and fixtures for the provider tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest

from rivrflow.config import ProviderConfig
from rivrflow.exceptions import FavoritesError, ForecastLoadError
from rivrflow.models import (
    LONG_RANGE,
    MEDIUM_RANGE,
    SHORT_RANGE,
    Favorite,
    ForecastPoint,
    ForecastSeries,
    ReachData,
    ReachSnapshot,
)
from rivrflow.services import (
    FavoritesStore,
    ForecastService,
    KeyValueStore,
    ReachMetadataCache,
    ReturnPeriodService,
)
from rivrflow.units import UnitPreference

BASE_TIME = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_series(
    flows: List[float], units: str = "ft³/s", start: datetime = BASE_TIME
) -> ForecastSeries:
    return ForecastSeries(
        units=units,
        data=[
            ForecastPoint(valid_time=start + timedelta(hours=i), flow=flow)
            for i, flow in enumerate(flows)
        ],
        reference_time=start,
    )


def make_reach(reach_id: str = "123", **kwargs: Any) -> ReachData:
    defaults: Dict[str, Any] = {
        "river_name": f"River {reach_id}",
        "latitude": 45.5,
        "longitude": -122.6,
    }
    defaults.update(kwargs)
    return ReachData(reach_id=reach_id, **defaults)


class FakeForecastService(ForecastService):
    """
    In-memory forecast service.

    ``overview_flows`` maps reach ids to the analysis flow (CFS) returned by
    ``fetch_overview``. Any reach listed in ``failures`` raises for the named
    operation. ``gates`` lets a test hold a fetch until it releases an event.
    """

    def __init__(self) -> None:
        self.overview_flows: Dict[str, float] = {}
        self.category_series: Dict[str, Dict[str, Any]] = {}
        self.return_periods: Dict[str, Dict[int, float]] = {}
        self.failures: Dict[str, set] = {}
        self.gates: Dict[tuple, asyncio.Event] = {}
        self.calls: List[tuple] = []

    def fail(self, reach_id: str, *operations: str) -> None:
        self.failures.setdefault(reach_id, set()).update(operations)

    def gate(self, operation: str, reach_id: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[(operation, reach_id)] = event
        return event

    async def _enter(self, operation: str, reach_id: str) -> None:
        self.calls.append((operation, reach_id))
        gate = self.gates.get((operation, reach_id))
        if gate is not None:
            await gate.wait()
        if operation in self.failures.get(reach_id, set()):
            raise ForecastLoadError(reach_id, f"{operation} failed")

    async def fetch_overview(self, reach_id: str) -> ReachSnapshot:
        await self._enter("overview", reach_id)
        flow = self.overview_flows.get(reach_id)
        return ReachSnapshot(
            reach=make_reach(reach_id),
            analysis_assimilation=make_series([flow]) if flow is not None else None,
        )

    async def fetch_category(self, reach_id: str, series_type: str) -> ReachSnapshot:
        await self._enter(series_type, reach_id)
        payload = self.category_series.get(reach_id, {}).get(series_type)
        reach = ReachData(reach_id=reach_id)
        if series_type == SHORT_RANGE:
            return ReachSnapshot(reach=reach, short_range=payload)
        if series_type == MEDIUM_RANGE:
            return ReachSnapshot(reach=reach, medium_range=payload or {})
        if series_type == LONG_RANGE:
            return ReachSnapshot(reach=reach, long_range=payload or {})
        return ReachSnapshot(reach=reach)

    async def fetch_supplementary(
        self, reach_id: str, existing: ReachSnapshot
    ) -> ReachSnapshot:
        await self._enter("supplementary", reach_id)
        periods = self.return_periods.get(reach_id, {2: 100.0, 5: 200.0, 10: 300.0})
        return ReachSnapshot(
            reach=existing.reach.with_return_periods(periods),
        )


class FakeFavoritesStore(FavoritesStore):
    """Favorites kept in a list; ``fail_reorder`` makes reorder report failure."""

    def __init__(self, reach_ids: Optional[List[str]] = None):
        self.items: List[Favorite] = [
            Favorite(reach_id, display_order=i) for i, reach_id in enumerate(reach_ids or [])
        ]
        self.fail_reorder = False
        self.fail_list = False

    async def list(self) -> List[Favorite]:
        if self.fail_list:
            raise FavoritesError("favorites unavailable")
        return list(self.items)

    async def add(self, reach_id: str) -> bool:
        if any(f.reach_id == reach_id for f in self.items):
            return False
        self.items.append(Favorite(reach_id, display_order=len(self.items)))
        return True

    async def remove(self, reach_id: str) -> bool:
        before = len(self.items)
        self.items = [f for f in self.items if f.reach_id != reach_id]
        return len(self.items) < before

    async def reorder(self, favorites: List[Favorite]) -> bool:
        if self.fail_reorder:
            return False
        self.items = list(favorites)
        return True


class FakeKeyValueStore(KeyValueStore):
    """
    String store kept in a dict.

    ``before_set`` is awaited with the key before each write, letting a test
    suspend the writer and run other tasks in between.
    """

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(values or {})
        self.before_set: Optional[Callable[[str], Awaitable[None]]] = None

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.before_set is not None:
            await self.before_set(key)
        self.values[key] = value

    async def remove(self, key: str) -> None:
        self.values.pop(key, None)


class FakeReachMetadataCache(ReachMetadataCache):
    def __init__(self) -> None:
        self.records: Dict[str, ReachData] = {}

    async def get(self, reach_id: str) -> Optional[ReachData]:
        return self.records.get(reach_id)

    async def store(self, reach: ReachData) -> None:
        self.records[reach.reach_id] = reach


class FakeReturnPeriodService(ReturnPeriodService):
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.failing = False

    async def fetch_return_periods(self, reach_id: str) -> List[Dict[str, Any]]:
        self.calls.append(reach_id)
        if self.failing:
            raise ForecastLoadError(reach_id, "return periods unavailable")
        return [
            {
                "feature_id": int(reach_id) if reach_id.isdigit() else 0,
                "return_period_2": 100.0,
                "return_period_5": 200.0,
                "return_period_10": 300.0,
            }
        ]


@pytest.fixture
def config():
    """Config with every delay disabled."""
    return ProviderConfig(
        startup_refresh_delay=0.0,
        refresh_pacing_delay=0.0,
        unit_change_refresh_delay=0.0,
    )


@pytest.fixture
def units():
    return UnitPreference()


@pytest.fixture
def forecast_service():
    return FakeForecastService()


@pytest.fixture
def favorites_store():
    return FakeFavoritesStore(["A", "B", "C"])


@pytest.fixture
def local_store():
    return FakeKeyValueStore()


@pytest.fixture
def reach_cache():
    return FakeReachMetadataCache()


@pytest.fixture
def return_period_service():
    return FakeReturnPeriodService()
