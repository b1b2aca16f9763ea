"""
Collaborator contracts consumed by the providers.

Transport and persistence live behind these interfaces; the providers only
see snapshots, favorites and raw return-period records.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import (
    ANALYSIS_ASSIMILATION,
    CATEGORY_UNKNOWN,
    ENSEMBLE_SERIES_TYPES,
    LONG_RANGE,
    MEDIUM_RANGE,
    MEDIUM_RANGE_BLEND,
    SHORT_RANGE,
    Favorite,
    ForecastCategory,
    ReachData,
    ReachSnapshot,
    merge_snapshots,
    primary_ensemble_series,
)
from .units import FlowUnit, FlowValue

logger = logging.getLogger(__name__)

# Series consulted for the current flow when no preference is given
CURRENT_FLOW_ORDER = (
    ANALYSIS_ASSIMILATION,
    SHORT_RANGE,
    MEDIUM_RANGE_BLEND,
    MEDIUM_RANGE,
    LONG_RANGE,
)


class ForecastService(ABC):
    """
    Fetches forecast snapshots and derives display values from them.

    Subclasses implement the three fetch methods. The computations are pure
    functions of a snapshot and a unit and rarely need overriding.
    """

    @abstractmethod
    async def fetch_overview(self, reach_id: str) -> ReachSnapshot:
        """
        Reach identity plus only what is needed for the current flow.

        Raises:
            ForecastLoadError: If the reach cannot be loaded
        """

    @abstractmethod
    async def fetch_category(self, reach_id: str, series_type: str) -> ReachSnapshot:
        """A snapshot holding a single series type (may be empty)."""

    @abstractmethod
    async def fetch_supplementary(
        self, reach_id: str, existing: ReachSnapshot
    ) -> ReachSnapshot:
        """Enrich ``existing`` with return periods and summary series."""

    async def fetch_complete(self, reach_id: str) -> ReachSnapshot:
        """
        Fetch everything for a reach in one call.

        The default composes overview, each category and supplementary data.
        Services with a single all-in-one endpoint should override this.
        """
        logger.debug(f"Composing complete forecast for reach {reach_id}")
        snapshot = await self.fetch_overview(reach_id)
        for category in ForecastCategory:
            partial = await self.fetch_category(reach_id, category.series_type)
            snapshot = merge_snapshots(snapshot, partial)
        enriched = await self.fetch_supplementary(reach_id, snapshot)
        return merge_snapshots(snapshot, enriched)

    def compute_current_flow(
        self,
        snapshot: ReachSnapshot,
        unit: FlowUnit,
        preferred_type: Optional[str] = None,
    ) -> Optional[FlowValue]:
        """
        Current flow for the snapshot, expressed in ``unit``.

        Uses ``preferred_type`` when it has data, otherwise the first series
        with data in ``CURRENT_FLOW_ORDER``.
        """
        candidates = list(CURRENT_FLOW_ORDER)
        if preferred_type:
            candidates.insert(0, preferred_type)

        for series_type in candidates:
            series = snapshot.primary_series(series_type)
            if series is None or series.is_empty:
                continue
            amount = series.first_flow()
            if amount is None:
                continue
            return FlowValue(amount, series.unit).to(unit)
        return None

    def compute_flow_category(
        self,
        snapshot: ReachSnapshot,
        unit: FlowUnit,
        preferred_type: Optional[str] = None,
    ) -> str:
        flow = self.compute_current_flow(snapshot, unit, preferred_type)
        if flow is None:
            return CATEGORY_UNKNOWN
        return snapshot.reach.flow_category(flow)

    def available_forecast_types(self, snapshot: ReachSnapshot) -> List[str]:
        return snapshot.available_series()

    def has_ensemble_data(self, snapshot: ReachSnapshot) -> bool:
        return any(snapshot.ensemble_members(t) for t in ENSEMBLE_SERIES_TYPES)

    def ensemble_summary(self, snapshot: ReachSnapshot, series_type: str) -> Dict[str, Any]:
        """Counts and primary-series choice for an ensemble forecast."""
        ensemble = snapshot.ensemble(series_type)
        mean = ensemble.get("mean")
        members = [name for name, s in snapshot.ensemble_members(series_type) if not s.is_empty]
        primary_name, _ = primary_ensemble_series(ensemble)
        return {
            "series_type": series_type,
            "has_mean": mean is not None and not mean.is_empty,
            "member_count": len(members),
            "members": members,
            "primary": primary_name,
        }


class FavoritesStore(ABC):
    """Persistent, ordered favorites list."""

    @abstractmethod
    async def list(self) -> List[Favorite]:
        """
        Favorites in display order.

        Raises:
            FavoritesError: If the list cannot be read
        """

    @abstractmethod
    async def add(self, reach_id: str) -> bool:
        """Append a favorite. Returns False if it could not be added."""

    @abstractmethod
    async def remove(self, reach_id: str) -> bool:
        """Remove a favorite. Returns False if it could not be removed."""

    @abstractmethod
    async def reorder(self, favorites: List[Favorite]) -> bool:
        """Persist a new order. Returns False on failure."""


class KeyValueStore(ABC):
    """Local string key-value storage (device preferences)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        pass


class ReachMetadataCache(ABC):
    """Cache of reach metadata, mainly used to reuse return periods."""

    @abstractmethod
    async def get(self, reach_id: str) -> Optional[ReachData]:
        pass

    @abstractmethod
    async def store(self, reach: ReachData) -> None:
        pass


class ReturnPeriodService(ABC):
    """Fetches flood return periods for a reach."""

    @abstractmethod
    async def fetch_return_periods(self, reach_id: str) -> List[Dict[str, Any]]:
        """
        Raw return-period records.

        Returns:
            A list like ``[{"feature_id": 123, "return_period_2": 85.3, ...}]``
            with flows in CMS
        """
