"""
Data models for reaches, forecast series and favorites.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .exceptions import ParseError, ReturnPeriodParseError
from .units import FlowUnit, FlowValue

ANALYSIS_ASSIMILATION = "analysis_assimilation"
SHORT_RANGE = "short_range"
MEDIUM_RANGE = "medium_range"
LONG_RANGE = "long_range"
MEDIUM_RANGE_BLEND = "medium_range_blend"

SERIES_TYPES = (
    ANALYSIS_ASSIMILATION,
    SHORT_RANGE,
    MEDIUM_RANGE,
    LONG_RANGE,
    MEDIUM_RANGE_BLEND,
)
ENSEMBLE_SERIES_TYPES = (MEDIUM_RANGE, LONG_RANGE)

# Flow category labels, ordered by severity
CATEGORY_UNKNOWN = "Unknown"
CATEGORY_NORMAL = "Normal"
CATEGORY_ELEVATED = "Elevated"
CATEGORY_HIGH = "High"
CATEGORY_FLOOD_RISK = "Flood Risk"

RETURN_PERIOD_PREFIX = "return_period_"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating a trailing ``Z`` as UTC."""
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise ParseError(f"Invalid timestamp: {value!r}") from e


class ForecastCategory(str, Enum):
    """Forecast categories the overview page loads independently."""

    HOURLY = "hourly"
    MEDIUM = "medium"
    EXTENDED = "extended"

    @property
    def series_type(self) -> str:
        return _CATEGORY_SERIES[self]


_CATEGORY_SERIES = {
    ForecastCategory.HOURLY: SHORT_RANGE,
    ForecastCategory.MEDIUM: MEDIUM_RANGE,
    ForecastCategory.EXTENDED: LONG_RANGE,
}


class LoadingPhase(str, Enum):
    """Lifecycle stage of the currently displayed reach's data."""

    NONE = "none"
    OVERVIEW = "overview"
    SUPPLEMENTARY = "supplementary"
    COMPLETE = "complete"
    SPECIFIC = "specific"


@dataclass(frozen=True)
class ForecastPoint:
    """A single forecast value."""

    valid_time: datetime
    flow: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ForecastPoint":
        try:
            return cls(
                valid_time=parse_timestamp(data["validTime"]),
                flow=float(data["flow"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Invalid forecast point: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {"validTime": self.valid_time.isoformat(), "flow": self.flow}


@dataclass(frozen=True)
class ForecastSeries:
    """A time-ordered forecast series in the units it was delivered in."""

    units: str
    data: List[ForecastPoint] = field(default_factory=list)
    reference_time: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return len(self.data) == 0

    @property
    def unit(self) -> FlowUnit:
        """Parsed unit of this series; CFS when the payload leaves it blank."""
        return FlowUnit.parse(self.units) if self.units else FlowUnit.CFS

    def first_flow(self) -> Optional[float]:
        """Flow of the earliest point, i.e. the value for the issue hour."""
        if self.is_empty:
            return None
        return min(self.data, key=lambda p: p.valid_time).flow

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ForecastSeries":
        reference = data.get("referenceTime")
        return cls(
            units=data.get("units") or "",
            data=[ForecastPoint.from_dict(p) for p in data.get("data") or []],
            reference_time=parse_timestamp(reference) if reference else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "referenceTime": self.reference_time.isoformat()
            if self.reference_time
            else None,
            "units": self.units,
            "data": [p.to_dict() for p in self.data],
        }


def parse_return_periods(raw: Sequence[Mapping[str, Any]]) -> Dict[int, float]:
    """
    Parse a return-period API response into ``{years: flow_cms}``.

    The API returns a one-element array whose record carries keys such as
    ``return_period_2`` and ``return_period_25``.

    Raises:
        ReturnPeriodParseError: If the response is empty or malformed
    """
    if not raw:
        raise ReturnPeriodParseError("Return period API returned empty array")

    record = raw[0]
    if not isinstance(record, Mapping):
        raise ReturnPeriodParseError(
            f"Expected a mapping, got {type(record).__name__}"
        )

    periods: Dict[int, float] = {}
    for key, value in record.items():
        if not key.startswith(RETURN_PERIOD_PREFIX):
            continue
        try:
            years = int(key[len(RETURN_PERIOD_PREFIX) :])
            periods[years] = float(value)
        except (TypeError, ValueError) as e:
            raise ReturnPeriodParseError(f"Invalid return period {key}={value!r}") from e

    return periods


@dataclass(frozen=True)
class ReachData:
    """Reach metadata: identity, location, routing and return periods."""

    reach_id: str
    river_name: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    city: Optional[str] = None
    state: Optional[str] = None
    available_forecasts: List[str] = field(default_factory=list)
    # Return periods are always in CMS
    return_periods: Optional[Dict[int, float]] = None
    upstream_reaches: Optional[List[str]] = None
    downstream_reaches: Optional[List[str]] = None
    cached_at: datetime = field(default_factory=_utcnow)
    last_api_update: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.river_name or f"Reach {self.reach_id}"

    @property
    def has_location_data(self) -> bool:
        return self.latitude != 0.0 or self.longitude != 0.0

    @property
    def has_return_periods(self) -> bool:
        return bool(self.return_periods)

    @property
    def formatted_location(self) -> str:
        """``City, ST`` when geocoded, otherwise coordinates."""
        if self.city and self.state:
            return f"{self.city}, {self.state}"
        if self.city or self.state:
            return self.city or self.state or ""
        if self.has_location_data:
            return f"{self.latitude:.4f}, {self.longitude:.4f}"
        return ""

    def is_cache_stale(
        self, max_age: timedelta = timedelta(days=30), now: Optional[datetime] = None
    ) -> bool:
        now = now or _utcnow()
        return now - self.cached_at > max_age

    def merge_with(self, other: "ReachData") -> "ReachData":
        """Fill fields missing here from ``other``; present fields are kept."""
        return ReachData(
            reach_id=self.reach_id,
            river_name=self.river_name or other.river_name,
            latitude=self.latitude if self.latitude != 0.0 else other.latitude,
            longitude=self.longitude if self.longitude != 0.0 else other.longitude,
            city=self.city or other.city,
            state=self.state or other.state,
            available_forecasts=self.available_forecasts or other.available_forecasts,
            return_periods=self.return_periods or other.return_periods,
            upstream_reaches=self.upstream_reaches or other.upstream_reaches,
            downstream_reaches=self.downstream_reaches or other.downstream_reaches,
            cached_at=_utcnow(),
            last_api_update=other.last_api_update or self.last_api_update,
        )

    def with_return_periods(self, periods: Dict[int, float]) -> "ReachData":
        return replace(self, return_periods=dict(periods), cached_at=_utcnow())

    def _sorted_periods(self) -> List[Tuple[int, float]]:
        return sorted((self.return_periods or {}).items())

    def flow_category(self, flow: FlowValue) -> str:
        """Classify a flow against the return-period thresholds."""
        if not self.has_return_periods:
            return CATEGORY_UNKNOWN

        flow_cms = flow.to(FlowUnit.CMS).amount
        for years, threshold in self._sorted_periods():
            if flow_cms < threshold:
                if years <= 2:
                    return CATEGORY_NORMAL
                if years <= 5:
                    return CATEGORY_ELEVATED
                return CATEGORY_HIGH
        return CATEGORY_FLOOD_RISK

    def next_threshold(self, flow: FlowValue) -> Optional[Tuple[int, float]]:
        """The lowest return period the flow has not reached yet, in CMS."""
        if not self.has_return_periods:
            return None

        flow_cms = flow.to(FlowUnit.CMS).amount
        for years, threshold in self._sorted_periods():
            if flow_cms < threshold:
                return years, threshold
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReachData":
        """Create from the JSON form written by ``to_dict``."""
        try:
            periods = data.get("returnPeriods")
            last_update = data.get("lastApiUpdate")
            return cls(
                reach_id=str(data["reachId"]).strip(),
                river_name=data.get("riverName") or "",
                latitude=float(data.get("latitude") or 0.0),
                longitude=float(data.get("longitude") or 0.0),
                city=data.get("city"),
                state=data.get("state"),
                available_forecasts=[str(f) for f in data.get("availableForecasts") or []],
                return_periods={int(k): float(v) for k, v in periods.items()}
                if periods
                else None,
                upstream_reaches=data.get("upstreamReaches"),
                downstream_reaches=data.get("downstreamReaches"),
                cached_at=parse_timestamp(data["cachedAt"])
                if data.get("cachedAt")
                else _utcnow(),
                last_api_update=parse_timestamp(last_update) if last_update else None,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseError(f"Invalid cached reach data: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reachId": self.reach_id,
            "riverName": self.river_name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "city": self.city,
            "state": self.state,
            "availableForecasts": list(self.available_forecasts),
            "returnPeriods": {str(k): v for k, v in self.return_periods.items()}
            if self.return_periods
            else None,
            "upstreamReaches": self.upstream_reaches,
            "downstreamReaches": self.downstream_reaches,
            "cachedAt": self.cached_at.isoformat(),
            "lastApiUpdate": self.last_api_update.isoformat()
            if self.last_api_update
            else None,
        }


def _series_has_data(series: Optional[ForecastSeries]) -> bool:
    return series is not None and not series.is_empty


def _ensemble_has_data(ensemble: Optional[Mapping[str, ForecastSeries]]) -> bool:
    return bool(ensemble) and any(not s.is_empty for s in ensemble.values())


@dataclass(frozen=True)
class ReachSnapshot:
    """Reach metadata plus whatever forecast series have been loaded so far."""

    reach: ReachData
    analysis_assimilation: Optional[ForecastSeries] = None
    short_range: Optional[ForecastSeries] = None
    medium_range: Dict[str, ForecastSeries] = field(default_factory=dict)
    long_range: Dict[str, ForecastSeries] = field(default_factory=dict)
    medium_range_blend: Optional[ForecastSeries] = None

    @property
    def reach_id(self) -> str:
        return self.reach.reach_id

    def ensemble(self, series_type: str) -> Dict[str, ForecastSeries]:
        if series_type == MEDIUM_RANGE:
            return self.medium_range
        if series_type == LONG_RANGE:
            return self.long_range
        return {}

    def ensemble_members(self, series_type: str) -> List[Tuple[str, ForecastSeries]]:
        """Numbered members of an ensemble, in member order."""
        members = [
            (name, s)
            for name, s in self.ensemble(series_type).items()
            if name.startswith("member")
        ]
        return sorted(members, key=lambda item: _member_sort_key(item[0]))

    def primary_series(self, series_type: str) -> Optional[ForecastSeries]:
        """
        The series to display for a type.

        Ensembles prefer ``mean`` and fall back to the first non-empty member.
        """
        if series_type == ANALYSIS_ASSIMILATION:
            return self.analysis_assimilation
        if series_type == SHORT_RANGE:
            return self.short_range
        if series_type == MEDIUM_RANGE_BLEND:
            return self.medium_range_blend
        if series_type in ENSEMBLE_SERIES_TYPES:
            return primary_ensemble_series(self.ensemble(series_type))[1]
        return None

    def has_series(self, series_type: str) -> bool:
        if series_type in ENSEMBLE_SERIES_TYPES:
            return _ensemble_has_data(self.ensemble(series_type))
        return _series_has_data(self.primary_series(series_type))

    def available_series(self) -> List[str]:
        return [t for t in SERIES_TYPES if self.has_series(t)]


def _member_sort_key(name: str) -> Tuple[int, str]:
    digits = "".join(ch for ch in name if ch.isdigit())
    return (int(digits) if digits else 0, name)


def primary_ensemble_series(
    ensemble: Mapping[str, ForecastSeries],
) -> Tuple[Optional[str], Optional[ForecastSeries]]:
    """Pick ``mean`` if it has data, otherwise the first non-empty member."""
    mean = ensemble.get("mean")
    if mean is not None and not mean.is_empty:
        return "mean", mean

    members = sorted(
        (name for name in ensemble if name.startswith("member")), key=_member_sort_key
    )
    for name in members:
        if not ensemble[name].is_empty:
            return name, ensemble[name]
    return None, None


def merge_snapshots(existing: ReachSnapshot, incoming: ReachSnapshot) -> ReachSnapshot:
    """
    Merge a partial fetch into an existing snapshot.

    Each series is taken from ``incoming`` only when it has data; otherwise the
    existing series is kept as-is. Reach metadata keeps the existing values and
    fills gaps from ``incoming``. Merging an empty response is a no-op on the
    series.
    """

    def pick(
        new: Optional[ForecastSeries], old: Optional[ForecastSeries]
    ) -> Optional[ForecastSeries]:
        return new if _series_has_data(new) else old

    def pick_ensemble(
        new: Dict[str, ForecastSeries], old: Dict[str, ForecastSeries]
    ) -> Dict[str, ForecastSeries]:
        return new if _ensemble_has_data(new) else old

    if incoming.reach.reach_id == existing.reach.reach_id:
        reach = existing.reach.merge_with(incoming.reach)
    else:
        reach = existing.reach

    return ReachSnapshot(
        reach=reach,
        analysis_assimilation=pick(
            incoming.analysis_assimilation, existing.analysis_assimilation
        ),
        short_range=pick(incoming.short_range, existing.short_range),
        medium_range=pick_ensemble(incoming.medium_range, existing.medium_range),
        long_range=pick_ensemble(incoming.long_range, existing.long_range),
        medium_range_blend=pick(
            incoming.medium_range_blend, existing.medium_range_blend
        ),
    )


@dataclass(frozen=True)
class Favorite:
    """A persisted favorite: reach identity, list position and user overlays."""

    reach_id: str
    display_order: int = 0
    custom_name: Optional[str] = None
    custom_image: Optional[str] = None


@dataclass(frozen=True)
class SelectedReach:
    """A reach picked on the map, with whatever was known at tap time."""

    reach_id: str
    latitude: float
    longitude: float
    stream_order: Optional[int] = None
    river_name: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    selected_at: datetime = field(default_factory=_utcnow)

    @property
    def display_name(self) -> str:
        return self.river_name or f"Stream {self.reach_id}"

    @property
    def has_river_name(self) -> bool:
        return bool(self.river_name)
