"""
Forecast and favorites data orchestration for a river-flow client.

Loads reach forecasts progressively, keeps a favorites list enriched with
live flow data, and invalidates unit-dependent caches when the user switches
between CFS and CMS.
"""

try:
    from importlib import metadata

    __version__ = metadata.version(__name__)
except Exception:
    __version__ = "unknown"

from .cache import CacheRegistry, MemoTable, ReachCache, cache_key
from .config import ProviderConfig
from .daily import DailyFlowForecast, day_label, flow_bounds, process_forecast_data
from .exceptions import (
    CacheError,
    FavoritesError,
    ForecastLoadError,
    ParseError,
    ReturnPeriodParseError,
    RivrFlowError,
)
from .favorites_provider import (
    UNSET,
    EnrichedFavorite,
    FavoritesDiff,
    FavoritesProvider,
    RefreshResult,
    SessionEnrichment,
)
from .invalidation import UnitChangeCoordinator
from .models import (
    Favorite,
    ForecastCategory,
    ForecastPoint,
    ForecastSeries,
    LoadingPhase,
    ReachData,
    ReachSnapshot,
    SelectedReach,
    merge_snapshots,
    parse_return_periods,
)
from .reach_provider import ReachDataProvider
from .services import (
    FavoritesStore,
    ForecastService,
    KeyValueStore,
    ReachMetadataCache,
    ReturnPeriodService,
)
from .units import FlowUnit, FlowValue, UnitPreference, convert_flow

__all__ = [
    # Providers
    "ReachDataProvider",
    "FavoritesProvider",
    "UnitChangeCoordinator",
    "ProviderConfig",
    # Collaborator contracts
    "ForecastService",
    "FavoritesStore",
    "KeyValueStore",
    "ReachMetadataCache",
    "ReturnPeriodService",
    # Models
    "ForecastPoint",
    "ForecastSeries",
    "ReachData",
    "ReachSnapshot",
    "ForecastCategory",
    "LoadingPhase",
    "Favorite",
    "SelectedReach",
    "merge_snapshots",
    "parse_return_periods",
    # Favorites views
    "EnrichedFavorite",
    "FavoritesDiff",
    "RefreshResult",
    "SessionEnrichment",
    "UNSET",
    # Units
    "FlowUnit",
    "FlowValue",
    "UnitPreference",
    "convert_flow",
    # Caching
    "CacheRegistry",
    "MemoTable",
    "ReachCache",
    "cache_key",
    # Daily summaries
    "DailyFlowForecast",
    "process_forecast_data",
    "flow_bounds",
    "day_label",
    # Exceptions
    "RivrFlowError",
    "ForecastLoadError",
    "FavoritesError",
    "CacheError",
    "ParseError",
    "ReturnPeriodParseError",
]
