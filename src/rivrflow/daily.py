"""
Daily summaries of ensemble forecasts.

Hourly medium and long range values are grouped by calendar day into
min/max/average flows, each tagged with a flow category from the reach's
return periods.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Dict, List, Mapping, Optional, Tuple, Union

import pandas as pd

from .models import ForecastSeries, ReachData, primary_ensemble_series
from .units import FlowUnit, FlowValue, convert_flow

logger = logging.getLogger(__name__)

WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


@dataclass(frozen=True)
class DailyFlowForecast:
    """One day's flow summary, in ``unit``."""

    date: date
    min_flow: float
    max_flow: float
    avg_flow: float
    flow_category: str
    data_source: str
    unit: FlowUnit
    hourly_data: Dict[datetime, float] = field(default_factory=dict)

    @property
    def flow_range(self) -> float:
        return self.max_flow - self.min_flow

    @property
    def has_hourly_data(self) -> bool:
        return bool(self.hourly_data)

    @property
    def peak(self) -> FlowValue:
        return FlowValue(self.max_flow, self.unit)


def process_forecast_data(
    ensemble: Mapping[str, ForecastSeries],
    reach: ReachData,
    unit: FlowUnit,
    forecast_type: str = "",
    tz: Union[str, tzinfo, None] = None,
) -> List[DailyFlowForecast]:
    """
    Summarize an ensemble forecast by day.

    The ``mean`` series is used when it has data, otherwise the first non-empty
    member. Values are converted from the series' own unit into ``unit``.

    Args:
        ensemble: Series keyed by ``mean``, ``member1``, ...
        reach: Reach whose return periods classify each day
        unit: Unit to report flows in
        forecast_type: Label used in log messages
        tz: Time zone that defines calendar days (defaults to UTC)

    Returns:
        Daily forecasts sorted by date; empty if there is no usable series
    """
    source, series = primary_ensemble_series(ensemble)
    if series is None or source is None:
        logger.debug(f"No usable series for {forecast_type or 'ensemble'} daily summary")
        return []

    frame = pd.DataFrame(
        {
            "valid_time": [p.valid_time for p in series.data],
            "flow": [convert_flow(p.flow, series.unit, unit) for p in series.data],
        }
    )
    frame["valid_time"] = pd.to_datetime(frame["valid_time"], utc=True).dt.tz_convert(
        tz or "UTC"
    )
    frame["day"] = frame["valid_time"].dt.date
    frame = frame.sort_values("valid_time")

    forecasts = []
    for day, group in frame.groupby("day", sort=True):
        max_flow = float(group["flow"].max())
        forecasts.append(
            DailyFlowForecast(
                date=day,
                min_flow=float(group["flow"].min()),
                max_flow=max_flow,
                avg_flow=float(group["flow"].mean()),
                flow_category=reach.flow_category(FlowValue(max_flow, unit)),
                data_source=source,
                unit=unit,
                hourly_data={
                    ts.to_pydatetime(): float(flow)
                    for ts, flow in zip(group["valid_time"], group["flow"])
                },
            )
        )

    logger.debug(
        f"Built {len(forecasts)} daily summaries for {forecast_type or 'ensemble'} "
        f"from {source} ({unit.value})"
    )
    return forecasts


def flow_bounds(forecasts: List[DailyFlowForecast]) -> Tuple[float, float]:
    """Overall (min, max) across days with 5% padding, floored at zero."""
    if not forecasts:
        return 0.0, 100.0

    low = min(f.min_flow for f in forecasts)
    high = max(f.max_flow for f in forecasts)
    padding = (high - low) * 0.05
    return max(low - padding, 0.0), high + padding


def day_label(day: date, today: Optional[date] = None) -> str:
    """``Today``, ``Tomorrow``, a weekday within a week, else ``M/D``."""
    today = today or date.today()
    difference = (day - today).days

    if difference == 0:
        return "Today"
    if difference == 1:
        return "Tomorrow"
    if difference == -1:
        return "Yesterday"
    if abs(difference) <= 7:
        return WEEKDAYS[day.weekday()]
    return f"{day.month}/{day.day}"
