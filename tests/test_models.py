"""
Tests for reach, series and snapshot models.
"""

from datetime import datetime, timedelta, timezone

import pytest

from rivrflow.exceptions import ParseError, ReturnPeriodParseError
from rivrflow.models import (
    CATEGORY_ELEVATED,
    CATEGORY_FLOOD_RISK,
    CATEGORY_HIGH,
    CATEGORY_NORMAL,
    CATEGORY_UNKNOWN,
    LONG_RANGE,
    MEDIUM_RANGE,
    SHORT_RANGE,
    ForecastCategory,
    ForecastSeries,
    ReachData,
    ReachSnapshot,
    merge_snapshots,
    parse_return_periods,
    primary_ensemble_series,
)
from rivrflow.units import CMS_TO_CFS, FlowUnit, FlowValue

from .conftest import BASE_TIME, make_reach, make_series


class TestForecastSeries:
    """Test series parsing and lookups."""

    def test_from_dict(self):
        series = ForecastSeries.from_dict(
            {
                "referenceTime": "2025-06-01T12:00:00Z",
                "units": "ft³/s",
                "data": [
                    {"validTime": "2025-06-01T13:00:00Z", "flow": 120.5},
                    {"validTime": "2025-06-01T14:00:00Z", "flow": "130"},
                ],
            }
        )

        assert series.unit == FlowUnit.CFS
        assert series.reference_time == BASE_TIME
        assert [p.flow for p in series.data] == [120.5, 130.0]

    def test_from_dict_invalid_point(self):
        with pytest.raises(ParseError):
            ForecastSeries.from_dict({"units": "CFS", "data": [{"flow": 1.0}]})

    def test_first_flow_uses_earliest_point(self):
        series = make_series([5.0, 7.0])
        reversed_series = ForecastSeries(units="CFS", data=list(reversed(series.data)))
        assert reversed_series.first_flow() == 5.0

    def test_empty(self):
        series = ForecastSeries(units="CFS")
        assert series.is_empty
        assert series.first_flow() is None


class TestReachData:
    """Test reach metadata behavior."""

    def test_formatted_location(self):
        assert make_reach(city="Portland", state="OR").formatted_location == "Portland, OR"
        assert make_reach().formatted_location == "45.5000, -122.6000"
        assert ReachData("1").formatted_location == ""

    def test_merge_fills_missing_fields(self):
        sparse = ReachData("1", river_name="Sandy River")
        rich = make_reach("1", city="Troutdale", state="OR", return_periods={2: 10.0})

        merged = sparse.merge_with(rich)

        assert merged.river_name == "Sandy River"
        assert merged.city == "Troutdale"
        assert merged.latitude == 45.5
        assert merged.return_periods == {2: 10.0}

    def test_merge_never_blanks_out(self):
        rich = make_reach("1", city="Troutdale", state="OR", return_periods={2: 10.0})
        merged = rich.merge_with(ReachData("1"))

        assert merged.city == "Troutdale"
        assert merged.return_periods == {2: 10.0}
        assert merged.has_location_data

    @pytest.mark.parametrize(
        "flow_cms,expected",
        [
            (50.0, CATEGORY_NORMAL),
            (150.0, CATEGORY_ELEVATED),
            (250.0, CATEGORY_HIGH),
            (350.0, CATEGORY_FLOOD_RISK),
        ],
    )
    def test_flow_category(self, flow_cms, expected):
        reach = make_reach(return_periods={2: 100.0, 5: 200.0, 10: 300.0})
        assert reach.flow_category(FlowValue(flow_cms, FlowUnit.CMS)) == expected

    def test_flow_category_converts_cfs(self):
        reach = make_reach(return_periods={2: 100.0, 5: 200.0})
        flow = FlowValue(150.0 * CMS_TO_CFS, FlowUnit.CFS)
        assert reach.flow_category(flow) == CATEGORY_ELEVATED

    def test_flow_category_without_periods(self):
        assert make_reach().flow_category(FlowValue(1.0, FlowUnit.CFS)) == CATEGORY_UNKNOWN

    def test_next_threshold(self):
        reach = make_reach(return_periods={2: 100.0, 5: 200.0})
        assert reach.next_threshold(FlowValue(150.0, FlowUnit.CMS)) == (5, 200.0)
        assert reach.next_threshold(FlowValue(500.0, FlowUnit.CMS)) is None

    def test_dict_round_trip_preserves_periods(self):
        reach = make_reach(city="Bend", state="OR", return_periods={2: 1.5, 25: 9.0})
        restored = ReachData.from_dict(reach.to_dict())

        assert restored.return_periods == {2: 1.5, 25: 9.0}
        assert restored.cached_at == reach.cached_at
        assert restored.formatted_location == "Bend, OR"

    def test_from_dict_missing_id(self):
        with pytest.raises(ParseError):
            ReachData.from_dict({"riverName": "Nowhere"})

    def test_cache_staleness(self):
        old = make_reach(cached_at=datetime.now(timezone.utc) - timedelta(days=31))
        assert old.is_cache_stale(timedelta(days=30))
        assert not make_reach().is_cache_stale(timedelta(days=30))


class TestReturnPeriods:
    """Test return-period response parsing."""

    def test_parse(self):
        periods = parse_return_periods(
            [{"feature_id": 123, "return_period_2": 85.3, "return_period_25": "410.0"}]
        )
        assert periods == {2: 85.3, 25: 410.0}

    def test_empty_response(self):
        with pytest.raises(ReturnPeriodParseError, match="empty"):
            parse_return_periods([])

    def test_invalid_value(self):
        with pytest.raises(ReturnPeriodParseError):
            parse_return_periods([{"return_period_2": "high"}])


class TestSnapshotMerge:
    """Test that merging partial loads is additive and idempotent."""

    def test_merge_is_additive(self):
        hourly = make_series([10.0, 11.0])
        existing = ReachSnapshot(reach=make_reach(), short_range=hourly)
        incoming = ReachSnapshot(
            reach=ReachData("123"), medium_range={"mean": make_series([20.0])}
        )

        merged = merge_snapshots(existing, incoming)

        assert merged.short_range is hourly
        assert merged.medium_range == incoming.medium_range
        assert merged.available_series() == [SHORT_RANGE, MEDIUM_RANGE]

    def test_merging_empty_series_keeps_existing(self):
        hourly = make_series([10.0])
        existing = ReachSnapshot(
            reach=make_reach(),
            short_range=hourly,
            long_range={"mean": make_series([5.0])},
        )
        incoming = ReachSnapshot(
            reach=ReachData("123"),
            short_range=ForecastSeries(units="CFS"),
            long_range={"mean": ForecastSeries(units="CFS")},
        )

        merged = merge_snapshots(existing, incoming)

        assert merged.short_range is hourly
        assert merged.long_range is existing.long_range
        assert merged.reach.river_name == existing.reach.river_name

    def test_merge_empty_response_is_idempotent(self):
        existing = ReachSnapshot(reach=make_reach(), short_range=make_series([1.0]))
        empty = ReachSnapshot(reach=ReachData("123"))

        once = merge_snapshots(existing, empty)
        twice = merge_snapshots(once, empty)

        assert twice.short_range is existing.short_range
        assert twice.medium_range == existing.medium_range
        assert twice.analysis_assimilation is None

    def test_non_empty_series_replaces(self):
        existing = ReachSnapshot(reach=make_reach(), short_range=make_series([1.0]))
        fresh = make_series([2.0])

        merged = merge_snapshots(existing, ReachSnapshot(reach=ReachData("123"), short_range=fresh))

        assert merged.short_range is fresh

    def test_merge_fills_reach_metadata(self):
        existing = ReachSnapshot(reach=make_reach())
        incoming = ReachSnapshot(reach=make_reach(return_periods={2: 50.0}))

        assert merge_snapshots(existing, incoming).reach.return_periods == {2: 50.0}


class TestEnsembles:
    """Test ensemble series selection."""

    def test_primary_prefers_mean(self):
        ensemble = {"member1": make_series([1.0]), "mean": make_series([2.0])}
        assert primary_ensemble_series(ensemble)[0] == "mean"

    def test_primary_falls_back_to_first_member(self):
        ensemble = {
            "mean": ForecastSeries(units="CFS"),
            "member10": make_series([3.0]),
            "member2": make_series([2.0]),
            "member1": ForecastSeries(units="CFS"),
        }
        assert primary_ensemble_series(ensemble)[0] == "member2"

    def test_primary_with_no_data(self):
        assert primary_ensemble_series({}) == (None, None)

    def test_snapshot_members_sorted(self):
        snapshot = ReachSnapshot(
            reach=make_reach(),
            long_range={"member10": make_series([1.0]), "member2": make_series([1.0])},
        )
        names = [name for name, _ in snapshot.ensemble_members(LONG_RANGE)]
        assert names == ["member2", "member10"]

    def test_category_series_types(self):
        assert ForecastCategory.HOURLY.series_type == SHORT_RANGE
        assert ForecastCategory.MEDIUM.series_type == MEDIUM_RANGE
        assert ForecastCategory("extended").series_type == LONG_RANGE
