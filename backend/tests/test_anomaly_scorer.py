"""
异常评分测试

覆盖期望值 / 标准差计算、零标准差、各匹配方式、NaN 处理以及基线对齐。
"""
import math

import pytest

from rule_engine.schemas.query import Point, Series
from rule_engine.schemas.rule import CompareOp, MatchType
from rule_engine.services.anomaly import (
    AnomalyScorer,
    index_by_fingerprint,
    match_baselines,
    remove_grouping_set_points,
    score,
    should_alert,
)

from factories import result, series

LABELS = {"svc": "api"}

# 期望值 10，标准差 2
PRIOR = series(LABELS, [10.0, 10.0])
WEEK = series(LABELS, [8.0, 12.0])
WEEK_PRIOR = series(LABELS, [10.0, 10.0])


def alert(values, op=CompareOp.ABOVE, match=MatchType.AT_LEAST_ONCE, target=2.0):
    return should_alert(series(LABELS, values), PRIOR, WEEK, WEEK_PRIOR, op, match, target)


class TestAnomalyScorer:
    def test_expected_and_stddev(self):
        scorer = AnomalyScorer(series(LABELS, [4.0, 6.0]), series(LABELS, [8.0, 12.0]), series(LABELS, [3.0]))
        assert scorer.expected_value == pytest.approx(5 + 10 - 3)
        assert scorer.stddev == pytest.approx(2.0)

    def test_score(self):
        assert score(None, PRIOR, WEEK, WEEK_PRIOR, 20.0) == pytest.approx(5.0)
        assert score(None, PRIOR, WEEK, WEEK_PRIOR, 6.0) == pytest.approx(-2.0)

    def test_zero_stddev(self):
        flat = series(LABELS, [10.0, 10.0])
        scorer = AnomalyScorer(flat, flat, flat)
        assert scorer.score(10.0) == 0.0
        assert scorer.score(11.0) == math.inf
        assert scorer.score(9.0) == -math.inf
        assert math.isnan(scorer.score(math.nan))

    def test_empty_baseline_gives_nan(self):
        scorer = AnomalyScorer(series(LABELS, []), WEEK, WEEK_PRIOR)
        assert math.isnan(scorer.score(10.0))

    @pytest.mark.parametrize("lower,higher", [(11.0, 12.0), (10.0, 30.0), (-5.0, 0.0)])
    def test_score_monotonic_in_value(self, lower, higher):
        scorer = AnomalyScorer(PRIOR, WEEK, WEEK_PRIOR)
        assert scorer.score(lower) < scorer.score(higher)


class TestGroupingSetPoints:
    def test_negative_timestamps_removed(self):
        s = Series(labels=LABELS, points=[
            Point(timestamp=-1, value=100.0),
            Point(timestamp=0, value=1.0),
            Point(timestamp=60_000, value=2.0),
        ])
        assert [p.value for p in remove_grouping_set_points(s)] == [1.0, 2.0]

    def test_only_grouping_points_is_unscorable(self):
        s = Series(labels=LABELS, points=[Point(timestamp=-1, value=100.0)])
        ok, value = should_alert(s, PRIOR, WEEK, WEEK_PRIOR, CompareOp.ABOVE, MatchType.AT_LEAST_ONCE, 2)
        assert not ok
        assert math.isnan(value)


class TestShouldAlert:
    def test_missing_baseline(self):
        ok, value = should_alert(series(LABELS, [20.0]), None, WEEK, WEEK_PRIOR,
                                 CompareOp.ABOVE, MatchType.AT_LEAST_ONCE, 2)
        assert not ok
        assert math.isnan(value)

    def test_at_least_once_returns_first_satisfying_score(self):
        ok, value = alert([10.0, 20.0, 30.0])
        assert ok
        assert value == pytest.approx(5.0)

    def test_at_least_once_not_met_returns_last_score(self):
        ok, value = alert([10.0, 12.0])
        assert not ok
        assert value == pytest.approx(1.0)

    def test_all_the_times(self):
        ok, value = alert([16.0, 20.0], match=MatchType.ALL_THE_TIMES)
        assert ok
        assert value == pytest.approx(5.0)

    def test_all_the_times_violated(self):
        ok, value = alert([20.0, 12.0, 30.0], match=MatchType.ALL_THE_TIMES)
        assert not ok
        assert value == pytest.approx(1.0)

    def test_all_the_times_ignores_nan_for_ordering(self):
        ok, _ = alert([20.0, math.nan, 20.0], match=MatchType.ALL_THE_TIMES)
        assert ok

    def test_all_the_times_nan_violates_equality(self):
        ok, _ = alert([math.nan], op=CompareOp.EQUAL, match=MatchType.ALL_THE_TIMES, target=0)
        assert not ok

    def test_on_average(self):
        ok, value = alert([14.0, 18.0], match=MatchType.ON_AVERAGE)
        assert ok
        assert value == pytest.approx(3.0)

    def test_in_total(self):
        ok, value = alert([12.0, 12.0], match=MatchType.IN_TOTAL, target=1.5)
        assert ok
        assert value == pytest.approx(2.0)

    def test_on_average_skips_non_finite_points(self):
        ok, value = alert([math.nan, math.inf, 20.0], match=MatchType.ON_AVERAGE)
        assert ok
        assert value == pytest.approx(5.0)

    @pytest.mark.parametrize("match", [MatchType.ON_AVERAGE, MatchType.IN_TOTAL])
    def test_no_finite_points(self, match):
        ok, value = alert([math.nan, math.inf], match=match)
        assert not ok
        assert math.isnan(value)

    def test_below(self):
        ok, value = alert([2.0], op=CompareOp.BELOW, target=-2)
        assert ok
        assert value == pytest.approx(-4.0)

    @pytest.mark.parametrize("op,target,hit,miss", [
        (CompareOp.ABOVE, 2.0, 20.0, 10.0),
        (CompareOp.BELOW, -2.0, 2.0, 10.0),
    ])
    @pytest.mark.parametrize("prefix", [[True], [False], [True, False], [False, True, True]])
    @pytest.mark.parametrize("append_hit", [True, False])
    def test_appending_point_is_monotonic(self, op, target, hit, miss, prefix, append_hit):
        """追加一个点只会让“至少一次”更易告警、“始终”更难告警。"""
        values = [hit if h else miss for h in prefix]
        extended = values + [hit if append_hit else miss]

        once_before, _ = alert(values, op=op, target=target)
        once_after, _ = alert(extended, op=op, target=target)
        always_before, _ = alert(values, op=op, match=MatchType.ALL_THE_TIMES, target=target)
        always_after, _ = alert(extended, op=op, match=MatchType.ALL_THE_TIMES, target=target)

        assert once_after or not once_before
        assert always_before or not always_after
        if append_hit:
            assert once_after
        else:
            assert not always_after

    @pytest.mark.parametrize("match", [MatchType.AT_LEAST_ONCE, MatchType.ALL_THE_TIMES, MatchType.ON_AVERAGE])
    def test_no_compare_op_never_alerts(self, match):
        flat = series(LABELS, [10.0, 10.0])
        ok, value = should_alert(series(LABELS, [10.0]), flat, flat, flat, CompareOp.NONE, match, 0)
        assert not ok
        assert math.isnan(value)

    def test_unknown_match_type(self):
        ok, value = alert([20.0], match=MatchType.NONE)
        assert not ok
        assert math.isnan(value)


class TestMatchBaselines:
    def test_aligns_by_labels_regardless_of_order(self):
        a = series({"svc": "a", "env": "prod"}, [1.0])
        b = series({"svc": "b"}, [2.0])
        baseline = series({"env": "prod", "svc": "a"}, [1.0])
        other = series({"svc": "b"}, [1.0])
        matched = list(match_baselines(
            result(a, b), result(other, baseline), result(baseline, other), result(baseline, other),
        ))
        assert [m[0].labels["svc"] for m in matched] == ["a", "b"]
        assert matched[0][1] is not None and matched[0][1].labels == {"env": "prod", "svc": "a"}

    def test_skips_series_with_missing_or_empty_baseline(self):
        a = series({"svc": "a"}, [1.0])
        b = series({"svc": "b"}, [1.0])
        c = series({"svc": "c"}, [1.0])
        full = result(series({"svc": "a"}, [1.0]), series({"svc": "b"}, [1.0]), series({"svc": "c"}, [1.0]))
        partial_week = result(series({"svc": "a"}, [1.0]), series({"svc": "c"}, []))
        matched = list(match_baselines(result(a, b, c), full, partial_week, full))
        assert [m[0].labels["svc"] for m in matched] == ["a"]

    def test_no_current_result(self):
        assert list(match_baselines(None, result(), result(), result())) == []

    def test_missing_baseline_result(self):
        cur = result(series(LABELS, [1.0]))
        assert list(match_baselines(cur, None, result(series(LABELS, [1.0])), result(series(LABELS, [1.0])))) == []

    def test_index_by_fingerprint(self):
        assert index_by_fingerprint(None) == {}
        idx = index_by_fingerprint(result(series(LABELS, [1.0])))
        assert len(idx) == 1
