"""
异常评分 (Anomaly Scorer)

基于加性季节分解的基线计算期望值，并按本周序列的离散度归一化得到偏差分数：

    expected = avg(prior_period) + avg(current_week) - avg(prior_week)
    score    = (value - expected) / pstdev(current_week)

本周序列标准差为 0（常量序列）时：value 等于期望值得 0，否则得 ±inf。
各窗口之间按标签集指纹对应，缺少任一基线窗口或基线为空的序列不参与评分。

Additive seasonal baseline and standardized deviation score. Zero dispersion
scores 0 when the value equals the expectation and ±inf otherwise. Windows
correspond by label-set fingerprint; series without all three non-empty
baselines are excluded.
"""
import math
from typing import Dict, Iterator, List, Optional, Tuple

from rule_engine.schemas.query import Point, QueryResult, Series
from rule_engine.schemas.rule import CompareOp, MatchType
from rule_engine.services.labels import fingerprint


def _avg(points: List[Point]) -> float:
    if not points:
        return math.nan
    return sum(p.value for p in points) / len(points)


def _pstdev(points: List[Point]) -> float:
    if not points:
        return math.nan
    mean = _avg(points)
    return math.sqrt(sum((p.value - mean) ** 2 for p in points) / len(points))


class AnomalyScorer:
    """
    单条序列的评分器 (Scorer for one matched series)

    期望值和标准差只依赖基线窗口，构造时计算一次。
    """

    def __init__(self, prior_period: Series, current_week: Series, prior_week: Series):
        self.expected_value = (
            _avg(prior_period.points) + _avg(current_week.points) - _avg(prior_week.points)
        )
        self.stddev = _pstdev(current_week.points)

    def score(self, value: float) -> float:
        diff = value - self.expected_value
        if self.stddev == 0:
            if diff == 0:
                return 0.0
            if math.isnan(diff):
                return math.nan
            return math.copysign(math.inf, diff)
        return diff / self.stddev


def score(series: Series, prior_period: Series, current_week: Series, prior_week: Series, value: float) -> float:
    return AnomalyScorer(prior_period, current_week, prior_week).score(value)


def remove_grouping_set_points(series: Series) -> List[Point]:
    """去掉分组集汇总点（时间戳为负）(Drop grouping-set points, timestamp < 0)"""
    return [p for p in series.points if p.timestamp >= 0]


def should_alert(
    series: Optional[Series],
    prior_period: Optional[Series],
    current_week: Optional[Series],
    prior_week: Optional[Series],
    op: CompareOp,
    match_type: MatchType,
    target: float,
) -> Tuple[bool, float]:
    """
    按匹配方式判定序列是否告警 (Decide whether a series alerts under the match type)

    Returns:
        (是否告警, 告警值)。告警值依次为首个满足条件的分数 / 最后一个分数 /
        平均分数 / 分数总和；无法评分或未设置比较运算符时为 (False, NaN)。
    """
    if series is None or prior_period is None or current_week is None or prior_week is None:
        return False, math.nan

    points = remove_grouping_set_points(series)
    if not points or op == CompareOp.NONE:
        return False, math.nan

    scorer = AnomalyScorer(prior_period, current_week, prior_week)

    if match_type == MatchType.AT_LEAST_ONCE:
        last = math.nan
        for point in points:
            last = scorer.score(point.value)
            if op.compare(last, target):
                return True, last
        return False, last

    if match_type == MatchType.ALL_THE_TIMES:
        last = math.nan
        for point in points:
            last = scorer.score(point.value)
            if op.violated_by(last, target):
                return False, last
        return True, last

    if match_type in (MatchType.ON_AVERAGE, MatchType.IN_TOTAL):
        total = 0.0
        count = 0
        for point in points:
            if math.isnan(point.value) or math.isinf(point.value):
                continue
            total += scorer.score(point.value)
            count += 1
        if count == 0:
            return False, math.nan
        value = total / count if match_type == MatchType.ON_AVERAGE else total
        return op.compare(value, target), value

    return False, math.nan


def index_by_fingerprint(result: Optional[QueryResult]) -> Dict[int, Series]:
    if result is None:
        return {}
    return {fingerprint(s.labels): s for s in result.series}


def match_baselines(
    current: Optional[QueryResult],
    prior_period: Optional[QueryResult],
    current_week: Optional[QueryResult],
    prior_week: Optional[QueryResult],
) -> Iterator[Tuple[Series, Series, Series, Series]]:
    """
    按指纹对齐四个窗口的序列 (Align the four windows by label fingerprint)

    缺少任一基线或基线为空的序列被跳过。
    """
    if current is None:
        return
    baselines = [index_by_fingerprint(r) for r in (prior_period, current_week, prior_week)]
    for series in current.series:
        fp = fingerprint(series.labels)
        matched = [b.get(fp) for b in baselines]
        if any(m is None or not m.points for m in matched):
            continue
        yield (series, *matched)
