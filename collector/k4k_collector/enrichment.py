"""K4K 由来キーワードの指標エンリッチ.

月次検索数の推移と競合度から、以下の指標を算出する:
  - base_demand_index: ln(1+avg12m) / ln(1+p99_avg)             [0,1]
  - competition_score: 競合度をそのまま clamp                      [0,1]
  - engagement_score: 1 - competition_score                       [0,1]
  - trend_momentum: slope(series) / max_abs_slope_raw             [-1,1]
  - deseasoned_trend_momentum: slope(series/avg12m) / max_abs_slope_des [-1,1]
  - seasonal_label: 季節指数が最大の月 ("<Month>_peak")
  - adjusted_demand_index: base * (1-comp) * (1+deseasoned_tm)   [0,1]
  - ai_opportunity_score: base * (1-comp) * (0.5+0.5*engagement) [0,1]

計算は3段階で行う:
  1. キーワードごとの系列統計 (平均・傾き・季節指数)
  2. 対象全体から正規化係数 (p99_avg, max_abs_slope_raw, max_abs_slope_des)
  3. 係数を使って各キーワードの指標を算出
正規化係数は毎回その時点の対象全体から求め直すので、
入力が同じなら何度実行しても結果は同じになる。

engagement_score はエンゲージメントの実データがないための暫定値
(1 - competition_score) で、競合度と独立した指標ではない。
"""

from __future__ import annotations

import calendar
import logging
import math
import time
from dataclasses import dataclass

import numpy as np

from k4k_collector.limiter import ConcurrencyLimiter
from k4k_collector.models import (
    EnrichmentCandidate,
    EnrichmentReport,
    EnrichmentResult,
    GlobalNormalizers,
)

logger = logging.getLogger(__name__)

WINDOW_MONTHS = 12
DEMAND_PERCENTILE = 99
MIN_SLOPE_NORMALIZER = 1e-4
WRITE_CONCURRENCY = 8
COVERAGE_WARN_PERCENT = 99.0


@dataclass
class SeriesStats:
    """1キーワード分の系列統計 (1段階目の結果)."""

    candidate: EnrichmentCandidate
    avg12m: float
    raw_slope: float
    deseasoned_slope: float
    seasonal_label: str | None


def clamp(value: float, lower: float, upper: float) -> float:
    if math.isnan(value):
        value = 0.0
    return min(upper, max(lower, value))


def clamp01(value: float) -> float:
    return clamp(value, 0.0, 1.0)


def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def least_squares_slope(points: list[tuple[float, float]]) -> float:
    """(x, y) の最小二乗直線の傾き. 2点未満・x が全て同じ場合は 0."""
    if len(points) < 2:
        return 0.0
    x = np.array([p[0] for p in points], dtype=float)
    y = np.array([p[1] for p in points], dtype=float)
    dx = x - x.mean()
    denom = float(np.dot(dx, dx))
    if denom == 0.0:
        return 0.0
    return float(np.dot(dx, y - y.mean()) / denom)


def _peak_label(months: list[int | None], indices: list[float]) -> str | None:
    # 変動のない系列はピーク月を決められないので、先頭の最大値を採らずに None を返す
    if not indices or max(indices) == min(indices):
        return None
    peak_month = months[int(np.argmax(indices))]
    if not isinstance(peak_month, int) or not 1 <= peak_month <= 12:
        return None
    return f"{calendar.month_name[peak_month]}_peak"


def series_stats(candidate: EnrichmentCandidate) -> SeriesStats:
    """直近12か月の系列から平均・傾き・季節性を求める."""
    history = sorted(candidate.monthly_trend, key=lambda m: (m.year or 0, m.month or 0))
    window = history[-WINDOW_MONTHS:]

    # x は系列内の位置 (欠損月は飛ばす)
    points = [(float(i), float(m.searches)) for i, m in enumerate(window) if _is_number(m.searches)]
    months = [window[int(x)].month for x, _ in points]

    avg12m = float(np.mean([y for _, y in points])) if points else 0.0
    raw_slope = least_squares_slope(points)

    seasonal_label = None
    deseasoned_slope = 0.0
    if avg12m > 0:
        deseasoned = [(x, y / avg12m) for x, y in points]
        seasonal_label = _peak_label(months, [y for _, y in deseasoned])
        deseasoned_slope = least_squares_slope(deseasoned)

    return SeriesStats(
        candidate=candidate,
        avg12m=avg12m,
        raw_slope=raw_slope,
        deseasoned_slope=deseasoned_slope,
        seasonal_label=seasonal_label,
    )


def global_normalizers(stats: list[SeriesStats]) -> GlobalNormalizers:
    """対象全体から正規化係数を求める."""
    positive = [s.avg12m for s in stats if s.avg12m > 0]
    p99_avg = float(np.percentile(positive, DEMAND_PERCENTILE)) if positive else None

    max_raw = max((abs(s.raw_slope) for s in stats), default=0.0)
    max_des = max((abs(s.deseasoned_slope) for s in stats), default=0.0)
    return GlobalNormalizers(
        p99_avg=p99_avg,
        max_abs_slope_raw=max(MIN_SLOPE_NORMALIZER, max_raw),
        max_abs_slope_des=max(MIN_SLOPE_NORMALIZER, max_des),
    )


def score(stats: SeriesStats, normalizers: GlobalNormalizers) -> EnrichmentResult:
    if stats.avg12m > 0 and normalizers.p99_avg and normalizers.p99_avg > 0:
        base = clamp01(math.log1p(stats.avg12m) / math.log1p(normalizers.p99_avg))
    else:
        base = 0.0

    raw_competition = stats.candidate.competition
    competition = clamp01(float(raw_competition)) if _is_number(raw_competition) else 0.0
    engagement = clamp01(1.0 - competition)

    trend = clamp(stats.raw_slope / normalizers.max_abs_slope_raw, -1.0, 1.0)
    deseasoned = clamp(stats.deseasoned_slope / normalizers.max_abs_slope_des, -1.0, 1.0)

    return EnrichmentResult(
        keyword_id=stats.candidate.keyword_id,
        base_demand_index=base,
        competition_score=competition,
        engagement_score=engagement,
        trend_momentum=trend,
        deseasoned_trend_momentum=deseasoned,
        seasonal_label=stats.seasonal_label,
        adjusted_demand_index=clamp01(base * (1.0 - competition) * (1.0 + deseasoned)),
        ai_opportunity_score=clamp01(base * (1.0 - competition) * (0.5 + 0.5 * engagement)),
    )


def enrich(candidates: list[EnrichmentCandidate]) -> tuple[list[EnrichmentResult], GlobalNormalizers]:
    """候補全体の指標を計算する (DB には触れない)."""
    eligible = [c for c in candidates if c.monthly_trend]
    stats = [series_stats(c) for c in eligible]
    normalizers = global_normalizers(stats)
    return [score(s, normalizers) for s in stats], normalizers


def run_enrichment(
    store,
    dry_run: bool = False,
    limit: int | None = None,
    write_concurrency: int = WRITE_CONCURRENCY,
) -> EnrichmentReport:
    """保存済みコーパスを読み込んでエンリッチし、dry_run でなければ書き戻す."""
    start = time.monotonic()
    logger.info("エンリッチ開始: dry_run=%s, limit=%s", dry_run, limit)

    candidates = store.fetch_enrichment_candidates(limit)
    results, normalizers = enrich(candidates)
    report = EnrichmentReport(dry_run=dry_run, processed_count=len(results), normalizers=normalizers)

    logger.info(
        "正規化係数: p99_avg=%s, max_abs_slope_raw=%.6f, max_abs_slope_des=%.6f",
        normalizers.p99_avg, normalizers.max_abs_slope_raw, normalizers.max_abs_slope_des,
    )

    if not dry_run and results:
        metadata_by_id = {c.keyword_id: c.ingest_metadata for c in candidates}

        def write(result: EnrichmentResult) -> None:
            store.write_enrichment_result(result, normalizers, metadata_by_id.get(result.keyword_id, {}))

        with ConcurrencyLimiter(write_concurrency, name="enrich-write") as limiter:
            outcomes = limiter.run_all(write, results)

        for result, outcome in zip(results, outcomes):
            if isinstance(outcome, Exception):
                report.failed_count += 1
                logger.warning("エンリッチ結果の書き込み失敗: id=%s, error=%s", result.keyword_id, outcome)
            else:
                report.updated_count += 1

        coverage = report.updated_count / report.processed_count * 100
        logger.info("カバレッジ: %.2f%%", coverage)
        if coverage < COVERAGE_WARN_PERCENT:
            logger.warning("カバレッジが %.0f%% 未満です: %.2f%%", COVERAGE_WARN_PERCENT, coverage)

    report.ms_elapsed = int((time.monotonic() - start) * 1000)
    return report
