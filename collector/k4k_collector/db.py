"""Supabase データベース操作モジュール.

テーブルは SUPABASE_SCHEMA (既定 public) に配置。
Supabase client のスキーマ指定は .schema() で行う。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from postgrest.exceptions import APIError
from supabase import create_client

from k4k_collector.config import (
    K4K_METHOD,
    PROVIDER,
    SOURCE_TYPE,
    SUPABASE_SCHEMA,
    SUPABASE_SECRET_KEY,
    SUPABASE_URL,
)
from k4k_collector.models import (
    EnrichmentCandidate,
    EnrichmentResult,
    GlobalNormalizers,
    KeywordSeed,
    MonthlySearch,
    NormalizedKeyword,
    RawSourcePayload,
    RawSourceStatus,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
PAGE_SIZE = 1000

_client = None


def _get_client():
    """Supabase クライアントを初回呼び出し時に生成する."""
    global _client
    if _client is None:
        _client = create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)
    return _client


def _table(name: str):
    """SUPABASE_SCHEMA のテーブルを参照する."""
    return _get_client().schema(SUPABASE_SCHEMA).table(name)


def _rpc(name: str, params: dict):
    return _get_client().schema(SUPABASE_SCHEMA).rpc(name, params)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def fetch_keyword_seeds(limit: int) -> list[KeywordSeed]:
    """有効なシードキーワードを優先度順に取得する."""
    resp = (
        _table("keyword_seeds")
        .select("id, term, language_code, location_code, market, enabled")
        .eq("enabled", True)
        .order("priority", desc=True)
        .order("created_at")
        .limit(limit)
        .execute()
    )

    return [
        KeywordSeed(
            id=row["id"],
            term=row["term"],
            language_code=row.get("language_code"),
            location_code=row.get("location_code"),
            market=row.get("market") or "",
            enabled=row.get("enabled", True),
        )
        for row in resp.data or []
        if row.get("term")
    ]


def update_seeds_last_run(seed_ids: list[str]) -> None:
    """処理したシードの last_run_at を更新する."""
    if not seed_ids:
        return
    _table("keyword_seeds").update({"last_run_at": _now()}).in_("id", seed_ids).execute()
    logger.info("keyword_seeds の last_run_at を %d 件更新", len(seed_ids))


def insert_raw_source(payload: RawSourcePayload) -> str | None:
    """raw_sources に生レスポンスを挿入する.

    Returns:
        挿入した行の id。(provider, source_type, source_key) が既に存在する場合は None。
    """
    row = {
        "provider": payload.provider,
        "source_type": payload.source_type,
        "source_key": payload.source_key,
        "status": payload.status.value,
        "payload": payload.payload,
        "metadata": payload.metadata,
        "error": payload.error,
        "processed_at": _now() if payload.status is RawSourceStatus.COMPLETED else None,
    }
    try:
        resp = _table("raw_sources").insert(row).execute()
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            logger.debug("raw_sources に既存: source_key=%s", payload.source_key)
            return None
        raise

    data = resp.data or []
    return data[0].get("id") if data else None


def upsert_keyword(keyword: NormalizedKeyword) -> None:
    """lexy_upsert_keyword RPC でキーワードを1件 upsert する."""
    _rpc("lexy_upsert_keyword", {
        "p_term": keyword.term_norm,
        "p_market": keyword.market,
        "p_source": keyword.source,
        "p_tier": "free",
        "p_method": K4K_METHOD,
        "p_extras": {
            "search_volume": keyword.search_volume,
            "cpc": keyword.cpc,
            "monthly_trend": keyword.trend_as_dicts(),
            "original_term": keyword.term_original,
            "locale": keyword.locale,
            "ingest_batch_id": keyword.ingest_batch_id,
            "dataforseo": {
                "competition": keyword.competition,
                "competition_level": keyword.competition_level,
                "search_volume": keyword.search_volume,
                "cpc": keyword.cpc,
            },
        },
        "p_demand": None,
        "p_competition": keyword.competition,
        "p_engagement": None,
        "p_ai": None,
        "p_freshness": _now(),
    }).execute()


def task_already_processed(task_id: str) -> bool:
    """completed の raw_sources が既にあるか."""
    resp = (
        _table("raw_sources")
        .select("id")
        .eq("provider", PROVIDER)
        .eq("source_type", SOURCE_TYPE)
        .eq("source_key", task_id)
        .eq("status", RawSourceStatus.COMPLETED.value)
        .limit(1)
        .execute()
    )
    return bool(resp.data)


def _to_candidate(row: dict) -> EnrichmentCandidate | None:
    extras = row.get("extras") or {}
    trend = extras.get("monthly_trend") or []
    if not trend:
        return None

    competition = (extras.get("dataforseo") or {}).get("competition")
    return EnrichmentCandidate(
        keyword_id=row["id"],
        term=row.get("term") or "",
        monthly_trend=[
            MonthlySearch(year=m.get("year"), month=m.get("month"), searches=m.get("searches"))
            for m in trend
            if isinstance(m, dict)
        ],
        competition=competition if isinstance(competition, (int, float)) else None,
        ingest_metadata=row.get("ingest_metadata") or {},
    )


def fetch_enrichment_candidates(limit: int | None = None) -> list[EnrichmentCandidate]:
    """K4K 由来で月次推移を持つキーワードを全件取得する."""
    candidates: list[EnrichmentCandidate] = []
    start = 0
    while True:
        resp = (
            _table("keywords")
            .select("id, term, extras, ingest_metadata")
            .eq("method", K4K_METHOD)
            .order("id")
            .range(start, start + PAGE_SIZE - 1)
            .execute()
        )
        rows = resp.data or []
        for row in rows:
            candidate = _to_candidate(row)
            if candidate is not None:
                candidates.append(candidate)
                if limit is not None and len(candidates) >= limit:
                    return candidates

        if len(rows) < PAGE_SIZE:
            break
        start += PAGE_SIZE

    logger.info("エンリッチ対象: %d 件", len(candidates))
    return candidates


def write_enrichment_result(
    result: EnrichmentResult, normalizers: GlobalNormalizers, ingest_metadata: dict
) -> None:
    """エンリッチ結果で keywords の1行を上書きする."""
    now = _now()
    metadata = dict(ingest_metadata)
    metadata["dfs_norm"] = {
        "p99_avg": normalizers.p99_avg,
        "max_abs_slope_raw": normalizers.max_abs_slope_raw,
        "max_abs_slope_des": normalizers.max_abs_slope_des,
        "enriched_at": now,
    }
    _table("keywords").update({
        "base_demand_index": result.base_demand_index,
        "competition_score": result.competition_score,
        "engagement_score": result.engagement_score,
        "trend_momentum": result.trend_momentum,
        "deseasoned_trend_momentum": result.deseasoned_trend_momentum,
        "seasonal_label": result.seasonal_label,
        "adjusted_demand_index": result.adjusted_demand_index,
        "ai_opportunity_score": result.ai_opportunity_score,
        "freshness_ts": now,
        "ingest_source": PROVIDER,
        "ingest_metadata": metadata,
        "updated_at": now,
    }).eq("id", result.keyword_id).execute()
