"""シードキーワードをロケール単位にまとめ、タスクサイズに分割する."""

from __future__ import annotations

from k4k_collector.config import COST_PER_TASK_USD, IngestConfig
from k4k_collector.models import KeywordSeed, LocaleGroup, TaskChunk


def group_seeds_by_locale(
    seeds: list[KeywordSeed], default_language: str, default_location: str
) -> list[LocaleGroup]:
    """シードを (language_code, location_code) でグルーピングする.

    グループの並びもグループ内のシードの並びも入力順を保つ。
    """
    groups: dict[tuple[str, str], LocaleGroup] = {}
    for seed in seeds:
        language_code = seed.language_code or default_language
        location_code = seed.location_code or default_location
        key = (language_code, location_code)

        group = groups.get(key)
        if group is None:
            group = LocaleGroup(language_code=language_code, location_code=location_code)
            groups[key] = group
        group.seeds.append(seed)

    return list(groups.values())


def chunk_locale_group(group: LocaleGroup, max_terms_per_task: int) -> list[TaskChunk]:
    """ロケールグループを max_terms_per_task 件ずつのチャンクに分割する.

    並べ替え・重複除去はしない (重複は upsert 側で吸収される)。
    """
    if max_terms_per_task < 1:
        raise ValueError(f"max_terms_per_task must be >= 1: {max_terms_per_task}")

    keywords = [s.term for s in group.seeds]
    return [
        TaskChunk(
            locale_group=group,
            keywords=keywords[i:i + max_terms_per_task],
            language_code=group.language_code,
            location_code=group.location_code,
        )
        for i in range(0, len(keywords), max_terms_per_task)
    ]


def build_task_chunks(seeds: list[KeywordSeed], config: IngestConfig) -> tuple[list[LocaleGroup], list[TaskChunk]]:
    groups = group_seeds_by_locale(seeds, config.default_language_code, config.default_location_code)
    chunks: list[TaskChunk] = []
    for group in groups:
        chunks.extend(chunk_locale_group(group, config.max_terms_per_task))
    return groups, chunks


def build_task_request(chunk: TaskChunk, config: IngestConfig) -> dict:
    """task_post に送るリクエスト1件分を組み立てる."""
    return {
        "language_code": chunk.language_code,
        "location_code": chunk.location_code,
        "keywords": list(chunk.keywords),
        "device": config.device,
        "search_partners": config.search_partners,
        "include_adult_keywords": config.include_adult,
    }


def estimate_cost(task_count: int) -> float:
    return round(task_count * COST_PER_TASK_USD, 6)
