"""DataForSEO のキーワードレコードを正規化する.

正規化ルール:
  - NFKC 正規化・小文字化
  - 制御文字・ゼロ幅文字・絵文字の除去
  - 連続する空白を1つにまとめ、前後を trim
検証ルール:
  - 長さ 2〜120 文字
  - 文字 (letter) を1つ以上含む (数字・記号のみは不可)
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata

from k4k_collector.models import MonthlySearch, NormalizedKeyword

logger = logging.getLogger(__name__)

_STRIP_PATTERN = re.compile(
    "["
    "\u0000-\u001f\u007f-\u009f"  # 制御文字
    "\u200b-\u200d\ufeff"  # ゼロ幅文字
    "\ufe00-\ufe0f"  # 異体字セレクタ (絵文字の表示指定)
    "\U0001f600-\U0001f64f"
    "\U0001f300-\U0001f5ff"
    "\U0001f680-\U0001f6ff"
    "\U0001f1e0-\U0001f1ff"
    "\u2600-\u26ff"
    "\u2700-\u27bf"
    "]"
)
_WHITESPACE_PATTERN = re.compile(r"\s+")

MIN_TERM_LENGTH = 2
MAX_TERM_LENGTH = 120

COMPETITION_LEVELS = {
    "low": 0.33,
    "medium": 0.66,
    "high": 1.0,
}


def normalize_keyword_term(term: str) -> str:
    normalized = _STRIP_PATTERN.sub("", term)
    normalized = unicodedata.normalize("NFKC", normalized).lower()
    # lower() の結果が NFKC 形でないことがあるため再度正規化する
    normalized = unicodedata.normalize("NFKC", normalized)
    normalized = _STRIP_PATTERN.sub("", normalized)
    normalized = _WHITESPACE_PATTERN.sub(" ", normalized)
    return normalized.strip()


def is_valid_keyword_term(term: str) -> bool:
    if not MIN_TERM_LENGTH <= len(term) <= MAX_TERM_LENGTH:
        return False
    return any(ch.isalpha() for ch in term)


def _as_number(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return float(value)


def resolve_competition(item: dict) -> float:
    """competition (数値) → competition_level (LOW/MEDIUM/HIGH) → 0 の順で決定する."""
    numeric = _as_number(item.get("competition"))
    if numeric is not None:
        return min(1.0, max(0.0, numeric))

    for key in ("competition_level", "competition"):
        level = item.get(key)
        if isinstance(level, str) and level.strip().lower() in COMPETITION_LEVELS:
            return COMPETITION_LEVELS[level.strip().lower()]

    return 0.0


def _monthly_trend(raw) -> list[MonthlySearch] | None:
    if not raw:
        return None
    return [
        MonthlySearch(year=ms.get("year"), month=ms.get("month"), searches=ms.get("search_volume"))
        for ms in raw
        if isinstance(ms, dict)
    ]


def normalize_keyword(
    item: dict, market: str, source: str, ingest_batch_id: str
) -> NormalizedKeyword | None:
    """1レコードを正規化する. 不正なレコードは None."""
    if not isinstance(item, dict):
        return None
    term_original = item.get("keyword")
    if not isinstance(term_original, str):
        return None

    term_norm = normalize_keyword_term(term_original)
    if not is_valid_keyword_term(term_norm):
        return None

    level = item.get("competition_level")
    return NormalizedKeyword(
        term_norm=term_norm,
        term_original=term_original,
        locale=item.get("language_code") or "en",
        market=market,
        source=source,
        ingest_batch_id=ingest_batch_id,
        search_volume=int(_as_number(item.get("search_volume")) or 0),
        cpc=_as_number(item.get("cpc")) or 0.0,
        competition=resolve_competition(item),
        competition_level=level if isinstance(level, str) else None,
        monthly_trend=_monthly_trend(item.get("monthly_searches")),
    )


def normalize_batch(
    items: list[dict] | None, market: str, source: str, ingest_batch_id: str
) -> tuple[list[NormalizedKeyword], int]:
    """レコード一覧を正規化し、(有効なキーワード, スキップ件数) を返す.

    Raises:
        TypeError: items がリストでない場合。
    """
    if items is None:
        return [], 0
    if not isinstance(items, list):
        raise TypeError(f"result must be a list, got {type(items).__name__}")

    valid: list[NormalizedKeyword] = []
    skipped = 0
    for item in items:
        try:
            normalized = normalize_keyword(item, market, source, ingest_batch_id)
        except (TypeError, ValueError) as e:
            logger.debug("レコードの正規化に失敗: %s", e)
            normalized = None
        if normalized is None:
            skipped += 1
        else:
            valid.append(normalized)

    return valid, skipped
