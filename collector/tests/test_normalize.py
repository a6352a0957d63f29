"""normalize モジュールのユニットテスト."""

import json
from pathlib import Path

import pytest

from k4k_collector.normalize import (
    is_valid_keyword_term,
    normalize_batch,
    normalize_keyword,
    normalize_keyword_term,
    resolve_competition,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def _load_fixture(name: str) -> dict:
    return json.loads((FIXTURES_DIR / name).read_text(encoding="utf-8"))


class TestNormalizeKeywordTerm:
    """normalize_keyword_term のテスト."""

    @pytest.mark.parametrize("raw,expected", [
        ("  Handmade   Candle  ", "handmade candle"),
        ("Soy\tCandle", "soycandle"),
        ("ＣＡＮＤＬＥ", "candle"),
        ("candle\u200bholder", "candleholder"),
        ("gift 🎁 box", "gift box"),
        ("sun ☀ hat", "sun hat"),
        ("ﬁre pit", "fire pit"),
        ("ÉTÉ robe", "été robe"),
        ("", ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_keyword_term(raw) == expected

    @pytest.mark.parametrize("raw", [
        "  Handmade   Candle  ",
        "ＣＡＮＤＬＥ  　ホルダー",
        "e\u200d\u0301clair",
        "Ⅻ hours ℌ",
        "gift 🎁 box",
        "İstanbul hediyelik",
        "\x00\x1f  12-34  ",
    ])
    def test_idempotent(self, raw):
        """2回正規化しても結果が変わらないこと."""
        once = normalize_keyword_term(raw)
        assert normalize_keyword_term(once) == once


class TestIsValidKeywordTerm:
    """is_valid_keyword_term のテスト."""

    @pytest.mark.parametrize("term", ["ab", "candle", "3d printer", "キャンドル", "a" * 120])
    def test_valid(self, term):
        assert is_valid_keyword_term(term)

    @pytest.mark.parametrize("term", ["a", "", "12-34", "2024", "!!", "a" * 121])
    def test_invalid(self, term):
        assert not is_valid_keyword_term(term)


class TestResolveCompetition:
    """resolve_competition のテスト."""

    def test_numeric_first(self):
        assert resolve_competition({"competition": 0.42, "competition_level": "HIGH"}) == 0.42

    def test_numeric_clamped(self):
        assert resolve_competition({"competition": 1.7}) == 1.0
        assert resolve_competition({"competition": -0.2}) == 0.0

    def test_level_fallback(self):
        assert resolve_competition({"competition": None, "competition_level": "LOW"}) == 0.33
        assert resolve_competition({"competition_level": "medium"}) == 0.66
        assert resolve_competition({"competition": "HIGH"}) == 1.0

    def test_default_zero(self):
        assert resolve_competition({}) == 0.0
        assert resolve_competition({"competition_level": "UNSPECIFIED"}) == 0.0


class TestNormalizeKeyword:
    """normalize_keyword のテスト."""

    def test_fields(self):
        item = _load_fixture("task_get_completed.json")["tasks"][0]["result"][0]
        kw = normalize_keyword(item, "us", "src", "batch-1")

        assert kw.term_norm == "handmade soy candles"
        assert kw.term_original == "Handmade  Soy Candles 🕯\ufe0f"
        assert kw.locale == "en"
        assert kw.market == "us"
        assert kw.search_volume == 2900
        assert kw.cpc == 1.42
        assert kw.competition == 0.87
        assert kw.competition_level == "HIGH"

    def test_monthly_trend_order_preserved(self):
        """月次推移は並べ替えずに 1:1 で写すこと."""
        item = _load_fixture("task_get_completed.json")["tasks"][0]["result"][0]
        kw = normalize_keyword(item, "us", "src", "batch-1")

        assert [(m.year, m.month, m.searches) for m in kw.monthly_trend] == [
            (2024, 12, 6600), (2024, 11, 4400), (2024, 10, 2900),
        ]

    def test_missing_history(self):
        kw = normalize_keyword({"keyword": "candle", "search_volume": None, "cpc": None}, "us", "src", "b")

        assert kw.monthly_trend is None
        assert kw.search_volume == 0
        assert kw.cpc == 0.0
        assert kw.competition == 0.0

    @pytest.mark.parametrize("item", [None, "candle", {}, {"keyword": 12}, {"keyword": "12-34"}])
    def test_rejected(self, item):
        assert normalize_keyword(item, "us", "src", "b") is None


class TestNormalizeBatch:
    """normalize_batch のテスト."""

    def test_fixture_batch(self):
        items = _load_fixture("task_get_completed.json")["tasks"][0]["result"]
        valid, skipped = normalize_batch(items, "us", "src", "batch-1")

        assert [k.term_norm for k in valid] == ["handmade soy candles", "candle making kit"]
        assert valid[1].competition == 0.66
        assert skipped == 2

    def test_none_result(self):
        assert normalize_batch(None, "us", "src", "b") == ([], 0)

    def test_malformed_batch(self):
        with pytest.raises(TypeError):
            normalize_batch({"keyword": "candle"}, "us", "src", "b")
