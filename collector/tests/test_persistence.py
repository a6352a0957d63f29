"""persistence モジュールのユニットテスト."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from k4k_collector.config import IngestConfig
from k4k_collector.models import LocaleGroup, RawSourceStatus, TaskChunk, TaskState
from k4k_collector.persistence import PersistenceCoordinator

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def _task_result() -> dict:
    data = json.loads((FIXTURES_DIR / "task_get_completed.json").read_text(encoding="utf-8"))
    return data["tasks"][0]


def _task(task_id: str = "task-1") -> TaskState:
    group = LocaleGroup(language_code="en", location_code="2840")
    chunk = TaskChunk(locale_group=group, keywords=["candle", "soap"], language_code="en", location_code="2840")
    return TaskState(task_id=task_id, chunk=chunk, posted_at=0.0)


def _coordinator(store: MagicMock) -> PersistenceCoordinator:
    config = IngestConfig(dataforseo_login="l", dataforseo_password="p")
    return PersistenceCoordinator(store, config, "batch-1")


class TestRecordCompleted:
    """record_completed のテスト."""

    def test_raw_saved_before_upserts(self):
        """raw_sources の保存がキーワード upsert より先に行われること."""
        store = MagicMock()
        store.insert_raw_source.return_value = "raw-1"

        outcome = _coordinator(store).record_completed(_task(), _task_result())

        names = [c[0] for c in store.method_calls]
        assert names[0] == "insert_raw_source"
        assert names[1:] == ["upsert_keyword", "upsert_keyword"]
        assert outcome.raw_saved == 1
        assert outcome.inserted == 2
        assert outcome.skipped_invalid == 2

    def test_raw_metadata(self):
        store = MagicMock()
        _coordinator(store).record_completed(_task(), _task_result())

        raw = store.insert_raw_source.call_args[0][0]
        assert raw.source_key == "task-1"
        assert raw.status is RawSourceStatus.COMPLETED
        assert raw.metadata["posted_keywords_count"] == 2
        assert raw.metadata["received_items_count"] == 4
        assert raw.metadata["ingest_batch_id"] == "batch-1"
        assert raw.metadata["device"] == "desktop"

    def test_upsert_failure_isolated(self):
        """1件の upsert 失敗で残りのキーワードが止まらないこと."""
        store = MagicMock()
        store.upsert_keyword.side_effect = [RuntimeError("conflict"), None]

        outcome = _coordinator(store).record_completed(_task(), _task_result())

        assert store.upsert_keyword.call_count == 2
        assert outcome.inserted == 1
        assert outcome.upsert_failed == 1

    def test_duplicate_raw_is_noop(self):
        """raw_sources が既存 (None) でも例外にならず raw_saved=0 になること."""
        store = MagicMock()
        store.insert_raw_source.return_value = None

        outcome = _coordinator(store).record_completed(_task(), _task_result())

        assert outcome.raw_saved == 0
        assert outcome.inserted == 2

    def test_malformed_result_writes_nothing(self):
        """result が配列でなければ completed の raw_sources を残さずに例外を送出すること."""
        store = MagicMock()

        with pytest.raises(TypeError):
            _coordinator(store).record_completed(_task(), {"id": "task-1", "result": {"keyword": "x"}})

        store.insert_raw_source.assert_not_called()
        store.upsert_keyword.assert_not_called()

    def test_empty_result(self):
        store = MagicMock()
        outcome = _coordinator(store).record_completed(_task(), {"id": "task-1", "result": None})

        store.upsert_keyword.assert_not_called()
        assert outcome.inserted == 0
        assert outcome.skipped_invalid == 0


class TestRecordFailed:
    """record_failed のテスト."""

    def test_failed_row(self):
        store = MagicMock()
        outcome = _coordinator(store).record_failed(_task(), "Internal Error (50301)")

        raw = store.insert_raw_source.call_args[0][0]
        assert raw.status is RawSourceStatus.FAILED
        assert raw.error == "Internal Error (50301)"
        assert outcome.error == "Internal Error (50301)"

    def test_queued_row_for_timeout(self):
        store = MagicMock()
        _coordinator(store).record_failed(_task(), "poll timeout", RawSourceStatus.QUEUED)

        assert store.insert_raw_source.call_args[0][0].status is RawSourceStatus.QUEUED

    def test_store_error_is_logged_only(self):
        store = MagicMock()
        store.insert_raw_source.side_effect = RuntimeError("db down")

        outcome = _coordinator(store).record_failed(_task(), "boom")

        assert outcome.raw_saved == 0


class TestAlreadyProcessed:
    """already_processed のテスト."""

    def test_delegates(self):
        store = MagicMock()
        store.task_already_processed.return_value = True
        assert _coordinator(store).already_processed("task-1") is True

    def test_lookup_error_treated_as_not_processed(self):
        store = MagicMock()
        store.task_already_processed.side_effect = RuntimeError("timeout")
        assert _coordinator(store).already_processed("task-1") is False


class TestTouchSeeds:
    """touch_seeds のテスト."""

    def test_success(self):
        store = MagicMock()
        assert _coordinator(store).touch_seeds(["s1"]) is True
        store.update_seeds_last_run.assert_called_once_with(["s1"])

    def test_failure_is_best_effort(self):
        store = MagicMock()
        store.update_seeds_last_run.side_effect = RuntimeError("db down")
        assert _coordinator(store).touch_seeds(["s1"]) is False
