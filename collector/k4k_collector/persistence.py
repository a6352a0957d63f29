"""タスク結果の永続化.

書き込み順序 (raw_sources → keywords) とタスク・キーワード単位の
失敗の切り離しを担当する。保存先の操作は store (既定は db モジュール) に委ねる。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from k4k_collector.config import PROVIDER, SOURCE_NAME, SOURCE_TYPE, IngestConfig
from k4k_collector.models import (
    NormalizedKeyword,
    RawSourcePayload,
    RawSourceStatus,
    TaskOutcome,
    TaskState,
)
from k4k_collector.normalize import normalize_batch

logger = logging.getLogger(__name__)


class PersistenceCoordinator:
    def __init__(self, store, config: IngestConfig, ingest_batch_id: str) -> None:
        self.store = store
        self.config = config
        self.ingest_batch_id = ingest_batch_id

    def _metadata(self, task: TaskState, received_items: int, provider_run_ts: str | None) -> dict:
        return {
            "language_code": task.chunk.language_code,
            "location_code": task.chunk.location_code,
            "device": self.config.device,
            "search_partners": self.config.search_partners,
            "include_adult": self.config.include_adult,
            "posted_keywords_count": len(task.chunk.keywords),
            "received_items_count": received_items,
            "provider_run_ts": provider_run_ts or datetime.now(timezone.utc).isoformat(),
            "ingest_batch_id": self.ingest_batch_id,
        }

    def already_processed(self, task_id: str) -> bool:
        try:
            return self.store.task_already_processed(task_id)
        except Exception as e:
            logger.warning("処理済み確認に失敗: task_id=%s, error=%s", task_id, e)
            return False

    def upsert_keywords(self, keywords: list[NormalizedKeyword]) -> tuple[int, int]:
        """キーワードを1件ずつ upsert する. 失敗は数えるだけで残りは続行する.

        Returns:
            (成功件数, 失敗件数)
        """
        succeeded = 0
        failed = 0
        for keyword in keywords:
            try:
                self.store.upsert_keyword(keyword)
            except Exception as e:
                logger.warning("キーワード upsert 失敗: term=%s, error=%s", keyword.term_norm, e)
                failed += 1
            else:
                succeeded += 1
        return succeeded, failed

    def record_completed(self, task: TaskState, task_result: dict) -> TaskOutcome:
        """完了タスクの結果を保存する (正規化 → raw_sources → keywords).

        result が配列でない場合は TypeError を送出し、何も書き込まない。
        completed の raw_sources は処理済みの印になるので、正規化が通ってから保存する。
        """
        outcome = TaskOutcome(task_id=task.task_id)
        items = task_result.get("result") or []
        valid, skipped = normalize_batch(items, self.config.market, SOURCE_NAME, self.ingest_batch_id)

        raw = RawSourcePayload(
            provider=PROVIDER,
            source_type=SOURCE_TYPE,
            source_key=task.task_id,
            status=RawSourceStatus.COMPLETED,
            payload=task_result,
            metadata=self._metadata(task, len(items), task_result.get("time")),
        )
        if self.store.insert_raw_source(raw):
            outcome.raw_saved = 1

        outcome.skipped_invalid = skipped
        if not valid:
            logger.warning("有効なキーワードがありません: task_id=%s", task.task_id)
            return outcome

        # RPC は insert と update を区別しないため、成功分は inserted に数える
        outcome.inserted, outcome.upsert_failed = self.upsert_keywords(valid)
        logger.info(
            "UPSERT_SUMMARY task_id=%s inserted=%d failed=%d skipped=%d",
            task.task_id, outcome.inserted, outcome.upsert_failed, skipped,
        )
        return outcome

    def record_failed(
        self, task: TaskState, error: str, status: RawSourceStatus = RawSourceStatus.FAILED
    ) -> TaskOutcome:
        """失敗 (またはタイムアウト) したタスクを raw_sources に記録する. 保存失敗はログのみ."""
        outcome = TaskOutcome(task_id=task.task_id, error=error)
        raw = RawSourcePayload(
            provider=PROVIDER,
            source_type=SOURCE_TYPE,
            source_key=task.task_id,
            status=status,
            payload={},
            metadata=self._metadata(task, 0, None),
            error=error,
        )
        try:
            if self.store.insert_raw_source(raw):
                outcome.raw_saved = 1
        except Exception as e:
            logger.warning("失敗タスクの raw_sources 保存に失敗: task_id=%s, error=%s", task.task_id, e)
        return outcome

    def touch_seeds(self, seed_ids: list[str]) -> bool:
        """シードの last_run_at を更新する. 失敗しても実行全体は失敗させない."""
        try:
            self.store.update_seeds_last_run(seed_ids)
        except Exception as e:
            logger.warning("シードのタイムスタンプ更新に失敗: %s", e)
            return False
        return True
