"""DataForSEO Keywords For Keywords 取り込み: メインエントリーポイント.

処理フロー:
  1. DB から有効なシードキーワードを取得
  2. ロケール単位にまとめ、タスクサイズ (最大20語) に分割
  3. task_post でタスクを投入 (同時実行数を制限)
  4. 全タスクが終端状態になるまでポーリング
  5. 完了タスクの結果を取得・正規化し、raw_sources → keywords の順に保存
  6. 失敗・タイムアウトしたタスクを raw_sources に記録
  7. シードの last_run_at を更新し、サマリを出力

終了コード: 0 = 全件成功, 1 = 致命的エラー, 2 = 一部失敗

エンリッチ (指標計算) は別ジョブ: `python -m k4k_collector.main enrich [--dry-run]`
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from k4k_collector import db
from k4k_collector.chunker import build_task_chunks, build_task_request, estimate_cost
from k4k_collector.client import DataForSEOClient, extract_task
from k4k_collector.config import LOG_DIR, IngestConfig, load_config
from k4k_collector.enrichment import run_enrichment
from k4k_collector.errors import ConfigError, K4KError, ProviderTaskFailure
from k4k_collector.limiter import ConcurrencyLimiter
from k4k_collector.models import (
    ProviderStatus,
    RawSourceStatus,
    RunSummary,
    StatusKind,
    TaskChunk,
    TaskOutcome,
    TaskState,
)
from k4k_collector.persistence import PersistenceCoordinator
from k4k_collector.poller import create_poller

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2


def setup_logging(level: str = "info") -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(exist_ok=True)
    log_file = LOG_DIR / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log_event(event: str, **fields) -> None:
    logger.info("%s %s", event, json.dumps(fields, ensure_ascii=False, default=str))


def _finish(summary: RunSummary, start: float) -> RunSummary:
    summary.completed_at = _now_iso()
    summary.duration_ms = int((time.monotonic() - start) * 1000)
    _log_event("RUN_SUMMARY", **summary.to_dict())
    return summary


def post_chunk(client: DataForSEOClient, chunk: TaskChunk, config: IngestConfig) -> TaskState:
    """1チャンクを task_post で投入し、pending の TaskState を返す."""
    response = client.post_tasks([build_task_request(chunk, config)])
    task = extract_task(response)
    status = ProviderStatus.classify(task.get("status_code"), task.get("status_message"))
    if not status.is_post_success or not task.get("id"):
        raise ProviderTaskFailure(task.get("id") or "", status.code, status.message)

    _log_event(
        "POSTED_TASK",
        task_id=task["id"],
        locale=f"{chunk.language_code}:{chunk.location_code}",
        keywords_count=len(chunk.keywords),
        cost=task.get("cost"),
    )
    return TaskState(task_id=task["id"], chunk=chunk, posted_at=time.time())


def process_completed_task(
    client: DataForSEOClient, coordinator: PersistenceCoordinator, task: TaskState
) -> TaskOutcome:
    """完了タスクの結果を取得して保存する. 失敗は raw_sources に記録して返す."""
    if coordinator.already_processed(task.task_id):
        logger.debug("処理済みのためスキップ: task_id=%s", task.task_id)
        return TaskOutcome(task_id=task.task_id, skipped_duplicate_task=True)

    try:
        task_result = extract_task(client.get_task_result(task.task_id))
        status = ProviderStatus.classify(task_result.get("status_code"), task_result.get("status_message"))
        if status.kind is not StatusKind.OK:
            raise ProviderTaskFailure(task.task_id, status.code, status.message)

        _log_event(
            "FETCH_RESULT",
            task_id=task.task_id,
            items_count=len(task_result.get("result") or []),
            cost=task_result.get("cost"),
        )
        return coordinator.record_completed(task, task_result)
    except Exception as e:
        logger.error("タスク結果の処理に失敗: task_id=%s, error=%s", task.task_id, e)
        return coordinator.record_failed(task, str(e))


def run_ingest(
    config: IngestConfig,
    client: DataForSEOClient,
    store=db,
    ingest_batch_id: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunSummary:
    """取り込みを1回実行する.

    Raises:
        K4KError: タスクを1件も投入できなかった場合。
    """
    start = time.monotonic()
    summary = RunSummary(
        ingest_batch_id=ingest_batch_id or str(uuid.uuid4()),
        started_at=_now_iso(),
        dry_run=config.dry_run,
    )
    logger.info("=== K4K 取り込み 開始 === batch=%s", summary.ingest_batch_id)

    # 1. シード取得
    seeds = store.fetch_keyword_seeds(config.batch_max_seeds)
    summary.seeds_read = len(seeds)
    if not seeds:
        logger.warning("有効なシードキーワードがありません。終了します。")
        return _finish(summary, start)
    logger.info("シードキーワード: %d 件", len(seeds))

    # 2. ロケール単位でチャンク分割
    groups, chunks = build_task_chunks(seeds, config)
    summary.locale_groups = len(groups)
    summary.estimated_cost_usd = estimate_cost(len(chunks))
    logger.info(
        "ロケール %d グループ, タスク %d 件 (1タスク最大 %d 語), 概算 $%.4f",
        len(groups), len(chunks), config.max_terms_per_task, summary.estimated_cost_usd,
    )

    if config.dry_run:
        logger.warning("DRY_RUN: タスク投入・DB 書き込みは行いません")
        return _finish(summary, start)

    # 3. タスク投入
    with ConcurrencyLimiter(config.concurrency_task_post, name="task-post") as limiter:
        post_results = limiter.run_all(lambda chunk: post_chunk(client, chunk, config), chunks)

    task_states: list[TaskState] = []
    for chunk, result in zip(chunks, post_results):
        if isinstance(result, Exception):
            summary.tasks_post_failed += 1
            logger.error("タスク投入失敗: keywords=%s, error=%s", chunk.keywords, result)
        else:
            task_states.append(result)

    summary.tasks_posted = len(task_states)
    logger.info("タスク投入: %d/%d 件成功", summary.tasks_posted, len(chunks))
    if not task_states:
        raise K4KError("DataForSEO へのタスク投入が1件も成功しませんでした")

    # 4. ポーリング
    poller = create_poller(
        config.poll_strategy, client, config.poll_interval, config.poll_timeout, sleep=sleep
    )
    poller.register_tasks(task_states)
    poll_result = poller.poll_until_complete()

    summary.tasks_completed = len(poll_result.completed)
    summary.tasks_timed_out = len(poll_result.timed_out)
    summary.tasks_failed = len(poll_result.failed) + len(poll_result.timed_out)

    # 5, 6. 結果取得・保存
    coordinator = PersistenceCoordinator(store, config, summary.ingest_batch_id)

    def record_unfinished(task: TaskState) -> TaskOutcome:
        if task.is_terminal:
            return coordinator.record_failed(task, task.error or "task failed")
        return coordinator.record_failed(task, "poll timeout", status=RawSourceStatus.QUEUED)

    with ConcurrencyLimiter(config.concurrency_task_get, name="task-get") as limiter:
        outcomes = limiter.run_all(
            lambda task: process_completed_task(client, coordinator, task), poll_result.completed
        )
        outcomes += limiter.run_all(record_unfinished, poll_result.failed + poll_result.timed_out)

    for task, outcome in zip(poll_result.completed, outcomes):
        if isinstance(outcome, Exception) or outcome.error:
            summary.tasks_fetch_failed += 1
    for outcome in outcomes:
        if isinstance(outcome, Exception):
            logger.error("タスク処理中の想定外エラー: %s", outcome)
            continue
        summary.rows_raw_saved += outcome.raw_saved
        summary.rows_inserted += outcome.inserted
        summary.rows_updated += outcome.updated
        summary.rows_upsert_failed += outcome.upsert_failed
        summary.rows_skipped_invalid += outcome.skipped_invalid

    # 7. シードのタイムスタンプ更新 (失敗しても続行)
    coordinator.touch_seeds([s.id for s in seeds])

    logger.info("=== K4K 取り込み 完了 ===")
    return _finish(summary, start)


def exit_code_for(summary: RunSummary) -> int:
    if (
        summary.tasks_post_failed
        or summary.tasks_failed
        or summary.tasks_timed_out
        or summary.tasks_fetch_failed
    ):
        logger.warning(
            "一部失敗: 投入失敗=%d, 失敗/タイムアウト=%d, 結果取得失敗=%d",
            summary.tasks_post_failed, summary.tasks_failed, summary.tasks_fetch_failed,
        )
        return EXIT_PARTIAL
    return EXIT_OK


def main() -> int:
    """取り込みジョブ."""
    try:
        config = load_config()
    except ConfigError as e:
        setup_logging()
        logger.error("設定エラー: %s", e)
        return EXIT_FATAL

    setup_logging(config.log_level)
    client = DataForSEOClient(config.dataforseo_login, config.dataforseo_password)
    try:
        summary = run_ingest(config, client)
    except Exception:
        logger.exception("K4K 取り込みジョブが失敗しました")
        return EXIT_FATAL
    finally:
        client.close()

    return exit_code_for(summary)


def enrich_main(argv: list[str] | None = None) -> int:
    """エンリッチジョブ."""
    parser = argparse.ArgumentParser(description="K4K キーワードの指標エンリッチ")
    parser.add_argument("--dry-run", action="store_true", help="計算のみ行い、DB は更新しない")
    parser.add_argument("--limit", type=int, default=None, help="処理するキーワード数の上限")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "info"))
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    try:
        report = run_enrichment(db, dry_run=args.dry_run, limit=args.limit)
    except Exception:
        logger.exception("エンリッチジョブが失敗しました")
        return EXIT_FATAL

    _log_event("ENRICHMENT_COMPLETE", mode="DRY_RUN" if report.dry_run else "LIVE", **report.to_dict())
    return EXIT_OK


if __name__ == "__main__":
    if sys.argv[1:2] == ["enrich"]:
        sys.exit(enrich_main(sys.argv[2:]))
    sys.exit(main())
