"""投入済みタスクのポーリング.

状態遷移:
  pending -> completed | failed
全体タイムアウト時点で pending のままのタスクは timed_out として分類する
(保存される状態ではなく、結果集計時の分類)。

DirectTaskPoller は task_get でタスクごとに直接ステータスを確認する (既定)。
ReadyTaskPoller は tasks_ready の一覧で完了を検知する。
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor

from k4k_collector.client import DataForSEOClient, extract_task
from k4k_collector.config import POLL_BATCH_SIZE
from k4k_collector.models import PollResult, ProviderStatus, StatusKind, TaskState, TaskStatus

logger = logging.getLogger(__name__)


class TaskRegistry:
    """1回の実行で投入したタスクの状態表 (task_id -> TaskState)."""

    def __init__(self, tasks: Iterable[TaskState] = ()) -> None:
        self._tasks: dict[str, TaskState] = {}
        self._lock = threading.Lock()
        self.register(tasks)

    def register(self, tasks: Iterable[TaskState]) -> None:
        for task in tasks:
            if task.task_id in self._tasks:
                raise ValueError(f"duplicate task_id: {task.task_id}")
            self._tasks[task.task_id] = task

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: str) -> TaskState | None:
        return self._tasks.get(task_id)

    def pending(self) -> list[TaskState]:
        return [t for t in self._tasks.values() if t.status is TaskStatus.PENDING]

    def pending_count(self) -> int:
        return sum(1 for t in self._tasks.values() if t.status is TaskStatus.PENDING)

    def transition(self, task_id: str, status: TaskStatus, error: str | None = None) -> bool:
        """pending のタスクを終端状態へ遷移させる.

        終端済み・未登録のタスクは変更せず False を返す。
        """
        if status is TaskStatus.PENDING:
            raise ValueError("cannot transition back to pending")
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return False
            task.status = status
            task.error = error
            task.completed_at = time.time()
            return True

    def classify(self) -> PollResult:
        result = PollResult()
        for task in self._tasks.values():
            if task.status is TaskStatus.COMPLETED:
                result.completed.append(task)
            elif task.status is TaskStatus.FAILED:
                result.failed.append(task)
            else:
                result.timed_out.append(task)
        return result


class BaseTaskPoller:
    """ポーリングループの共通部分."""

    def __init__(
        self,
        client: DataForSEOClient,
        interval: float,
        timeout: float,
        registry: TaskRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.interval = interval
        self.timeout = timeout
        self.registry = registry or TaskRegistry()
        self._clock = clock
        self._sleep = sleep

    def register_tasks(self, tasks: list[TaskState]) -> None:
        self.registry.register(tasks)
        logger.info("ポーリング対象に %d 件のタスクを登録", len(tasks))

    def poll_once(self) -> None:
        raise NotImplementedError

    def poll_until_complete(self) -> PollResult:
        """全タスクが終端状態になるか、タイムアウトするまでポーリングする."""
        name = type(self).__name__
        start = self._clock()
        logger.info(
            "%s 開始: tasks=%d, interval=%.1fs, timeout=%.1fs",
            name, len(self.registry), self.interval, self.timeout,
        )

        while self.registry.pending_count() > 0:
            elapsed = self._clock() - start
            if elapsed >= self.timeout:
                logger.error(
                    "%s タイムアウト: %d 件が pending のまま (%.1fs)",
                    name, self.registry.pending_count(), elapsed,
                )
                break

            self.poll_once()

            pending = self.registry.pending_count()
            if pending > 0:
                logger.debug(
                    "進捗: %d/%d 完了, pending=%d (経過 %.0fs)",
                    len(self.registry) - pending, len(self.registry), pending, self._clock() - start,
                )
                self._sleep(self.interval)

        result = self.registry.classify()
        logger.info(
            "%s 完了: total=%d, completed=%d, failed=%d, timed_out=%d, 所要 %.1fs",
            name, len(self.registry), len(result.completed), len(result.failed),
            len(result.timed_out), self._clock() - start,
        )
        return result


class DirectTaskPoller(BaseTaskPoller):
    """task_get をタスクごとに呼んでステータスを確認する."""

    def __init__(self, *args, batch_size: int = POLL_BATCH_SIZE, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.batch_size = batch_size

    def check_task_status(self, task_id: str) -> None:
        """1タスクのステータスを取得して状態表に反映する.

        通信エラーは一時的なものとみなし pending のままにする。
        """
        try:
            response = self.client.get_task_result(task_id)
            task_result = extract_task(response)
        except Exception as e:
            logger.warning("タスク状態の取得に失敗 (pending のまま): task_id=%s, error=%s", task_id, e)
            return

        task = self.registry.get(task_id)
        if task is None:
            logger.warning("未登録のタスク: task_id=%s", task_id)
            return
        if task.is_terminal:
            return

        status = ProviderStatus.classify(task_result.get("status_code"), task_result.get("status_message"))

        if status.kind is StatusKind.OK:
            if not self.registry.transition(task_id, TaskStatus.COMPLETED):
                return
            logger.info(
                "タスク完了: task_id=%s, result_count=%s, 所要 %.1fs",
                task_id, task_result.get("result_count"), task.completed_at - task.posted_at,
            )
        elif status.kind in (StatusKind.IN_PROGRESS, StatusKind.WAITING):
            logger.debug("処理中: task_id=%s, status=%d %s", task_id, status.code, status.message)
        elif status.kind is StatusKind.FAILED:
            error = f"{status.message} ({status.code})"
            self.registry.transition(task_id, TaskStatus.FAILED, error)
            logger.error("タスク失敗: task_id=%s, error=%s", task_id, error)
        else:
            logger.warning(
                "未知のステータスコード (pending のまま): task_id=%s, status=%s %s",
                task_id, status.code, status.message,
            )

    def poll_once(self) -> None:
        """pending のタスクを batch_size 件ずつ並列に確認する."""
        pending_ids = [t.task_id for t in self.registry.pending()]
        if not pending_ids:
            return
        with ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix="poll") as executor:
            for i in range(0, len(pending_ids), self.batch_size):
                batch = pending_ids[i:i + self.batch_size]
                # サブバッチは全件終わるまで待つ
                list(executor.map(self.check_task_status, batch))


class ReadyTaskPoller(BaseTaskPoller):
    """tasks_ready の一覧に載ったタスクを完了とみなす."""

    def poll_once(self) -> None:
        try:
            response = self.client.get_tasks_ready()
        except Exception as e:
            logger.warning("tasks_ready の取得に失敗: %s", e)
            return

        for entry in response.get("tasks") or []:
            for ready in entry.get("result") or [entry]:
                task_id = ready.get("id")
                if task_id and self.registry.transition(task_id, TaskStatus.COMPLETED):
                    logger.info("タスク準備完了: task_id=%s", task_id)


def create_poller(strategy: str, client: DataForSEOClient, interval: float, timeout: float, **kwargs) -> BaseTaskPoller:
    if strategy == "ready":
        return ReadyTaskPoller(client, interval, timeout, **kwargs)
    return DirectTaskPoller(client, interval, timeout, **kwargs)
