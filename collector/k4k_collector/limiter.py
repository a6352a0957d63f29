"""同時実行数の制限.

固定数のワーカースレッドと FIFO のキューで構成する。
投入順にワーカーへ割り当てられ、処理が例外で終わってもワーカーは
プールに戻るので枠が漏れることはない。
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ConcurrencyLimiter:
    """同時に走る処理を max_concurrent 件までに抑える."""

    def __init__(self, max_concurrent: int, name: str = "limiter") -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1: {max_concurrent}")
        self.max_concurrent = max_concurrent
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix=name)

    def __enter__(self) -> "ConcurrencyLimiter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def submit(self, fn: Callable[..., R], *args, **kwargs) -> Future:
        return self._executor.submit(fn, *args, **kwargs)

    def run_all(self, fn: Callable[[T], R], items: Iterable[T]) -> list[R | Exception]:
        """全アイテムを処理し、入力順に結果を返す.

        個々の処理で発生した例外は結果リストに格納し、他の処理は止めない。
        """
        futures = [self.submit(fn, item) for item in items]
        results: list[R | Exception] = []
        for future in futures:
            try:
                results.append(future.result())
            except Exception as e:
                results.append(e)
        return results

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
