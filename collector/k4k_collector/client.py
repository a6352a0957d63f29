"""DataForSEO Keywords For Keywords API クライアント.

全リクエストに Basic 認証・固定 User-Agent・タイムアウトを付け、
失敗はエラー種別で分類してリトライ可能なものだけ指数バックオフ
(ジッター付き) で再試行する。
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass

import requests

from k4k_collector.config import (
    API_BASE_URL,
    K4K_ENDPOINT,
    REQUEST_TIMEOUT,
    RETRY_BASE_DELAY,
    RETRY_JITTER,
    RETRY_MAX_DELAY,
    RETRY_MAX_RETRIES,
    USER_AGENT,
)
from k4k_collector.errors import (
    ClientError,
    MalformedResponseError,
    ProviderRequestError,
    RateLimitedError,
    ServerError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = RETRY_MAX_RETRIES
    base_delay: float = RETRY_BASE_DELAY  # 秒
    max_delay: float = RETRY_MAX_DELAY  # 秒
    jitter: float = RETRY_JITTER  # 秒


def compute_backoff_delay(attempt: int, policy: RetryPolicy, rng: random.Random | None = None) -> float:
    """attempt 回目 (0始まり) の失敗後の待機秒数.

    min(base * 2^attempt, max_delay) に 0〜jitter の一様乱数を足す。
    """
    rng = rng or random
    exponential = min(policy.base_delay * (2 ** attempt), policy.max_delay)
    return exponential + rng.uniform(0, policy.jitter)


def classify_http_status(status_code: int, body: str) -> ProviderRequestError:
    """2xx 以外の HTTP ステータスを例外に変換する."""
    message = f"DataForSEO API error {status_code}: {body[:500]}"
    if status_code == 429:
        return RateLimitedError(message, status_code)
    if status_code >= 500:
        return ServerError(message, status_code)
    return ClientError(message, status_code)


def classify_transport_error(error: requests.RequestException) -> ProviderRequestError:
    """requests の例外を例外階層に変換する."""
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return TransientNetworkError(f"DataForSEO network error: {error}")
    return ClientError(f"DataForSEO request error: {error}")


def extract_task(response: dict) -> dict:
    """レスポンスの tasks[0] を取り出す."""
    tasks = response.get("tasks") if isinstance(response, dict) else None
    if not tasks:
        raise MalformedResponseError("No tasks returned from DataForSEO")
    return tasks[0]


class DataForSEOClient:
    """リトライ付き DataForSEO クライアント.

    スレッドから並行に呼び出される前提で、呼び出し単位の状態は持たない。
    """

    def __init__(
        self,
        login: str,
        password: str,
        policy: RetryPolicy | None = None,
        timeout: float = REQUEST_TIMEOUT,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        base_url: str = API_BASE_URL,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.base_url = base_url.rstrip("/") + K4K_ENDPOINT
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._session = session or requests.Session()
        self._session.auth = (login, password)
        self._session.headers.update({
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json",
        })

    def close(self) -> None:
        self._session.close()

    def _send(self, method: str, url: str, payload: list | None = None) -> dict:
        try:
            resp = self._session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise classify_transport_error(e) from e

        if not 200 <= resp.status_code < 300:
            raise classify_http_status(resp.status_code, resp.text)

        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"DataForSEO returned non-JSON body ({resp.status_code})", resp.status_code
            ) from e

    def request(self, method: str, path: str, payload: list | None = None) -> dict:
        """1回の API 呼び出しをリトライ付きで実行する.

        Raises:
            ProviderRequestError: リトライ不能なエラー、またはリトライ上限到達時の最後のエラー。
        """
        url = f"{self.base_url}/{path}"
        last_error: ProviderRequestError | None = None

        for attempt in range(self.policy.max_retries + 1):
            try:
                return self._send(method, url, payload)
            except ProviderRequestError as e:
                last_error = e
                if not e.retryable or attempt == self.policy.max_retries:
                    raise

                delay = compute_backoff_delay(attempt, self.policy, self._rng)
                logger.warning(
                    "DataForSEO リクエスト失敗、%.1f 秒後に再試行 (%d/%d): %s %s: %s",
                    delay, attempt + 1, self.policy.max_retries, method, url, e,
                )
                self._sleep(delay)

        raise last_error or ProviderRequestError(f"Request failed after all retries: {url}")

    def post_tasks(self, tasks: list[dict]) -> dict:
        """task_post にタスクを投入する."""
        return self.request("POST", "task_post", tasks)

    def get_tasks_ready(self) -> dict:
        """結果取得可能なタスク一覧を取得する."""
        return self.request("GET", "tasks_ready")

    def get_task_result(self, task_id: str) -> dict:
        """task_get/{task_id} で結果 (またはステータス) を取得する."""
        logger.debug("GET task_get/%s", task_id)
        return self.request("GET", f"task_get/{task_id}")
