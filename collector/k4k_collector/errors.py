"""例外定義.

DataForSEO 呼び出しの失敗は ProviderRequestError 配下に分類し、
retryable 属性でリトライ可否を判断する。
"""

from __future__ import annotations


class K4KError(Exception):
    """k4k_collector の基底例外."""


class ConfigError(K4KError):
    """環境変数の設定不備."""


class ProviderRequestError(K4KError):
    """DataForSEO への HTTP 呼び出しの失敗."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(ProviderRequestError):
    """接続リセット・タイムアウト・DNS 失敗など一時的なネットワークエラー."""

    retryable = True


class RateLimitedError(ProviderRequestError):
    """HTTP 429."""

    retryable = True


class ServerError(ProviderRequestError):
    """HTTP 5xx."""

    retryable = True


class ClientError(ProviderRequestError):
    """HTTP 4xx (429 を除く). リトライしない."""


class MalformedResponseError(ProviderRequestError):
    """2xx だが JSON として解釈できないレスポンス."""


class ProviderTaskFailure(K4KError):
    """タスクが DataForSEO 側で終端エラーになった."""

    def __init__(self, task_id: str, status_code: int, status_message: str) -> None:
        super().__init__(f"{status_message} ({status_code})")
        self.task_id = task_id
        self.status_code = status_code
        self.status_message = status_message
