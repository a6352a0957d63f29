"""設定モジュール: 環境変数・定数定義."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from k4k_collector.errors import ConfigError

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- Supabase ---
SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.environ.get("SUPABASE_SECRET_KEY", "")
SUPABASE_SCHEMA: str = os.environ.get("SUPABASE_SCHEMA", "public")

# --- DataForSEO ---
API_BASE_URL = "https://api.dataforseo.com"
K4K_ENDPOINT = "/v3/keywords_data/google_ads/keywords_for_keywords"
USER_AGENT = "k4k-collector/1.0"

PROVIDER = "dataforseo"
SOURCE_TYPE = "google_ads_keywords_for_keywords_standard"
SOURCE_NAME = "dataforseo_google_ads_k4k_standard"
K4K_METHOD = "dataforseo_k4k_standard"

# 1タスクあたりのキーワード上限 (DataForSEO 側の制限)
PROVIDER_MAX_TERMS_PER_TASK = 20
COST_PER_TASK_USD = 0.0012  # standard キューの概算

# --- リクエスト設定 ---
REQUEST_TIMEOUT = 60  # 秒
RETRY_MAX_RETRIES = 5
RETRY_BASE_DELAY = 1.0  # 秒
RETRY_MAX_DELAY = 30.0  # 秒
RETRY_JITTER = 0.5  # 秒

# --- ポーリング ---
POLL_BATCH_SIZE = 10
POLL_STRATEGIES = ("direct", "ready")

DEVICES = ("desktop", "mobile", "tablet")
LOG_LEVELS = ("debug", "info", "warning", "error")

# --- ログ ---
LOG_DIR = Path(__file__).resolve().parent.parent / "logs"


@dataclass(frozen=True)
class IngestConfig:
    """1回の取り込み実行に使う設定値."""

    dataforseo_login: str
    dataforseo_password: str

    market: str = "us"
    default_language_code: str = "en"
    default_location_code: str = "2840"

    max_terms_per_task: int = PROVIDER_MAX_TERMS_PER_TASK
    device: str = "desktop"
    search_partners: bool = False
    include_adult: bool = False

    batch_max_seeds: int = 5000
    concurrency_task_post: int = 20
    concurrency_task_get: int = 20

    poll_interval_ms: int = 4000
    poll_timeout_ms: int = 900000
    poll_strategy: str = "direct"

    dry_run: bool = False
    log_level: str = "info"

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def poll_timeout(self) -> float:
        return self.poll_timeout_ms / 1000


def _parse_bool(value: str | None) -> bool:
    if not value:
        return False
    return value.strip().lower() in ("true", "1", "yes")


def _parse_int(env: dict, name: str, default: int, minimum: int, maximum: int | None = None) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} は整数で指定してください: {raw!r}") from None
    if value < minimum or (maximum is not None and value > maximum):
        upper = "" if maximum is None else f"〜{maximum}"
        raise ConfigError(f"{name} は {minimum}{upper} の範囲で指定してください: {value}")
    return value


def _parse_choice(env: dict, name: str, default: str, choices: tuple[str, ...]) -> str:
    value = (env.get(name) or default).strip().lower()
    if value == "warn":
        value = "warning"
    if value not in choices:
        raise ConfigError(f"{name} は {', '.join(choices)} のいずれかです: {value!r}")
    return value


def load_config(env: dict | None = None) -> IngestConfig:
    """環境変数から IngestConfig を組み立てる.

    Args:
        env: 参照する環境変数。省略時は os.environ。

    Raises:
        ConfigError: 必須項目の欠落または値の範囲外。
    """
    env = os.environ if env is None else env

    login = env.get("DATAFORSEO_LOGIN", "")
    password = env.get("DATAFORSEO_PASSWORD", "")
    if not login or not password:
        raise ConfigError("DATAFORSEO_LOGIN / DATAFORSEO_PASSWORD は必須です")

    return IngestConfig(
        dataforseo_login=login,
        dataforseo_password=password,
        market=env.get("LEXYHUB_MARKET") or "us",
        default_language_code=env.get("DEFAULT_LANGUAGE_CODE") or "en",
        default_location_code=env.get("DEFAULT_LOCATION_CODE") or "2840",
        max_terms_per_task=_parse_int(
            env, "K4K_MAX_TERMS_PER_TASK", PROVIDER_MAX_TERMS_PER_TASK, 1, PROVIDER_MAX_TERMS_PER_TASK
        ),
        device=_parse_choice(env, "K4K_DEVICE", "desktop", DEVICES),
        search_partners=_parse_bool(env.get("K4K_SEARCH_PARTNERS")),
        include_adult=_parse_bool(env.get("K4K_INCLUDE_ADULT")),
        batch_max_seeds=_parse_int(env, "BATCH_MAX_SEEDS", 5000, 1, 50000),
        concurrency_task_post=_parse_int(env, "CONCURRENCY_TASK_POST", 20, 1, 50),
        concurrency_task_get=_parse_int(env, "CONCURRENCY_TASK_GET", 20, 1, 50),
        poll_interval_ms=_parse_int(env, "POLL_INTERVAL_MS", 4000, 1000),
        poll_timeout_ms=_parse_int(env, "POLL_TIMEOUT_MS", 900000, 10000),
        poll_strategy=_parse_choice(env, "POLL_STRATEGY", "direct", POLL_STRATEGIES),
        dry_run=_parse_bool(env.get("DRY_RUN")),
        log_level=_parse_choice(env, "LOG_LEVEL", "info", LOG_LEVELS),
    )
