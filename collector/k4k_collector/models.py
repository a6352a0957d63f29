"""データモデル定義."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


@dataclass
class KeywordSeed:
    """展開元のシードキーワード (keyword_seeds テーブルの1行)."""

    id: str  # uuid
    term: str
    language_code: str | None
    location_code: str | None
    market: str
    enabled: bool = True


@dataclass
class LocaleGroup:
    """同じ (language_code, location_code) を持つシードの集まり."""

    language_code: str
    location_code: str
    seeds: list[KeywordSeed] = field(default_factory=list)


@dataclass
class TaskChunk:
    """DataForSEO へ投入する1タスク分のキーワード."""

    locale_group: LocaleGroup
    keywords: list[str]
    language_code: str
    location_code: str


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskState:
    """投入済みタスクの状態. 状態遷移は TaskRegistry だけが行う."""

    task_id: str
    chunk: TaskChunk
    posted_at: float  # time.time()
    status: TaskStatus = TaskStatus.PENDING
    completed_at: float | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not TaskStatus.PENDING


class StatusKind(str, Enum):
    """DataForSEO ステータスコードの分類."""

    OK = "ok"  # 20000
    IN_PROGRESS = "in_progress"  # 20000 以外の 20xxx (主に 20100)
    WAITING = "waiting"  # 40602 / 40404: キュー待ち・結果未生成
    FAILED = "failed"  # 上記以外の 40000 以上
    UNKNOWN = "unknown"


STATUS_OK = 20000
STATUS_TASK_CREATED = 20100
STATUS_WAITING_CODES = frozenset({40602, 40404})
STATUS_CLIENT_ERROR_THRESHOLD = 40000


@dataclass(frozen=True)
class ProviderStatus:
    """タスク単位のステータスコードとメッセージ."""

    code: int
    message: str
    kind: StatusKind

    @classmethod
    def classify(cls, code: Any, message: Any = "") -> "ProviderStatus":
        """ステータスコードを分類する. 想定外の値でも例外は投げない."""
        try:
            code = int(code)
        except (TypeError, ValueError):
            return cls(code=-1, message=str(message or ""), kind=StatusKind.UNKNOWN)

        if code == STATUS_OK:
            kind = StatusKind.OK
        elif 20000 < code <= 20999:
            kind = StatusKind.IN_PROGRESS
        elif code in STATUS_WAITING_CODES:
            kind = StatusKind.WAITING
        elif code >= STATUS_CLIENT_ERROR_THRESHOLD:
            kind = StatusKind.FAILED
        else:
            kind = StatusKind.UNKNOWN
        return cls(code=code, message=str(message or ""), kind=kind)

    @property
    def is_post_success(self) -> bool:
        """task_post の受付成功 (20000〜20999)."""
        return 20000 <= self.code <= 20999


@dataclass
class PollResult:
    completed: list[TaskState] = field(default_factory=list)
    failed: list[TaskState] = field(default_factory=list)
    timed_out: list[TaskState] = field(default_factory=list)


@dataclass
class MonthlySearch:
    year: int
    month: int
    searches: int | None


@dataclass
class NormalizedKeyword:
    """正規化済みキーワード."""

    term_norm: str
    term_original: str
    locale: str
    market: str
    source: str
    ingest_batch_id: str
    search_volume: int
    cpc: float
    competition: float  # 0〜1
    competition_level: str | None = None
    monthly_trend: list[MonthlySearch] | None = None

    def trend_as_dicts(self) -> list[dict] | None:
        if self.monthly_trend is None:
            return None
        return [asdict(m) for m in self.monthly_trend]


class RawSourceStatus(str, Enum):
    QUEUED = "queued"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RawSourcePayload:
    """タスク1件分の生レスポンス. 一度書き込んだら変更しない."""

    provider: str
    source_type: str
    source_key: str  # task_id
    status: RawSourceStatus
    payload: dict
    metadata: dict
    error: str | None = None


@dataclass
class TaskOutcome:
    """タスク1件の永続化結果."""

    task_id: str
    raw_saved: int = 0
    inserted: int = 0
    updated: int = 0  # upsert RPC は insert と update を区別しないため常に 0
    upsert_failed: int = 0
    skipped_invalid: int = 0
    skipped_duplicate_task: bool = False
    error: str | None = None


@dataclass
class RunSummary:
    """取り込み1回分のサマリ."""

    ingest_batch_id: str
    started_at: str  # ISO 8601
    completed_at: str = ""
    duration_ms: int = 0
    seeds_read: int = 0
    locale_groups: int = 0
    tasks_posted: int = 0
    tasks_post_failed: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0  # ポーリング失敗 + タイムアウト
    tasks_timed_out: int = 0
    tasks_fetch_failed: int = 0
    rows_raw_saved: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0  # 同上. upsert 成功分は rows_inserted に入る
    rows_upsert_failed: int = 0
    rows_skipped_invalid: int = 0
    estimated_cost_usd: float = 0.0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EnrichmentCandidate:
    """エンリッチ対象キーワード (keywords テーブルから読み出したもの)."""

    keyword_id: str
    term: str
    monthly_trend: list[MonthlySearch]
    competition: float | None
    ingest_metadata: dict = field(default_factory=dict)


@dataclass
class EnrichmentResult:
    keyword_id: str
    base_demand_index: float
    competition_score: float
    engagement_score: float
    trend_momentum: float
    deseasoned_trend_momentum: float
    seasonal_label: str | None
    adjusted_demand_index: float
    ai_opportunity_score: float


@dataclass(frozen=True)
class GlobalNormalizers:
    """実行ごとに対象全体から求める正規化係数."""

    p99_avg: float | None
    max_abs_slope_raw: float
    max_abs_slope_des: float


@dataclass
class EnrichmentReport:
    dry_run: bool
    processed_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    ms_elapsed: int = 0
    normalizers: GlobalNormalizers | None = None

    def to_dict(self) -> dict:
        return asdict(self)
