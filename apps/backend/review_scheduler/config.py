from typing import Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources.types import NoDecode

from .srs.scheduling import SchedulePolicy


DEFAULT_DB_PATH = ".data/review.sqlite3"
_MIN_SESSION_SECRET_KEY_LENGTH = 32
_PLACEHOLDER_SESSION_SECRETS = frozenset({
    "change-me",
    "changeme",
    "change-me-to-random-value",
    "please-change-me",
})


def _split_csv(raw: object) -> tuple[str, ...] | object:
    """Turn a comma separated env value (or a sequence) into a trimmed, deduplicated tuple."""

    if raw is None:
        candidates: list[str] = []
    elif isinstance(raw, str):
        candidates = raw.split(",")
    else:
        try:
            candidates = list(raw)  # type: ignore[call-overload]
        except TypeError:
            return raw

    normalised: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        trimmed = candidate.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        normalised.append(trimmed)
    return tuple(normalised)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれるアプリ設定クラス。
    - environment: 実行環境（development/staging/production など）
    - store_backend: 復習アイテムの永続化先（sqlite / firestore）
    - srs_*: スケジューリング定数（製品要件で確定するまで設定で調整可能にしておく）
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )

    # --- Session / owner resolution ---
    session_secret_key: str = Field(
        default="",
        description="Secret key for signing session cookies / セッションクッキー署名用シークレット",
    )
    session_cookie_name: str = Field(
        default="rs_session",
        description="Session cookie name / セッションクッキー名",
    )
    session_max_age_seconds: int = Field(
        default=60 * 60 * 24 * 14,
        description="Session lifetime in seconds / セッションの寿命（秒）",
    )
    disable_session_auth: bool = Field(
        default=False,
        description=(
            "Disable session cookie authentication (development/testing only) / "
            "セッションクッキー認証を無効化する（開発・テスト用途のみ）"
        ),
    )
    owner_id_header: str = Field(
        default="X-User-Id",
        description="Header trusted as owner id when session auth is disabled / 認証無効時に所有者IDとして扱うヘッダ",
    )
    default_owner_id: str = Field(
        default="local",
        description="Owner id used when session auth is disabled and no header is sent / 認証無効時の既定所有者ID",
    )

    # --- データ永続化設定 ---
    store_backend: Literal["sqlite", "firestore"] = Field(
        default="sqlite",
        description="Review item store backend / 復習アイテムの永続化バックエンド",
    )
    review_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SQLite database for review items / 復習用SQLite DBパス",
        validation_alias=AliasChoices("review_db_path", "srs_db_path"),
    )
    store_timeout_ms: int = Field(
        default=5000,
        ge=1,
        description="Per-operation store timeout (ms) / ストア操作ごとのタイムアウト(ms)",
    )
    firestore_project_id: str | None = Field(
        default=None,
        description="Firestore project id / Firestore のプロジェクトID",
    )
    firestore_emulator_host: str | None = Field(
        default=None,
        description="Firestore emulator host (host:port) / Firestore エミュレータのホスト",
    )
    gcp_project_id: str | None = Field(
        default=None,
        description="GCP project id (fallback for Firestore) / GCP プロジェクトID",
        validation_alias=AliasChoices("gcp_project_id", "google_cloud_project"),
    )

    # --- 復習スケジュール ---
    review_timezone: str = Field(
        default="UTC",
        description="IANA timezone used to resolve 'today' / 「今日」を決めるタイムゾーン",
    )
    due_batch_limit: int | None = Field(
        default=None,
        ge=1,
        description="Max items returned per due batch (unset = all) / 1回の出題バッチ上限（未設定なら全件）",
    )
    srs_default_ease: float = Field(default=2.5, description="Initial ease factor / 初期 ease")
    srs_ease_floor: float = Field(default=1.3, gt=0, description="Ease floor / ease の下限")
    srs_ease_ceiling: float = Field(default=3.0, description="Ease ceiling / ease の上限")
    srs_fail_ease_penalty: float = Field(default=0.2, ge=0, description="Ease decrease on fail / 不正解時の ease 減少量")
    srs_hard_ease_penalty: float = Field(default=0.05, ge=0, description="Ease decrease on hard / 難しい時の ease 減少量")
    srs_easy_ease_bonus: float = Field(default=0.05, ge=0, description="Ease increase on easy / 簡単時の ease 増加量")
    srs_hard_interval_multiplier: float = Field(
        default=1.5,
        ge=1.0,
        description="Interval multiplier on hard / 難しい時の間隔倍率",
    )
    srs_max_interval_days: int = Field(default=36500, ge=1, description="Interval cap in days / 間隔の上限（日）")
    srs_mastery_min_repetitions: int = Field(
        default=5,
        ge=1,
        description="Consecutive successes required for mastery / 習得に必要な連続正答数",
    )
    srs_mastery_min_interval_days: int = Field(
        default=21,
        ge=1,
        description="Interval required for mastery (days) / 習得に必要な間隔（日）",
    )

    # --- Operations ---
    rate_limit_per_min_ip: int = Field(
        default=240,
        description="Per-IP API requests per minute / IP単位の毎分上限",
    )
    rate_limit_per_min_user: int = Field(
        default=240,
        description="Per-owner API requests per minute / 所有者単位の毎分上限",
    )
    allowed_cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description=(
            "Comma separated CORS origins / CORS で許可するオリジンのカンマ区切り一覧"
        ),
        validation_alias=AliasChoices("allowed_cors_origins", "cors_allowed_origins"),
    )
    trusted_proxy_ips: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("127.0.0.1",),
        description=(
            "Trusted proxy IPs/CIDR ranges for ProxyHeadersMiddleware / "
            "ProxyHeadersMiddleware に渡す信頼済みプロキシの IP または CIDR"
        ),
        validation_alias=AliasChoices(
            "trusted_proxy_ips",
            "forwarded_allow_ips",
        ),
    )

    # --- Strict mode ---
    strict_mode: bool = Field(
        default=True,
        description="Fail fast on missing/invalid configuration (disable only for tests)",
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: .env に存在する未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    @field_validator("allowed_cors_origins", "trusted_proxy_ips", mode="before")
    @classmethod
    def _normalise_csv_tuples(
        cls, raw_values: object
    ) -> tuple[str, ...] | object:  # pragma: no cover - pydantic handles typing
        return _split_csv(raw_values)

    @field_validator("review_timezone", mode="after")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        name = (value or "").strip() or "UTC"
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"REVIEW_TIMEZONE {value!r} is not a known IANA timezone") from exc
        return name

    @model_validator(mode="after")
    def _validate_schedule_policy(self) -> "Settings":
        """Reject ease bounds that would let the default fall outside the clamp range."""

        if self.srs_ease_floor > self.srs_ease_ceiling:
            raise ValueError("SRS_EASE_FLOOR must not exceed SRS_EASE_CEILING")
        if not self.srs_ease_floor <= self.srs_default_ease <= self.srs_ease_ceiling:
            raise ValueError("SRS_DEFAULT_EASE must lie between SRS_EASE_FLOOR and SRS_EASE_CEILING")
        return self

    @model_validator(mode="after")
    def _validate_session_secret(self) -> "Settings":
        """Strict mode でセッション認証を使う場合は署名鍵を検証する。"""

        if not self.strict_mode or self.disable_session_auth:
            return self

        secret = (self.session_secret_key or "").strip()
        if not secret:
            raise ValueError(
                "SESSION_SECRET_KEY must be a non-empty random string",
            )
        if secret.casefold() in _PLACEHOLDER_SESSION_SECRETS:
            raise ValueError(
                "SESSION_SECRET_KEY must not use placeholder values like 'change-me'",
            )
        if len(secret) < _MIN_SESSION_SECRET_KEY_LENGTH:
            raise ValueError(
                "SESSION_SECRET_KEY must be at least 32 characters long",
            )
        self.session_secret_key = secret
        return self

    def schedule_policy(self) -> SchedulePolicy:
        return SchedulePolicy(
            default_ease=self.srs_default_ease,
            ease_floor=self.srs_ease_floor,
            ease_ceiling=self.srs_ease_ceiling,
            fail_ease_penalty=self.srs_fail_ease_penalty,
            hard_ease_penalty=self.srs_hard_ease_penalty,
            easy_ease_bonus=self.srs_easy_ease_bonus,
            hard_interval_multiplier=self.srs_hard_interval_multiplier,
            max_interval_days=self.srs_max_interval_days,
            mastery_min_repetitions=self.srs_mastery_min_repetitions,
            mastery_min_interval_days=self.srs_mastery_min_interval_days,
        )


settings = Settings()
