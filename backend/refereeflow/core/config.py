import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_float(key: str, default: float) -> float:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production', 'test'
    is_staging: bool
    supabase_url: str
    supabase_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        is_staging = env == "staging"

        # Staging swaps SUPABASE_URL at the platform level, so one variable is enough here.
        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        return AppConfig(
            env=env,
            is_staging=is_staging,
            supabase_url=supabase_url,
            supabase_key=supabase_key
        )

# Global Config Instance
app_config = AppConfig.from_env()


EXPIRY_MODES = {"lazy", "background"}
STORE_BACKENDS = {"supabase", "memory"}


@dataclass(frozen=True)
class ReviewerAssignmentConfig:
    """
    审稿人分配（COI / 匹配 / 邀请）配置

    中文注释:
    1) 所有权重与阈值都可通过环境变量覆盖，避免硬编码。
    2) 非法数值一律回退默认值，不阻塞启动。
    3) lazy 过期始终生效；background 模式额外启动周期性对账任务。
    """

    coi_risk_threshold: float = 0.7
    shared_institution_weight: float = 0.3
    citation_overlap_weight: float = 0.1
    citation_overlap_cap: float = 0.3
    financial_weight: float = 0.4
    collaboration_weight: float = 0.5
    affiliation_history_weight: float = 0.15
    risk_penalty: float = 20.0
    min_availability: int = 30
    max_current_load: int = 5
    diversity_penalty: float = 5.0
    history_window_days: int = 365
    response_days: int = 7
    stagger_hours: int = 24
    max_active_load: int = 5
    expiry_mode: str = "lazy"
    sweep_interval_seconds: int = 300
    external_timeout_seconds: float = 10.0
    store_backend: str = "supabase"
    public_app_url: str = "http://localhost:3000"

    @property
    def background_expiry(self) -> bool:
        return self.expiry_mode == "background"

    @staticmethod
    def from_env() -> "ReviewerAssignmentConfig":
        expiry_mode = (os.environ.get("INVITATION_EXPIRY_MODE") or "lazy").strip().lower()
        if expiry_mode not in EXPIRY_MODES:
            expiry_mode = "lazy"

        store_backend = (os.environ.get("REVIEW_STORE_BACKEND") or "supabase").strip().lower()
        if store_backend not in STORE_BACKENDS:
            store_backend = "supabase"

        threshold = _env_float("COI_RISK_THRESHOLD", 0.7)
        if not 0.0 < threshold <= 1.0:
            threshold = 0.7

        public_app_url = (
            os.environ.get("PUBLIC_APP_URL") or os.environ.get("FRONTEND_ORIGIN") or "http://localhost:3000"
        ).strip().rstrip("/")

        return ReviewerAssignmentConfig(
            coi_risk_threshold=threshold,
            shared_institution_weight=_env_float("COI_SHARED_INSTITUTION_WEIGHT", 0.3),
            citation_overlap_weight=_env_float("COI_CITATION_OVERLAP_WEIGHT", 0.1),
            citation_overlap_cap=_env_float("COI_CITATION_OVERLAP_CAP", 0.3),
            financial_weight=_env_float("COI_FINANCIAL_WEIGHT", 0.4),
            collaboration_weight=_env_float("COI_COLLABORATION_WEIGHT", 0.5),
            affiliation_history_weight=_env_float("COI_AFFILIATION_HISTORY_WEIGHT", 0.15),
            risk_penalty=_env_float("MATCH_RISK_PENALTY", 20.0),
            min_availability=_env_int("MATCH_MIN_AVAILABILITY", 30),
            max_current_load=_env_int("MATCH_MAX_CURRENT_LOAD", 5),
            diversity_penalty=_env_float("MATCH_DIVERSITY_PENALTY", 5.0),
            history_window_days=max(1, _env_int("MATCH_HISTORY_WINDOW_DAYS", 365)),
            response_days=max(1, _env_int("INVITATION_RESPONSE_DAYS", 7)),
            stagger_hours=max(0, _env_int("BULK_STAGGER_HOURS", 24)),
            max_active_load=_env_int("REVIEWER_MAX_ACTIVE_LOAD", 5),
            expiry_mode=expiry_mode,
            sweep_interval_seconds=max(10, _env_int("INVITATION_SWEEP_INTERVAL_SECONDS", 300)),
            external_timeout_seconds=max(0.1, _env_float("EXTERNAL_CALL_TIMEOUT_SECONDS", 10.0)),
            store_backend=store_backend,
            public_app_url=public_app_url or "http://localhost:3000",
        )


@dataclass(frozen=True)
class SMTPConfig:
    """
    SMTP 配置（从环境变量读取）

    中文注释:
    1) 该配置只存在于后端进程内，严禁泄露到前端。
    2) 允许在本地/测试环境缺省（此时通知发送会被记录为失败，而不是抛异常）。
    """

    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    from_email: str
    use_starttls: bool

    @staticmethod
    def from_env() -> Optional["SMTPConfig"]:
        host = (os.environ.get("SMTP_HOST") or "").strip()
        if not host:
            return None

        port = _env_int("SMTP_PORT", 587)
        user = (os.environ.get("SMTP_USER") or "").strip() or None
        password = (os.environ.get("SMTP_PASSWORD") or "").strip() or None
        from_email = (
            os.environ.get("SMTP_FROM_EMAIL") or user or "no-reply@refereeflow.local"
        ).strip()

        return SMTPConfig(
            host=host,
            port=port,
            user=user,
            password=password,
            from_email=from_email,
            use_starttls=_env_bool("SMTP_USE_STARTTLS", True),
        )


@dataclass(frozen=True)
class ResendConfig:
    """
    Resend API Configuration
    """
    api_key: str
    sender: str

    @staticmethod
    def from_env() -> Optional["ResendConfig"]:
        api_key = (os.environ.get("RESEND_API_KEY") or "").strip()
        if not api_key:
            return None

        sender = (
            os.environ.get("EMAIL_SENDER") or "RefereeFlow <onboarding@resend.dev>"
        ).strip()

        return ResendConfig(api_key=api_key, sender=sender)


@dataclass(frozen=True)
class SentryConfig:
    enabled: bool
    dsn: str
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip()
        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", bool(dsn)),
            dsn=dsn,
            environment=(os.environ.get("SENTRY_ENVIRONMENT") or app_config.env).strip(),
            traces_sample_rate=_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        )


def get_admin_api_key() -> Optional[str]:
    """
    内部 Cron 接口鉴权 Key

    中文注释:
    - 仅用于 `/api/v1/internal/cron/*`，避免暴露到公网用户接口。
    """

    raw = os.environ.get("ADMIN_API_KEY")
    return raw.strip() if raw else None
