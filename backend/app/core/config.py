import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_float(key: str, default: float, *, min_value: float = 0.0) -> float:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value < min_value:
        return default
    return value


def _frontend_origins() -> tuple[str, ...]:
    # FRONTEND_ORIGIN（单个）与 FRONTEND_ORIGINS（逗号分隔）合并去重；都没配时只放行本地 UI
    raw = [os.environ.get("FRONTEND_ORIGIN") or ""] + (os.environ.get("FRONTEND_ORIGINS") or "").split(",")
    origins = [o.strip().rstrip("/") for o in raw if o.strip()]
    return tuple(dict.fromkeys(origins)) or ("http://localhost:5173",)


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production'
    is_staging: bool
    supabase_url: str
    supabase_anon_key: str
    jwt_secret: str
    frontend_origins: tuple[str, ...] = ("http://localhost:5173",)

    @property
    def is_development(self) -> bool:
        return self.env in {"development", "dev", "local"}

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        is_staging = env == "staging"

        # 中文注释:
        # - 只暴露公开的 anon key（对应前端构建时注入的 public API key）。
        # - 历史上 SUPABASE_KEY 与 SUPABASE_ANON_KEY 并存，优先读 SUPABASE_ANON_KEY。
        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_anon_key = (
            os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("SUPABASE_KEY") or ""
        ).strip()
        jwt_secret = (os.environ.get("SUPABASE_JWT_SECRET") or "").strip()

        return AppConfig(
            env=env,
            is_staging=is_staging,
            supabase_url=supabase_url,
            supabase_anon_key=supabase_anon_key,
            jwt_secret=jwt_secret,
            frontend_origins=_frontend_origins(),
        )

# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class ReviewTimingConfig:
    """
    协作评审的去抖/轮询参数

    中文注释:
    1) 编辑触发的自动保存窗口（观测值 500~800ms）与 realtime 触发的重载窗口（~100ms）必须分开，
       否则自己保存引起的 realtime 回声会再次触发保存/重载。
    2) 本地草稿目录只是尽力而为的缓存，不是权威数据。
    3) 客户端不调用 DELETE 就离开时，会话（定时器 + realtime 订阅）靠空闲超时回收。
    """

    autosave_debounce_sec: float
    realtime_debounce_sec: float
    draft_cache_dir: str
    capabilities_poll_sec: float
    capabilities_dedupe_sec: float
    session_idle_sec: float = 1800.0
    session_sweep_sec: float = 60.0

    @staticmethod
    def from_env() -> "ReviewTimingConfig":
        autosave_ms = _env_float("REVIEW_AUTOSAVE_DEBOUNCE_MS", 800.0, min_value=1.0)
        realtime_ms = _env_float("REVIEW_REALTIME_DEBOUNCE_MS", 100.0, min_value=1.0)
        draft_cache_dir = (os.environ.get("REVIEW_DRAFT_CACHE_DIR") or ".review-drafts").strip()

        return ReviewTimingConfig(
            autosave_debounce_sec=autosave_ms / 1000.0,
            realtime_debounce_sec=realtime_ms / 1000.0,
            draft_cache_dir=draft_cache_dir or ".review-drafts",
            capabilities_poll_sec=_env_float("CAPABILITIES_POLL_SEC", 30.0, min_value=1.0),
            capabilities_dedupe_sec=_env_float("CAPABILITIES_DEDUPE_SEC", 5.0),
            session_idle_sec=_env_float("REVIEW_SESSION_IDLE_SEC", 1800.0, min_value=1.0),
            session_sweep_sec=_env_float("REVIEW_SESSION_SWEEP_SEC", 60.0, min_value=1.0),
        )


@dataclass(frozen=True)
class SentryConfig:
    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        environment = (
            os.environ.get("SENTRY_ENVIRONMENT") or os.environ.get("APP_ENV") or "development"
        ).strip()
        traces_sample_rate = _env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0)
        if traces_sample_rate > 1.0:
            traces_sample_rate = 1.0

        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", dsn is not None),
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
        )
