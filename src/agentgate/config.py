"""Application configuration contract."""

from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

AUTONOMY_LEVELS = ("readonly", "supervised", "full")
LIST_CHANNEL_FIELDS = {
    "telegram": "telegram_allowed_users",
    "discord": "discord_allowed_users",
    "slack": "slack_allowed_users",
    "matrix": "matrix_allowed_users",
    "imessage": "imessage_allowed_contacts",
    "whatsapp": "whatsapp_allowed_numbers",
}


def split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")
    data_dir: str = Field(alias="DATA_DIR", default="~/.agentgate")
    workspace_dir: str = Field(alias="WORKSPACE_DIR", default="~/.agentgate/workspace")
    timezone: str = Field(alias="TIMEZONE", default="UTC")

    # rate / cost limiter
    max_actions_per_hour: int = Field(alias="MAX_ACTIONS_PER_HOUR", default=20)
    max_cost_per_day_cents: int = Field(alias="MAX_COST_PER_DAY_CENTS", default=500)
    model_call_cost_cents: int = Field(alias="MODEL_CALL_COST_CENTS", default=1)
    tool_call_cost_cents: int = Field(alias="TOOL_CALL_COST_CENTS", default=0)

    # sandbox
    autonomy_level: str = Field(alias="AUTONOMY_LEVEL", default="supervised")
    autonomy_workspace_only: int = Field(alias="AUTONOMY_WORKSPACE_ONLY", default=1)
    autonomy_allowed_commands: str = Field(
        alias="AUTONOMY_ALLOWED_COMMANDS",
        default="git,npm,cargo,ls,cat,grep,find,echo,pwd,wc,head,tail",
    )
    autonomy_full_commands: str = Field(
        alias="AUTONOMY_FULL_COMMANDS",
        default=(
            "python,python3,pip,make,curl,sed,awk,sort,uniq,diff,tar,"
            "mkdir,cp,mv,touch,rm"
        ),
    )
    autonomy_forbidden_paths: str = Field(
        alias="AUTONOMY_FORBIDDEN_PATHS",
        default="/etc,/root,/proc,/sys,/boot,/dev,~/.ssh,~/.gnupg,~/.aws",
    )

    # context / session
    bootstrap_max_chars: int = Field(alias="BOOTSTRAP_MAX_CHARS", default=20000)
    context_token_budget: int = Field(alias="CONTEXT_TOKEN_BUDGET", default=32000)
    context_min_retained_turns: int = Field(alias="CONTEXT_MIN_RETAINED_TURNS", default=6)
    compaction_summary_max_tokens: int = Field(
        alias="COMPACTION_SUMMARY_MAX_TOKENS", default=400
    )
    cache_ttl_seconds: int = Field(alias="CACHE_TTL_SECONDS", default=300)

    # heartbeat
    heartbeat_enabled: int = Field(alias="HEARTBEAT_ENABLED", default=0)
    heartbeat_interval_seconds: int = Field(alias="HEARTBEAT_INTERVAL_SECONDS", default=1800)
    heartbeat_channel: str = Field(alias="HEARTBEAT_CHANNEL", default="")
    heartbeat_recipient: str = Field(alias="HEARTBEAT_RECIPIENT", default="")

    # dispatch
    max_tool_iterations: int = Field(alias="MAX_TOOL_ITERATIONS", default=8)
    model_timeout_seconds: float = Field(alias="MODEL_TIMEOUT_SECONDS", default=120.0)
    model_retry_attempts: int = Field(alias="MODEL_RETRY_ATTEMPTS", default=3)
    model_retry_backoff_seconds: float = Field(alias="MODEL_RETRY_BACKOFF_SECONDS", default=0.5)
    model_retry_backoff_max_seconds: float = Field(
        alias="MODEL_RETRY_BACKOFF_MAX_SECONDS", default=8.0
    )
    tool_timeout_seconds: float = Field(alias="TOOL_TIMEOUT_SECONDS", default=60.0)
    tool_retry_attempts: int = Field(alias="TOOL_RETRY_ATTEMPTS", default=2)
    ytdlp_binary: str = Field(alias="YTDLP_BINARY", default="yt-dlp")
    whisper_binary: str = Field(alias="WHISPER_BINARY", default="whisper-ctranslate2")
    memory_timeout_seconds: float = Field(alias="MEMORY_TIMEOUT_SECONDS", default=10.0)

    # model backend
    primary_provider: str = Field(alias="PRIMARY_PROVIDER", default="openai")
    model_base_url: str = Field(alias="MODEL_BASE_URL", default="http://localhost:30000/v1")
    model_name: str = Field(alias="MODEL_NAME", default="openai/gpt-oss-120b")
    model_api_key: str = Field(alias="MODEL_API_KEY", default="")
    fallback_base_url: str = Field(alias="FALLBACK_BASE_URL", default="")
    fallback_model_name: str = Field(alias="FALLBACK_MODEL_NAME", default="")
    fallback_api_key: str = Field(alias="FALLBACK_API_KEY", default="")
    model_temperature: float = Field(alias="MODEL_TEMPERATURE", default=0.7)
    model_max_tokens: int = Field(alias="MODEL_MAX_TOKENS", default=4096)

    # memory
    memory_backend: str = Field(alias="MEMORY_BACKEND", default="sqlite")
    memory_auto_save: int = Field(alias="MEMORY_AUTO_SAVE", default=1)
    memory_recall_limit: int = Field(alias="MEMORY_RECALL_LIMIT", default=5)

    # channels
    telegram_bot_token: str = Field(alias="TELEGRAM_BOT_TOKEN", default="")
    telegram_allowed_users: str = Field(alias="TELEGRAM_ALLOWED_USERS", default="")
    discord_allowed_users: str = Field(alias="DISCORD_ALLOWED_USERS", default="")
    slack_allowed_users: str = Field(alias="SLACK_ALLOWED_USERS", default="")
    matrix_allowed_users: str = Field(alias="MATRIX_ALLOWED_USERS", default="")
    imessage_allowed_contacts: str = Field(alias="IMESSAGE_ALLOWED_CONTACTS", default="")
    whatsapp_allowed_numbers: str = Field(alias="WHATSAPP_ALLOWED_NUMBERS", default="")
    webhook_secret: str = Field(alias="WEBHOOK_SECRET", default="")

    # HTTP surface
    bind_host: str = Field(alias="BIND_HOST", default="127.0.0.1")
    bind_port: int = Field(alias="BIND_PORT", default=8000)
    rate_limit_webhooks_per_minute: int = Field(
        alias="RATE_LIMIT_WEBHOOKS_PER_MINUTE", default=60
    )

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace_dir).expanduser()

    def allowed_senders(self, channel_type: str) -> list[str] | None:
        field_name = LIST_CHANNEL_FIELDS.get(channel_type)
        if field_name is None:
            return None
        return split_csv(getattr(self, field_name))


def validate_settings_for_env(settings: Settings) -> None:
    import logging as _logging
    import warnings

    _logger = _logging.getLogger(__name__)

    # Warn if binding to 0.0.0.0 in production
    if settings.app_env == "prod" and settings.bind_host == "0.0.0.0":
        msg = (
            "SECURITY WARNING: BIND_HOST=0.0.0.0 in production. "
            "This exposes the webhook gateway to all network interfaces. "
            "Set BIND_HOST=127.0.0.1 and put a tunnel or reverse proxy in front."
        )
        _logger.warning(msg)
        warnings.warn(msg, stacklevel=2)

    if (
        int(settings.heartbeat_enabled) == 1
        and settings.heartbeat_interval_seconds >= settings.cache_ttl_seconds
    ):
        _logger.warning(
            "HEARTBEAT_INTERVAL_SECONDS=%s is not below CACHE_TTL_SECONDS=%s; "
            "heartbeats will not keep the prompt cache warm",
            settings.heartbeat_interval_seconds,
            settings.cache_ttl_seconds,
        )

    if settings.app_env != "prod":
        return

    missing: list[str] = []
    required_non_empty = {
        "MODEL_BASE_URL": settings.model_base_url,
        "MODEL_NAME": settings.model_name,
        "WEBHOOK_SECRET": settings.webhook_secret,
    }
    for key, value in required_non_empty.items():
        if not value.strip():
            missing.append(key)

    autonomy = settings.autonomy_level.strip().lower().replace("_", "").replace("-", "")
    if autonomy not in AUTONOMY_LEVELS:
        missing.append("AUTONOMY_LEVEL(readonly|supervised|full)")
    try:
        ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        missing.append("TIMEZONE(valid IANA name)")
    if int(settings.heartbeat_enabled) == 1 and settings.heartbeat_interval_seconds <= 0:
        missing.append("HEARTBEAT_INTERVAL_SECONDS(positive)")

    if missing:
        keys = ", ".join(sorted(set(missing)))
        raise ValueError(f"invalid production configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
