import os
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

REQUIRED = ("BOT_TOKEN", "DATABASE_URL")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Settings:
    bot_token: str
    database_url: str
    base_url: Optional[str] = None
    port: int = 10000
    tz: ZoneInfo = ZoneInfo("UTC")
    daily_prompt_hour: int = 9
    daily_prompt_minute: int = 0
    ai_provider: str = "auto"
    ai_api_key: Optional[str] = None
    ai_api_url: Optional[str] = None
    ai_model: Optional[str] = None
    log_level: str = "INFO"


def _int(env, name: str, default: int, low: int, high: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if not low <= value <= high:
        raise ConfigError(f"{name} must be between {low} and {high}, got {value}")
    return value


def load_settings(env=None) -> Settings:
    env = os.environ if env is None else env

    missing = [name for name in REQUIRED if not env.get(name)]
    if missing:
        raise ConfigError(f"missing required environment variable(s): {', '.join(missing)}")

    tz_name = env.get("TZ_NAME") or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"unknown timezone TZ_NAME={tz_name!r}") from None

    base_url = env.get("BASE_URL")
    return Settings(
        bot_token=env["BOT_TOKEN"],
        database_url=env["DATABASE_URL"],
        base_url=base_url.rstrip("/") if base_url else None,
        port=_int(env, "PORT", 10000, 1, 65535),
        tz=tz,
        daily_prompt_hour=_int(env, "DAILY_PROMPT_HOUR", 9, 0, 23),
        daily_prompt_minute=_int(env, "DAILY_PROMPT_MINUTE", 0, 0, 59),
        ai_provider=(env.get("AI_PROVIDER") or "auto").lower(),
        # Gemini wins when both keys are present
        ai_api_key=env.get("GEMINI_API_KEY") or env.get("OPENAI_API_KEY") or None,
        ai_api_url=env.get("OPENAI_API_URL") or None,
        ai_model=env.get("OPENAI_MODEL") or None,
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )
