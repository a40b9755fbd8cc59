# config.py
# Environment-driven settings. Loaded once from .env (if present) and the
# process environment; callers may override any field explicitly.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-sonnet-4"


class Settings(BaseModel):
    api_key: str | None = Field(default=None, description="OPENROUTER_API_KEY")
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    checkpoint_dir: str = ".agent_checkpoints"
    log_dir: str = ".agent_logs"
    request_timeout: float = Field(default=600.0, gt=0)


def load_settings(**overrides) -> Settings:
    """Build Settings from the environment, then apply explicit overrides."""
    values = {
        "api_key": os.getenv("OPENROUTER_API_KEY"),
        "base_url": os.getenv("AGENT_BASE_URL", DEFAULT_BASE_URL),
        "model": os.getenv("AGENT_MODEL", DEFAULT_MODEL),
        "checkpoint_dir": os.getenv("AGENT_CHECKPOINT_DIR", ".agent_checkpoints"),
        "log_dir": os.getenv("AGENT_LOG_DIR", ".agent_logs"),
    }
    timeout = os.getenv("AGENT_REQUEST_TIMEOUT")
    if timeout:
        values["request_timeout"] = float(timeout)
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
