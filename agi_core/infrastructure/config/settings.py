"""
Runtime settings for the reasoning core.

Values come from the process environment; a ``.env`` file in the working
directory is loaded first when present.
"""

from typing import Dict, Any, Mapping, Optional, Tuple
from datetime import timedelta
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class LangfuseSettings(BaseModel):
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    host: str = "https://cloud.langfuse.com"

    @property
    def enabled(self) -> bool:
        return bool(self.public_key and self.secret_key)


class Settings(BaseModel):
    """Explicit configuration object passed to the registry and orchestrator"""

    model: str = "gpt-4o"
    alt_model: Optional[str] = "gpt-4o-mini"
    max_steps: int = Field(5, ge=1, description="Tool-execution rounds allowed per user turn")
    fast_track_enabled: bool = True
    fast_track_history: int = Field(3, ge=1, description="Recent messages shown to the fast-track classifier")
    state_idle_seconds: int = Field(3600, ge=0, description="Idle conversation states older than this are evicted; 0 keeps them")
    assistant_name: str = "Assistant"
    user_name: str = "User"
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "agi-core"
    environment: str = "development"
    langfuse: LangfuseSettings = Field(default_factory=LangfuseSettings)
    credentials: Dict[str, str] = Field(default_factory=dict, description="Raw environment, used for tool capability checks")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "Settings":
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        return cls(
            model=environ.get("AGI_MODEL", "gpt-4o"),
            alt_model=environ.get("AGI_ALT_MODEL", "gpt-4o-mini") or None,
            max_steps=int(environ.get("AGI_MAX_STEPS", "5")),
            fast_track_enabled=_as_bool(environ.get("AGI_FAST_TRACK_ENABLED"), True),
            fast_track_history=int(environ.get("AGI_FAST_TRACK_HISTORY", "3")),
            state_idle_seconds=int(environ.get("AGI_STATE_IDLE_SECONDS", "3600")),
            assistant_name=environ.get("AGI_ASSISTANT_NAME", "Assistant"),
            user_name=environ.get("AGI_USER_NAME", "User"),
            log_level=environ.get("LOG_LEVEL", "INFO"),
            log_format=environ.get("LOG_FORMAT", "json"),
            environment=environ.get("ENVIRONMENT", "development"),
            langfuse=LangfuseSettings(
                public_key=environ.get("LANGFUSE_PUBLIC_KEY"),
                secret_key=environ.get("LANGFUSE_SECRET_KEY"),
                host=environ.get("LANGFUSE_HOST", "https://cloud.langfuse.com")
            ),
            credentials={k: v for k, v in environ.items() if v}
        )

    def has(self, *keys: str) -> bool:
        """True when every key is set to a non-empty value"""
        return all(self.credentials.get(key) for key in keys)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.credentials.get(key, default)

    def missing(self, keys: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(key for key in keys if not self.credentials.get(key))

    def enabled_services(self) -> Dict[str, Any]:
        """Which optional integrations are configured"""
        return {
            "langfuse": self.langfuse.enabled,
            "openai": self.has("OPENAI_API_KEY"),
            "anthropic": self.has("ANTHROPIC_API_KEY"),
            "google": self.has("GOOGLE_API_KEY"),
            "fast_track": self.fast_track_enabled,
            "max_steps": self.max_steps
        }

    def state_idle_timeout(self) -> Optional[timedelta]:
        return timedelta(seconds=self.state_idle_seconds) if self.state_idle_seconds else None
