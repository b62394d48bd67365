from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import List, Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


load_dotenv()

logger = logging.getLogger(__name__)

AZURE_ENV_KEYS = {
    "endpoint": "AZURE_AI_FOUNDRY_ENDPOINT",
    "project": "AZURE_AI_FOUNDRY_PROJECT",
    "agent_id": "AZURE_AI_FOUNDRY_AGENT_ID",
    "tenant_id": "AZURE_TENANT_ID",
    "client_id": "AZURE_CLIENT_ID",
    "client_secret": "AZURE_CLIENT_SECRET",
    "authority_host": "AZURE_AUTHORITY_HOST",
}


class AzureSettings(BaseModel):
    """Credentials and identifiers for the Azure AI Foundry project."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    endpoint: str = Field(..., min_length=1)
    project: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)
    authority_host: str = "https://login.microsoftonline.com"

    @field_validator("endpoint", "authority_host")
    @classmethod
    def _check_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("must be an http(s) URL")
        return value.rstrip("/")

    @property
    def base_url(self) -> str:
        return f"{self.endpoint}/api/projects/{self.project}"


class Settings(BaseModel):
    """Application settings loaded from environment variables.

    Built once at startup and handed to the app factory; nothing reads the
    environment after that.
    """

    model_config = ConfigDict(frozen=True)

    port: int = Field(3000, ge=1, le=65535)
    log_level: str = "info"
    allowed_origins: List[str] = Field(default_factory=list)
    run_timeout: float = Field(120.0, gt=0)
    poll_interval: float = Field(0.8, ge=0)
    azure: Optional[AzureSettings] = None

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def azure_configured(self) -> bool:
        return self.azure is not None


def _load_azure(env: Mapping[str, str]) -> Optional[AzureSettings]:
    values = {field: env.get(key) for field, key in AZURE_ENV_KEYS.items()}
    if not values["authority_host"]:
        values.pop("authority_host")
    try:
        return AzureSettings.model_validate(values)
    except ValidationError as exc:
        missing = sorted(
            AZURE_ENV_KEYS[str(err["loc"][0])] for err in exc.errors() if err.get("loc")
        )
        logger.info("Azure settings incomplete or invalid: %s", ", ".join(missing))
        return None


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Validate settings from ``env`` (defaults to ``os.environ``).

    Invalid base values raise ``ValidationError``; an incomplete Azure group
    only disables the remote agent.
    """
    if env is None:
        env = os.environ

    base = {
        "port": env.get("PORT") or None,
        "log_level": env.get("LOG_LEVEL") or None,
        "allowed_origins": env.get("ALLOWED_ORIGINS"),
        "run_timeout": env.get("AGENT_RUN_TIMEOUT") or None,
        "poll_interval": env.get("AGENT_POLL_INTERVAL") or None,
    }
    base = {key: value for key, value in base.items() if value is not None}
    base["azure"] = _load_azure(env)
    return Settings.model_validate(base)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
