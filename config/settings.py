# DealAgents/config/settings.py

import os
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
ENV_FILE_PATH = os.path.join(PROJECT_ROOT, '.env')
DEFAULT_DATA_DIR = os.path.join(PROJECT_ROOT, "data")

DEAL_MODES = ("hub", "peer")
NOTIFY_SCOPES = ("both", "self")


class Settings(BaseSettings):
    # Topology: a single hub relay, or one agent process per company
    deal_mode: str = Field(default="hub", env="DEAL_MODE")
    company_id: Optional[str] = Field(default=None, env="COMPANY_ID")
    company_name: Optional[str] = Field(default=None, env="COMPANY_NAME")

    # Peer registry: inline JSON wins over the registry file
    agent_registry: Optional[str] = Field(default=None, env="AGENT_REGISTRY")
    agent_registry_path: str = Field(
        default=os.path.join(DEFAULT_DATA_DIR, "agent-registry.json"),
        env="AGENT_REGISTRY_PATH",
    )

    contexts_dir: str = Field(
        default=os.path.join(DEFAULT_DATA_DIR, "contexts"), env="CONTEXTS_DIR"
    )

    # Outbound peer pushes
    peer_push_timeout: float = Field(default=10.0, env="PEER_PUSH_TIMEOUT")

    # Deal confirmation email
    smtp_host: str = Field(default="smtp.gmail.com", env="SMTP_HOST")
    smtp_port: int = Field(default=587, env="SMTP_PORT")
    smtp_user: Optional[str] = Field(default=None, env="SMTP_USER")
    smtp_password: Optional[str] = Field(default=None, env="SMTP_PASSWORD")
    smtp_from: Optional[str] = Field(default=None, env="SMTP_FROM")
    smtp_timeout: int = Field(default=30, env="SMTP_TIMEOUT")
    smtp_secret_name: Optional[str] = Field(default=None, env="SMTP_SECRET_NAME")
    smtp_secret_region: Optional[str] = Field(
        default="eu-west-1", env="SMTP_SECRET_REGION"
    )
    email_from: str = Field(default="onboarding@resend.dev", env="EMAIL_FROM")
    # Peer mode only; unset means "self". The hub always notifies both parties
    deal_notify_scope: Optional[str] = Field(default=None, env="DEAL_NOTIFY_SCOPE")

    # HTTP server
    deal_api_host: str = Field(default="0.0.0.0", env="DEAL_API_HOST")
    deal_api_port: int = Field(default=3780, env="DEAL_API_PORT")
    log_dir: str = Field(default=os.path.join(PROJECT_ROOT, "logs"), env="LOG_DIR")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    class Config:
        env_file = ENV_FILE_PATH
        env_file_encoding = 'utf-8'
        extra = "ignore"

    @field_validator("deal_mode", "log_level", mode="before")
    @classmethod
    def _normalise_choice(cls, value):
        if value is None:
            return value
        return str(value).strip().lower()

    @field_validator("deal_notify_scope", mode="before")
    @classmethod
    def _normalise_scope(cls, value):
        if value is None:
            return None
        return str(value).strip().lower() or None

    @field_validator("company_id", "company_name", "agent_registry", "smtp_secret_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @model_validator(mode="after")
    def _check_topology(self):
        if self.deal_mode not in DEAL_MODES:
            raise ValueError(f"DEAL_MODE must be one of {', '.join(DEAL_MODES)}")
        if self.deal_notify_scope is not None and self.deal_notify_scope not in NOTIFY_SCOPES:
            raise ValueError(f"DEAL_NOTIFY_SCOPE must be one of {', '.join(NOTIFY_SCOPES)}")
        if self.deal_mode == "peer" and not self.company_id:
            raise ValueError("COMPANY_ID is required when DEAL_MODE=peer")
        return self

    @property
    def is_peer(self) -> bool:
        return self.deal_mode == "peer"

    @property
    def notify_scope(self) -> str:
        if not self.is_peer:
            return "both"
        return self.deal_notify_scope or "self"

    @property
    def sender_address(self) -> str:
        return self.smtp_from or self.smtp_user or self.email_from or "noreply@local"


def get_settings() -> "Settings":
    return settings


try:
    settings = Settings()
except Exception as e:
    print(f"!!! FATAL ERROR: Could not load application settings from .env file: {e}")
    raise
