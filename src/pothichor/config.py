from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Sequence


def _env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value else default


def _env(key: str, *fallbacks: str) -> Optional[str]:
    for name in (key, *fallbacks):
        value = os.getenv(name)
        if value:
            return value
    return None


def _origins() -> Sequence[str]:
    return tuple(
        origin.strip()
        for origin in os.getenv("FRONTEND_ORIGINS", "http://localhost:5173").split(",")
        if origin.strip()
    )


@dataclass
class Settings:
    """Runtime configuration, read from the environment when the instance is created."""

    database_url: Optional[str] = field(default_factory=lambda: _env("DATABASE_URL"))
    database_name: str = field(default_factory=lambda: os.getenv("DATABASE_NAME", "pothichor"))
    google_client_id: Optional[str] = field(default_factory=lambda: _env("GOOGLE_CLIENT_ID"))
    llm_api_key: Optional[str] = field(
        default_factory=lambda: _env("POTHICHOR_LLM_API_KEY", "OPENAI_API_KEY")
    )
    llm_url: Optional[str] = field(default_factory=lambda: _env("POTHICHOR_LLM_URL"))
    llm_model: str = field(default_factory=lambda: os.getenv("POTHICHOR_LLM_MODEL", "gpt-4o-mini"))
    advisor_timeout_seconds: int = field(default_factory=lambda: _env_int("ADVISOR_TIMEOUT_SECONDS", 10))
    emailjs_service_id: Optional[str] = field(default_factory=lambda: _env("EMAILJS_SERVICE_ID"))
    emailjs_public_key: Optional[str] = field(default_factory=lambda: _env("EMAILJS_PUBLIC_KEY"))
    emailjs_private_key: Optional[str] = field(default_factory=lambda: _env("EMAILJS_PRIVATE_KEY"))
    emailjs_order_template_id: Optional[str] = field(
        default_factory=lambda: _env("EMAILJS_ORDER_TEMPLATE_ID")
    )
    emailjs_reminder_template_id: Optional[str] = field(
        default_factory=lambda: _env("EMAILJS_REMINDER_TEMPLATE_ID")
    )
    email_dry_run: bool = field(
        default_factory=lambda: _env_bool(
            "EMAIL_DRY_RUN", not (os.getenv("EMAILJS_SERVICE_ID") and os.getenv("EMAILJS_PUBLIC_KEY"))
        )
    )
    reminder_poll_interval_seconds: int = field(
        default_factory=lambda: _env_int("REMINDER_POLL_INTERVAL_SECONDS", 60)
    )
    completion_sweep_interval_seconds: int = field(
        default_factory=lambda: _env_int("COMPLETION_SWEEP_INTERVAL_SECONDS", 60)
    )
    reminder_lead_minutes: int = field(default_factory=lambda: _env_int("REMINDER_LEAD_MINUTES", 15))
    settlement_grace_minutes: int = field(default_factory=lambda: _env_int("SETTLEMENT_GRACE_MINUTES", 60))
    display_timezone: str = field(default_factory=lambda: os.getenv("DISPLAY_TIMEZONE", "Asia/Kolkata"))
    frontend_origins: Sequence[str] = field(default_factory=_origins)
    enable_background_sweeps: bool = field(
        default_factory=lambda: _env_bool("ENABLE_BACKGROUND_SWEEPS", True)
    )
