"""
Configuration module for the Marketplace Worker.

Loads environment variables and provides configuration constants.
All sensitive values should be in .env file (never commit to git).
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class SupabaseConfig:
    """Supabase connection configuration."""
    url: str
    key: str  # Service role key for server-side operations
    timeout_seconds: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key)

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        return cls(
            url=os.getenv("SUPABASE_URL", ""),
            key=os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY", ""),
            timeout_seconds=float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "10")),
        )


@dataclass
class PushConfig:
    """Web Push (VAPID) configuration."""
    vapid_public_key: str
    vapid_private_key: str
    vapid_email: str = "mailto:support@maksab.app"
    timeout_seconds: float = 5.0

    @property
    def is_configured(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)

    @classmethod
    def from_env(cls) -> "PushConfig":
        return cls(
            vapid_public_key=(
                os.getenv("VAPID_PUBLIC_KEY") or os.getenv("NEXT_PUBLIC_VAPID_PUBLIC_KEY", "")
            ),
            vapid_private_key=os.getenv("VAPID_PRIVATE_KEY", ""),
            vapid_email=os.getenv("VAPID_EMAIL", "mailto:support@maksab.app"),
            timeout_seconds=float(os.getenv("PUSH_TIMEOUT_SECONDS", "5")),
        )


@dataclass
class WorkerConfig:
    """Tick loop and process lifecycle settings."""
    tick_seconds: int = 60
    shutdown_grace_seconds: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        return cls(
            tick_seconds=int(os.getenv("WORKER_TICK_SECONDS", "60")),
            shutdown_grace_seconds=float(os.getenv("WORKER_SHUTDOWN_GRACE_SECONDS", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


# Global configuration instances (lazy loaded)
_supabase_config: Optional[SupabaseConfig] = None
_push_config: Optional[PushConfig] = None
_worker_config: Optional[WorkerConfig] = None


def get_supabase_config() -> SupabaseConfig:
    """Get Supabase configuration (cached)."""
    global _supabase_config
    if _supabase_config is None:
        _supabase_config = SupabaseConfig.from_env()
    return _supabase_config


def get_push_config() -> PushConfig:
    """Get push configuration (cached)."""
    global _push_config
    if _push_config is None:
        _push_config = PushConfig.from_env()
    return _push_config


def get_worker_config() -> WorkerConfig:
    """Get worker configuration (cached)."""
    global _worker_config
    if _worker_config is None:
        _worker_config = WorkerConfig.from_env()
    return _worker_config
