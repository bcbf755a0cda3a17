"""
Unified Configuration Module for BrowserPilot

All configuration settings are centralized here.
Import from this module: from api.config import config
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class AppConfig:
    """Unified application configuration."""

    # === Server Settings ===
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "3456"))
    DEBUG: bool = _env_bool("DEBUG", "false")

    # === CORS Settings ===
    CORS_ORIGINS: List[str] = field(default_factory=lambda: [
        origin.strip() for origin in
        os.getenv("CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ])

    # === Paths ===
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "./data/browserpilot.db")
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    COOKIE_FILE: str = os.getenv("COOKIE_FILE", "./data/cookies.json")
    TASK_TYPES_FILE: str = os.getenv("TASK_TYPES_FILE", "./data/task_types.yaml")

    # === Browser Pool ===
    POOL_IDLE_TIMEOUT_SECONDS: float = float(os.getenv("POOL_IDLE_TIMEOUT_SECONDS", "300"))
    POOL_MAX_AGE_SECONDS: float = float(os.getenv("POOL_MAX_AGE_SECONDS", "600"))
    POOL_ACQUIRE_TIMEOUT_SECONDS: float = float(os.getenv("POOL_ACQUIRE_TIMEOUT_SECONDS", "600"))

    # === Browser Launch ===
    BROWSER_HEADLESS: bool = _env_bool("BROWSER_HEADLESS", "true")
    BROWSER_EXECUTABLE: Optional[str] = os.getenv("BROWSER_EXECUTABLE") or None
    BROWSER_LAUNCH_TIMEOUT_SECONDS: float = float(os.getenv("BROWSER_LAUNCH_TIMEOUT_SECONDS", "30"))

    # === Selective Proxy ===
    LOCAL_PROXY_HOST: str = os.getenv("LOCAL_PROXY_HOST", "127.0.0.1")
    LOCAL_PROXY_PORT: int = int(os.getenv("LOCAL_PROXY_PORT", "8888"))
    TUNNEL_PROXY_HOST: str = os.getenv("TUNNEL_PROXY_HOST", "127.0.0.1")
    TUNNEL_PROXY_PORT: int = int(os.getenv("TUNNEL_PROXY_PORT", "9999"))
    TUNNEL_DOMAINS: List[str] = field(default_factory=lambda: [
        domain.strip() for domain in
        os.getenv("TUNNEL_DOMAINS", "").split(",")
        if domain.strip()
    ])
    PROXY_ENABLED: bool = _env_bool("PROXY_ENABLED", "true")

    # === Task Execution ===
    TASK_MAX_RETRIES: int = int(os.getenv("TASK_MAX_RETRIES", "3"))
    TASK_RETRY_DELAY_SECONDS: float = float(os.getenv("TASK_RETRY_DELAY_SECONDS", "2.0"))
    CHAIN_SUBTASK_DELAY_SECONDS: float = float(os.getenv("CHAIN_SUBTASK_DELAY_SECONDS", "2.0"))

    # === Orphaned Browser Sweep ===
    CLEANUP_INTERVAL_SECONDS: float = float(os.getenv("CLEANUP_INTERVAL_SECONDS", "300"))
    CLEANUP_ENABLED: bool = _env_bool("CLEANUP_ENABLED", "true")

    def validate(self) -> List[str]:
        """Validate configuration and return list of problems."""
        problems = []

        for name in ("PORT", "LOCAL_PROXY_PORT", "TUNNEL_PROXY_PORT"):
            port = getattr(self, name)
            if not 0 < port < 65536:
                problems.append(f"{name} out of range: {port}")

        for name in (
            "POOL_IDLE_TIMEOUT_SECONDS",
            "POOL_MAX_AGE_SECONDS",
            "POOL_ACQUIRE_TIMEOUT_SECONDS",
            "BROWSER_LAUNCH_TIMEOUT_SECONDS",
            "CLEANUP_INTERVAL_SECONDS",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")

        if self.TASK_MAX_RETRIES < 0:
            problems.append("TASK_MAX_RETRIES must not be negative")
        if self.TASK_RETRY_DELAY_SECONDS < 0 or self.CHAIN_SUBTASK_DELAY_SECONDS < 0:
            problems.append("Delays must not be negative")

        if self.PROXY_ENABLED and not self.TUNNEL_DOMAINS:
            problems.append("PROXY_ENABLED with empty TUNNEL_DOMAINS: all traffic goes direct")

        return problems


# Global config instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the application configuration."""
    return config
