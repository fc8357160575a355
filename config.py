"""
Configuration management for Conductor.

This module provides centralized configuration with environment variable
validation and sensible defaults.
"""
import os
import sys
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes")


@dataclass
class DatabaseConfig:
    """Database configuration."""
    host: str
    port: int
    name: str
    user: str
    password: str

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create configuration from environment variables."""
        return cls(
            host=os.environ.get("DB_HOST", "localhost"),
            port=int(os.environ.get("DB_PORT", "5432")),
            name=os.environ.get("DB_NAME", "conductor"),
            user=os.environ.get("PG_USER", ""),
            password=os.environ.get("PG_PASS", ""),
        )

    def validate(self) -> list:
        """Validate configuration. Returns list of error messages."""
        errors = []
        if not self.host:
            errors.append("DB_HOST is required")
        if not self.name:
            errors.append("DB_NAME is required")
        if not self.user:
            errors.append("PG_USER is required")
        if not self.password:
            errors.append("PG_PASS is required")
        return errors


@dataclass
class VaultConfig:
    """Secret vault configuration."""
    master_key: str
    allow_insecure_key: bool

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create configuration from environment variables."""
        return cls(
            master_key=os.environ.get("CONDUCTOR_MASTER_KEY", ""),
            allow_insecure_key=os.environ.get(
                "CONDUCTOR_ALLOW_INSECURE_KEY", ""
            ).lower() in _TRUTHY,
        )

    def validate(self) -> list:
        """Validate configuration. Returns list of error messages."""
        errors = []
        if not self.master_key and not self.allow_insecure_key:
            errors.append(
                "CONDUCTOR_MASTER_KEY is required (secrets cannot be "
                "encrypted or decrypted without it)"
            )
        return errors

    @property
    def is_configured(self) -> bool:
        """Check if a real master key was supplied."""
        return bool(self.master_key)


@dataclass
class WorkerConfig:
    """Execution pool and background sweep configuration."""
    max_workers: int
    poll_interval_seconds: float
    scheduler_interval_seconds: int
    approval_sweep_interval_seconds: int
    metrics_port: int

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        """Create configuration from environment variables."""
        return cls(
            max_workers=int(os.environ.get("CONDUCTOR_MAX_WORKERS", "8")),
            poll_interval_seconds=float(
                os.environ.get("CONDUCTOR_POLL_INTERVAL_SECONDS", "2")
            ),
            scheduler_interval_seconds=int(
                os.environ.get("CONDUCTOR_SCHEDULER_INTERVAL_SECONDS", "60")
            ),
            approval_sweep_interval_seconds=int(
                os.environ.get("CONDUCTOR_APPROVAL_SWEEP_INTERVAL_SECONDS", "15")
            ),
            metrics_port=int(os.environ.get("METRICS_PORT", "9091")),
        )

    def validate(self) -> list:
        """Validate configuration. Returns list of error messages."""
        errors = []
        if self.max_workers < 1:
            errors.append("CONDUCTOR_MAX_WORKERS must be at least 1")
        if self.poll_interval_seconds <= 0:
            errors.append("CONDUCTOR_POLL_INTERVAL_SECONDS must be positive")
        if self.scheduler_interval_seconds < 1:
            errors.append("CONDUCTOR_SCHEDULER_INTERVAL_SECONDS must be at least 1")
        if self.approval_sweep_interval_seconds < 1:
            errors.append(
                "CONDUCTOR_APPROVAL_SWEEP_INTERVAL_SECONDS must be at least 1"
            )
        if self.metrics_port < 1 or self.metrics_port > 65535:
            errors.append(
                f"METRICS_PORT must be between 1 and 65535, got {self.metrics_port}"
            )
        return errors


@dataclass
class AIConfig:
    """Model backend used by AI steps (OpenAI-compatible chat completions)."""
    endpoint: str
    api_key: str
    model: str
    timeout_seconds: int

    @classmethod
    def from_env(cls) -> "AIConfig":
        """Create configuration from environment variables."""
        return cls(
            endpoint=os.environ.get(
                "CONDUCTOR_AI_ENDPOINT", "https://api.openai.com/v1/chat/completions"
            ),
            api_key=os.environ.get("CONDUCTOR_AI_API_KEY", ""),
            model=os.environ.get("CONDUCTOR_AI_MODEL", "gpt-4o-mini"),
            timeout_seconds=int(os.environ.get("CONDUCTOR_AI_TIMEOUT", "60")),
        )

    def validate(self) -> list:
        """Validate configuration. Returns list of error messages."""
        errors = []
        if not self.api_key:
            errors.append("CONDUCTOR_AI_API_KEY is required for AI steps")
        if self.timeout_seconds < 1:
            errors.append("CONDUCTOR_AI_TIMEOUT must be at least 1")
        return errors

    @property
    def is_configured(self) -> bool:
        """Check if the AI backend is configured."""
        return bool(self.endpoint and self.api_key)


@dataclass
class AppConfig:
    """Application configuration."""
    timezone: str
    default_step_timeout_seconds: int

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create configuration from environment variables."""
        return cls(
            timezone=os.environ.get("CONDUCTOR_TIMEZONE", "UTC"),
            default_step_timeout_seconds=int(
                os.environ.get("CONDUCTOR_DEFAULT_STEP_TIMEOUT", "300")
            ),
        )

    def validate(self) -> list:
        """Validate configuration. Returns list of error messages."""
        errors = []
        if self.default_step_timeout_seconds < 1:
            errors.append("CONDUCTOR_DEFAULT_STEP_TIMEOUT must be at least 1")
        return errors


@dataclass
class Config:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    vault: VaultConfig = field(default_factory=VaultConfig.from_env)
    worker: WorkerConfig = field(default_factory=WorkerConfig.from_env)
    ai: AIConfig = field(default_factory=AIConfig.from_env)
    app: AppConfig = field(default_factory=AppConfig.from_env)

    @classmethod
    def from_env(cls) -> "Config":
        """Create complete configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            vault=VaultConfig.from_env(),
            worker=WorkerConfig.from_env(),
            ai=AIConfig.from_env(),
            app=AppConfig.from_env(),
        )

    def validate(self, strict: bool = False) -> list:
        """
        Validate all configuration.

        Args:
            strict: If True, require optional integrations (the AI backend)
                   to be configured as well.

        Returns:
            List of error messages.
        """
        errors = []
        errors.extend(self.database.validate())
        errors.extend(self.vault.validate())
        errors.extend(self.worker.validate())
        errors.extend(self.app.validate())

        if strict:
            errors.extend(self.ai.validate())

        return errors

    def validate_or_exit(self, strict: bool = False):
        """
        Validate configuration and exit if invalid.

        Args:
            strict: If True, require all integrations to be configured.
        """
        errors = self.validate(strict=strict)
        if errors:
            logger.critical("Configuration validation failed:")
            for error in errors:
                logger.critical(f"  - {error}")
            sys.exit(1)

    def log_config(self):
        """Log configuration (without sensitive values)."""
        logger.info("Configuration loaded:")
        logger.info(f"  Database: {self.database.host}:{self.database.port}/{self.database.name}")
        logger.info(f"  Workers: {self.worker.max_workers}")
        logger.info(f"  Scheduler interval: {self.worker.scheduler_interval_seconds}s")
        logger.info(f"  Timezone: {self.app.timezone}")
        logger.info(f"  Master key: {'configured' if self.vault.is_configured else 'NOT configured'}")
        logger.info(f"  AI backend: {'configured' if self.ai.is_configured else 'not configured'}")


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config() -> Config:
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()
    return _config


class Constants:
    """Application constants."""

    # Steps
    DEFAULT_STEP_TIMEOUT_SECONDS = 300
    DEFAULT_EXECUTION_TIMEOUT_SECONDS = 3600
    DEFAULT_RETRY_MAX_ATTEMPTS = 3
    DEFAULT_RETRY_DELAY_MS = 1000
    DEFAULT_RETRY_BACKOFF = 2.0

    # Executors
    MAX_RESPONSE_BODY_SIZE = 4096
    MAX_PROCESS_OUTPUT_SIZE = 8192

    # Scheduler
    DEFAULT_SCHEDULE_TIMEZONE = "UTC"
    SCHEDULER_TRIGGERED_BY = "scheduler"
