"""Exception taxonomy for the Conductor runbook engine."""

from typing import Optional


class ConductorError(Exception):
    """Base exception for all Conductor errors."""

    pass


class ConfigurationError(ConductorError):
    """Raised for missing operator configuration or invalid definitions.

    Fatal at startup or at validation time, never silently ignored.
    """

    pass


class RunbookParseError(ConfigurationError):
    """Raised when a runbook or step definition fails validation."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(f"{message}" if not field else f"Field '{field}': {message}")


class StepExecutionError(ConductorError):
    """Raised inside an executor for a network, process or query failure."""

    pass


class ApprovalExpiredError(ConductorError):
    """Raised when acting on an approval whose expiry has passed."""

    pass


class SchedulingConflictError(ConductorError):
    """Raised when another worker already claimed a due schedule."""

    pass


class PersistenceError(ConductorError):
    """Raised when the store cannot read or write engine state."""

    pass


class SecretsError(ConductorError):
    """Base exception for secrets-related errors."""

    pass


class SecretNotFoundError(SecretsError):
    """Raised when no secret matches in any scope."""

    pass


class DecryptionError(SecretsError):
    """Raised when decryption fails."""

    pass


class SecretResolutionError(SecretsError):
    """Raised when a single secret cannot be materialized for an execution."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Secret '{name}' could not be resolved: {reason}")
