"""
Custom exceptions for the AI visibility tracking engine.

All exceptions inherit from VisibilityTrackerError so callers can catch every
application-specific failure with a single except clause.

Exception Hierarchy:
    VisibilityTrackerError (base)
    ├── ConfigurationError
    │   ├── ConfigFileNotFoundError
    │   ├── ConfigValidationError
    │   └── APIKeyMissingError
    ├── DatabaseError
    │   ├── DatabaseInitError
    │   └── DatabaseQueryError
    ├── ProviderError
    │   ├── ProviderTransportError
    │   │   └── ProviderTimeoutError
    │   └── ProviderResponseError
    ├── CitationParseError
    ├── OrchestratorFatalError
    ├── QuotaExceededError
    ├── ConfigNotFoundError
    └── UnauthorizedTriggerError

Usage:
    from visibility_tracker.exceptions import QuotaExceededError

    try:
        result = await trigger_on_demand(...)
    except QuotaExceededError as e:
        console.error(e.decision.reason)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from visibility_tracker.engine.quota import QuotaDecision


class VisibilityTrackerError(Exception):
    """Base exception for all visibility tracker errors."""

    pass


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigurationError(VisibilityTrackerError):
    """
    Base class for configuration-related errors.

    Raised when configuration loading, parsing, or validation fails.
    The CLI maps it to exit code 1.
    """

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Configuration file does not exist at the specified path."""

    pass


class ConfigValidationError(ConfigurationError):
    """
    Configuration file is invalid (schema validation failed).

    Example:
        raise ConfigValidationError("engine.batch_size: must be positive")
    """

    pass


class APIKeyMissingError(ConfigurationError):
    """
    Required API key environment variable is not set.

    Example:
        raise APIKeyMissingError("OPENAI_API_KEY environment variable not set")
    """

    pass


# ============================================================================
# Database Errors
# ============================================================================


class DatabaseError(VisibilityTrackerError):
    """Base class for database-related errors (CLI exit code 2)."""

    pass


class DatabaseInitError(DatabaseError):
    """SQLite database cannot be created, opened or migrated."""

    pass


class DatabaseQueryError(DatabaseError):
    """
    A query failed or referenced a row that does not exist.

    Example:
        raise DatabaseQueryError("Run 42 does not exist")
    """

    pass


# ============================================================================
# Provider Errors
# ============================================================================


class ProviderError(VisibilityTrackerError):
    """
    Base class for conversational-AI backend failures.

    Adapters raise these (or let httpx errors propagate); the orchestrator
    isolates them into a single error-sentinel result row.
    """

    pass


class ProviderTransportError(ProviderError):
    """
    Network, HTTP status or backend failure while talking to a provider.

    Example:
        raise ProviderTransportError("Perplexity API error: status=401")
    """

    pass


class ProviderTimeoutError(ProviderTransportError):
    """A provider call exceeded the per-call deadline."""

    def __init__(self, provider: str, timeout_seconds: float):
        super().__init__(f"{provider} call timed out after {timeout_seconds:g}s")
        self.provider = provider
        self.timeout_seconds = timeout_seconds


class ProviderResponseError(ProviderError):
    """
    Provider returned a response with an unexpected structure.

    Example:
        raise ProviderResponseError("Gemini response missing 'candidates' array")
    """

    pass


# ============================================================================
# Engine Errors
# ============================================================================


class CitationParseError(VisibilityTrackerError):
    """
    Citation structure from a provider could not be parsed.

    Always recovered locally by falling back to zero citations.
    """

    pass


class OrchestratorFatalError(VisibilityTrackerError):
    """
    Failure outside the per-call isolation boundary (e.g. persistence).

    The run transitions to failed and is not retried.
    """

    pass


class QuotaExceededError(VisibilityTrackerError):
    """
    A run was refused because the owner's prompt allowance is exhausted.

    Attributes:
        decision: The QuotaDecision that denied the run
    """

    def __init__(self, decision: QuotaDecision):
        super().__init__(decision.reason or "Prompt quota exceeded")
        self.decision = decision


class ConfigNotFoundError(VisibilityTrackerError):
    """No tracking config could be resolved for a trigger."""

    pass


class UnauthorizedTriggerError(VisibilityTrackerError):
    """Scheduled trigger called without a valid bearer credential."""

    pass
