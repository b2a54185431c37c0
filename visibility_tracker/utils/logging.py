"""
Structured JSON logging for the visibility tracker.

Every log line is a JSON object on stderr with a UTC timestamp, level,
component (logger name) and message, plus optional structured fields:

- context: dict passed via extra={"context": {...}}
- run_id: tracking run identifier passed via extra={"run_id": ...}

Provider API keys, proxy credentials and bearer tokens are redacted before a
record is emitted. stdout stays reserved for user-facing CLI output.

Examples:
    >>> from visibility_tracker.utils.logging import setup_logging, log_with_context
    >>> setup_logging(verbose=True)
    >>> logger = logging.getLogger("visibility_tracker.engine.orchestrator")
    >>> log_with_context(logger, logging.INFO, "Batch finished",
    ...     context={"batch": 1, "calls": 20}, run_id=7)
"""

import json
import logging
import re
import sys
from typing import Any

from visibility_tracker.utils.time import utc_timestamp


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": utc_timestamp(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "context") and isinstance(record.context, dict):
            log_entry["context"] = record.context

        if hasattr(record, "run_id"):
            log_entry["run_id"] = record.run_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class SecretRedactingFilter(logging.Filter):
    """
    Logging filter that redacts potential secrets from log records.

    Covers OpenAI/Anthropic style keys (sk-...), Perplexity keys (pplx-...),
    Google API keys (AIza...), bearer tokens, credentials embedded in proxy
    URLs and generic long tokens. Only the last 4 characters survive:
    "sk-proj-abcdef123456..." -> "sk-...3456".
    """

    SECRET_PATTERNS = [
        (re.compile(r"\bsk-[a-zA-Z0-9_-]{20,}\b"), "sk-...{last4}"),
        (re.compile(r"\bpplx-[a-zA-Z0-9_-]{20,}\b"), "pplx-...{last4}"),
        (re.compile(r"\bAIza[a-zA-Z0-9_-]{20,}\b"), "AIza...{last4}"),
        (re.compile(r"\bBearer\s+[a-zA-Z0-9_.-]{16,}"), "Bearer ***{last4}"),
        (re.compile(r"(?<=://)[^/\s:@]+:[^/\s@]+(?=@)"), "***:***"),
        (re.compile(r"\b[a-zA-Z0-9_-]{32,}\b"), "***{last4}"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._redact_secrets(str(record.msg))

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self._redact_secrets(str(v)) for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self._redact_secrets(str(arg)) for arg in record.args
                )

        if hasattr(record, "context") and isinstance(record.context, dict):
            record.context = self._redact_dict(record.context)

        return True

    def _redact_secrets(self, text: str) -> str:
        for pattern, template in self.SECRET_PATTERNS:

            def redact_match(match: re.Match) -> str:
                return template.format(last4=match.group(0)[-4:])

            text = pattern.sub(redact_match, text)

        return text

    def _redact_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        result = {}
        for key, value in data.items():
            if isinstance(value, str):
                result[key] = self._redact_secrets(value)
            elif isinstance(value, dict):
                result[key] = self._redact_dict(value)
            elif isinstance(value, list):
                result[key] = [
                    self._redact_secrets(v) if isinstance(v, str) else v for v in value
                ]
            else:
                result[key] = value
        return result


def setup_logging(verbose: bool = False, quiet_logs: bool = False) -> None:
    """
    Configure structured JSON logging on the root logger.

    Args:
        verbose: DEBUG level when True, INFO otherwise
        quiet_logs: Only emit WARNING and above (used in human CLI mode so
            JSON lines don't interleave with rich output). Ignored when
            verbose is set.
    """
    if verbose:
        level = logging.DEBUG
    elif quiet_logs:
        level = logging.WARNING
    else:
        level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(SecretRedactingFilter())
    root_logger.addHandler(handler)

    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(
        logging.INFO if verbose else logging.WARNING
    )


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    run_id: int | str | None = None,
) -> None:
    """
    Log a message with structured context and optional run_id.

    Equivalent to logger.log(level, message, extra={"context": ..., "run_id": ...}).
    """
    extra: dict[str, Any] = {}

    if context is not None:
        extra["context"] = context

    if run_id is not None:
        extra["run_id"] = run_id

    logger.log(level, message, extra=extra if extra else None)
