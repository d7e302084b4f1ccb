"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation (ELK, Loki, CloudWatch)
- Request context propagation (organization_id, request_id, trace_id)
- Correlation IDs across the request, the ledger units of work and the
  background staging task
- Redaction of credentials and payment secrets

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- stdlib loggers (used by the storage, ledger and billing modules with
  ``extra=``) are rendered through the same processor chain
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
# These propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
organization_id_var: ContextVar[str | None] = ContextVar("organization_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add request context to log events.

    Injects:
    - request_id: Unique ID for each HTTP request
    - organization_id: Organization the request acts on (if known)
    - trace_id: Distributed tracing ID (for multi-service correlation)
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    organization_id = organization_id_var.get()
    if organization_id:
        event_dict.setdefault("organization_id", organization_id)

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO 8601 timestamp with microsecond precision.

    Format: 2025-01-15T10:30:45.123456Z
    """
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())
        + f".{int((time.time() % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Injects service, version and environment from LOGGING_SERVICE_NAME,
    LOGGING_SERVICE_VERSION and LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    try:
        from magicstage.config import get_settings

        settings = get_settings()
        event_dict["service"] = settings.logging.service_name
        event_dict["version"] = settings.logging.service_version
        event_dict["environment"] = settings.logging.environment
    except Exception:
        # Fallback if config not available
        event_dict["service"] = "magic-staging"
        event_dict["version"] = "0.1.0"
        event_dict["environment"] = "development"
    return event_dict


SENSITIVE_FIELDS = frozenset(
    {
        "api_key",
        "password",
        "authorization",
        "secret",
        "webhook_secret",
        "token",
        "client_secret",
        "stripe_signature",
        "x_admin_key",
    }
)


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact sensitive fields to prevent credential leakage.

    Redacted fields:
    - api keys, secrets, tokens, signatures: prefix and suffix kept if long
    - email: Replaced with domain-only (user@example.com -> ***@example.com)
    """
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_FIELDS:
            value = event_dict[key]
            if isinstance(value, str):
                # Show the key type prefix (sk_live_, whsec_) for debugging
                if len(value) > 12:
                    event_dict[key] = f"{value[:8]}***{value[-3:]}"
                else:
                    event_dict[key] = "***REDACTED***"

        if key.lower() == "email" and isinstance(event_dict[key], str):
            email = event_dict[key]
            if "@" in email:
                domain = email.split("@")[1]
                event_dict[key] = f"***@{domain}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add structured exception information.

    Extracts:
    - exception_type: Exception class name
    - exception_message: Exception message
    """
    exc_info = event_dict.get("exc_info")
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging for production.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    Output formats:

    JSON (production):
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Reserved credits",
          "service": "magic-staging",
          "environment": "production",
          "request_id": "req_abc123",
          "organization_id": "org-acme",
          "reservation_id": "res_...",
          "balance_after": 9
        }

    Console (development):
        2025-01-15 10:30:45 [info] Reserved credits
            request_id=req_abc123 organization_id=org-acme balance_after=9
    """
    # Shared processors (run for structlog and stdlib records alike)
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    if json_output:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colorized)

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        # stdlib records: lift `extra=` fields into the event dict first
        foreign_pre_chain=[structlog.stdlib.ExtraAdder(), *shared_processors],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.set_name("magicstage")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "magicstage":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper()))


# ============================================================================
# LOGGER FACTORY
# ============================================================================


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Usage:
        logger = get_logger(__name__)
        logger.info("Staging job completed", job_id=job.job_id, ai_cost_cents=4)

        logger = logger.bind(job_id=job.job_id)
        logger.info("Calling AI provider")
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Automatically generates request_id and propagates organization_id.

    Usage:
        with RequestContext(organization_id=request.organization_id):
            logger.info("Submitting staging job")  # request_id auto-injected
    """

    def __init__(
        self,
        organization_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        """
        Initialize request context.

        Args:
            organization_id: Organization the request acts on
            trace_id: Distributed trace ID (from X-Trace-ID header)
            request_id: Request ID (auto-generated if not provided)
        """
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.organization_id = organization_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        # Tokens for context cleanup
        self._request_id_token = None
        self._organization_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set organization_id (even if None) so we can reliably reset it
        self._organization_id_token = organization_id_var.set(self.organization_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._organization_id_token is not None:
            organization_id_var.reset(self._organization_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


class OperationContext:
    """
    Context manager for operation-level logging with timing.

    Automatically logs operation start, completion, and latency.

    Usage:
        with OperationContext("ai_provider_call", job_id=job.job_id):
            await provider.stage(...)
        # Logs: "ai_provider_call completed" with latency_ms
    """

    def __init__(self, operation: str, **kwargs):
        self.operation = operation
        self.context = kwargs
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = None
        self.duration_ms: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed",
                latency_ms=round(self.duration_ms, 2),
                **self.context,
            )
        else:
            self.logger.warning(
                f"{self.operation} failed",
                latency_ms=round(self.duration_ms, 2),
                exception_type=exc_type.__name__,
                error=str(exc_val),
                **self.context,
            )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_request_id(request_id: str) -> None:
    """Set request ID for current context."""
    request_id_var.set(request_id)


def set_organization_id(organization_id: str) -> None:
    """Set organization ID for current context."""
    organization_id_var.set(organization_id)


def set_trace_id(trace_id: str) -> None:
    """Set trace ID for current context."""
    trace_id_var.set(trace_id)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_organization_id() -> str | None:
    return organization_id_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()
