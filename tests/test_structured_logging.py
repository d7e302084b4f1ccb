"""
Tests for structured logging infrastructure.

Tests:
- JSON and console configuration
- Request context propagation
- Sensitive field redaction
- Operation context timing
"""

import asyncio
import contextvars

import pytest

from magicstage.observability.logging import (
    OperationContext,
    RequestContext,
    add_exception_info,
    add_request_context,
    configure_logging,
    get_logger,
    get_organization_id,
    get_request_id,
    get_trace_id,
    redact_sensitive_fields,
    set_organization_id,
    set_request_id,
    set_trace_id,
)


@pytest.fixture(autouse=True)
def console_logging():
    configure_logging(log_level="INFO", json_output=False, colorized=False)


def test_configure_logging_json_output():
    """Test that JSON logging can be configured."""
    configure_logging(log_level="INFO", json_output=True, colorized=False)

    logger = get_logger("test")
    logger.info("Reserved credits", organization_id="org-a", amount=1)


def test_get_logger():
    logger = get_logger("test_logger")

    assert hasattr(logger, "info")
    assert hasattr(logger, "bind")


def test_request_context():
    """Test request context propagation."""
    with RequestContext(organization_id="org-a", request_id="req_123"):
        assert get_request_id() == "req_123"
        assert get_organization_id() == "org-a"
        assert get_trace_id().startswith("trace_")

        get_logger("test").info("Submitting staging job")

    assert get_request_id() is None
    assert get_organization_id() is None
    assert get_trace_id() is None


def test_request_context_auto_generation():
    with RequestContext():
        assert get_request_id().startswith("req_")
        assert get_trace_id().startswith("trace_")
        assert get_organization_id() is None


def test_nested_request_contexts():
    with RequestContext(organization_id="org-1", request_id="req1"):
        with RequestContext(organization_id="org-2", request_id="req2"):
            assert get_organization_id() == "org-2"
            assert get_request_id() == "req2"

        assert get_organization_id() == "org-1"
        assert get_request_id() == "req1"


def test_context_setters_and_getters():
    def run():
        set_request_id("req_test")
        set_organization_id("org-test")
        set_trace_id("trace_test")
        return get_request_id(), get_organization_id(), get_trace_id()

    # Run in a copied context so the values do not leak into other tests
    assert contextvars.copy_context().run(run) == ("req_test", "org-test", "trace_test")
    assert get_request_id() is None


def test_request_context_in_async_code():
    async def async_operation():
        return get_request_id(), get_organization_id()

    with RequestContext(organization_id="org-async", request_id="req_async"):
        assert asyncio.run(async_operation()) == ("req_async", "org-async")


def test_add_request_context_processor():
    with RequestContext(organization_id="org-a", request_id="req_1", trace_id="trace_1"):
        event = add_request_context(None, "info", {"event": "x"})

    assert event["request_id"] == "req_1"
    assert event["trace_id"] == "trace_1"
    assert event["organization_id"] == "org-a"


def test_add_request_context_keeps_explicit_organization():
    with RequestContext(organization_id="org-a"):
        event = add_request_context(None, "info", {"event": "x", "organization_id": "org-b"})

    assert event["organization_id"] == "org-b"


class TestRedaction:
    """redact_sensitive_fields processor."""

    def test_long_secrets_keep_prefix_and_suffix(self):
        event = redact_sensitive_fields(
            None,
            "info",
            {
                "event": "x",
                "api_key": "sk_live_abcdefghijklmnop",
                "webhook_secret": "whsec_0123456789abcdef",
            },
        )

        assert event["api_key"] == "sk_live_***nop"
        assert event["webhook_secret"] == "whsec_01***def"

    def test_short_secrets_fully_redacted(self):
        event = redact_sensitive_fields(None, "info", {"event": "x", "token": "abc"})

        assert event["token"] == "***REDACTED***"

    def test_email_keeps_domain(self):
        event = redact_sensitive_fields(None, "info", {"event": "x", "email": "agent@realty.test"})

        assert event["email"] == "***@realty.test"

    def test_other_fields_untouched(self):
        event = redact_sensitive_fields(
            None, "info", {"event": "x", "organization_id": "org-a", "amount": 3}
        )

        assert event == {"event": "x", "organization_id": "org-a", "amount": 3}


def test_add_exception_info():
    try:
        raise ValueError("bad credits")
    except ValueError as e:
        exc_info = (type(e), e, e.__traceback__)

    event = add_exception_info(None, "error", {"event": "x", "exc_info": exc_info})

    assert event["exception_type"] == "ValueError"
    assert event["exception_message"] == "bad credits"


def test_operation_context_records_duration():
    with OperationContext("ai_provider_call", job_id="job_1") as context:
        pass

    assert context.duration_ms is not None
    assert context.duration_ms >= 0


def test_operation_context_with_exception():
    with pytest.raises(ValueError):
        with OperationContext("ai_provider_call", job_id="job_1") as context:
            raise ValueError("Test error")

    assert context.duration_ms is not None


def test_exception_logging():
    logger = get_logger("test")

    try:
        raise ValueError("Test exception")
    except Exception:
        logger.error("Operation failed", exc_info=True)
