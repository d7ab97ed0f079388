from liminalflow.logging import (
    MAX_ERROR_MESSAGE_LENGTH,
    bind_execution_context,
    clear_execution_context,
    get_correlation_id,
    sanitize_error_message,
    sanitize_trace,
    set_correlation_id,
)


def test_sanitize_strips_credentials_and_paths():
    message = "auth failed: Bearer abc.def token=xyz at /home/svc/app.py"

    cleaned = sanitize_error_message(message)

    assert "abc.def" not in cleaned
    assert "xyz" not in cleaned
    assert "/home/svc" not in cleaned
    assert cleaned.startswith("auth failed")


def test_sanitize_truncates_and_handles_empty():
    assert len(sanitize_error_message("x" * 2000)) == MAX_ERROR_MESSAGE_LENGTH
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_generated_when_missing():
    generated = set_correlation_id()

    assert get_correlation_id() == generated
    assert set_correlation_id("exec-1") == "exec-1"
    assert get_correlation_id() == "exec-1"


def test_execution_context_bound_and_cleared():
    import structlog

    bind_execution_context("exec-2", "flow-a", variant_id="v1")
    bound = structlog.contextvars.get_contextvars()
    assert bound["execution_id"] == "exec-2"
    assert bound["variant_id"] == "v1"

    clear_execution_context()
    assert "execution_id" not in structlog.contextvars.get_contextvars()


def test_trace_messages_sanitized():
    trace = [{"node": "a", "message": "failed with api_key=abc123"}, {"node": "b"}]

    cleaned = sanitize_trace(trace)

    assert "abc123" not in cleaned[0]["message"]
    assert cleaned[1] == {"node": "b"}
    assert trace[0]["message"].endswith("abc123")
