import pytest
from mailsense.common.exceptions import (
    CollaboratorError,
    MailSenseError,
    ModelCallError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    SchemaValidationError,
    TransactionError,
    UnknownAnalysisKindError,
    ValidationError,
)


def test_mailsense_error_initialization():
    """Test MailSenseError initialization."""
    err = MailSenseError("Test message", error_code="TEST_CODE", context={"foo": "bar"}, extra="baz")
    assert err.message == "Test message"
    assert err.error_code == "TEST_CODE"
    assert err.context == {"foo": "bar", "extra": "baz"}
    assert str(err) == "Test message"


def test_mailsense_error_to_dict():
    """Test MailSenseError serialization."""
    err = MailSenseError("Test message", error_code="TEST_CODE", context={"foo": "bar"})
    expected = {
        "error_type": "MailSenseError",
        "message": "Test message",
        "error_code": "TEST_CODE",
        "context": {"foo": "bar"},
    }
    assert err.to_dict() == expected


def test_to_dict_redacts_sensitive_context():
    err = SchemaValidationError("bad output", schema_name="SentimentOutput", raw_output="{secret}")
    data = err.to_dict()
    assert data["context"]["raw_output"] == "[REDACTED]"
    assert data["context"]["schema_name"] == "SentimentOutput"
    # The attribute itself is untouched
    assert err.raw_output == "{secret}"


@pytest.mark.parametrize(
    "exc_class,init_args,expected_attrs",
    [
        (ValidationError, {"message": "Invalid input", "field": "email", "rule": "required"}, {"field": "email", "rule": "required"}),
        (ProviderError, {"message": "Provider issue", "provider": "openai", "retryable": False}, {"provider": "openai", "retryable": False}),
        (RateLimitError, {"message": "Rate limit exceeded", "provider": "anthropic", "retry_after": 60}, {"provider": "anthropic", "retryable": True, "retry_after": 60}),
        (ModelCallError, {"message": "Model failed", "model": "gpt-4o"}, {"model": "gpt-4o", "retryable": True}),
        (SchemaValidationError, {"message": "Schema mismatch", "schema_name": "ChurnOutput", "raw_output": "...", "attempts": 2}, {"schema_name": "ChurnOutput", "attempts": 2}),
        (CollaboratorError, {"message": "Extraction down", "endpoint": "/domain-extract", "retryable": True}, {"endpoint": "/domain-extract", "retryable": True}),
        (TransactionError, {"message": "Transaction failed", "transaction_id": "123"}, {"transaction_id": "123"}),
        (NotFoundError, {"message": "Missing", "resource": "message", "resource_id": "abc"}, {"resource": "message", "resource_id": "abc"}),
    ],
)
def test_subclass_initialization(exc_class, init_args, expected_attrs):
    """Test that all MailSenseError subclasses correctly initialize their specific attributes."""
    err = exc_class(**init_args)
    for attr, value in expected_attrs.items():
        assert getattr(err, attr) == value
    assert err.message == init_args["message"]
    assert isinstance(err, MailSenseError)


def test_unknown_analysis_kind_error():
    err = UnknownAnalysisKindError("telepathy", tenant_id="t1")
    assert err.kind == "telepathy"
    assert err.error_code == "UNKNOWN_ANALYSIS_KIND"
    assert "telepathy" in err.message
    assert err.context["tenant_id"] == "t1"


def test_context_handling():
    """Test that extra kwargs are correctly added to the context dictionary."""
    err = ValidationError("Invalid", field="email", rule="required", extra_info="123")
    assert err.field == "email"
    assert err.rule == "required"
    assert err.context["extra_info"] == "123"


def test_duplicate_kwargs_do_not_collide():
    err = CollaboratorError("x", endpoint="/contact-extract", retryable=False, status_code=500)
    assert err.retryable is False
    assert err.context["status_code"] == 500


def test_model_call_error_is_provider_error():
    err = ModelCallError("both models failed", model="gemini-1.5-flash", retryable=False)
    assert isinstance(err, ProviderError)
    assert err.retryable is False
