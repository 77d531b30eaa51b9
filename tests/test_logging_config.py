from webhook_service.logging_config import redact_secrets_processor, replace_newlines_processor


def test_secrets_are_masked():
    event = {"event": "Webhook registered", "secret": "whsec_abc", "api_key": "", "webhook_id": "wh_1"}

    result = redact_secrets_processor(None, "info", event)

    assert result["secret"] == "***"
    assert result["api_key"] == ""
    assert result["webhook_id"] == "wh_1"


def test_newlines_escaped_in_nested_values():
    event = {"event": "line1\nline2", "errors": ["a\nb", 3], "details": {"body": "x\ry"}}

    result = replace_newlines_processor(None, "info", event)

    assert result["event"] == "line1\\nline2"
    assert result["errors"] == ["a\\nb", 3]
    assert result["details"] == {"body": "x\\ry"}
