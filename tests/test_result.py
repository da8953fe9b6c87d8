from crm_inbox.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("wamid.123")
        assert result.ok is True
        assert result.value == "wamid.123"
        assert result.error is None

    def test_success_without_value(self):
        result = Result.success()
        assert result.ok is True
        assert result.value is None


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Канал whatsapp не настроен или отключён", "channel_not_ready")
        assert result.ok is False
        assert result.error == "Канал whatsapp не настроен или отключён"
        assert result.error_code == "channel_not_ready"
        assert result.value is None

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual value").unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"

    def test_unwrap_or_with_none_value(self):
        assert Result.success(None).unwrap_or("default") is None
