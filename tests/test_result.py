from switchboard.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success({"id": "msg-1"})
        assert result.ok is True
        assert result.value == {"id": "msg-1"}
        assert result.error is None
        assert result.retryable is False


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Gateway down", "http_502", retryable=True)
        assert result.ok is False
        assert result.error == "Gateway down"
        assert result.error_code == "http_502"
        assert result.retryable is True

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"
        assert result.retryable is False


class TestUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success(42).unwrap_or(0) == 42

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("boom").unwrap_or(0) == 0
