import pytest

pytestmark = pytest.mark.unit


class TestSensitiveDataMasking:
    def test_card_number_masked(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "test", "data": "paid with 4111111111111111"}
        result = mask_sensitive_data(None, None, event_dict)
        assert "4111111111111111" not in result["data"]
        assert "***MASKED***" in result["data"]

    def test_password_masked(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "test", "data": "password='s3cret123'"}
        result = mask_sensitive_data(None, None, event_dict)
        assert "s3cret123" not in result["data"]

    def test_token_masked(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "test", "header": "token=abc123xyz"}
        result = mask_sensitive_data(None, None, event_dict)
        assert "abc123xyz" not in result["header"]

    def test_non_sensitive_data_unchanged(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "order.created", "order_number": "ORD-20250101-ABC123"}
        result = mask_sensitive_data(None, None, dict(event_dict))
        assert result == event_dict

    def test_non_string_values_untouched(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "test", "quantity": 3}
        assert mask_sensitive_data(None, None, event_dict)["quantity"] == 3


class TestQueueDefaults:
    def test_retry_and_shutdown_defaults(self, settings):
        assert settings.JOB_MAX_ATTEMPTS == 3
        assert settings.JOB_BACKOFF_BASE_SECONDS == 2.0
        assert settings.WORKER_SHUTDOWN_TIMEOUT == 10.0
        assert settings.LOCK_TTL_SECONDS == 30
