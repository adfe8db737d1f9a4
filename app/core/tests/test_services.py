"""Tests for ServiceResult and BaseService."""

import logging

from core.services import BaseService, ServiceResult


class TestServiceResult:
    def test_success_carries_data(self):
        result = ServiceResult.success({"id": 1})

        assert result.success is True
        assert bool(result) is True
        assert result.to_response() == {"success": True, "data": {"id": 1}}

    def test_failure_renders_error_shape(self):
        """
        Why it matters: view failures must parse the same way as errors
        raised by the service layer ({"error", "error_code"}).
        """
        result = ServiceResult.failure("Conversation not found", error_code="CONVERSATION_NOT_FOUND")

        assert bool(result) is False
        assert result.to_response() == {
            "success": False,
            "error": "Conversation not found",
            "error_code": "CONVERSATION_NOT_FOUND",
        }

    def test_failure_includes_field_errors(self):
        result = ServiceResult.failure("Invalid", errors={"title": ["Too long"]})

        assert result.to_response()["errors"] == {"title": ["Too long"]}

    def test_from_exception_defaults_code_to_class_name(self):
        result = ServiceResult.from_exception(ConnectionError("down"))

        assert result.error == "down"
        assert result.error_code == "CONNECTIONERROR"


class ExampleService(BaseService):
    pass


class TestBaseService:
    def test_logger_is_named_after_service(self):
        assert ExampleService.get_logger().name.endswith("ExampleService")

    def test_handle_exception_logs_and_returns_failure(self, caplog):
        with caplog.at_level(logging.ERROR):
            result = ExampleService.handle_exception(
                RuntimeError("redis down"), "get presence", "presence_error"
            )

        assert result.success is False
        assert result.error_code == "presence_error"
        assert "get presence: redis down" in caplog.text

    def test_handle_exception_can_hide_exception_text(self, caplog):
        """
        Why it matters: Redis error strings carry hostnames and ports; API
        clients get the public message while the log keeps the detail.
        """
        with caplog.at_level(logging.ERROR):
            result = ExampleService.handle_exception(
                RuntimeError("Error 111 connecting to redis:6379"),
                "get presence",
                "presence_error",
                error="Failed to get presence",
            )

        assert result.error == "Failed to get presence"
        assert "redis:6379" in caplog.text
