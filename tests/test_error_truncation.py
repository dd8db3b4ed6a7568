"""
Tests for error message truncation and sanitizing.

Origin error bodies are cut to ERROR_SUMMARY_MAX_LENGTH before they reach
logs and exceptions. Messages shown to API clients pass through
sanitize_error_message, which hides driver errors, paths and credentials.
"""

import logging

import httpx
import pytest

from api.errors import GENERIC_ERROR_MESSAGE, OriginAPIError, sanitize_error_message, truncate_string
from api.origin_client import OriginClient
from config import ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH, OriginSettings

SETTINGS = OriginSettings(library_id="12345", api_key="api-key", webhook_key="hook-key", api_url="https://origin.test")


async def _origin_error(response: httpx.Response) -> OriginAPIError:
    client = OriginClient(SETTINGS, transport=httpx.MockTransport(lambda request: response))
    try:
        with pytest.raises(OriginAPIError) as exc_info:
            await client.create_video("Holiday")
    finally:
        await client.close()
    return exc_info.value


class TestOriginErrorMessages:
    @pytest.mark.asyncio
    async def test_long_origin_message_truncated(self):
        error = await _origin_error(httpx.Response(400, json={"Message": "Invalid title. " * 40}))

        assert error.status_code == 400
        assert len(error.message) == ERROR_SUMMARY_MAX_LENGTH
        assert error.message.startswith("Invalid title.")
        assert error.message.endswith("...")

    @pytest.mark.asyncio
    async def test_short_origin_message_kept(self):
        error = await _origin_error(httpx.Response(404, json={"Message": "Library not found"}))

        assert error.message == "Library not found"

    @pytest.mark.asyncio
    async def test_non_json_body_uses_reason(self):
        error = await _origin_error(httpx.Response(403, text="<html>" + "x" * 5000 + "</html>"))

        assert error.message == "Forbidden"


class TestTruncateString:
    def test_short_value_unchanged(self):
        assert truncate_string("Mozilla/5.0", ERROR_DETAIL_MAX_LENGTH) == "Mozilla/5.0"

    def test_cut_is_marked(self):
        assert truncate_string("guid-" * 10, 12) == "guid-guid..."

    def test_tiny_limit_has_no_marker(self):
        assert truncate_string("guid-1", 3) == "gui"

    def test_none_passes_through(self):
        assert truncate_string(None, 10) is None


class TestSanitizeErrorMessage:
    def test_validation_message_kept(self):
        assert sanitize_error_message("Title must not be blank", log_original=False) == "Title must not be blank"

    @pytest.mark.parametrize(
        "message",
        [
            "UNIQUE constraint failed: videos.external_id",
            'duplicate key value violates unique constraint "videos_external_id_key"',
            "asyncpg.exceptions.DeadlockDetectedError",
            "could not open /var/log/clipstream/audit.log",
            "AccessKey header rejected by origin",
            "external_id must look like a guid, got " + "x" * ERROR_SUMMARY_MAX_LENGTH,
        ],
    )
    def test_internal_details_hidden(self, message):
        assert sanitize_error_message(message, log_original=False) == GENERIC_ERROR_MESSAGE

    def test_original_is_logged_with_context(self, caplog):
        with caplog.at_level(logging.WARNING, logger="api.errors"):
            result = sanitize_error_message("sqlite3.OperationalError: no such table", context="external_id=guid-1")

        assert result == GENERIC_ERROR_MESSAGE
        assert "external_id=guid-1" in caplog.text
        assert "no such table" in caplog.text

    def test_none_passes_through(self):
        assert sanitize_error_message(None) is None
