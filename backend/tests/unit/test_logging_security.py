"""
Unit tests for log sanitization helpers.
"""

import pytest

from ksiwatch.utils.logging_security import (
    create_audit_log_entry,
    sanitize_error_message_for_log,
    sanitize_for_log,
    sanitize_id_for_log,
    sanitize_uri_for_log,
)


@pytest.mark.unit
class TestSanitizers:
    """Test log injection protection."""

    def test_strips_crlf(self) -> None:
        assert sanitize_for_log("ac-2\r\nFAKE ENTRY") == "ac-2FAKE ENTRY"

    def test_none_and_blank(self) -> None:
        assert sanitize_for_log(None) == "null"
        assert sanitize_for_log("\n\n") == "[sanitized]"
        assert sanitize_id_for_log(None) == "[no_id]"
        assert sanitize_uri_for_log("") == "[no_uri]"

    def test_truncates(self) -> None:
        assert sanitize_for_log("a" * 150).endswith("...")

    def test_id_removes_special_characters(self) -> None:
        assert sanitize_id_for_log("ev-<script>") == "ev-script"

    def test_redacts_secrets(self) -> None:
        message = sanitize_error_message_for_log("connect failed password=hunter2 token: abc")
        assert "hunter2" not in message
        assert "abc" not in message
        assert "password=[REDACTED]" in message


@pytest.mark.unit
class TestAuditLogEntry:
    """Test audit entry formatting."""

    def test_format(self) -> None:
        entry = create_audit_log_entry(
            "ingest_evidence", "evidence", "ev-0123", additional_context={"source": "s3://b/k", "control": "ac-2"}
        )
        assert entry == (
            "action=ingest_evidence | resource=evidence:ev-0123 | success=True | control=ac-2 | source=s3://b/k"
        )

    def test_failure_includes_error(self) -> None:
        entry = create_audit_log_entry("update_status", "control", "ac-2", success=False, error_message="boom")
        assert entry.endswith("error=boom")
