"""Tests for audit logging."""

import json
from unittest.mock import patch

from api.audit import AuditAction, audit_logger, log_audit


class TestBuildEntry:
    def test_minimal_entry(self):
        entry = audit_logger.build_entry(AuditAction.THUMBNAILS_GENERATE)
        assert entry["action"] == "thumbnails_generate"
        assert entry["success"] is True
        assert "timestamp" in entry
        assert "error" not in entry
        assert "resource_id" not in entry

    def test_full_entry(self):
        entry = audit_logger.build_entry(
            AuditAction.SELECTION_OVERRIDE,
            client_ip="10.0.0.1",
            user_agent="curl/8.0",
            resource_type="thumbnail_set",
            resource_id="vid-1",
            details={"candidate_id": "abc"},
            success=False,
            error="Candidate not found",
            request_id="req-1",
        )
        assert entry["client_ip"] == "10.0.0.1"
        assert entry["resource_type"] == "thumbnail_set"
        assert entry["resource_id"] == "vid-1"
        assert entry["details"] == {"candidate_id": "abc"}
        assert entry["success"] is False
        assert entry["error"] == "Candidate not found"
        assert entry["request_id"] == "req-1"

    def test_long_error_truncated(self):
        entry = audit_logger.build_entry(AuditAction.UPLOADS_RETRY, error="x" * 5000)
        assert len(entry["error"]) < 5000
        assert entry["error"].endswith("...")


class TestLogAudit:
    def test_disabled_writes_nothing(self):
        with patch("api.audit.AUDIT_LOG_ENABLED", False):
            with patch.object(audit_logger.logger, "info") as mock_info:
                log_audit(AuditAction.THUMBNAILS_GENERATE, resource_id="vid-1")
        mock_info.assert_not_called()

    def test_enabled_writes_json(self):
        with patch("api.audit.AUDIT_LOG_ENABLED", True):
            with patch.object(audit_logger.logger, "info") as mock_info:
                log_audit(
                    AuditAction.THUMBNAILS_GENERATE,
                    resource_type="thumbnail_set",
                    resource_id="vid-1",
                    details={"persisted": 3},
                )

        mock_info.assert_called_once()
        entry = json.loads(mock_info.call_args.args[0])
        assert entry["action"] == "thumbnails_generate"
        assert entry["resource_id"] == "vid-1"
        assert entry["details"] == {"persisted": 3}
