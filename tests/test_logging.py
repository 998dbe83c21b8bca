"""
Tests for logging setup and credential redaction.
"""

import json
import logging
import sys

from supamigrate.utils.helpers import format_bytes, format_duration, safe_object_path
from supamigrate.utils.logging import (
    REDACTED,
    SecretRedactingFilter,
    StructuredFormatter,
    get_logger,
    redact,
    register_secrets,
    setup_logging,
)


class TestSecretRedaction:
    """Test that registered credentials never reach log output."""

    def setup_method(self):
        """Set up test fixtures."""
        self.filter = SecretRedactingFilter()
        self.filter.add_secrets(["hunter2-password", "sbp_token_value", None, "abc"])

    def _record(self, msg, *args):
        return logging.LogRecord("supamigrate.test", logging.INFO, __file__, 1, msg, args, None)

    def test_message_and_args_redacted(self):
        record = self._record("connecting with %s and %s", "hunter2-password", "sbp_token_value")
        assert self.filter.filter(record)
        assert record.getMessage() == f"connecting with {REDACTED} and {REDACTED}"

    def test_short_values_ignored(self):
        assert self.filter.redact("abc is fine") == "abc is fine"

    def test_longest_secret_wins(self):
        self.filter.add_secrets(["hunter2"])
        assert self.filter.redact("pw=hunter2-password") == f"pw={REDACTED}"

    def test_exception_text_redacted(self):
        try:
            raise RuntimeError("auth failed for hunter2-password")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, sys.exc_info())
        self.filter.filter(record)
        assert record.exc_info is None
        assert "hunter2-password" not in record.exc_text

    def test_global_registry(self):
        register_secrets(["global-secret-value"])
        assert redact("token global-secret-value") == f"token {REDACTED}"

    def test_file_log_is_redacted(self, tmp_path):
        """Test log files written through setup_logging never hold secrets."""
        register_secrets(["file-secret-value"])
        log_file = tmp_path / "supamigrate.log"
        setup_logging(level="DEBUG", log_file=str(log_file), rich_console=False)

        get_logger("tests").info("password is file-secret-value")
        for handler in logging.getLogger("supamigrate").handlers:
            handler.flush()

        content = log_file.read_text()
        assert "file-secret-value" not in content
        assert REDACTED in content


class TestStructuredFormatter:
    """Test JSON log output."""

    def test_format(self):
        record = logging.LogRecord("supamigrate.transfer", logging.WARNING, __file__, 10, "slow %s", ("bucket",), None)
        record.category = "transfer"
        record.bucket = "avatars"

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "slow bucket"
        assert data["level"] == "WARNING"
        assert data["category"] == "transfer"
        assert data["metadata"]["bucket"] == "avatars"


class TestHelpers:
    """Test formatting and path helpers."""

    def test_format_bytes(self):
        assert format_bytes(512) == "512 B"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(5 * 1024 ** 3) == "5.0 GB"

    def test_format_duration(self):
        assert format_duration(12.34) == "12.3s"
        assert format_duration(90) == "1.5m"

    def test_safe_object_path(self, tmp_path):
        assert safe_object_path(tmp_path, "a/b.png") == tmp_path / "a" / "b.png"
        for key in ("../x", "/abs", "a//b", "a/./b"):
            try:
                safe_object_path(tmp_path, key)
            except ValueError:
                continue
            raise AssertionError(f"{key!r} was accepted")
