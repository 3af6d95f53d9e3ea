"""Tests for ferry.errors."""

import pytest

from ferry.errors import (
    ArchiveError,
    CreationError,
    Err,
    FerryError,
    ForceStopped,
    Ok,
    ProxyUnavailable,
    ScanError,
    err,
    format_error,
    ok,
)


class TestResult:
    """Tests for Ok / Err."""

    def test_ok(self):
        result = ok(3)

        assert isinstance(result, Ok)
        assert result.ok and result.is_ok() and not result.is_err()
        assert result.unwrap() == 3
        assert result.error is None
        with pytest.raises(ValueError):
            result.unwrap_err()

    def test_err(self):
        error = FerryError(code="X", message="boom")
        result = err(error)

        assert isinstance(result, Err)
        assert not result.ok and result.is_err()
        assert result.unwrap_err() is error
        assert result.value is None
        with pytest.raises(ValueError, match="boom"):
            result.unwrap()


class TestFormatError:
    def test_plain(self):
        assert format_error(FerryError("PLAN_NOT_FOUND", "Plan file not found: p.yaml")) == (
            "Error [PLAN_NOT_FOUND]: Plan file not found: p.yaml"
        )

    def test_names_failing_node(self):
        error = FerryError("CREATION_FAILED", "Failed", {"node_key": "function:fn-2"})

        assert format_error(error).endswith("(at function:fn-2)")


class TestEngineExceptions:
    """Each exception carries a FerryError with its code."""

    @pytest.mark.parametrize(
        ("exc_type", "code"),
        [
            (ScanError, "SCAN_FAILED"),
            (ForceStopped, "FORCE_STOPPED"),
            (ProxyUnavailable, "PROXY_UNAVAILABLE"),
            (ArchiveError, "ARCHIVE_INVALID"),
        ],
    )
    def test_codes(self, exc_type, code):
        exc = exc_type("message", project="prod")

        assert exc.error.code == code
        assert exc.error.message == "message"
        assert exc.error.context == {"project": "prod"}
        assert str(exc) == "message"

    def test_creation_error_keeps_node_key(self):
        exc = CreationError("Failed to create team:staff", node_key="team:staff", status=500)

        assert exc.node_key == "team:staff"
        assert exc.error.context == {"node_key": "team:staff", "status": 500}
