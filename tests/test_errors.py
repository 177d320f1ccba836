"""Tests for the error taxonomy and error message truncation."""

from api.errors import (
    BackendRateLimited,
    BackendRequestFailed,
    MediaStoreError,
    RoleStorageNotConfigured,
    UploadInvalid,
    truncate_error,
)


class TestTruncateError:
    """Tests for truncate_error."""

    def test_none_passes_through(self):
        assert truncate_error(None) is None

    def test_short_message_unchanged(self):
        assert truncate_error("boom", 10) == "boom"

    def test_exact_length_unchanged(self):
        assert truncate_error("x" * 10, 10) == "x" * 10

    def test_long_message_truncated_with_ellipsis(self):
        result = truncate_error("x" * 50, 10)
        assert len(result) == 10
        assert result.endswith("...")


class TestErrorTypes:
    """Tests for status codes, numeric codes and serialization."""

    def test_base_defaults(self):
        err = MediaStoreError()
        assert err.status_code == 500
        assert err.message == "Internal error"
        assert err.to_dict() == {"code": 0, "message": "Internal error"}

    def test_context_serialized(self):
        err = UploadInvalid(expected_size=1000, actual_size=999)
        payload = err.to_dict()
        assert payload["code"] == 803
        assert payload["context"] == {"expected_size": 1000, "actual_size": 999}
        assert err.status_code == 415

    def test_upstream_status_kept(self):
        err = BackendRequestFailed("bad gateway", upstream_status=502)
        assert err.upstream_status == 502
        assert err.context["upstream_status"] == 502

    def test_rate_limited_is_backend_error(self):
        err = BackendRateLimited()
        assert err.status_code == 429
        assert isinstance(err, MediaStoreError)

    def test_role_codes(self):
        assert RoleStorageNotConfigured("poster").code == 503
        assert RoleStorageNotConfigured("backdrop").code == 504
        assert RoleStorageNotConfigured("source").code == 505
        assert RoleStorageNotConfigured("subtitle").code == 506

    def test_role_message_names_role(self):
        err = RoleStorageNotConfigured("poster")
        assert "poster" in err.message
        assert err.context == {"role": "poster"}
