from __future__ import annotations

from txnsync.core.errors import (
    ApiStatusError,
    PartialFailureError,
    SyncError,
    TransportError,
)


def test_partial_failure_error_carries_failed_accounts() -> None:
    # input
    cause = TransportError("connection reset")

    # act
    error = PartialFailureError(["A1", "A2"], {"A1": cause})

    # assert
    assert isinstance(error, SyncError)
    assert error.failed_account_ids == ["A1", "A2"]
    assert error.errors == {"A1": cause}
    assert "A1, A2" in str(error)


def test_api_status_error_keeps_status_and_body() -> None:
    error = ApiStatusError(404, '{"error": "not found"}')

    assert error.status_code == 404
    assert error.body == '{"error": "not found"}'
    assert "404" in str(error)
