"""Error envelope format shared by every failing API response.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from adminflow.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from adminflow.api.schemas import Envelope, ErrorBody
from adminflow.service.errors import (
    BackupToolError,
    ConnectivityError,
    IncompleteTargetError,
    NotInstalledError,
    RestoreToolError,
    ServiceError,
    WriteError,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="not_found", message="backup not found")
        assert error.details is None

    def test_details_accept_dict_and_list(self):
        assert ErrorBody(code="conflict", message="x", details={"jobId": "1"}).details == {"jobId": "1"}
        assert len(ErrorBody(code="validation_error", message="x", details=[{"a": 1}, {"b": 2}]).details) == 2

    def test_missing_fields_raise(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="no code")
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_is_rejected(self):
        """Only stable codes may reach clients."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")


class TestEnvelope:
    def test_error_envelope_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="connectivity_error", message="refused", details={"engine": "mongodb"}),
            request_id="req-1",
        )
        dumped = envelope.model_dump()

        assert dumped["status"] == "error"
        assert dumped["error"]["code"] == "connectivity_error"
        assert dumped["error"]["details"] == {"engine": "mongodb"}
        assert dumped["request_id"] == "req-1"
        assert dumped["data"] is None

    def test_request_id_is_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

    @pytest.mark.parametrize("status", ["pending", "success"])
    def test_invalid_status(self, status):
        with pytest.raises(ValidationError):
            Envelope(status=status)


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code, code",
        [
            (400, "validation_error"),
            (404, "not_found"),
            (409, "conflict"),
            (502, "connectivity_error"),
            (503, "not_installed"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_mapped_codes_are_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")

    @pytest.mark.parametrize(
        "exc_type",
        [ConnectivityError, IncompleteTargetError, WriteError, BackupToolError, RestoreToolError, NotInstalledError],
    )
    def test_service_errors_carry_valid_codes(self, exc_type):
        exc = exc_type("failed", detail={"engine": "sqlite"})
        assert isinstance(exc, ServiceError)
        ErrorBody(code=exc.error_code, message=exc.message)


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(404, "backup not found")

        assert response.status_code == 404
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "not_found"
        assert data["error"]["details"] is None
        assert "request_id" in data

    def test_custom_code_and_details(self):
        response = _error_response(409, "incomplete", details={"missing": ["users"]}, code="incomplete_target")

        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "incomplete_target"
        assert data["error"]["details"] == {"missing": ["users"]}
