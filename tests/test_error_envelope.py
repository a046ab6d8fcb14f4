import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from canvasflow.api.error_handling import _error_code_for_status, _error_response
from canvasflow.api.schemas import Envelope, ErrorBody
from canvasflow.service.errors import ErrorKind


def test_error_body_accepts_workflow_codes():
    for kind in ErrorKind:
        assert ErrorBody(code=kind.value, message="x").code == kind.value


def test_error_body_rejects_unknown_code():
    with pytest.raises(PydanticValidationError):
        ErrorBody(code="teapot", message="x")


def test_envelope_status_pattern():
    with pytest.raises(PydanticValidationError):
        Envelope(status="maybe")


def test_status_code_mapping():
    assert _error_code_for_status(404) == "not_found"
    assert _error_code_for_status(422) == "validation_error"
    assert _error_code_for_status(503) == "service_unavailable"
    assert _error_code_for_status(418) == "server_error"


def test_error_response_envelope():
    response = _error_response(402, "Monthly limit reached", {"remaining": 0}, code="quota_exceeded")
    assert response.status_code == 402
    payload = json.loads(response.body)
    assert payload["status"] == "error"
    assert payload["data"] is None
    assert payload["error"] == {
        "code": "quota_exceeded",
        "message": "Monthly limit reached",
        "details": {"remaining": 0},
    }
    assert payload["request_id"]
