import json

import pytest

from adaptrain.core.exceptions import (
    AdaptrainError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    ResourceError,
    TrainingError,
    adaptrain_error_handler,
)


def test_adaptrain_error_to_dict():
    err = AdaptrainError(code="test_error", message="Something broke", status=500)
    d = err.to_dict()
    assert d["error"]["code"] == "test_error"
    assert d["error"]["message"] == "Something broke"
    assert d["error"]["status"] == 500
    assert "details" not in d["error"]


def test_adaptrain_error_with_details():
    err = AdaptrainError(code="x", message="y", status=400, details={"hint": "try again"})
    d = err.to_dict()
    assert d["error"]["details"]["hint"] == "try again"


def test_configuration_error_defaults():
    err = ConfigurationError()
    assert err.status == 400
    assert err.code == "configuration_error"


def test_invalid_state_error_defaults():
    err = InvalidStateError()
    assert err.status == 409
    assert err.code == "invalid_status_transition"


def test_not_found_error_defaults():
    err = NotFoundError()
    assert err.status == 404


def test_resource_and_training_errors_are_server_side():
    assert ResourceError().status == 500
    assert TrainingError().code == "training_error"


def test_subclasses_share_base():
    for cls in (ConfigurationError, InvalidStateError, NotFoundError, ResourceError, TrainingError):
        assert issubclass(cls, AdaptrainError)


@pytest.mark.asyncio
async def test_error_handler_renders_json():
    response = await adaptrain_error_handler(None, InvalidStateError("Cannot stop a session with status 'pending'."))
    assert response.status_code == 409
    body = json.loads(response.body)
    assert body["error"]["code"] == "invalid_status_transition"
