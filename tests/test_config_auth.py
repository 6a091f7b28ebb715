"""Settings validation and service token tests."""

import pytest
from pydantic import ValidationError

from ripple.auth.jwt import (
    TokenError,
    create_service_token,
    verify_service_token,
    verify_token,
)
from ripple.config import Settings, settings


def test_default_secret_refused_outside_development():
    with pytest.raises(ValidationError, match="RIPPLE_JWT_SECRET"):
        Settings(environment="production")
    Settings(environment="production", jwt_secret="s3cret-enough")


@pytest.mark.parametrize("field,value", [("relevance_threshold", 1.5), ("bus_partitions", 0)])
def test_invalid_pipeline_settings(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("RIPPLE_BUS_PARTITIONS", "3")
    monkeypatch.setenv("RIPPLE_RELEVANCE_GATE", "accept_all")
    loaded = Settings()
    assert loaded.bus_partitions == 3
    assert loaded.relevance_gate == "accept_all"


def test_service_token_round_trip():
    token = create_service_token("fanout-worker")
    assert verify_service_token(token) == "fanout-worker"


def test_expired_token_rejected():
    token = create_service_token("fanout-worker", expires_minutes=-1)
    with pytest.raises(TokenError, match="expired"):
        verify_token(token)


def test_non_service_token_rejected():
    import jwt

    token = jwt.encode({"sub": "u1", "type": "access"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    with pytest.raises(TokenError, match="Not a service token"):
        verify_service_token(token)


def test_garbage_token_rejected():
    with pytest.raises(TokenError):
        verify_service_token("not-a-jwt")
