from __future__ import annotations

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import atsguard.auth as auth_module
from atsguard.auth import CognitoTokenVerifier
from atsguard.config import settings
from atsguard.main import create_app

PROTECTED_PATHS = ("/ats/stop-work/triggers", "/api/ats/stop-work/triggers")


@pytest.fixture()
def restore_auth_settings() -> None:
    original = {
        "auth_enabled": settings.auth_enabled,
        "cognito_region": settings.cognito_region,
        "cognito_user_pool_id": settings.cognito_user_pool_id,
        "cognito_app_client_id": settings.cognito_app_client_id,
        "cognito_issuer": settings.cognito_issuer,
    }
    yield
    settings.auth_enabled = original["auth_enabled"]
    settings.cognito_region = original["cognito_region"]
    settings.cognito_user_pool_id = original["cognito_user_pool_id"]
    settings.cognito_app_client_id = original["cognito_app_client_id"]
    settings.cognito_issuer = original["cognito_issuer"]


def _configure_auth() -> None:
    settings.auth_enabled = True
    settings.cognito_region = "us-east-1"
    settings.cognito_user_pool_id = "us-east-1_testpool"
    settings.cognito_app_client_id = "test-client-id"
    settings.cognito_issuer = "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_testpool"


def test_protected_routes_require_bearer_token_when_auth_enabled(restore_auth_settings: None) -> None:
    _configure_auth()
    app = create_app()
    with TestClient(app) as client:
        for path in PROTECTED_PATHS:
            response = client.post(path, json={"environment": {}})
            assert response.status_code == 401
            assert response.json()["detail"] == "Missing bearer token."


def test_protected_routes_accept_valid_bearer_token_when_auth_enabled(
    monkeypatch: pytest.MonkeyPatch,
    restore_auth_settings: None,
) -> None:
    _configure_auth()
    monkeypatch.setattr(
        auth_module,
        "decode_and_validate_cognito_token",
        lambda token: {"sub": "user-123", "token_use": "access", "client_id": "test-client-id"},
    )

    app = create_app()
    with TestClient(app) as client:
        for path in PROTECTED_PATHS:
            response = client.post(
                path,
                json={"environment": {"visibility": "Baja"}},
                headers={"Authorization": "Bearer test-token"},
            )
            assert response.status_code == 200
            assert len(response.json()["auto_triggers"]) == 1


def test_system_routes_stay_public_when_auth_enabled(restore_auth_settings: None) -> None:
    _configure_auth()
    with TestClient(create_app()) as client:
        assert client.get("/health").status_code == 200


def test_missing_client_id_is_reported_as_misconfiguration(restore_auth_settings: None) -> None:
    _configure_auth()
    settings.cognito_app_client_id = ""
    with TestClient(create_app()) as client:
        response = client.post(
            PROTECTED_PATHS[0],
            json={},
            headers={"Authorization": "Bearer test-token"},
        )
    assert response.status_code == 503


def test_issuer_is_derived_from_region_and_pool(restore_auth_settings: None) -> None:
    settings.cognito_issuer = ""
    settings.cognito_region = "eu-west-1"
    settings.cognito_user_pool_id = "eu-west-1_pool"
    verifier = CognitoTokenVerifier(settings)
    assert verifier.issuer() == "https://cognito-idp.eu-west-1.amazonaws.com/eu-west-1_pool"


def test_token_client_checks() -> None:
    CognitoTokenVerifier._check_client({"token_use": "id", "aud": ["a", "client"]}, "client")
    CognitoTokenVerifier._check_client({"token_use": "access", "client_id": "client"}, "client")
    with pytest.raises(HTTPException) as excinfo:
        CognitoTokenVerifier._check_client({"token_use": "refresh"}, "client")
    assert excinfo.value.status_code == 401
