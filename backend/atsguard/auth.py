from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from atsguard.config import Settings, settings


_bearer_scheme = HTTPBearer(auto_error=False)
JWKS_CACHE_TTL_SECONDS = 300.0
JWKS_FETCH_TIMEOUT_SECONDS = 5.0


def _auth_unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _auth_misconfigured(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


@dataclass
class _JwksCacheEntry:
    issuer: str = ""
    expires_at: float = 0.0
    keys_by_kid: dict[str, dict[str, Any]] = field(default_factory=dict)


class CognitoTokenVerifier:
    """Verifies Cognito access and ID tokens against the pool's JWKS.

    Settings are read on every call so tests and operators can toggle the
    pool configuration without rebuilding the verifier.
    """

    def __init__(self, source: Settings) -> None:
        self._settings = source
        self._cache = _JwksCacheEntry()

    def issuer(self) -> str:
        configured = str(self._settings.cognito_issuer or "").strip().rstrip("/")
        if configured:
            return configured

        region = str(self._settings.cognito_region or "").strip() or str(self._settings.aws_region or "").strip()
        user_pool_id = str(self._settings.cognito_user_pool_id or "").strip()
        if not region or not user_pool_id:
            raise _auth_misconfigured(
                "Cognito is enabled but issuer is not configured. Set COGNITO_ISSUER or "
                "set both COGNITO_REGION and COGNITO_USER_POOL_ID."
            )
        return f"https://cognito-idp.{region}.amazonaws.com/{user_pool_id}"

    def signing_keys(self, issuer: str) -> dict[str, dict[str, Any]]:
        now = time.time()
        if self._cache.issuer == issuer and self._cache.expires_at > now and self._cache.keys_by_kid:
            return self._cache.keys_by_kid

        jwks_url = f"{issuer}/.well-known/jwks.json"
        try:
            response = httpx.get(jwks_url, timeout=JWKS_FETCH_TIMEOUT_SECONDS)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise _auth_misconfigured(f"Unable to fetch Cognito JWKS from '{jwks_url}': {exc}") from exc

        keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(keys, list):
            raise _auth_misconfigured("Invalid Cognito JWKS payload: missing 'keys' list.")

        keys_by_kid = {
            key["kid"]: key
            for key in keys
            if isinstance(key, dict) and isinstance(key.get("kid"), str) and key["kid"].strip()
        }
        if not keys_by_kid:
            raise _auth_misconfigured("Cognito JWKS payload did not include any usable signing keys.")

        self._cache = _JwksCacheEntry(issuer=issuer, expires_at=now + JWKS_CACHE_TTL_SECONDS, keys_by_kid=keys_by_kid)
        return keys_by_kid

    def verify(self, token: str) -> dict[str, Any]:
        app_client_id = str(self._settings.cognito_app_client_id or "").strip()
        if not app_client_id:
            raise _auth_misconfigured("Cognito is enabled but COGNITO_APP_CLIENT_ID is not configured.")

        issuer = self.issuer()
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise _auth_unauthorized("Malformed JWT header.") from exc

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid.strip():
            raise _auth_unauthorized("JWT header does not include a valid key id (kid).")

        signing_key = self.signing_keys(issuer).get(kid)
        if signing_key is None:
            raise _auth_unauthorized("JWT key id is not recognized by Cognito.")

        try:
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                issuer=issuer,
                options={"verify_aud": False},
            )
        except JWTError as exc:
            raise _auth_unauthorized(f"Invalid or expired Cognito token: {exc}") from exc

        self._check_client(claims, app_client_id)
        return claims

    @staticmethod
    def _check_client(claims: dict[str, Any], app_client_id: str) -> None:
        token_use = claims.get("token_use")
        if token_use == "access":
            if claims.get("client_id") != app_client_id:
                raise _auth_unauthorized("Cognito access token client_id does not match configured app client.")
            return
        if token_use == "id":
            audience = claims.get("aud")
            audiences = audience if isinstance(audience, list) else [audience]
            if app_client_id not in audiences:
                raise _auth_unauthorized("Cognito ID token audience does not match configured app client.")
            return
        raise _auth_unauthorized("Unsupported Cognito token type. Use a Cognito access token or ID token.")


_verifier = CognitoTokenVerifier(settings)


def decode_and_validate_cognito_token(token: str) -> dict[str, Any]:
    return _verifier.verify(token)


def require_authenticated_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> dict[str, Any] | None:
    if not settings.auth_enabled:
        return None

    if credentials is None:
        raise _auth_unauthorized("Missing bearer token.")
    if credentials.scheme.lower() != "bearer":
        raise _auth_unauthorized("Unsupported authorization scheme.")

    token = credentials.credentials.strip()
    if not token:
        raise _auth_unauthorized("Missing bearer token.")

    return decode_and_validate_cognito_token(token)
