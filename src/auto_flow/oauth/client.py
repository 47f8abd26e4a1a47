"""HTTP client for the provider's OAuth token endpoint."""

from __future__ import annotations

import logging
import math
from typing import Any

import httpx

from auto_flow.config import OauthProviderSettings
from auto_flow.oauth.models import OauthTokenError, TokenResult

logger = logging.getLogger(__name__)

EXCHANGE_FAILED = "OAUTH_TOKEN_EXCHANGE_FAILED"
REFRESH_FAILED = "OAUTH_REFRESH_FAILED"
TOKEN_INVALID = "OAUTH_TOKEN_INVALID"

# Token lifetimes above this are treated as unknown.
MAX_EXPIRES_IN_SECONDS = 10 * 365 * 24 * 3600


class OauthTokenClient:
    """Form-encoded POSTs to the token endpoint for code and refresh grants."""

    def __init__(
        self,
        settings: OauthProviderSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.Client(
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: str) -> TokenResult:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self._settings.client_id,
            "code_verifier": code_verifier,
        }
        return self._post(form, failure_prefix=EXCHANGE_FAILED)

    def refresh(self, *, refresh_token: str) -> TokenResult:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._settings.client_id,
        }
        return self._post(form, failure_prefix=REFRESH_FAILED)

    def _post(self, form: dict[str, str], *, failure_prefix: str) -> TokenResult:
        if self._settings.client_secret:
            form["client_secret"] = self._settings.client_secret
        try:
            response = self._client.post(self._settings.token_url, data=form)
        except httpx.HTTPError as exc:
            logger.warning("Token endpoint request failed: %s", exc)
            raise OauthTokenError(f"{failure_prefix}: {exc}") from exc

        body = _json_or_empty(response)
        if not response.is_success:
            reason = body.get("error") or response.status_code
            logger.warning(
                "Token endpoint returned HTTP %s (%s)",
                response.status_code,
                failure_prefix,
            )
            raise OauthTokenError(f"{failure_prefix}: {reason}")
        return normalize_token_response(body)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OauthTokenClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def normalize_token_response(body: dict[str, Any]) -> TokenResult:
    """Map a token endpoint JSON body onto ``TokenResult``."""

    access_token = body.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise OauthTokenError(TOKEN_INVALID)
    return TokenResult(
        access_token=access_token,
        refresh_token=_optional_str(body.get("refresh_token")),
        token_type=_optional_str(body.get("token_type")),
        scope=_optional_str(body.get("scope")),
        expires_in=_expires_in_seconds(body.get("expires_in")),
    )


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _expires_in_seconds(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(seconds) or abs(seconds) > MAX_EXPIRES_IN_SECONDS:
        return None
    return seconds


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None
