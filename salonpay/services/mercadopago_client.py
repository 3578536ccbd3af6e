"""
Mercado Pago API Client
Thin httpx wrapper over the OAuth, preference and payment endpoints
"""

import logging
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from ..config import Settings, get_settings
from ..exceptions import ConfigurationError, ProviderUnavailableError, TokenRefreshError

logger = logging.getLogger(__name__)


class MercadoPagoClient:
    """
    Stateless client; every call opens its own AsyncClient.

    A transport can be injected so tests can stand in for the provider. Each method
    accepts a per-call timeout that overrides the configured default.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def _http(self, timeout: Optional[float]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.mp_api_url,
            timeout=timeout if timeout is not None else self.settings.mp_http_timeout_seconds,
            transport=self._transport,
        )

    def _require_app_credentials(self) -> tuple[str, str]:
        if not self.settings.mp_client_id or not self.settings.mp_client_secret:
            raise ConfigurationError("MP_CLIENT_ID / MP_CLIENT_SECRET not configured")
        return self.settings.mp_client_id, self.settings.mp_client_secret

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(self, state: str) -> str:
        client_id, _ = self._require_app_credentials()
        params = {
            "client_id": client_id,
            "response_type": "code",
            "platform_id": "mp",
            "redirect_uri": self.settings.oauth_redirect_uri,
            "state": state,
            "scope": "offline_access",
        }
        return f"{self.settings.mp_auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, timeout: Optional[float] = None) -> dict[str, Any]:
        """Exchange an authorization code for access/refresh tokens"""
        client_id, client_secret = self._require_app_credentials()
        form = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": self.settings.oauth_redirect_uri,
        }
        return await self._post_token_form(form, ProviderUnavailableError, timeout)

    async def refresh_token(self, refresh_token: str, timeout: Optional[float] = None) -> dict[str, Any]:
        client_id, client_secret = self._require_app_credentials()
        form = {
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
        }
        return await self._post_token_form(form, TokenRefreshError, timeout)

    async def _post_token_form(
        self,
        form: dict[str, str],
        error_class: type[ProviderUnavailableError],
        timeout: Optional[float],
    ) -> dict[str, Any]:
        grant_type = form["grant_type"]
        try:
            async with self._http(timeout) as client:
                response = await client.post(
                    "/oauth/token",
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(f"❌ Mercado Pago token request ({grant_type}) failed: {type(e).__name__}")
            raise error_class(f"Token request failed: {type(e).__name__}") from e

        if response.status_code != 200:
            logger.error(
                f"❌ Mercado Pago token request ({grant_type}) returned {response.status_code}"
            )
            raise error_class(
                f"Token endpoint returned {response.status_code}",
                upstream_status=response.status_code,
            )

        return self._json(response, error_class)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_preference(
        self,
        access_token: str,
        preference: dict[str, Any],
        idempotency_key: str,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        try:
            async with self._http(timeout) as client:
                response = await client.post(
                    "/checkout/preferences",
                    json=preference,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "X-Idempotency-Key": idempotency_key,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"❌ Mercado Pago preference request failed: {type(e).__name__}")
            raise ProviderUnavailableError(f"Preference request failed: {type(e).__name__}") from e

        if response.status_code not in (200, 201):
            logger.error(
                f"❌ Mercado Pago preference creation returned {response.status_code}: {response.text[:300]}"
            )
            raise ProviderUnavailableError(
                f"Preference endpoint returned {response.status_code}",
                upstream_status=response.status_code,
            )

        return self._json(response, ProviderUnavailableError)

    async def get_payment(
        self, access_token: str, payment_id: str, timeout: Optional[float] = None
    ) -> dict[str, Any]:
        """Fetch the authoritative payment resource"""
        try:
            async with self._http(timeout) as client:
                response = await client.get(
                    f"/v1/payments/{payment_id}",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"❌ Mercado Pago payment fetch failed for {payment_id}: {type(e).__name__}")
            raise ProviderUnavailableError(f"Payment fetch failed: {type(e).__name__}") from e

        if response.status_code != 200:
            logger.error(f"❌ Mercado Pago payment fetch for {payment_id} returned {response.status_code}")
            raise ProviderUnavailableError(
                f"Payment endpoint returned {response.status_code}",
                upstream_status=response.status_code,
            )

        return self._json(response, ProviderUnavailableError)

    @staticmethod
    def _json(response: httpx.Response, error_class: type[ProviderUnavailableError]) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise error_class("Provider returned a non-JSON body") from e
        if not isinstance(payload, dict):
            raise error_class("Provider returned an unexpected body")
        return payload


def get_mercadopago_client() -> MercadoPagoClient:
    """FastAPI dependency; overridden in tests with a mock transport"""
    return MercadoPagoClient(get_settings())
