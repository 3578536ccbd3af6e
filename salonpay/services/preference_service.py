"""
Mercado Pago Preference Service
Creates checkout preferences (payment intents) on behalf of a connected organization
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..domain.payments.repository import PaymentsRepository
from ..exceptions import ProviderUnavailableError
from ..models_mercadopago import PaymentStatus
from .mercadopago_client import MercadoPagoClient
from .token_service import TokenService

logger = logging.getLogger(__name__)

BACK_URL_KEYS = ("success", "failure", "pending")


@dataclass
class PaymentIntent:
    checkout_url: str
    preference_id: str
    sandbox_url: Optional[str] = None


class PreferenceService:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        client: MercadoPagoClient,
        token_service: Optional[TokenService] = None,
    ):
        self.db = db
        self.settings = settings
        self.client = client
        self.tokens = token_service or TokenService(db, settings, client)
        self.repo = PaymentsRepository

    def default_back_urls(self, appointment_id: str) -> dict[str, str]:
        base = self.settings.frontend_url
        return {
            key: f"{base}/payment/{key}?appointment_id={appointment_id}" for key in BACK_URL_KEYS
        }

    def build_preference(
        self,
        org_id: str,
        appointment_id: str,
        title: str,
        amount: float,
        back_urls: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        urls = self.default_back_urls(appointment_id)
        if back_urls:
            urls.update({key: value for key, value in back_urls.items() if key in BACK_URL_KEYS and value})

        return {
            "items": [
                {
                    "title": title,
                    "quantity": 1,
                    "unit_price": float(amount),
                    "currency_id": self.settings.mp_currency,
                }
            ],
            "external_reference": appointment_id,
            "metadata": {"org_id": org_id, "appointment_id": appointment_id},
            "back_urls": urls,
            "auto_return": "approved",
            "notification_url": self.settings.webhook_url,
        }

    async def create_intent(
        self,
        org_id: str,
        appointment_id: str,
        title: str,
        amount: float,
        back_urls: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> PaymentIntent:
        """
        Create a checkout preference and record it as a pending payment.

        Raises NotConnectedError / NoRefreshTokenError / TokenRefreshError from the token
        service and ProviderUnavailableError when the provider call fails.
        """
        access_token = await self.tokens.get_valid_access_token(org_id)
        preference = self.build_preference(org_id, appointment_id, title, amount, back_urls)

        response = await self.client.create_preference(
            access_token,
            preference,
            idempotency_key=appointment_id,
            timeout=timeout,
        )

        preference_id = response.get("id")
        checkout_url = response.get("init_point")
        if not preference_id or not checkout_url:
            raise ProviderUnavailableError("Preference response lacks id or init_point")

        # One open checkout per appointment: a repeated request reuses the unclaimed row
        pending = self.repo.get_unclaimed_mp_payment_for_appointment(self.db, appointment_id)
        if pending:
            self.repo.update_mp_payment(
                self.db,
                pending,
                mp_preference_id=str(preference_id),
                status=PaymentStatus.PENDING.value,
                amount=float(amount),
                raw={"preference": response},
            )
        else:
            self.repo.add_mp_payment(
                self.db,
                org_id=org_id,
                appointment_id=appointment_id,
                mp_preference_id=str(preference_id),
                status=PaymentStatus.PENDING.value,
                amount=float(amount),
                currency=self.settings.mp_currency,
                raw={"preference": response},
            )

        logger.info(f"💳 Preference {preference_id} created for appointment {appointment_id} (org {org_id})")
        return PaymentIntent(
            checkout_url=checkout_url,
            preference_id=str(preference_id),
            sandbox_url=response.get("sandbox_init_point"),
        )
