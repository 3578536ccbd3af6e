"""
Mercado Pago Token Service
Stores OAuth credentials encrypted and hands out valid access tokens, refreshing on demand
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..domain.payments.repository import PaymentsRepository
from ..exceptions import NoRefreshTokenError, NotConnectedError, TokenRefreshError
from ..models_mercadopago import MercadoPagoCredential
from ..security_utils import mask_sensitive_data
from ..utils.datetime_utils import utcnow
from ..vault import EncryptedSecret, Vault
from .mercadopago_client import MercadoPagoClient

logger = logging.getLogger(__name__)


def compute_expires_at(expires_in: Any) -> Optional[datetime]:
    """now + expires_in seconds; None when the provider omits or garbles it"""
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    return utcnow() + timedelta(seconds=seconds)


class TokenService:
    def __init__(self, db: Session, settings: Settings, client: MercadoPagoClient):
        self.db = db
        self.settings = settings
        self.client = client
        self.repo = PaymentsRepository
        self._vault: Optional[Vault] = None

    @property
    def vault(self) -> Vault:
        if self._vault is None:
            self._vault = Vault(self.settings.mp_token_key)
        return self._vault

    def needs_refresh(self, credential: MercadoPagoCredential) -> bool:
        """True when the access token expires within the skew window or expiry is unknown"""
        if credential.expires_at is None:
            return True
        skew = timedelta(seconds=self.settings.token_refresh_skew_seconds)
        return utcnow() >= credential.expires_at - skew

    def store_tokens(self, org_id: str, token_payload: dict[str, Any]) -> MercadoPagoCredential:
        """Upsert the org's credential from an authorization-code exchange response"""
        access_token = token_payload.get("access_token")
        if not access_token:
            raise ValueError("Token payload has no access_token")

        access = self.vault.encrypt(access_token)
        fields: dict[str, Any] = {
            "access_token_ct": access.ciphertext,
            "access_token_nonce": access.nonce,
            "refresh_token_ct": None,
            "refresh_token_nonce": None,
            "collector_id": str(token_payload["user_id"]) if token_payload.get("user_id") else None,
            "scope": token_payload.get("scope"),
            "expires_at": compute_expires_at(token_payload.get("expires_in")),
        }

        refresh_token = token_payload.get("refresh_token")
        if refresh_token:
            refresh = self.vault.encrypt(refresh_token)
            fields["refresh_token_ct"] = refresh.ciphertext
            fields["refresh_token_nonce"] = refresh.nonce

        credential = self.repo.upsert_credential(self.db, org_id, **fields)
        logger.info(
            f"✅ Mercado Pago connected for org {org_id} "
            f"(collector {credential.collector_id}, refresh token: {bool(refresh_token)})"
        )
        return credential

    def disconnect(self, org_id: str) -> bool:
        deleted = self.repo.delete_credential(self.db, org_id)
        if deleted:
            logger.info(f"🔌 Mercado Pago disconnected for org {org_id}")
        else:
            logger.info(f"Mercado Pago disconnect requested for org {org_id} with no credential")
        return deleted

    def get_status(self, org_id: str) -> dict[str, Any]:
        credential = self.repo.get_credential(self.db, org_id)
        if not credential:
            return {"connected": False, "collector_id": None, "expires_at": None}
        return {
            "connected": True,
            "collector_id": credential.collector_id,
            "expires_at": credential.expires_at,
        }

    async def get_valid_access_token(self, org_id: str) -> str:
        """
        Return a usable access token for the org.

        Raises:
            NotConnectedError: no credential stored
            NoRefreshTokenError: token expired (or expiring) and nothing to refresh with
            TokenRefreshError: provider rejected or failed the refresh
            DecryptionError: stored ciphertext failed authentication
        """
        credential = self.repo.get_credential(self.db, org_id)
        if not credential:
            raise NotConnectedError(f"No Mercado Pago credential for org {org_id}")

        if not self.needs_refresh(credential):
            return self._decrypt_access_token(credential)

        return await self._refresh(org_id)

    async def _refresh(self, org_id: str) -> str:
        # Row lock serializes concurrent refreshes; the loser re-checks and reuses the winner's token
        credential = self.repo.get_credential(self.db, org_id, for_update=True)
        if not credential:
            self.db.rollback()
            raise NotConnectedError(f"No Mercado Pago credential for org {org_id}")

        if not self.needs_refresh(credential):
            access_token = self._decrypt_access_token(credential)
            self.db.commit()
            logger.info(f"🔄 Access token for org {org_id} was refreshed concurrently, reusing it")
            return access_token

        if not credential.has_refresh_token:
            self.db.rollback()
            logger.warning(f"⚠️ Access token for org {org_id} expired and no refresh token is stored")
            raise NoRefreshTokenError(f"No refresh token for org {org_id}")

        try:
            refresh_token = self.vault.decrypt(
                EncryptedSecret(credential.refresh_token_ct, credential.refresh_token_nonce)
            )
            logger.info(f"🔄 Refreshing Mercado Pago token for org {org_id}")
            payload = await self.client.refresh_token(refresh_token)

            new_access_token = payload.get("access_token")
            if not new_access_token:
                raise TokenRefreshError("Refresh response has no access_token")

            access = self.vault.encrypt(new_access_token)
            credential.access_token_ct = access.ciphertext
            credential.access_token_nonce = access.nonce

            new_refresh_token = payload.get("refresh_token")
            if new_refresh_token:
                refresh = self.vault.encrypt(new_refresh_token)
                credential.refresh_token_ct = refresh.ciphertext
                credential.refresh_token_nonce = refresh.nonce

            credential.expires_at = compute_expires_at(payload.get("expires_in"))
            credential.updated_at = utcnow()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"✅ Mercado Pago token refreshed for org {org_id}: {mask_sensitive_data(new_access_token)}"
        )
        return new_access_token

    def _decrypt_access_token(self, credential: MercadoPagoCredential) -> str:
        return self.vault.decrypt(
            EncryptedSecret(credential.access_token_ct, credential.access_token_nonce)
        )
