"""
Payment Link Service
Issues anonymous booking links and validates them on every public call
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..domain.payments.repository import PaymentsRepository
from ..exceptions import LinkExpiredError, LinkNotFoundError, LinkScopeError
from ..models_mercadopago import PaymentLink
from ..security_utils import generate_secure_token, hash_token, log_security_event
from ..utils.datetime_utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LINK_TITLE = "Reserva tu turno"
TOKEN_BYTES = 32


@dataclass
class IssuedLink:
    """The only place the raw token exists; it is never persisted"""

    id: str
    token: str
    url: str
    expires_at: datetime


class PaymentLinkService:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.repo = PaymentsRepository

    def issue(
        self,
        org_id: str,
        salon_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
        ttl: Optional[timedelta] = None,
    ) -> IssuedLink:
        token = generate_secure_token(TOKEN_BYTES)

        if expires_at is None:
            expires_at = utcnow() + (ttl or timedelta(days=self.settings.payment_link_ttl_days))
        expires_at = to_naive_utc(expires_at)

        link = self.repo.create_payment_link(
            self.db,
            org_id=org_id,
            salon_id=salon_id,
            token_hash=hash_token(token),
            title=title or DEFAULT_LINK_TITLE,
            description=description,
            link_metadata=metadata or {},
            expires_at=expires_at,
            active=True,
        )

        logger.info(f"🔗 Payment link {link.id} issued for org {org_id}, salon {salon_id}")
        return IssuedLink(
            id=link.id,
            token=token,
            url=f"{self.settings.frontend_url}/book/{token}",
            expires_at=link.expires_at,
        )

    def validate(self, token: str, salon_id: Optional[str] = None) -> PaymentLink:
        """
        Resolve a raw token to its active, unexpired link.

        All failures are InvalidTokenError subclasses and render identically to the caller;
        only the log line says which check failed.
        """
        if not token:
            raise LinkNotFoundError("Empty booking token")

        link = self.repo.get_payment_link_by_hash(self.db, hash_token(token))
        if not link or not link.active:
            log_security_event("link_rejected", details={"reason": "not_found_or_inactive"})
            raise LinkNotFoundError("Payment link not found or inactive")

        if link.expires_at < utcnow():
            log_security_event("link_rejected", org_id=link.org_id, details={"reason": "expired", "link_id": link.id})
            raise LinkExpiredError(f"Payment link {link.id} expired")

        if salon_id is not None and link.salon_id != salon_id:
            log_security_event(
                "link_rejected",
                org_id=link.org_id,
                details={"reason": "salon_mismatch", "link_id": link.id},
            )
            raise LinkScopeError(f"Payment link {link.id} is not valid for salon {salon_id}")

        return link

    def deactivate(self, link_id: str, org_id: str) -> bool:
        link = self.repo.get_payment_link(self.db, link_id, org_id)
        if not link:
            return False
        self.repo.deactivate_payment_link(self.db, link)
        logger.info(f"🔒 Payment link {link_id} deactivated for org {org_id}")
        return True
