"""
Payment Link Routes
Owners issue and revoke booking links; the public config endpoint renders a link's landing page
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import OwnerContext, get_current_owner, require_org_access
from ..config import Settings, get_settings
from ..database import get_db
from ..domain.payments.repository import PaymentsRepository
from ..domain.payments.schemas import (
    CreatePaymentLinkRequest,
    OrganizationSummary,
    PaymentLinkConfigResponse,
    PaymentLinkResponse,
    SalonSummary,
    SuccessResponse,
)
from ..exceptions import LinkExpiredError, LinkNotFoundError
from ..rate_limiter import create_rate_limiter
from ..services.payment_link_service import PaymentLinkService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment-links", tags=["Payment Links"])

public_rate_limit = create_rate_limiter(key_prefix="payment_link_config")


def get_payment_link_service(
    db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
) -> PaymentLinkService:
    """Dependency injection for PaymentLinkService"""
    return PaymentLinkService(db, settings)


@router.post("", response_model=PaymentLinkResponse)
async def create_payment_link(
    body: CreatePaymentLinkRequest,
    owner: OwnerContext = Depends(get_current_owner),
    service: PaymentLinkService = Depends(get_payment_link_service),
):
    """Issue a booking link; the raw token is only ever returned here"""
    require_org_access(owner, body.org_id)

    salon = PaymentsRepository.get_salon(service.db, body.salon_id)
    if not salon or salon.org_id != body.org_id:
        raise HTTPException(status_code=404, detail="Salon not found")

    issued = service.issue(
        org_id=body.org_id,
        salon_id=body.salon_id,
        title=body.title,
        description=body.description,
        metadata=body.metadata,
        expires_at=body.expires_at,
    )
    return PaymentLinkResponse(
        id=issued.id, token=issued.token, url=issued.url, expires_at=issued.expires_at
    )


@router.get(
    "/config",
    response_model=PaymentLinkConfigResponse,
    dependencies=[Depends(public_rate_limit)],
)
async def get_payment_link_config(
    token: str = Query(...),
    service: PaymentLinkService = Depends(get_payment_link_service),
):
    """Public: resolve a booking token to the link's display configuration"""
    try:
        link = service.validate(token)
    except LinkNotFoundError:
        raise HTTPException(status_code=404, detail="Payment link not found or inactive") from None
    except LinkExpiredError:
        raise HTTPException(status_code=410, detail="Payment link expired") from None

    salon = PaymentsRepository.get_salon(service.db, link.salon_id)
    organization = PaymentsRepository.get_organization(service.db, link.org_id)

    return PaymentLinkConfigResponse(
        id=link.id,
        org_id=link.org_id,
        salon_id=link.salon_id,
        title=link.title,
        description=link.description,
        metadata=link.link_metadata or {},
        salon=SalonSummary(id=salon.id, name=salon.name, address=salon.address, phone=salon.phone)
        if salon
        else None,
        organization=OrganizationSummary(id=organization.id, name=organization.name)
        if organization
        else None,
    )


@router.post("/{link_id}/deactivate", response_model=SuccessResponse)
async def deactivate_payment_link(
    link_id: str,
    org_id: str = Query(...),
    owner: OwnerContext = Depends(get_current_owner),
    service: PaymentLinkService = Depends(get_payment_link_service),
):
    require_org_access(owner, org_id)
    if not service.deactivate(link_id, org_id):
        raise HTTPException(status_code=404, detail="Payment link not found")
    return SuccessResponse(success=True)
