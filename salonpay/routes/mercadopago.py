"""
Mercado Pago Integration Routes
OAuth connect/callback, connection status, disconnect and preference creation
"""

import logging
import secrets
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth import OwnerContext, get_current_owner, require_org_access
from ..config import Settings, get_settings
from ..database import get_db
from ..domain.payments.repository import PaymentsRepository
from ..domain.payments.schemas import (
    ConnectionStatusResponse,
    ConnectResponse,
    CreatePreferenceRequest,
    DisconnectRequest,
    PreferenceResponse,
    SuccessResponse,
)
from ..exceptions import ProviderUnavailableError, SalonPayError
from ..security_utils import generate_timed_token, log_security_event, verify_timed_token
from ..services.mercadopago_client import MercadoPagoClient, get_mercadopago_client
from ..services.preference_service import PreferenceService
from ..services.token_service import TokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mercadopago", tags=["Mercado Pago"])

OAUTH_STATE_MAX_AGE = 600  # 10 minutes


def get_token_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
) -> TokenService:
    """Dependency injection for TokenService"""
    return TokenService(db, settings, client)


def get_preference_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
) -> PreferenceService:
    return PreferenceService(db, settings, client)


def settings_redirect(settings: Settings, error: Optional[str] = None) -> RedirectResponse:
    """Send the owner back to the dashboard settings view with the outcome"""
    suffix = f"mp_error={quote(error, safe='')}" if error else "mp=connected"
    return RedirectResponse(
        url=f"{settings.frontend_url}/dashboard?view=settings&{suffix}",
        status_code=302,
    )


# ============================================================================
# OAUTH
# ============================================================================


@router.get("/oauth/connect", response_model=ConnectResponse)
async def connect(
    org_id: str = Query(...),
    owner: OwnerContext = Depends(get_current_owner),
    settings: Settings = Depends(get_settings),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
):
    """
    Start the Mercado Pago OAuth flow for an organization.
    The state is signed and expires after 10 minutes.
    """
    require_org_access(owner, org_id)

    state = generate_timed_token(
        {"org_id": org_id, "nonce": secrets.token_urlsafe(16)}, settings.secret_key
    )
    oauth_url = client.build_authorization_url(state)

    logger.info(f"🔐 Mercado Pago OAuth initiated for org {org_id} by user {owner.user_id}")
    return ConnectResponse(oauth_url=oauth_url, state=state)


@router.get("/oauth/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    service: TokenService = Depends(get_token_service),
):
    """
    Complete the OAuth flow.
    Always redirects to the dashboard; failures carry an mp_error reason.
    """
    if error:
        logger.warning(f"⚠️ Mercado Pago authorization denied: {error}")
        return settings_redirect(settings, error)

    if not code or not state:
        return settings_redirect(settings, "missing_params")

    if not settings.mp_client_id or not settings.mp_client_secret or not settings.mp_token_key:
        logger.error("❌ Mercado Pago OAuth callback reached without MP credentials configured")
        return settings_redirect(settings, "config_error")

    state_data = verify_timed_token(state, settings.secret_key, max_age=OAUTH_STATE_MAX_AGE)
    if state_data is None:
        log_security_event("oauth_state_rejected")
        return settings_redirect(settings, "invalid_state")

    org_id = state_data.get("org_id")
    if not org_id:
        return settings_redirect(settings, "missing_org")

    try:
        token_data = await service.client.exchange_code(code)
    except ProviderUnavailableError as e:
        logger.error(f"❌ Mercado Pago code exchange failed for org {org_id}: {e}")
        return settings_redirect(settings, "token_exchange_failed")

    if not token_data.get("access_token"):
        return settings_redirect(settings, "missing_tokens")

    try:
        service.store_tokens(org_id, token_data)
    except SQLAlchemyError as e:
        service.db.rollback()
        logger.error(f"❌ Failed to store Mercado Pago credential for org {org_id}: {e}")
        return settings_redirect(settings, "db_error")
    except SalonPayError as e:
        logger.error(f"❌ Mercado Pago connection failed for org {org_id}: {e}")
        return settings_redirect(settings, "internal_error")

    return settings_redirect(settings)


# ============================================================================
# CONNECTION MANAGEMENT
# ============================================================================


@router.get("/status", response_model=ConnectionStatusResponse)
async def get_status(
    org_id: str = Query(...),
    owner: OwnerContext = Depends(get_current_owner),
    service: TokenService = Depends(get_token_service),
):
    """Check if the organization has Mercado Pago connected"""
    require_org_access(owner, org_id)
    return service.get_status(org_id)


@router.post("/disconnect", response_model=SuccessResponse)
async def disconnect(
    body: DisconnectRequest,
    owner: OwnerContext = Depends(get_current_owner),
    service: TokenService = Depends(get_token_service),
):
    require_org_access(owner, body.org_id)
    service.disconnect(body.org_id)
    return SuccessResponse(success=True)


# ============================================================================
# PREFERENCES
# ============================================================================


@router.post("/preferences", response_model=PreferenceResponse)
async def create_preference(
    body: CreatePreferenceRequest,
    owner: OwnerContext = Depends(get_current_owner),
    service: PreferenceService = Depends(get_preference_service),
):
    """Create a checkout preference for an appointment of the organization"""
    require_org_access(owner, body.org_id)

    appointment = PaymentsRepository.get_appointment(service.db, body.appointment_id)
    if not appointment or appointment.org_id != body.org_id:
        raise HTTPException(status_code=404, detail="Appointment not found")

    back_urls = body.back_urls.model_dump(exclude_none=True) if body.back_urls else None
    intent = await service.create_intent(
        org_id=body.org_id,
        appointment_id=body.appointment_id,
        title=body.title,
        amount=body.amount,
        back_urls=back_urls,
    )
    return PreferenceResponse(
        url=intent.checkout_url,
        preference_id=intent.preference_id,
        sandbox_url=intent.sandbox_url,
    )
