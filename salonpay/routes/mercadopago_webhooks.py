"""
Mercado Pago Webhook Handler
Verifies, stores and acknowledges notifications; reconciliation runs after the response
"""

import logging
from typing import Optional

from arq.connections import ArqRedis
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings, get_settings
from ..database import get_db, get_session_factory
from ..security_utils import log_security_event
from ..services.mercadopago_client import MercadoPagoClient, get_mercadopago_client
from ..services.webhook_reconciler import WebhookReconciler, process_stored_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

PROCESS_EVENT_TASK = "process_webhook_event_task"


def get_task_queue(request: Request) -> Optional[ArqRedis]:
    """ARQ pool opened by the app lifespan, None when Redis is not configured"""
    return getattr(request.app.state, "arq_pool", None)


@router.post("/mercadopago")
async def handle_mercadopago_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    session_factory: sessionmaker = Depends(get_session_factory),
    queue: Optional[ArqRedis] = Depends(get_task_queue),
):
    """
    Handle Mercado Pago payment notifications

    - 401 when a webhook secret is configured and the signature does not verify
    - 200 otherwise, including for bodies that cannot be parsed or processed
    """
    body = await request.body()
    signature = request.headers.get("x-signature")

    reconciler = WebhookReconciler(db, settings, client)
    if not reconciler.verify(signature, body):
        log_security_event(
            "webhook_rejected",
            ip_address=request.client.host if request.client else None,
            details={"provider": "mercadopago", "request_id": request.headers.get("x-request-id")},
        )
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = reconciler.record_event(body)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Could not store Mercado Pago webhook: {e}", exc_info=True)
        return {"received": True}

    if queue is not None:
        try:
            await queue.enqueue_job(PROCESS_EVENT_TASK, event.id)
            logger.info(f"📬 Webhook event {event.id} queued for the worker")
            return {"received": True}
        except (OSError, RedisError) as e:
            logger.warning(f"⚠️ Could not queue webhook event {event.id}, processing in-process: {e}")

    background_tasks.add_task(process_stored_webhook_event, session_factory, event.id, settings, client)
    return {"received": True}
