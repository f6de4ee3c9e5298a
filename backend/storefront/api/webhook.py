"""Stripe webhook endpoint"""
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from storefront.core.errors import WebhookVerificationError
from storefront.db.session import get_db
from storefront.services.chat_platform import ChatPlatform, get_chat_platform
from storefront.services.webhook_service import process_webhook

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    platform: ChatPlatform = Depends(get_chat_platform),
):
    """Handle Stripe webhook events

    The body is read as raw bytes; the signature covers the exact payload.
    Signature failures are rejected with 400 and nothing is written.
    Handler failures return 500 so Stripe redelivers the event.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        # Stripe, Discord and DB calls block; keep them off the event loop
        return await run_in_threadpool(process_webhook, payload, sig_header, db, platform)
    except WebhookVerificationError as e:
        return JSONResponse(status_code=400, content={"error": f"Webhook Error: {e.message}"})
    except Exception as e:
        logger.error(f"Webhook handler failed: {e}")
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})
