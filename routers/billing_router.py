"""
Billing Router - API endpoints for Stripe billing integration
Webhook is defined FIRST to avoid middleware conflicts
"""

import json
import logging
from fastapi import APIRouter, Request, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
import stripe

from auth import get_current_user
from backend.utils.responses import success_response, error_response
from config.settings import settings, PURCHASE_CREDITS
from crud.user import UserRepository
from database import get_db
from services.billing_service import BillingService
from services.entitlement_service import EntitlementService
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

billing_router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    purchase: str = Field(default=PURCHASE_CREDITS, description="credits, subscription or lifetime")


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Handle Stripe webhook events with signature verification.

    Only verified events are processed. A processing failure returns 500 so
    Stripe redelivers; redelivery is safe because events are applied once per id.
    """
    webhook_secret = settings.stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
        return JSONResponse(
            status_code=500,
            content={"ok": False, "received": False, "error": "Webhook secret not configured"}
        )

    # Raw body is required for signature verification
    payload = (await request.body()).decode("utf-8")

    stripe_signature = request.headers.get("stripe-signature")
    if not stripe_signature:
        logger.error("Missing Stripe-Signature header")
        return JSONResponse(
            status_code=400,
            content={"ok": False, "received": False, "error": "Missing signature header"}
        )

    try:
        stripe.WebhookSignature.verify_header(payload, stripe_signature, webhook_secret)
        event = json.loads(payload)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Stripe webhook signature verification failed: {e}")
        return JSONResponse(
            status_code=400,
            content={"ok": False, "received": False, "error": "Invalid webhook signature"}
        )
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        return JSONResponse(
            status_code=400,
            content={"ok": False, "received": False, "error": "Invalid payload format"}
        )

    result = await BillingService(db).process_webhook(event)
    if result.get("is_error"):
        return JSONResponse(
            status_code=500,
            content={"ok": False, "received": True, "error": result.get("error")}
        )

    return JSONResponse(
        status_code=200,
        content={
            "ok": True,
            "received": True,
            "event_type": event.get("type"),
            "duplicate": result["data"]["duplicate"],
        }
    )


async def _load_user(db: AsyncSession, current_user: dict):
    user = await UserRepository(db).get_user_by_id(current_user["user_id"])
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@billing_router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Start a Stripe Checkout for credits, a subscription or lifetime access"""
    user = await _load_user(db, current_user)
    result = await BillingService(db).create_checkout_session(user, request.purchase)
    if result.get("is_error"):
        log_endpoint_event("/api/billing/checkout", user.id, "error", {"purchase": request.purchase})
        return error_response("billing-error", message=result.get("error", "Unknown error"))
    log_endpoint_event("/api/billing/checkout", user.id, "success", {"purchase": request.purchase})
    return success_response({"url": result["data"]})


@billing_router.post("/portal")
async def create_billing_portal_session(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Open the Stripe Billing Portal for the current user"""
    user = await _load_user(db, current_user)
    result = await BillingService(db).create_billing_portal_session(user)
    if result.get("is_error"):
        return error_response("billing-error", message=result.get("error", "Unknown error"))
    return success_response({"url": result["data"]})


@billing_router.post("/subscription/cancel")
async def cancel_subscription(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Cancel the subscription at the end of the current period"""
    user = await _load_user(db, current_user)
    result = await BillingService(db).set_cancel_at_period_end(user, True)
    if result.get("is_error"):
        return error_response("billing-error", message=result.get("error", "Unknown error"))
    log_endpoint_event("/api/billing/subscription/cancel", user.id, "success")
    return success_response({"status": result["data"], "cancel_at_period_end": True})


@billing_router.post("/subscription/reactivate")
async def reactivate_subscription(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Undo a pending cancellation"""
    user = await _load_user(db, current_user)
    result = await BillingService(db).set_cancel_at_period_end(user, False)
    if result.get("is_error"):
        return error_response("billing-error", message=result.get("error", "Unknown error"))
    log_endpoint_event("/api/billing/subscription/reactivate", user.id, "success")
    return success_response({"status": result["data"], "cancel_at_period_end": False})


@billing_router.get("/status")
async def billing_status(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Current entitlement: what the next chat message would be allowed through"""
    user = await _load_user(db, current_user)
    return success_response(await EntitlementService(db).describe(user))
