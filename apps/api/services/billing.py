"""Stripe checkout creation and webhook application onto the credit ledger."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from errors import (
    ExternalServiceError,
    ServiceUnavailableError,
    SignatureVerificationError,
    ValidationError,
)
from models.payment import Payment
from services.credits import CreditLedger, serialize_package

logger = logging.getLogger(__name__)

COMPLETION_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
SESSION_FAILURE_EVENTS = {
    "checkout.session.expired": "expired",
    "checkout.session.async_payment_failed": "failed",
}


def create_stripe_checkout_session(**params: Any) -> Any:
    """Blocking Stripe call; run it through ``_call_stripe``."""
    return stripe.checkout.Session.create(api_key=settings.STRIPE_SECRET_KEY, **params)


async def _call_stripe(func, **params: Any) -> Any:
    timeout = max(float(settings.EXTERNAL_TIMEOUT_SECONDS), 1.0)
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, **params), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ExternalServiceError("stripe", f"timed out after {timeout:.0f}s") from exc
    except stripe.StripeError as exc:
        raise ExternalServiceError("stripe", exc.user_message or str(exc)) from exc


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _event_object(event: Dict[str, Any]) -> Any:
    data = event.get("data")
    return data.get("object") if isinstance(data, dict) else None


class BillingService:
    def __init__(self, db: AsyncSession, ledger: CreditLedger):
        self.db = db
        self.ledger = ledger

    async def create_checkout(
        self,
        user_id: str,
        package_id: str,
        quantity: int = 1,
        *,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Open a Stripe Checkout Session for a package. Grants nothing by itself."""
        max_quantity = max(int(settings.MAX_PURCHASE_QUANTITY), 1)
        if quantity < 1 or quantity > max_quantity:
            raise ValidationError(f"quantity must be between 1 and {max_quantity}", field="quantity")

        package = await self.ledger.get_package(package_id)
        if not package.stripe_price_id:
            raise ValidationError("Package not available for purchase", field="package_id")
        if not settings.STRIPE_SECRET_KEY:
            raise ServiceUnavailableError("Stripe is not configured.")

        credits = int(package.credits) * quantity
        # The payment row id rides on the session and on its PaymentIntent.
        payment_ref = str(uuid.uuid4())
        metadata = {
            "user_id": user_id,
            "package_id": package.id,
            "credits": str(credits),
            "payment_ref": payment_ref,
        }
        base_url = settings.FRONTEND_URL.rstrip("/")
        session = await _call_stripe(
            create_stripe_checkout_session,
            mode="payment",
            line_items=[{"price": package.stripe_price_id, "quantity": quantity}],
            success_url=success_url or f"{base_url}/credits/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url or f"{base_url}/credits",
            client_reference_id=user_id,
            metadata=metadata,
            payment_intent_data={"metadata": dict(metadata)},
        )

        self.db.add(
            Payment(
                id=payment_ref,
                user_id=user_id,
                package_id=package.id,
                stripe_session_id=session.id,
                amount=int(package.price) * quantity,
                credits_purchased=credits,
                status="pending",
            )
        )
        await self.db.commit()
        logger.info("Checkout session %s created for user=%s (%s credits)", session.id, user_id, credits)

        return {
            "session_id": session.id,
            "url": session.url,
            "package": serialize_package(package),
            "quantity": quantity,
            "credits": credits,
        }

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Authenticate a webhook body and return the parsed event."""
        secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
        if not secret:
            logger.error("Rejecting webhook: STRIPE_WEBHOOK_SECRET is not configured")
            raise SignatureVerificationError("Webhook signing secret is not configured.")
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header.")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                secret,
                settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
        except UnicodeDecodeError as exc:
            raise SignatureVerificationError("Webhook payload is not valid UTF-8.") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise SignatureVerificationError() from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload") from exc
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise ValidationError("Invalid webhook payload")
        if not isinstance(_event_object(event), dict):
            raise ValidationError("Invalid webhook payload: data.object must be an object")
        return event

    async def process_event(self, event: Dict[str, Any]) -> str:
        """Apply a verified event. Failures are logged, never raised to the provider."""
        event_type = event.get("type")
        data_object = _event_object(event)
        if not isinstance(data_object, dict):
            data_object = {}
        try:
            if event_type in COMPLETION_EVENTS:
                return await self.apply_checkout_completed(data_object)
            if event_type in SESSION_FAILURE_EVENTS:
                logger.info("Checkout session %s: %s", data_object.get("id"), event_type)
                return await self._mark_payment(
                    stripe_session_id=data_object.get("id"),
                    status=SESSION_FAILURE_EVENTS[event_type],
                )
            if event_type == "payment_intent.payment_failed":
                logger.warning("PaymentIntent failed: %s", data_object.get("id"))
                return await self._mark_payment(
                    payment_intent_id=data_object.get("id"),
                    payment_ref=(data_object.get("metadata") or {}).get("payment_ref"),
                    status="failed",
                )
            logger.info("Unhandled webhook event type: %s", event_type)
            return "ignored"
        except Exception:
            await self.db.rollback()
            logger.exception(
                "Failed to apply webhook event id=%s type=%s object=%s",
                event.get("id"),
                event_type,
                data_object.get("id"),
            )
            return "failed"

    async def apply_checkout_completed(self, session: Dict[str, Any]) -> str:
        """Credit the purchase exactly once per checkout session id."""
        session_id = session.get("id")
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id") or session.get("client_reference_id")
        credits = _int_or_none(metadata.get("credits"))

        if not session_id or not user_id or not credits or credits <= 0:
            logger.error(
                "Checkout session %s missing user_id/credits metadata; skipping credit application",
                session_id,
            )
            return "skipped"
        payment = await self._payment_by_session(session_id)
        if session.get("payment_status") == "unpaid":
            logger.info("Checkout session %s completed but unpaid; waiting for async payment", session_id)
            if payment is not None and payment.status == "pending" and session.get("payment_intent"):
                payment.stripe_payment_intent_id = session["payment_intent"]
                await self.db.commit()
            return "pending"

        if (payment is not None and payment.status == "completed") or await self.ledger.is_payment_applied(session_id):
            logger.info("Duplicate completion for checkout session %s; already applied", session_id)
            return "duplicate"

        try:
            balance = await self.ledger.credit(
                user_id,
                credits,
                f"Purchased {credits} credits",
                payment_id=session_id,
                commit=False,
            )
        except IntegrityError:
            await self.db.rollback()
            logger.info("Checkout session %s credited by a concurrent delivery", session_id)
            return "duplicate"

        if payment is None:
            payment = Payment(user_id=user_id, stripe_session_id=session_id, package_id=metadata.get("package_id"))
            self.db.add(payment)
        payment.status = "completed"
        payment.completed_at = datetime.now(timezone.utc)
        payment.credits_purchased = credits
        payment.amount = _int_or_none(session.get("amount_total")) or payment.amount or 0
        payment.stripe_payment_intent_id = session.get("payment_intent") or payment.stripe_payment_intent_id

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Checkout session %s applied by a concurrent delivery", session_id)
            return "duplicate"

        logger.info("Applied %s purchased credits to user=%s (balance=%s)", credits, user_id, balance)
        return "credited"

    async def _payment_by_session(self, session_id: str) -> Optional[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.stripe_session_id == session_id))
        return result.scalar_one_or_none()

    async def _mark_payment(
        self,
        *,
        status: str,
        stripe_session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        payment_ref: Optional[str] = None,
    ) -> str:
        """Move a not-yet-completed payment to ``status``; completed rows are final."""
        payment: Optional[Payment] = None
        if stripe_session_id:
            payment = await self._payment_by_session(stripe_session_id)
        if payment is None and payment_intent_id:
            result = await self.db.execute(select(Payment).where(Payment.stripe_payment_intent_id == payment_intent_id))
            payment = result.scalar_one_or_none()
        if payment is None and payment_ref:
            payment = await self.db.get(Payment, payment_ref)

        if payment is None or payment.status == "completed":
            return "ignored"
        payment.status = status
        if payment_intent_id and not payment.stripe_payment_intent_id:
            payment.stripe_payment_intent_id = payment_intent_id
        await self.db.commit()
        return status
