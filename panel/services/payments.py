import logging
from dataclasses import dataclass

import stripe
from sqlalchemy.orm import Session

from panel.core.config import get_settings
from panel.repositories import wallets as wallet_repo

settings = get_settings()
logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass
class ChargeResult:
    succeeded: bool
    payment_id: str | None = None
    status: str | None = None
    message: str | None = None


class StripeGateway:
    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or settings.stripe_secret_key

    def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        *,
        idempotency_key: str | None = None,
        metadata: dict | None = None,
        description: str = "Auto top-up",
    ) -> ChargeResult:
        """Off-session charge of a saved card. Declines come back as a result, not an exception."""
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.CardError as exc:
            logger.info("Stripe declined charge for customer %s: %s", customer_id, exc.user_message or exc)
            intent_id = None
            error = getattr(exc, "error", None)
            payment_intent = getattr(error, "payment_intent", None) if error else None
            if payment_intent:
                intent_id = payment_intent.get("id") if isinstance(payment_intent, dict) else getattr(payment_intent, "id", None)
            return ChargeResult(False, payment_id=intent_id, status="declined", message=exc.user_message or str(exc))
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Stripe charge failed: {exc}", code=getattr(exc, "code", None)) from exc

        status = intent.status
        return ChargeResult(status == "succeeded", payment_id=intent.id, status=status)

    def delete_customer(self, customer_id: str) -> bool:
        """Delete a Stripe customer (detaching its payment methods). False if it was already gone."""
        try:
            stripe.Customer.delete(customer_id, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                logger.info("Stripe customer %s already deleted", customer_id)
                return False
            raise PaymentGatewayError(f"Stripe customer delete failed: {exc}", code=exc.code) from exc
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Stripe customer delete failed: {exc}", code=getattr(exc, "code", None)) from exc
        logger.info("Deleted Stripe customer %s", customer_id)
        return True


def verify_webhook(body: bytes, signature: str) -> None:
    """Raises PaymentGatewayError unless the payload carries a valid Stripe signature."""
    secret = settings.stripe_webhook_secret
    if not secret:
        raise PaymentGatewayError("Stripe webhook secret is not configured")
    try:
        stripe.Webhook.construct_event(body, signature, secret)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        raise PaymentGatewayError(f"Webhook signature verification failed: {exc}") from exc


def handle_payment_event(db: Session, event: dict) -> str | None:
    """Credit a wallet for a completed top-up checkout.

    Returns the credited owner id, or None when the event is ignored. Replays
    of the same event id do not credit twice. The caller commits.
    """
    event_type = event.get("type")
    event_id = event.get("id")
    if event_type != "checkout.session.completed":
        logger.info("Ignoring Stripe event %s (%s)", event_id, event_type)
        return None

    session = (event.get("data") or {}).get("object") or {}
    metadata = session.get("metadata") or {}
    if session.get("payment_status") != "paid":
        logger.info("Skipping non-paid checkout %s: payment_status=%s", session.get("id"), session.get("payment_status"))
        return None
    if metadata.get("type") != "wallet_topup":
        logger.info("Non-topup checkout completed: type=%s", metadata.get("type"))
        return None

    owner_id = metadata.get("owner_id") or metadata.get("auth0UserId")
    wallet = wallet_repo.get_wallet_for_update(db, owner_id) if owner_id else None
    if not wallet or wallet.is_deleted:
        logger.warning("No active wallet for top-up event %s owner=%s", event_id, owner_id)
        return None
    if not wallet.payment_customer_id or wallet.payment_customer_id != session.get("customer"):
        logger.warning(
            "Customer mismatch on event %s: wallet=%s session=%s. Rejecting credit.",
            event_id,
            wallet.payment_customer_id,
            session.get("customer"),
        )
        return None
    if str(session.get("currency") or "").lower() != settings.currency.lower():
        logger.warning("Currency mismatch on event %s: expected=%s received=%s", event_id, settings.currency, session.get("currency"))
        return None

    amount = session.get("amount_total")
    if not isinstance(amount, int) or amount < settings.topup_min_amount or amount > settings.topup_max_amount:
        logger.warning("Top-up amount outside accepted range on event %s: %s", event_id, amount)
        return None

    _, applied = wallet_repo.credit_wallet(
        db,
        wallet,
        amount,
        description="Wallet top-up",
        external_event_id=event_id,
        meta={
            "payment_intent": session.get("payment_intent"),
            "checkout_session": session.get("id"),
        },
    )
    if applied:
        logger.info("Wallet credited: owner=%s amount=%s balance=%s", owner_id, amount, wallet.balance)
    return owner_id
