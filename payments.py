"""
Payment gateway adapter

Thin wrapper over the Stripe SDK: create and retrieve payment intents, and
verify webhook signatures. Credentials come from Settings; the module never
touches stripe.api_key globally.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from config import Settings
from errors import SignatureVerificationError

logger = logging.getLogger("koseli.payments")

# seconds a signed webhook timestamp stays valid
WEBHOOK_TOLERANCE = 300


@dataclass
class PaymentIntent:
    id: str
    status: str
    client_secret: Optional[str] = None
    amount: Optional[int] = None
    charge_id: Optional[str] = None


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def _charge_id(intent) -> Optional[str]:
    charge = getattr(intent, "latest_charge", None)
    if charge is None or isinstance(charge, str):
        return charge
    return getattr(charge, "id", None)


class StripeGateway:
    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str], currency: str = "usd"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(settings.stripe_secret_key, settings.stripe_webhook_secret, settings.stripe_currency)

    @staticmethod
    def _wrap(intent) -> PaymentIntent:
        return PaymentIntent(
            id=intent.id,
            status=intent.status,
            client_secret=getattr(intent, "client_secret", None),
            amount=getattr(intent, "amount", None),
            charge_id=_charge_id(intent),
        )

    def create_intent(self, amount: int, metadata: Optional[dict] = None) -> PaymentIntent:
        """Create a payment intent for ``amount`` minor units."""
        intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=self.currency,
            metadata=metadata or {},
            api_key=self.secret_key,
        )
        logger.info("Created payment intent %s for %d %s", intent.id, amount, self.currency)
        return self._wrap(intent)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        return self._wrap(stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key))

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify a webhook delivery and return the decoded event.

        Fails closed: a missing secret, a missing header, a bad signature or
        an undecodable body all raise SignatureVerificationError.
        """
        if not self.webhook_secret:
            raise SignatureVerificationError("webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("missing Stripe-Signature header")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, WEBHOOK_TOLERANCE)
            return json.loads(text)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise SignatureVerificationError(str(exc)) from exc
        except (UnicodeDecodeError, ValueError) as exc:
            logger.warning("Webhook payload could not be decoded: %s", exc)
            raise SignatureVerificationError("invalid payload") from exc
