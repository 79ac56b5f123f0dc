"""
Stripe Checkout gateway adapter

Creates hosted Checkout Sessions through an explicitly configured
`stripe.StripeClient` (no module-level api_key).

PAYMENT SAFETY:
- Session creation is never retried: the client runs with
  max_network_retries=0 and callers must not loop on failure
- The checkout attempt id is sent as the idempotency key, so a duplicate
  submit of the same attempt cannot produce a second session
- Every Stripe error becomes GatewaySessionFailedError (P0)
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import stripe

from checkout_engine.core.exceptions import GatewaySessionFailedError, OrderTotalTooLowError

logger = logging.getLogger(__name__)

STRIPE_MINIMUM_CHARGE_CENTS = 50


@dataclass
class GatewayLineItem:
    name: str
    unit_amount_cents: int
    quantity: int = 1
    description: Optional[str] = None

    @property
    def total_cents(self) -> int:
        return self.unit_amount_cents * self.quantity

    def to_stripe(self, currency: str) -> Dict[str, Any]:
        product_data: Dict[str, Any] = {"name": self.name}
        if self.description:
            product_data["description"] = self.description
        return {
            "price_data": {
                "currency": currency,
                "product_data": product_data,
                "unit_amount": self.unit_amount_cents,
            },
            "quantity": self.quantity,
        }


@dataclass
class GatewaySession:
    session_id: str
    url: str


class StripePaymentGateway:
    """
    Thin wrapper around `checkout.sessions.create`.

    Args:
        api_key: Stripe secret key
        currency: ISO currency for every line item
        timeout: request timeout in seconds
        client: preconfigured StripeClient (tests inject a fake)
    """

    def __init__(
        self,
        api_key: str = "",
        currency: str = "eur",
        timeout: float = 20.0,
        minimum_charge_cents: int = STRIPE_MINIMUM_CHARGE_CENTS,
        client: Optional[Any] = None,
    ):
        self.currency = currency
        self.minimum_charge_cents = minimum_charge_cents
        self._client = client
        if self._client is None and api_key:
            self._client = stripe.StripeClient(
                api_key,
                max_network_retries=0,
                http_client=stripe.RequestsClient(timeout=timeout),
            )

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def create_checkout_session(
        self,
        line_items: List[GatewayLineItem],
        metadata: Dict[str, str],
        payment_method_types: List[str],
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        idempotency_key: str,
        customer_email: Optional[str] = None,
    ) -> GatewaySession:
        """
        Create a hosted checkout session. Called exactly once per attempt.

        Raises:
            OrderTotalTooLowError: total below the Stripe minimum charge
            GatewaySessionFailedError: Stripe not configured or request failed
        """
        total_cents = sum(item.total_cents for item in line_items)
        if total_cents < self.minimum_charge_cents:
            raise OrderTotalTooLowError(total_cents, self.minimum_charge_cents)

        if not self.configured:
            raise GatewaySessionFailedError(
                "Stripe not configured",
                payment_session_id=client_reference_id,
            )

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [item.to_stripe(self.currency) for item in line_items],
            "payment_method_types": payment_method_types,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": client_reference_id,
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(
                self._client.checkout.sessions.create,
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            logger.error(
                f"Stripe session creation failed for {client_reference_id}: "
                f"{type(e).__name__} code={getattr(e, 'code', None)}"
            )
            raise GatewaySessionFailedError(
                getattr(e, "user_message", None) or "Payment session could not be created",
                payment_session_id=client_reference_id,
                gateway_error_code=getattr(e, "code", None),
            ) from e

        if not session.url:
            raise GatewaySessionFailedError(
                "Payment session has no redirect URL",
                payment_session_id=client_reference_id,
            )

        return GatewaySession(session_id=session.id, url=session.url)
