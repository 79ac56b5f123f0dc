"""
Checkout Session Builder

Assembles the Stripe line items and the flat metadata map for a priced,
reserved cart, then asks the gateway for a hosted session.

Metadata contract (read back by the payment webhook):
    buyerId, deliveryMode, address, notes, pickupDate, deliveryDate,
    deliveryTime, productsTotalCents, deliveryFeeCents, processorFeeCents,
    amountPaidCents, subtotalCents, notificationRequested ("true"/"false"),
    notificationFeeCents, deliveryFeeBreakdown (JSON), coordinates (JSON),
    paymentSessionId, items_compact_1..N
plus deliveryAvailable/availableDeliverers/estimatedDeliveryTime or
deliveryCheckFailed for delivery modes.
"""
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from checkout_engine.core.config import Settings
from checkout_engine.core.exceptions import CheckoutMetadataTooLargeError, SellersNotPayableError
from checkout_engine.services.cart import CartLine, DeliveryMode
from checkout_engine.services.delivery_availability import FeasibilityResult
from checkout_engine.services.delivery_pricing import DeliveryTier
from checkout_engine.services.distance import Coordinates
from checkout_engine.services.metadata_codec import encode_items_compact, truncate
from checkout_engine.services.payment_gateway import GatewayLineItem, GatewaySession, StripePaymentGateway
from checkout_engine.services.pricing import PricedCart

logger = logging.getLogger(__name__)

STRIPE_METADATA_KEY_MAX_LENGTH = 40


@dataclass
class BuyerDetails:
    buyer_id: str
    address: Optional[str] = None
    notes: Optional[str] = None
    pickup_date: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    notification_requested: bool = False
    customer_email: Optional[str] = None


def format_eur(cents: int) -> str:
    return f"€{Decimal(cents) / 100:.2f}"


class CheckoutSessionBuilder:
    def __init__(self, gateway: StripePaymentGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    def check_sellers_payable(self, sellers: Iterable) -> None:
        """
        Every seller in the cart must be able to receive payouts.

        Raises:
            SellersNotPayableError: naming all sellers without payout setup
        """
        unpayable = [
            {"id": seller.id, "name": seller.name, "email": seller.email}
            for seller in sellers
            if not seller.is_payable
        ]
        if unpayable:
            logger.warning(f"Checkout blocked, sellers not payable: {[s['id'] for s in unpayable]}")
            raise SellersNotPayableError(unpayable)

    def build_line_items(
        self,
        cart_lines: List[CartLine],
        priced_cart: PricedCart,
        address: Optional[str] = None,
        unique_seller_count: int = 1,
    ) -> List[GatewayLineItem]:
        items = [
            GatewayLineItem(
                name=line.title or f"Product {line.product_id}",
                unit_amount_cents=line.unit_price_cents,
                quantity=line.quantity,
            )
            for line in cart_lines
        ]

        breakdown = priced_cart.delivery_fee_breakdown
        if priced_cart.delivery_fee_cents > 0 and breakdown is not None:
            if breakdown.tier == DeliveryTier.DEFAULT:
                description = "Flat delivery fee"
            else:
                description = (
                    f"Base {format_eur(breakdown.base_fee_cents)}, "
                    f"distance {format_eur(breakdown.distance_fee_cents)} ({breakdown.distance_km} km)"
                )
                if breakdown.is_international:
                    description += ", international"
            if address:
                description += f", to {address}"
            items.append(GatewayLineItem(
                name="Delivery fee",
                unit_amount_cents=priced_cart.delivery_fee_cents,
                description=truncate(description, self.settings.METADATA_FIELD_MAX_LENGTH),
            ))

        if priced_cart.notification_fee_cents > 0:
            items.append(GatewayLineItem(
                name="SMS notifications",
                unit_amount_cents=priced_cart.notification_fee_cents,
                description=f"Order updates from {unique_seller_count} seller(s)",
            ))

        if priced_cart.processor_fee_cents > 0:
            items.append(GatewayLineItem(
                name="Payment processing fee",
                unit_amount_cents=priced_cart.processor_fee_cents,
            ))

        return items

    def build_metadata(
        self,
        cart_lines: List[CartLine],
        priced_cart: PricedCart,
        delivery_mode: DeliveryMode,
        buyer: BuyerDetails,
        payment_session_id: str,
        feasibility: Optional[FeasibilityResult] = None,
    ) -> Dict[str, str]:
        """
        Raises:
            CheckoutMetadataTooLargeError: the cart does not fit the gateway limits
        """
        max_length = self.settings.METADATA_FIELD_MAX_LENGTH
        breakdown = priced_cart.delivery_fee_breakdown

        metadata = {
            "buyerId": buyer.buyer_id,
            "deliveryMode": delivery_mode.value,
            "address": truncate(buyer.address, max_length),
            "notes": truncate(buyer.notes, max_length),
            "pickupDate": buyer.pickup_date or "",
            "deliveryDate": buyer.delivery_date or "",
            "deliveryTime": buyer.delivery_time or "",
            "productsTotalCents": str(priced_cart.products_total_cents),
            "deliveryFeeCents": str(priced_cart.delivery_fee_cents),
            "processorFeeCents": str(priced_cart.processor_fee_cents),
            "amountPaidCents": str(priced_cart.grand_total_cents),
            "subtotalCents": str(priced_cart.subtotal_cents),
            "notificationRequested": "true" if buyer.notification_requested else "false",
            "notificationFeeCents": str(priced_cart.notification_fee_cents),
            "deliveryFeeBreakdown": json.dumps(breakdown.to_dict(), separators=(",", ":")) if breakdown else "",
            "coordinates": (
                json.dumps(buyer.coordinates.to_dict(), separators=(",", ":")) if buyer.coordinates else ""
            ),
            "paymentSessionId": payment_session_id,
        }
        if feasibility is not None:
            metadata.update(feasibility.to_metadata())

        metadata.update(encode_items_compact(cart_lines, self.settings.METADATA_ITEMS_CHUNK_LENGTH))

        self.validate_metadata(metadata)
        return metadata

    def validate_metadata(self, metadata: Dict[str, str]) -> None:
        max_fields = self.settings.METADATA_MAX_FIELDS
        max_length = self.settings.METADATA_FIELD_MAX_LENGTH

        if len(metadata) > max_fields:
            raise CheckoutMetadataTooLargeError(
                f"Cart needs {len(metadata)} metadata fields, the limit is {max_fields}. "
                f"Split the order into smaller checkouts.",
                details={"fields": len(metadata), "max_fields": max_fields},
            )

        for key, value in metadata.items():
            if len(key) > STRIPE_METADATA_KEY_MAX_LENGTH or len(value) > max_length:
                raise CheckoutMetadataTooLargeError(
                    f"Metadata field {key} exceeds the gateway limits",
                    details={"field": key, "length": len(value), "max_length": max_length},
                )

    async def build_session(
        self,
        cart_lines: List[CartLine],
        priced_cart: PricedCart,
        delivery_mode: DeliveryMode,
        sellers: Iterable,
        buyer: BuyerDetails,
        payment_session_id: str,
        feasibility: Optional[FeasibilityResult] = None,
    ) -> GatewaySession:
        """
        Assemble the session and call the gateway exactly once.

        CheckoutService checks payouts before reserving stock; the check is
        repeated here for callers that use the builder on its own.
        """
        sellers = list(sellers)
        self.check_sellers_payable(sellers)

        line_items = self.build_line_items(
            cart_lines,
            priced_cart,
            address=buyer.address,
            unique_seller_count=len(sellers),
        )
        metadata = self.build_metadata(
            cart_lines,
            priced_cart,
            delivery_mode,
            buyer,
            payment_session_id,
            feasibility=feasibility,
        )

        return await self.gateway.create_checkout_session(
            line_items=line_items,
            metadata=metadata,
            payment_method_types=self.settings.payment_method_types,
            success_url=self.settings.CHECKOUT_SUCCESS_URL,
            cancel_url=self.settings.CHECKOUT_CANCEL_URL,
            client_reference_id=payment_session_id,
            idempotency_key=payment_session_id,
            customer_email=buyer.customer_email,
        )
