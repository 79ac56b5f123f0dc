"""
Stock Reservation Manager

SAFE RESERVATION FLOW (one transaction per checkout attempt):
1. Lock the cart's product rows with FOR UPDATE, in id order
2. Sum active reservations (PENDING and expires_at > now) per product
3. Collect every line whose request exceeds ceiling - reserved
4. Any violation: rollback, nothing written
5. Otherwise insert PENDING reservations and commit

Stock is never decremented. A reservation stops counting the moment it
expires, so accounting never depends on the cleanup job having run.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_engine.core.exceptions import ProductNotFoundError
from checkout_engine.models import Product, StockReservation, ReservationStatus, RESERVATION_TTL_MINUTES
from checkout_engine.services.cart import CartLine

logger = logging.getLogger(__name__)


@dataclass
class ReservationResult:
    """Outcome of a check-and-reserve attempt."""
    success: bool
    payment_session_id: str
    reservations: List[StockReservation] = field(default_factory=list)
    insufficient_stock: List[Dict[str, Any]] = field(default_factory=list)
    expires_at: Optional[datetime] = None


def lock_products_query(product_ids: List[str]):
    # Stable lock order so two carts sharing products cannot deadlock
    return (
        select(Product)
        .where(Product.id.in_(product_ids))
        .order_by(Product.id)
        .with_for_update()
    )


def reserved_quantity_query(product_ids: List[str], now: datetime):
    return (
        select(StockReservation.product_id, func.coalesce(func.sum(StockReservation.quantity), 0))
        .where(
            StockReservation.product_id.in_(product_ids),
            StockReservation.status == ReservationStatus.PENDING,
            StockReservation.expires_at > now,
        )
        .group_by(StockReservation.product_id)
    )


def aggregate_quantities(cart_lines: List[CartLine]) -> Dict[str, int]:
    """Requested quantity per product, in first-seen order."""
    requested: Dict[str, int] = {}
    for line in cart_lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
    return requested


def find_stock_violations(
    requested: Dict[str, int],
    products: Dict[str, Product],
    reserved: Dict[str, int],
) -> List[Dict[str, Any]]:
    """Every product whose request cannot be met. Unlimited products never violate."""
    violations = []
    for product_id, quantity in requested.items():
        product = products[product_id]
        ceiling = product.stock_ceiling
        if ceiling is None:
            continue

        available = ceiling - reserved.get(product_id, 0)
        if available <= 0 or quantity > available:
            violations.append({
                "product_id": product_id,
                "requested": quantity,
                "available": max(available, 0),
                "title": product.title,
            })
    return violations


class StockReservationManager:
    """
    Owns the stock_reservations table for checkout attempts.

    Usage:
        manager = StockReservationManager(session_factory)
        result = await manager.check_and_reserve(lines, payment_session_id)
        if not result.success:
            ...  # result.insufficient_stock lists every violating line
    """

    def __init__(self, session_factory: async_sessionmaker, ttl_minutes: int = RESERVATION_TTL_MINUTES):
        self.session_factory = session_factory
        self.ttl_minutes = ttl_minutes

    async def _lock_products(self, db: AsyncSession, product_ids: List[str]) -> Dict[str, Product]:
        result = await db.execute(lock_products_query(product_ids))
        return {p.id: p for p in result.scalars().all()}

    async def _reserved_quantities(
        self, db: AsyncSession, product_ids: List[str], now: datetime
    ) -> Dict[str, int]:
        if not product_ids:
            return {}
        result = await db.execute(reserved_quantity_query(product_ids, now))
        return {product_id: int(total) for product_id, total in result.all()}

    async def check_and_reserve(
        self,
        cart_lines: List[CartLine],
        payment_session_id: str,
        now: Optional[datetime] = None,
    ) -> ReservationResult:
        """
        Check availability for the whole cart and reserve it atomically.

        Raises:
            ProductNotFoundError: a cart product does not exist
        """
        now = now or datetime.now(timezone.utc)
        requested = aggregate_quantities(cart_lines)
        product_ids = list(requested.keys())

        async with self.session_factory() as db:
            try:
                products = await self._lock_products(db, product_ids)

                missing = [pid for pid in product_ids if pid not in products]
                if missing:
                    raise ProductNotFoundError(missing)

                finite_ids = [pid for pid in product_ids if products[pid].stock_ceiling is not None]
                reserved = await self._reserved_quantities(db, finite_ids, now)

                violations = find_stock_violations(requested, products, reserved)
                if violations:
                    await db.rollback()
                    logger.warning(
                        f"Insufficient stock for {payment_session_id}: "
                        f"{[v['product_id'] for v in violations]}"
                    )
                    return ReservationResult(
                        success=False,
                        payment_session_id=payment_session_id,
                        insufficient_stock=violations,
                    )

                expires_at = StockReservation.create_expiry(self.ttl_minutes, now)
                reservations = [
                    StockReservation(
                        product_id=line.product_id,
                        payment_session_id=payment_session_id,
                        quantity=line.quantity,
                        status=ReservationStatus.PENDING,
                        expires_at=expires_at,
                    )
                    for line in cart_lines
                    if products[line.product_id].stock_ceiling is not None
                ]
                db.add_all(reservations)
                await db.commit()
            except ProductNotFoundError:
                await db.rollback()
                raise
            except Exception:
                logger.error(f"Stock reservation failed for {payment_session_id}", exc_info=True)
                await db.rollback()
                raise

        logger.info(
            f"Reserved {len(reservations)} lines for {payment_session_id} "
            f"until {expires_at.isoformat()}"
        )
        return ReservationResult(
            success=True,
            payment_session_id=payment_session_id,
            reservations=reservations,
            expires_at=expires_at,
        )

    async def _transition(self, payment_session_id: str, status: ReservationStatus) -> int:
        async with self.session_factory() as db:
            try:
                result = await db.execute(
                    update(StockReservation)
                    .where(
                        StockReservation.payment_session_id == payment_session_id,
                        StockReservation.status == ReservationStatus.PENDING,
                    )
                    .values(status=status)
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return result.rowcount or 0

    async def cancel_reservations(self, payment_session_id: str) -> int:
        """Mark an attempt's PENDING reservations CANCELLED. Returns rows changed."""
        count = await self._transition(payment_session_id, ReservationStatus.CANCELLED)
        logger.info(f"Cancelled {count} reservations for {payment_session_id}")
        return count

    async def confirm_reservations(self, payment_session_id: str) -> int:
        """Mark an attempt's PENDING reservations CONFIRMED (payment succeeded)."""
        count = await self._transition(payment_session_id, ReservationStatus.CONFIRMED)
        logger.info(f"Confirmed {count} reservations for {payment_session_id}")
        return count

    async def get_reserved_quantity(self, product_id: str, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            reserved = await self._reserved_quantities(db, [product_id], now)
        return reserved.get(product_id, 0)
