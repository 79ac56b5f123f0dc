"""
Stock Reservation Cleanup Service

Housekeeping only. Availability checks already ignore expired PENDING rows,
so this job never affects stock accounting; it just keeps the table small.

Each run:
1. Marks PENDING rows past their expiry as EXPIRED
2. Deletes EXPIRED and CANCELLED rows whose expiry is older than the grace period

CONFIRMED rows are never touched.
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from sqlalchemy import select, delete, update, func, and_
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkout_engine.models import StockReservation, ReservationStatus

logger = logging.getLogger(__name__)


async def release_expired_reservations(
    session_factory: async_sessionmaker,
    grace_minutes: int = 60,
    now: Optional[datetime] = None,
) -> dict:
    """
    Expire and purge stale reservations.

    Returns:
        dict with counts of expired and deleted reservations
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=grace_minutes)
    stats = {
        "reservations_expired": 0,
        "reservations_deleted": 0,
        "errors": 0,
    }

    async with session_factory() as db:
        try:
            async with db.begin():
                expired = await db.execute(
                    update(StockReservation)
                    .where(
                        StockReservation.status == ReservationStatus.PENDING,
                        StockReservation.expires_at <= now,
                    )
                    .values(status=ReservationStatus.EXPIRED)
                )
                deleted = await db.execute(
                    delete(StockReservation).where(
                        StockReservation.status.in_([ReservationStatus.EXPIRED, ReservationStatus.CANCELLED]),
                        StockReservation.expires_at < cutoff,
                    )
                )

            stats["reservations_expired"] = expired.rowcount or 0
            stats["reservations_deleted"] = deleted.rowcount or 0

            if stats["reservations_expired"] or stats["reservations_deleted"]:
                logger.info(
                    f"Expired {stats['reservations_expired']} reservations, "
                    f"deleted {stats['reservations_deleted']} older than {grace_minutes}min"
                )
            else:
                logger.debug("No expired reservations to clean up")

        except Exception as e:
            logger.error(f"Error in stock reservation cleanup: {e}", exc_info=True)
            stats["errors"] += 1

    return stats


async def get_reservation_stats(session_factory: async_sessionmaker, now: Optional[datetime] = None) -> dict:
    """
    Get current reservation statistics for monitoring.
    """
    now = now or datetime.now(timezone.utc)
    soon = now + timedelta(minutes=5)
    pending = StockReservation.status == ReservationStatus.PENDING

    async with session_factory() as db:
        stmt = select(
            func.count(StockReservation.id),
            func.count(StockReservation.id).filter(and_(pending, StockReservation.expires_at > now)),
            func.coalesce(
                func.sum(StockReservation.quantity).filter(and_(pending, StockReservation.expires_at > now)), 0
            ),
            func.count(StockReservation.id).filter(and_(pending, StockReservation.expires_at <= now)),
            func.count(StockReservation.id).filter(
                and_(pending, StockReservation.expires_at > now, StockReservation.expires_at <= soon)
            ),
            func.count(StockReservation.id).filter(StockReservation.status == ReservationStatus.CONFIRMED),
            func.count(StockReservation.id).filter(StockReservation.status == ReservationStatus.CANCELLED),
        )

        total, active, active_quantity, expired, expiring, confirmed, cancelled = (await db.execute(stmt)).one()

    return {
        "total_reservations": int(total or 0),
        "active_reservations": int(active or 0),
        "active_reserved_quantity": int(active_quantity or 0),
        "expired_pending_reservations": int(expired or 0),
        "expiring_within_5min": int(expiring or 0),
        "confirmed_reservations": int(confirmed or 0),
        "cancelled_reservations": int(cancelled or 0),
    }
