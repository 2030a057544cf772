# storage/__init__.py
# ============================================================================
# LUGGAGE DEPOSIT BOOKING: STORAGE MODULE
# ============================================================================
# Booking persistence, webhook idempotency and the reconciliation queue
# ============================================================================

from storage.booking_repository import (
    IBookingRepository,
    IIdempotencyStore,
    IReconciliationQueue,
    InMemoryBookingRepository,
    InMemoryIdempotencyStore,
    InMemoryReconciliationQueue,
    PostgresBookingRepository,
)

__all__ = [
    "IBookingRepository",
    "IIdempotencyStore",
    "IReconciliationQueue",
    "InMemoryBookingRepository",
    "InMemoryIdempotencyStore",
    "InMemoryReconciliationQueue",
    "PostgresBookingRepository",
]
