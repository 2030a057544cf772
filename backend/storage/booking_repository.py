"""
Booking Storage
===============
Persistence interfaces with in-memory defaults and an asyncpg implementation:

- IBookingRepository: bookings keyed by reference, unique provider session id
- IIdempotencyStore: webhook dedupe keyed by provider session id
- IReconciliationQueue: paid sessions an operator has to look at

Writes are single merge operations (no read-then-write), and a booking that
is paid is never moved back to pending.

pip install asyncpg structlog
"""

import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import asyncpg
import structlog

from schemas.booking_definitions import (
    BagQuantities,
    Booking,
    Customer,
    DateRange,
    IdempotencyRecord,
    PaymentStatus,
    ReconciliationIssue,
)

logger = structlog.get_logger(component="booking_repository")


# =============================================================================
# INTERFACES
# =============================================================================

class IBookingRepository(ABC):
    """Booking repository interface"""

    @abstractmethod
    async def upsert(self, booking: Booking) -> bool:
        """Insert or merge a booking. Returns True when the booking is new."""
        pass

    @abstractmethod
    async def get(self, booking_reference: str) -> Optional[Booking]:
        pass

    @abstractmethod
    async def get_by_session(self, session_id: str) -> Optional[Booking]:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    async def initialize(self) -> None:
        """Open connections / run migrations. No-op by default."""

    async def close(self) -> None:
        pass


class IIdempotencyStore(ABC):
    """Idempotency store interface with per-key locking"""

    @abstractmethod
    async def try_acquire(self, key: str, holder_id: str) -> bool:
        """Attempt to acquire the key. Returns True if acquired."""
        pass

    @abstractmethod
    async def release(self, key: str, holder_id: str) -> bool:
        """Give the key back after a failed run so a redelivery can retry."""
        pass

    @abstractmethod
    async def mark_completed(self, key: str, result: str = "success") -> bool:
        pass

    @abstractmethod
    async def is_completed(self, key: str) -> bool:
        pass

    @abstractmethod
    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        pass


class IReconciliationQueue(ABC):
    """Operator follow-up queue (dead letters for paid sessions)"""

    @abstractmethod
    async def enqueue(self, issue: ReconciliationIssue) -> None:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 100) -> List[ReconciliationIssue]:
        pass

    @abstractmethod
    async def mark_resolved(self, issue_id: str) -> bool:
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, int]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryBookingRepository(IBookingRepository):
    """Lock-guarded in-memory repository"""

    def __init__(self):
        self._bookings: Dict[str, Booking] = {}
        self._by_session: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, booking: Booking) -> bool:
        async with self._lock:
            existing = self._bookings.get(booking.booking_reference)
            stored = existing.merge(booking) if existing else booking
            self._bookings[stored.booking_reference] = stored
            if stored.provider_session_id:
                self._by_session[stored.provider_session_id] = stored.booking_reference
            return existing is None

    async def get(self, booking_reference: str) -> Optional[Booking]:
        async with self._lock:
            return self._bookings.get(booking_reference)

    async def get_by_session(self, session_id: str) -> Optional[Booking]:
        async with self._lock:
            reference = self._by_session.get(session_id)
            return self._bookings.get(reference) if reference else None

    async def count(self) -> int:
        async with self._lock:
            return len(self._bookings)


class InMemoryIdempotencyStore(IIdempotencyStore):
    """
    Process-local idempotency store.

    try_acquire is a compare-and-set under one lock: a key that is completed,
    or being processed by another holder, is refused.
    """

    def __init__(self):
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            existing = self._records.get(key)
            if existing:
                if existing.status == "completed":
                    return False
                if existing.status == "processing" and existing.lock_holder != holder_id:
                    return False
            self._records[key] = IdempotencyRecord(
                key=key,
                status="processing",
                lock_holder=holder_id,
            )
            return True

    async def release(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            record = self._records.get(key)
            if not record or record.status != "processing" or record.lock_holder != holder_id:
                return False
            del self._records[key]
            return True

    async def mark_completed(self, key: str, result: str = "success") -> bool:
        async with self._lock:
            record = self._records.get(key)
            if not record:
                return False
            self._records[key] = record.model_copy(update={
                "status": "completed",
                "result": result,
                "lock_holder": None,
            })
            return True

    async def is_completed(self, key: str) -> bool:
        async with self._lock:
            record = self._records.get(key)
            return record is not None and record.status == "completed"

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        async with self._lock:
            return self._records.get(key)


class InMemoryReconciliationQueue(IReconciliationQueue):

    def __init__(self):
        self._issues: Dict[str, ReconciliationIssue] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, issue: ReconciliationIssue) -> None:
        async with self._lock:
            self._issues[issue.issue_id] = issue

    async def get_pending(self, limit: int = 100) -> List[ReconciliationIssue]:
        async with self._lock:
            pending = [i for i in self._issues.values() if not i.resolved]
            return pending[:limit]

    async def mark_resolved(self, issue_id: str) -> bool:
        async with self._lock:
            issue = self._issues.get(issue_id)
            if not issue:
                return False
            self._issues[issue_id] = issue.model_copy(update={"resolved": True})
            return True

    async def get_stats(self) -> Dict[str, int]:
        async with self._lock:
            return {
                "total": len(self._issues),
                "pending": sum(1 for i in self._issues.values() if not i.resolved),
                "resolved": sum(1 for i in self._issues.values() if i.resolved),
            }


# =============================================================================
# POSTGRES
# =============================================================================

MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS bookings (
        booking_reference VARCHAR(16) PRIMARY KEY,
        provider_session_id VARCHAR(255) UNIQUE,
        customer_name TEXT NOT NULL,
        customer_email TEXT NOT NULL,
        customer_phone TEXT NOT NULL DEFAULT '',
        drop_off_date DATE NOT NULL,
        drop_off_time VARCHAR(5),
        pick_up_date DATE NOT NULL,
        pick_up_time VARCHAR(5),
        bag_quantities JSONB NOT NULL,
        billable_days INTEGER NOT NULL,
        per_day_subtotal NUMERIC(10, 2) NOT NULL,
        total_price NUMERIC(10, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'eur',
        payment_status VARCHAR(20) NOT NULL DEFAULT 'pending',
        pricing_drift BOOLEAN NOT NULL DEFAULT FALSE,
        site_url TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_bookings_email ON bookings(customer_email)",
    "CREATE INDEX IF NOT EXISTS idx_bookings_drop_off ON bookings(drop_off_date)",
]

UPSERT_SQL = """
    INSERT INTO bookings (
        booking_reference, provider_session_id, customer_name, customer_email,
        customer_phone, drop_off_date, drop_off_time, pick_up_date, pick_up_time,
        bag_quantities, billable_days, per_day_subtotal, total_price, currency,
        payment_status, pricing_drift, site_url, created_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
    ON CONFLICT (booking_reference) DO UPDATE SET
        provider_session_id = COALESCE(EXCLUDED.provider_session_id, bookings.provider_session_id),
        customer_name = EXCLUDED.customer_name,
        customer_email = EXCLUDED.customer_email,
        customer_phone = EXCLUDED.customer_phone,
        drop_off_date = EXCLUDED.drop_off_date,
        drop_off_time = EXCLUDED.drop_off_time,
        pick_up_date = EXCLUDED.pick_up_date,
        pick_up_time = EXCLUDED.pick_up_time,
        bag_quantities = EXCLUDED.bag_quantities,
        billable_days = EXCLUDED.billable_days,
        per_day_subtotal = EXCLUDED.per_day_subtotal,
        total_price = EXCLUDED.total_price,
        currency = EXCLUDED.currency,
        payment_status = CASE
            WHEN bookings.payment_status = 'paid' THEN 'paid'
            ELSE EXCLUDED.payment_status
        END,
        pricing_drift = EXCLUDED.pricing_drift,
        site_url = EXCLUDED.site_url,
        updated_at = NOW()
    RETURNING (xmax = 0) AS inserted
"""


def _row_to_booking(row: asyncpg.Record) -> Booking:
    quantities = row["bag_quantities"]
    if isinstance(quantities, str):
        quantities = json.loads(quantities)
    return Booking(
        booking_reference=row["booking_reference"],
        customer=Customer(
            name=row["customer_name"],
            email=row["customer_email"],
            phone=row["customer_phone"],
        ),
        date_range=DateRange(
            drop_off_date=row["drop_off_date"],
            pick_up_date=row["pick_up_date"],
            drop_off_time=row["drop_off_time"],
            pick_up_time=row["pick_up_time"],
        ),
        bag_quantities=BagQuantities(**quantities),
        billable_days=row["billable_days"],
        per_day_subtotal=row["per_day_subtotal"],
        total_price=row["total_price"],
        currency=row["currency"],
        payment_status=PaymentStatus(row["payment_status"]),
        provider_session_id=row["provider_session_id"],
        created_at=row["created_at"],
        pricing_drift=row["pricing_drift"],
        site_url=row["site_url"],
    )


class PostgresBookingRepository(IBookingRepository):
    """asyncpg-backed repository; the pool is opened by initialize()."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self._pool:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
            )
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise
        logger.info("database_pool_initialized", min_size=self._min_size, max_size=self._max_size)
        await self._run_migrations()

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        if not self._pool:
            await self.initialize()
        async with self._pool.acquire() as conn:
            yield conn

    async def _run_migrations(self) -> None:
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                await conn.execute(migration)
        logger.info("database_migrations_complete")

    async def upsert(self, booking: Booking) -> bool:
        dr = booking.date_range
        async with self.acquire() as conn:
            row = await conn.fetchrow(
                UPSERT_SQL,
                booking.booking_reference,
                booking.provider_session_id,
                booking.customer.name,
                booking.customer.email,
                booking.customer.phone,
                dr.drop_off_date,
                dr.drop_off_time,
                dr.pick_up_date,
                dr.pick_up_time,
                json.dumps(booking.bag_quantities.as_dict()),
                booking.billable_days,
                booking.per_day_subtotal,
                booking.total_price,
                booking.currency,
                booking.payment_status.value,
                booking.pricing_drift,
                booking.site_url,
                booking.created_at,
            )
        return bool(row["inserted"])

    async def get(self, booking_reference: str) -> Optional[Booking]:
        async with self.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM bookings WHERE booking_reference = $1", booking_reference
            )
        return _row_to_booking(row) if row else None

    async def get_by_session(self, session_id: str) -> Optional[Booking]:
        async with self.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM bookings WHERE provider_session_id = $1", session_id
            )
        return _row_to_booking(row) if row else None

    async def count(self) -> int:
        async with self.acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM bookings")
