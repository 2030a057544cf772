"""
Client Recovery State Machine
=============================
Decides what the booking page should show after a redirect, a reload or a
return visit, from three inputs: the current URL, a local booking cache and a
call to the verify-session endpoint.

    collecting_input -> awaiting_verification -> confirmed | error
    any state --reset()--> collecting_input

Session tokens are recognised in every URL shape the checkout redirects use:
    https://site/?session_id=cs_...
    https://site/#/success?session_id=cs_...
    https://site/#/success/cs_...

pip install httpx pydantic structlog
"""

import json
import re
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError as ModelValidationError

from schemas.booking_definitions import (
    Booking,
    SessionPaymentStatus,
    VerificationResult,
    utcnow,
)

CACHE_KEY = "ldr_latest_booking"
SESSION_PARAM = "session_id"

_FRAGMENT_PATH_TOKEN = re.compile(r"^/?success/([^/?#]+)/?$")

logger = structlog.get_logger(component="client_recovery")


# =============================================================================
# URL HANDLING
# =============================================================================

def _token_from_query(query: str) -> Optional[str]:
    for key, value in parse_qsl(query, keep_blank_values=False):
        if key == SESSION_PARAM and value.strip():
            return value.strip()
    return None


def extract_session_token(url: str) -> Optional[str]:
    """Session token from the query, the fragment's query, or `#/success/<id>`."""
    parts = urlsplit(url)

    token = _token_from_query(parts.query)
    if token:
        return token

    fragment_path, _, fragment_query = parts.fragment.partition("?")
    token = _token_from_query(fragment_query)
    if token:
        return token

    match = _FRAGMENT_PATH_TOKEN.match(fragment_path)
    return match.group(1) if match else None


def _strip_param(query: str) -> str:
    kept = [(k, v) for k, v in parse_qsl(query, keep_blank_values=True) if k != SESSION_PARAM]
    return urlencode(kept)


def clean_url(url: str) -> str:
    """The same URL without the session token, for history replacement."""
    parts = urlsplit(url)
    query = _strip_param(parts.query)

    fragment_path, sep, fragment_query = parts.fragment.partition("?")
    if _FRAGMENT_PATH_TOKEN.match(fragment_path):
        fragment_path = "/success"
    fragment_query = _strip_param(fragment_query) if sep else ""
    fragment = f"{fragment_path}?{fragment_query}" if fragment_query else fragment_path

    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, fragment))


# =============================================================================
# STATE
# =============================================================================

class RecoveryState(str, Enum):
    COLLECTING_INPUT = "collecting_input"
    AWAITING_VERIFICATION = "awaiting_verification"
    CONFIRMED = "confirmed"
    ERROR = "error"


class RecoveryErrorKind(str, Enum):
    # The customer can go back and pay again
    PAYMENT_NOT_COMPLETED = "payment_not_completed"
    # Payment may have gone through: contact support, do not pay again
    VERIFICATION_UNAVAILABLE = "verification_unavailable"


ERROR_MESSAGES = {
    RecoveryErrorKind.PAYMENT_NOT_COMPLETED: "Payment was not completed. You can try booking again.",
    RecoveryErrorKind.VERIFICATION_UNAVAILABLE: (
        "We could not confirm your payment right now. Please contact us before paying again."
    ),
}


class RecoverySnapshot(BaseModel):
    state: RecoveryState
    session_id: Optional[str] = None
    booking: Optional[Booking] = None
    error: Optional[RecoveryErrorKind] = None
    message: Optional[str] = None
    clean_url: Optional[str] = None

    @property
    def can_retry_payment(self) -> bool:
        return self.error == RecoveryErrorKind.PAYMENT_NOT_COMPLETED


class CachedBooking(BaseModel):
    session_id: str
    booking: Booking
    cached_at: str = Field(default_factory=lambda: utcnow().isoformat())


# =============================================================================
# CACHE
# =============================================================================

class IBookingCache(ABC):
    """Local storage for the most recent confirmed booking"""

    @abstractmethod
    def load(self) -> Optional[CachedBooking]:
        pass

    @abstractmethod
    def save(self, entry: CachedBooking) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class InMemoryBookingCache(IBookingCache):

    def __init__(self):
        self._entry: Optional[CachedBooking] = None

    def load(self) -> Optional[CachedBooking]:
        return self._entry

    def save(self, entry: CachedBooking) -> None:
        self._entry = entry

    def clear(self) -> None:
        self._entry = None


class JsonFileBookingCache(IBookingCache):
    """Keeps the entry under CACHE_KEY in a small JSON document."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("booking_cache_unreadable", path=str(self.path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> Optional[CachedBooking]:
        raw = self._read().get(CACHE_KEY)
        if raw is None:
            return None
        try:
            return CachedBooking.model_validate(raw)
        except ModelValidationError as e:
            logger.warning("booking_cache_invalid", path=str(self.path), error=str(e))
            return None

    def save(self, entry: CachedBooking) -> None:
        data = self._read()
        data[CACHE_KEY] = entry.model_dump(mode="json", by_alias=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def clear(self) -> None:
        data = self._read()
        if data.pop(CACHE_KEY, None) is not None:
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")


# =============================================================================
# VERIFICATION CLIENT
# =============================================================================

class VerificationUnavailable(Exception):
    """The verify endpoint could not give a definitive answer."""


class IVerificationClient(ABC):

    @abstractmethod
    async def verify(self, session_id: str) -> VerificationResult:
        pass


class HttpVerificationClient(IVerificationClient):
    """
    Calls GET /api/verify-session over httpx.

    Example:
        async with httpx.AsyncClient(base_url="https://example.com") as http:
            client = HttpVerificationClient(http)
            result = await client.verify("cs_test_...")
    """

    def __init__(self, http: httpx.AsyncClient, path: str = "/api/verify-session"):
        self.http = http
        self.path = path

    async def verify(self, session_id: str) -> VerificationResult:
        try:
            response = await self.http.get(self.path, params={SESSION_PARAM: session_id})
        except httpx.HTTPError as e:
            raise VerificationUnavailable(f"verify request failed: {e}") from e

        if response.status_code != 200:
            raise VerificationUnavailable(f"verify returned HTTP {response.status_code}")
        try:
            return VerificationResult.model_validate(response.json())
        except (ValueError, ModelValidationError) as e:
            raise VerificationUnavailable("verify returned an unexpected body") from e


# =============================================================================
# STATE MACHINE
# =============================================================================

class RecoveryStateMachine:
    """
    Example:
        machine = RecoveryStateMachine(HttpVerificationClient(http), JsonFileBookingCache(path))
        snapshot = await machine.load(current_url)
        if snapshot.clean_url:
            replace_history(snapshot.clean_url)
    """

    def __init__(self, client: IVerificationClient, cache: Optional[IBookingCache] = None):
        self.client = client
        self.cache = cache or InMemoryBookingCache()
        self.snapshot = RecoverySnapshot(state=RecoveryState.COLLECTING_INPUT)

    @property
    def state(self) -> RecoveryState:
        return self.snapshot.state

    def _set(self, **fields) -> RecoverySnapshot:
        self.snapshot = RecoverySnapshot(**fields)
        logger.info(
            "recovery_state",
            state=self.snapshot.state.value,
            session_id=self.snapshot.session_id,
            error=self.snapshot.error.value if self.snapshot.error else None,
        )
        return self.snapshot

    def _fail(self, session_id: str, kind: RecoveryErrorKind, url: str) -> RecoverySnapshot:
        return self._set(
            state=RecoveryState.ERROR,
            session_id=session_id,
            error=kind,
            message=ERROR_MESSAGES[kind],
            clean_url=clean_url(url),
        )

    async def load(self, url: str) -> RecoverySnapshot:
        token = extract_session_token(url)
        cached = self.cache.load()

        if token is None:
            if cached is not None:
                return self._set(
                    state=RecoveryState.CONFIRMED,
                    session_id=cached.session_id,
                    booking=cached.booking,
                )
            return self._set(state=RecoveryState.COLLECTING_INPUT)

        if cached is not None and cached.session_id == token:
            return self._set(
                state=RecoveryState.CONFIRMED,
                session_id=token,
                booking=cached.booking,
                clean_url=clean_url(url),
            )

        self._set(state=RecoveryState.AWAITING_VERIFICATION, session_id=token)
        try:
            result = await self.client.verify(token)
        except VerificationUnavailable as e:
            logger.warning("recovery_verification_unavailable", session_id=token, error=str(e))
            return self._fail(token, RecoveryErrorKind.VERIFICATION_UNAVAILABLE, url)

        if result.payment_status != SessionPaymentStatus.PAID or result.booking is None:
            return self._fail(token, RecoveryErrorKind.PAYMENT_NOT_COMPLETED, url)

        self.cache.save(CachedBooking(session_id=token, booking=result.booking))
        return self._set(
            state=RecoveryState.CONFIRMED,
            session_id=token,
            booking=result.booking,
            clean_url=clean_url(url),
        )

    def reset(self) -> RecoverySnapshot:
        self.cache.clear()
        return self._set(state=RecoveryState.COLLECTING_INPUT)
