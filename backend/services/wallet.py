"""
Google Wallet
=============
"Save to Google Wallet" links for paid bookings.

The generic pass object is embedded in an RS256-signed JWT and signed with the
issuer's service-account key, so no Wallet REST calls are needed to hand the
customer a working link.

pip install pyjwt cryptography
"""

import re
import time
from typing import Any, Dict, List, Optional

import jwt
import structlog

from errors import ConfigurationError, ExternalServiceError
from schemas.booking_definitions import Booking
from services.branding import BRANDING

SAVE_URL_PREFIX = "https://pay.google.com/gp/v/save/"
CLASS_SUFFIX = "luggage_deposit_rome_booking"


def _text_module(module_id: str, header: str, body: str) -> Dict[str, str]:
    return {"id": module_id, "header": header, "body": body}


def _localized(value: str) -> Dict[str, Any]:
    return {"defaultValue": {"language": "en", "value": value}}


def bags_summary(booking: Booking) -> str:
    parts = [
        f"{size.value[0]}:{count}"
        for size, count in booking.bag_quantities.items()
        if count > 0
    ]
    return " ".join(parts) or "No bags"


class GoogleWalletIssuer:
    """
    Example:
        issuer = GoogleWalletIssuer(issuer_id, service_account_email, private_key)
        url = issuer.save_url(booking, verify_url="https://example.com/api/r?session_id=cs_...")
    """

    def __init__(
        self,
        issuer_id: str,
        service_account_email: str,
        private_key: str,
    ):
        if not (issuer_id and service_account_email and private_key):
            raise ConfigurationError("Google Wallet credentials are incomplete")
        self.issuer_id = issuer_id
        self.service_account_email = service_account_email
        self._private_key = private_key
        self._logger = structlog.get_logger().bind(component="google_wallet")

    def object_id(self, booking: Booking) -> str:
        safe_reference = re.sub(r"[^a-zA-Z0-9_-]", "_", booking.booking_reference)
        return f"{self.issuer_id}.{safe_reference}"

    def build_generic_object(self, booking: Booking, verify_url: Optional[str] = None) -> Dict[str, Any]:
        dr = booking.date_range
        return {
            "id": self.object_id(booking),
            "classId": f"{self.issuer_id}.{CLASS_SUFFIX}",
            "genericType": "GENERIC_TYPE_UNSPECIFIED",
            "state": "ACTIVE",
            "cardTitle": _localized(BRANDING["company_name"].upper()),
            "header": _localized("Luggage Storage"),
            "subheader": _localized(booking.customer.email or "Guest"),
            "hexBackgroundColor": BRANDING["primary_color"],
            "barcode": {
                "type": "QR_CODE",
                "value": verify_url or booking.booking_reference,
                "alternateText": booking.booking_reference,
            },
            "textModulesData": [
                _text_module("booking_id", "Booking Ref", booking.booking_reference),
                _text_module("drop_off", "Drop-off", dr.drop_off_date.isoformat()),
                _text_module("pick_up", "Pick-up", dr.pick_up_date.isoformat()),
                _text_module("bags", "Luggage", bags_summary(booking)),
            ],
        }

    def save_url(
        self,
        booking: Booking,
        verify_url: Optional[str] = None,
        origins: Optional[List[str]] = None,
    ) -> str:
        claims = {
            "iss": self.service_account_email,
            "aud": "google",
            "typ": "savetowallet",
            "iat": int(time.time()),
            "origins": origins or [],
            "payload": {"genericObjects": [self.build_generic_object(booking, verify_url)]},
        }
        try:
            token = jwt.encode(claims, self._private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            self._logger.error(
                "wallet_signing_failed",
                booking_reference=booking.booking_reference,
                error=str(e),
            )
            raise ExternalServiceError(
                "Could not sign the Google Wallet pass",
                service="google_wallet",
                retryable=False,
            ) from e

        self._logger.info("wallet_link_issued", booking_reference=booking.booking_reference)
        return f"{SAVE_URL_PREFIX}{token}"
