# client/__init__.py
from client.recovery import (
    HttpVerificationClient,
    JsonFileBookingCache,
    RecoveryState,
    RecoveryStateMachine,
    extract_session_token,
)

__all__ = [
    "HttpVerificationClient",
    "JsonFileBookingCache",
    "RecoveryState",
    "RecoveryStateMachine",
    "extract_session_token",
]
