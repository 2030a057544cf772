# api/__init__.py
from api.server import (
    BookingServices,
    build_services,
    create_app,
)

__all__ = [
    "BookingServices",
    "build_services",
    "create_app",
]
