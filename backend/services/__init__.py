# services/__init__.py
# ============================================================================
# LUGGAGE DEPOSIT BOOKING: SERVICES MODULE
# ============================================================================
# Confirmation emails, PDF receipts and Google Wallet passes
# ============================================================================

from services.notifications import (
    BookingNotifier,
    IEmailSender,
    InMemoryEmailSender,
    SendGridEmailSender,
    TemplateManager,
)

from services.receipt_pdf import render_receipt_pdf

from services.wallet import GoogleWalletIssuer

__all__ = [
    # Notifications
    "BookingNotifier",
    "IEmailSender",
    "InMemoryEmailSender",
    "SendGridEmailSender",
    "TemplateManager",
    # Documents
    "render_receipt_pdf",
    "GoogleWalletIssuer",
]
