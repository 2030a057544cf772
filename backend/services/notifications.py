"""
Booking Notifications
=====================
Confirmation emails for paid bookings:
- Customer: HTML confirmation, PDF receipt attached, wallet link when configured
- Owner: operator summary with the customer's contact details

Delivery goes through an IEmailSender so SendGrid can be swapped for the
in-memory sender in tests and local development.

pip install sendgrid structlog
"""

import asyncio
import base64
import html
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

import structlog
from pydantic import BaseModel, Field
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Attachment, Disposition, FileContent, FileName, FileType, Mail

from errors import ExternalServiceError
from schemas.booking_definitions import Booking, utcnow
from services.branding import BRANDING, DATE_DISPLAY_FORMAT
from services.receipt_pdf import render_receipt_pdf
from services.wallet import GoogleWalletIssuer


# =============================================================================
# MODELS
# =============================================================================

class NotificationType(str, Enum):
    CUSTOMER_CONFIRMATION = "customer_confirmation"
    OWNER_NOTIFICATION = "owner_notification"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EmailAttachment(BaseModel):
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    from_email: Optional[str] = None
    attachments: List[EmailAttachment] = Field(default_factory=list)


class NotificationRecord(BaseModel):
    """Email notification tracking"""
    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    booking_reference: str
    notification_type: NotificationType
    recipient_email: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    message_id: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    wallet_link: bool = False
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None


# =============================================================================
# SENDERS
# =============================================================================

class IEmailSender(ABC):
    """Outbound email interface"""

    @abstractmethod
    async def send(self, message: EmailMessage) -> Optional[str]:
        """Send one message. Returns the provider message id when known."""
        pass


class SendGridEmailSender(IEmailSender):
    """SendGrid delivery; the blocking SDK call runs in a worker thread."""

    def __init__(self, api_key: str, default_from: str):
        self._client = SendGridAPIClient(api_key)
        self.default_from = default_from
        self._logger = structlog.get_logger().bind(component="sendgrid_sender")

    def _build_mail(self, message: EmailMessage) -> Mail:
        mail = Mail(
            from_email=message.from_email or self.default_from,
            to_emails=message.to,
            subject=message.subject,
            html_content=message.html,
        )
        for item in message.attachments:
            mail.add_attachment(Attachment(
                FileContent(base64.b64encode(item.content).decode()),
                FileName(item.filename),
                FileType(item.mime_type),
                Disposition("attachment"),
            ))
        return mail

    async def send(self, message: EmailMessage) -> Optional[str]:
        mail = self._build_mail(message)
        try:
            response = await asyncio.to_thread(self._client.send, mail)
        except Exception as e:
            self._logger.error("sendgrid_send_failed", to=message.to, error=str(e))
            raise ExternalServiceError(
                "Email provider request failed",
                service="sendgrid",
                retryable=True,
            ) from e

        if response.status_code >= 400:
            self._logger.error("sendgrid_rejected", to=message.to, status_code=response.status_code)
            raise ExternalServiceError(
                f"Email provider rejected the message ({response.status_code})",
                service="sendgrid",
                retryable=response.status_code >= 500,
            )
        return response.headers.get("X-Message-Id")


class InMemoryEmailSender(IEmailSender):
    """Collects messages instead of sending them."""

    def __init__(self, fail_for: Optional[List[str]] = None):
        self.sent: List[EmailMessage] = []
        self._fail_for = set(fail_for or [])
        self._lock = asyncio.Lock()

    async def send(self, message: EmailMessage) -> Optional[str]:
        if message.to in self._fail_for:
            raise ExternalServiceError(
                f"Delivery to {message.to} failed",
                service="email",
                retryable=True,
            )
        async with self._lock:
            self.sent.append(message)
            return f"mem-{len(self.sent)}"


# =============================================================================
# TEMPLATE MANAGER
# =============================================================================

class TemplateManager:
    """HTML bodies and subjects. Every interpolated value is escaped."""

    EMAIL_STYLE = "font-family: 'Helvetica Neue', Helvetica, Arial, sans-serif; color: #1a1a1a; line-height: 1.6;"

    def __init__(self, branding: Optional[dict] = None):
        self.branding = {**BRANDING, **(branding or {})}

    @staticmethod
    def _format_slot(day, time: Optional[str]) -> str:
        text = day.strftime(DATE_DISPLAY_FORMAT)
        return f"{text}, {time}" if time else text

    @staticmethod
    def _money(booking: Booking) -> str:
        return f"{booking.total_price:.2f} {booking.currency.upper()}"

    def _bag_items(self, booking: Booking) -> str:
        return "".join(
            f"<li><strong>{count}x</strong> {html.escape(size.value)} bag{'s' if count != 1 else ''}</li>"
            for size, count in booking.bag_quantities.items()
            if count > 0
        )

    def customer_subject(self, booking: Booking) -> str:
        return f"Booking Confirmed - {self.branding['company_name']} (Ref: {booking.booking_reference})"

    def owner_subject(self, booking: Booking) -> str:
        return f"New Paid Booking - Ref: {booking.booking_reference} ({booking.customer.name})"

    def customer_html(
        self,
        booking: Booking,
        pdf_url: Optional[str] = None,
        wallet_url: Optional[str] = None,
    ) -> str:
        b = self.branding
        dr = booking.date_range
        esc = html.escape
        rows = [
            ("REFERENCE", booking.booking_reference),
            ("DROP-OFF", self._format_slot(dr.drop_off_date, dr.drop_off_time)),
            ("PICK-UP", self._format_slot(dr.pick_up_date, dr.pick_up_time)),
            ("DURATION", f"{booking.billable_days} day{'s' if booking.billable_days != 1 else ''}"),
        ]
        table = "".join(
            f'<tr><td style="padding: 5px 0; font-size: 12px; color: #6b7280;">{label}</td>'
            f'<td style="padding: 5px 0; text-align: right; font-weight: bold;">{esc(value)}</td></tr>'
            for label, value in rows
        )
        buttons = ""
        if pdf_url:
            buttons += (
                f'<a href="{esc(pdf_url, quote=True)}" style="background-color: {b["primary_color"]}; '
                f'color: #ffffff; padding: 14px 28px; text-decoration: none; border-radius: 8px; '
                f'font-weight: bold; display: inline-block;">Download PDF Confirmation</a>'
            )
        if wallet_url:
            buttons += (
                f' <a href="{esc(wallet_url, quote=True)}" style="padding: 14px 28px; '
                f'display: inline-block;">Add to Google Wallet</a>'
            )

        return f"""
<div style="{self.EMAIL_STYLE} max-width: 600px; margin: 0 auto; border: 1px solid #eee; border-radius: 12px;">
  <div style="background-color: {b['primary_color']}; padding: 30px; text-align: center;">
    <h1 style="color: #ffffff; margin: 0; font-size: 24px;">Booking Confirmed!</h1>
    <p style="color: #dbeafe; margin: 5px 0 0 0; font-size: 10px; font-weight: bold;">{esc(b['company_name'])}</p>
  </div>
  <div style="padding: 40px;">
    <p>Hi {esc(booking.customer.name)},</p>
    <p>Your luggage storage reservation has been confirmed. Below are your booking details:</p>
    <div style="background-color: #f9fafb; padding: 20px; border-radius: 8px; margin: 25px 0;">
      <table style="width: 100%; border-collapse: collapse;">{table}</table>
      <p style="font-size: 12px; color: #6b7280; margin-bottom: 5px;">ITEMS:</p>
      <ul style="margin: 0; padding-left: 18px; font-size: 14px;">{self._bag_items(booking)}</ul>
      <p style="text-align: right; font-size: 20px; font-weight: bold;">Total Paid: {esc(self._money(booking))}</p>
    </div>
    <h3 style="font-size: 16px;">Drop-off Point:</h3>
    <p style="margin: 0; font-weight: bold;">{esc(b['drop_off_point'])}</p>
    <p style="margin: 0; color: #6b7280; font-size: 14px;">{esc(b['drop_off_hint'])}</p>
    <p style="margin: 10px 0 0 0; font-size: 13px; font-style: italic;">Opening Hours: {esc(b['opening_hours'])}</p>
    <div style="margin-top: 40px; text-align: center;">{buttons}</div>
  </div>
  <div style="background-color: #f3f4f6; padding: 20px; text-align: center; font-size: 12px; color: #9ca3af;">
    <p style="margin: 0;">{esc(b['footer_text'])}</p>
  </div>
</div>
"""

    def owner_html(self, booking: Booking, pdf_url: Optional[str] = None) -> str:
        esc = html.escape
        dr = booking.date_range
        drift = (
            "<p><strong>Warning:</strong> the amount paid does not match the recomputed price.</p>"
            if booking.pricing_drift else ""
        )
        link = (
            f'<p><a href="{esc(pdf_url, quote=True)}">View/download the PDF receipt</a></p>'
            if pdf_url else ""
        )
        return f"""
<div style="{self.EMAIL_STYLE}">
  <h2>New Paid Booking Received!</h2>
  <ul>
    <li><strong>Reference:</strong> {esc(booking.booking_reference)}</li>
    <li><strong>Customer:</strong> {esc(booking.customer.name)}</li>
    <li><strong>Email:</strong> {esc(booking.customer.email)}</li>
    <li><strong>Phone:</strong> {esc(booking.customer.phone or '-')}</li>
    <li><strong>Dates:</strong> {esc(self._format_slot(dr.drop_off_date, dr.drop_off_time))} to {esc(self._format_slot(dr.pick_up_date, dr.pick_up_time))}</li>
    <li><strong>Duration:</strong> {booking.billable_days} days</li>
    <li><strong>Amount Paid:</strong> {esc(self._money(booking))}</li>
  </ul>
  <p>Items booked:</p>
  <ul>{self._bag_items(booking)}</ul>
  {drift}{link}
</div>
"""


# =============================================================================
# NOTIFIER
# =============================================================================

ReceiptRenderer = Callable[[Booking], bytes]


class BookingNotifier:
    """
    Sends the customer and owner emails for a paid booking.

    The PDF receipt and the wallet link are best effort: when either fails the
    email still goes out without it.
    """

    def __init__(
        self,
        sender: IEmailSender,
        owner_email: str,
        email_from: Optional[str] = None,
        templates: Optional[TemplateManager] = None,
        receipt_renderer: Optional[ReceiptRenderer] = render_receipt_pdf,
        wallet: Optional[GoogleWalletIssuer] = None,
        public_base_url: Optional[str] = None,
    ):
        self.sender = sender
        self.owner_email = owner_email
        self.email_from = email_from
        self.templates = templates or TemplateManager()
        self.receipt_renderer = receipt_renderer
        self.wallet = wallet
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._logger = structlog.get_logger().bind(component="booking_notifier")

    def site_url(self, booking: Booking) -> Optional[str]:
        return self.public_base_url or (booking.site_url.rstrip("/") if booking.site_url else None)

    def pdf_url(self, booking: Booking) -> Optional[str]:
        site = self.site_url(booking)
        if not site or not booking.provider_session_id:
            return None
        return f"{site}/api/booking-pdf?session_id={booking.provider_session_id}&mode=download"

    def verify_url(self, booking: Booking) -> Optional[str]:
        site = self.site_url(booking)
        if not site or not booking.provider_session_id:
            return None
        return f"{site}/api/r?session_id={booking.provider_session_id}"

    async def _render_receipt(self, booking: Booking) -> Optional[EmailAttachment]:
        if self.receipt_renderer is None:
            return None
        try:
            content = await asyncio.to_thread(self.receipt_renderer, booking)
        except Exception as e:
            self._logger.warning(
                "receipt_render_failed",
                booking_reference=booking.booking_reference,
                error=str(e),
            )
            return None
        return EmailAttachment(filename=f"booking-{booking.booking_reference}.pdf", content=content)

    def _wallet_link(self, booking: Booking) -> Optional[str]:
        if self.wallet is None:
            return None
        site = self.site_url(booking)
        try:
            return self.wallet.save_url(
                booking,
                verify_url=self.verify_url(booking),
                origins=[site] if site else None,
            )
        except ExternalServiceError as e:
            self._logger.warning(
                "wallet_link_skipped",
                booking_reference=booking.booking_reference,
                error=e.message,
            )
            return None

    async def _deliver(self, record: NotificationRecord, message: EmailMessage) -> NotificationRecord:
        log = self._logger.bind(
            booking_reference=record.booking_reference,
            notification_type=record.notification_type.value,
        )
        try:
            message_id = await self.sender.send(message)
        except Exception as e:
            log.error("notification_failed", error=str(e))
            raise

        record = record.model_copy(update={
            "status": DeliveryStatus.SENT,
            "message_id": message_id,
            "sent_at": utcnow(),
        })
        log.info("notification_sent", message_id=message_id, attachments=record.attachments)
        return record

    async def send_customer_confirmation(self, booking: Booking) -> NotificationRecord:
        attachment = await self._render_receipt(booking)
        wallet_url = self._wallet_link(booking)

        message = EmailMessage(
            to=booking.customer.email,
            from_email=self.email_from,
            subject=self.templates.customer_subject(booking),
            html=self.templates.customer_html(booking, self.pdf_url(booking), wallet_url),
            attachments=[attachment] if attachment else [],
        )
        record = NotificationRecord(
            booking_reference=booking.booking_reference,
            notification_type=NotificationType.CUSTOMER_CONFIRMATION,
            recipient_email=booking.customer.email,
            attachments=[a.filename for a in message.attachments],
            wallet_link=wallet_url is not None,
        )
        return await self._deliver(record, message)

    async def send_owner_notification(self, booking: Booking) -> NotificationRecord:
        message = EmailMessage(
            to=self.owner_email,
            from_email=self.email_from,
            subject=self.templates.owner_subject(booking),
            html=self.templates.owner_html(booking, self.pdf_url(booking)),
        )
        record = NotificationRecord(
            booking_reference=booking.booking_reference,
            notification_type=NotificationType.OWNER_NOTIFICATION,
            recipient_email=self.owner_email,
        )
        return await self._deliver(record, message)
