"""
Receipt PDF
===========
One-page A4 booking receipt rendered with reportlab: reference, customer,
schedule, drop-off point, bag lines, total paid and the provider session id.

Rendering is CPU-bound; async callers run it in a worker thread.

pip install reportlab
"""

from io import BytesIO
from typing import Optional

from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from pipeline.pricing import PRICE_PER_DAY
from schemas.booking_definitions import Booking
from services.branding import BRANDING, DATE_DISPLAY_FORMAT, drop_off_address

FONT_REGULAR = "Helvetica"
FONT_BOLD = "Helvetica-Bold"


def _draw_wrapped(
    c: canvas.Canvas,
    text: str,
    x: float,
    y: float,
    font_name: str,
    font_size: int,
    max_width: float,
    line_h: float,
) -> float:
    """Draw text with word wrap, returning the new y position."""
    c.setFont(font_name, font_size)
    for line in simpleSplit(text, font_name, font_size, max_width):
        c.drawString(x, y, line)
        y -= line_h
    return y


def _format_slot(day, time: Optional[str]) -> str:
    text = day.strftime(DATE_DISPLAY_FORMAT)
    return f"{text}, {time}" if time else text


def render_receipt_pdf(booking: Booking) -> bytes:
    """Render the receipt for a booking and return the PDF bytes."""
    width, height = A4
    x = 40
    y = height - 50
    line_h = 16
    max_width = width - 2 * x
    currency = booking.currency.upper()
    dr = booking.date_range

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    c.setTitle(f"Booking {booking.booking_reference}")
    c.setAuthor(BRANDING["company_name"])

    # Header
    c.setFont(FONT_BOLD, 18)
    c.drawString(x, y, BRANDING["company_name"])
    y -= 1.5 * line_h
    c.setFont(FONT_REGULAR, 11)
    c.drawString(x, y, "Booking confirmation and receipt")
    y -= 2 * line_h

    c.setFont(FONT_BOLD, 14)
    c.drawString(x, y, f"Reference: {booking.booking_reference}")
    y -= 2 * line_h

    # Customer
    c.setFont(FONT_BOLD, 11)
    c.drawString(x, y, "Customer")
    y -= line_h
    c.setFont(FONT_REGULAR, 10)
    c.drawString(x, y, f"Name: {booking.customer.name}")
    y -= line_h
    c.drawString(x, y, f"Email: {booking.customer.email}")
    y -= line_h
    if booking.customer.phone:
        c.drawString(x, y, f"Phone: {booking.customer.phone}")
        y -= line_h
    y -= line_h

    # Schedule
    c.setFont(FONT_BOLD, 11)
    c.drawString(x, y, "Schedule")
    y -= line_h
    c.setFont(FONT_REGULAR, 10)
    c.drawString(x, y, f"Drop-off: {_format_slot(dr.drop_off_date, dr.drop_off_time)}")
    y -= line_h
    c.drawString(x, y, f"Pick-up: {_format_slot(dr.pick_up_date, dr.pick_up_time)}")
    y -= line_h
    days = booking.billable_days
    c.drawString(x, y, f"Duration: {days} day{'s' if days != 1 else ''}")
    y -= line_h
    y = _draw_wrapped(c, f"Drop-off point: {drop_off_address()}", x, y, FONT_REGULAR, 10, max_width, line_h)
    c.drawString(x, y, f"Opening hours: {BRANDING['opening_hours']}")
    y -= 2 * line_h

    # Bags
    c.setFont(FONT_BOLD, 11)
    c.drawString(x, y, "Bags")
    y -= line_h
    c.setFont(FONT_REGULAR, 10)
    for size, count in booking.bag_quantities.items():
        if count <= 0:
            continue
        line_total = PRICE_PER_DAY[size] * count * days
        c.drawString(
            x, y,
            f"{count} x {size.value} at {PRICE_PER_DAY[size]:.2f} {currency}/day x {days}",
        )
        c.drawRightString(x + max_width, y, f"{line_total:.2f} {currency}")
        y -= line_h
    y -= 0.5 * line_h

    c.line(x, y + line_h * 0.6, x + max_width, y + line_h * 0.6)
    c.setFont(FONT_BOLD, 12)
    c.drawString(x, y - 4, "Total paid")
    c.drawRightString(x + max_width, y - 4, f"{booking.total_price:.2f} {currency}")
    y -= 2.5 * line_h

    # Footer
    c.setFont(FONT_REGULAR, 8)
    if booking.provider_session_id:
        c.drawString(x, y, f"Payment session: {booking.provider_session_id}")
        y -= line_h
    c.drawString(x, y, f"Booked on {booking.created_at.strftime('%d %B %Y %H:%M UTC')}")
    y -= line_h
    c.drawString(x, y, BRANDING["footer_text"])

    c.showPage()
    c.save()
    return buf.getvalue()
