"""Business identity shown on emails and receipts."""

BRANDING = {
    "company_name": "Luggage Deposit Rome",
    "drop_off_point": "Via Gioberti, 42, 00185 Roma RM, Italy",
    "drop_off_hint": "Near Termini Station",
    "opening_hours": "09:00 - 19:00 daily",
    "primary_color": "#1E3A8A",
    "footer_text": "Thank you for storing your luggage with us!",
}

DATE_DISPLAY_FORMAT = "%d %B %Y"


def drop_off_address() -> str:
    return f"{BRANDING['drop_off_point']} ({BRANDING['drop_off_hint']})"
