# schemas/__init__.py
# ============================================================================
# LUGGAGE DEPOSIT BOOKING: DOMAIN MODELS
# ============================================================================
