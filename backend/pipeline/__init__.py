# pipeline/__init__.py
# ============================================================================
# LUGGAGE DEPOSIT BOOKING: PAYMENT PIPELINE
# ============================================================================
# pricing -> checkout_builder -> payment_provider -> session_verifier
#                                                 -> webhook_handler
# ============================================================================
