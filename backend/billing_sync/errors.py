"""
Billing error taxonomy.

Every error carries the HTTP status it maps to. The FastAPI handler in
main.py renders them as {"error": message}.
"""


class BillingError(Exception):
    """Base class for all errors raised by the billing services."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BillingError):
    """Missing or invalid input."""

    status_code = 400


class AuthenticationError(BillingError):
    """Webhook signature could not be verified."""

    status_code = 400


class NotFound(BillingError):
    """No matching user record."""

    status_code = 404


class PaymentProviderError(BillingError):
    """Stripe call failed or Stripe is not configured."""

    status_code = 500


class DatabaseError(BillingError):
    """Supabase unavailable, not configured, or a write failed."""

    status_code = 500
