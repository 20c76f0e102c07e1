"""
Billing error taxonomy.

Every error carries a stable ``code`` and the HTTP status the API layer
should answer with. Domain errors (validation, transition, not-found) are
raised to the caller as-is; ``TransactionError`` is raised only after the
façade has retried once; ``NotificationError`` never leaves a reminder batch.
"""


class BillingError(Exception):
    code = "BILLING_ERROR"
    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        data = {
            "status": "error",
            "code": self.code,
            "message": self.message,
        }
        data.update({k: v for k, v in self.details.items() if v is not None})
        return data


class ValidationError(BillingError):
    """Malformed or out-of-range input. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message, field=None):
        super().__init__(message, field=field)
        self.field = field


class InvalidTransitionError(BillingError):
    code = "INVALID_TRANSITION"
    status_code = 400

    def __init__(self, message, current=None, requested=None):
        super().__init__(message, current=current, requested=requested)
        self.current = current
        self.requested = requested


class NotFoundError(BillingError):
    code = "NOT_FOUND"
    status_code = 404


class TransactionError(BillingError):
    """Store-level conflict or abort."""

    code = "TRANSACTION_ERROR"
    status_code = 500


class NotificationError(BillingError):
    code = "NOTIFICATION_ERROR"
    status_code = 502
