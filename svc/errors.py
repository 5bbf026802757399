class SubmissionNotFoundError(Exception):
    """Raised when a submission id does not resolve to a row."""


class ClientNotFoundError(Exception):
    """Raised when the authenticated user has no client record."""


class OwnershipError(Exception):
    """Raised when a record does not belong to the requesting client."""


class PaymentPendingError(Exception):
    """Raised when a Stripe checkout session is not yet fully paid."""


class PaymentAdjustmentError(Exception):
    """Raised when a price adjustment cannot be charged or refunded."""


class AccountProvisioningError(Exception):
    """Raised when Supabase Auth refuses to create or look up a user."""


class RecordNotFoundError(Exception):
    """Raised when a back-office task, ticket or message id does not resolve."""
