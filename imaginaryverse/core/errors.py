from __future__ import annotations


class BillingError(Exception):
    """Base class for subscription and credit failures surfaced to callers."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PurchaseVerificationError(BillingError):
    status_code = 400

    def __init__(self, message: str, *, method: str | None = None, reason: str | None = None):
        super().__init__(message)
        self.method = method
        self.reason = reason


class PlanNotFoundError(BillingError):
    status_code = 404


class UserNotFoundError(BillingError):
    status_code = 404


class TrialNotAllowedError(BillingError):
    status_code = 409


class SubscriptionConflictError(BillingError):
    status_code = 409


class CreditsExhaustedError(BillingError):
    status_code = 402


class SubscriptionPersistenceError(BillingError):
    """Payment went through but the local write failed; carries the refund attempt."""

    status_code = 500

    def __init__(self, message: str, *, refund_status: dict):
        super().__init__(message)
        self.refund_status = refund_status


class StoreError(Exception):
    pass


class StoreHttpError(StoreError):
    def __init__(self, status: int, payload=None, *, url: str | None = None):
        self.status = status
        self.payload = payload
        self.url = url
        super().__init__(f"HTTP {status} from {url or 'store'}: {payload}")


class StoreAuthError(StoreError):
    pass


class StoreSyncError(StoreError):
    pass
