class BillingError(Exception):
    """Base exception for the billing backend."""

    pass


class WebhookSecretNotConfiguredError(BillingError):
    """Raised when webhook verification is attempted without a shared secret."""

    def __init__(self):
        super().__init__("MercadoPago webhook secret is not configured")


class ProviderError(BillingError):
    """Raised when the payment provider API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderResourceNotFoundError(ProviderError):
    """Raised when the provider has no resource for the requested id."""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found at provider", status_code=404)


class ProviderUnavailableError(ProviderError):
    """Raised on transport failures, 5xx and 429 responses. Retried before surfacing."""

    pass


class PlanResolutionError(BillingError):
    """Raised when no signal identifies the purchased plan."""

    pass


class UserResolutionError(BillingError):
    """Raised when a payment event cannot be mapped to a profile."""

    pass


class ProfileNotFoundError(BillingError):
    """Raised when the profile row to project onto does not exist."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Profile {user_id} not found")


class LockTimeoutError(BillingError):
    """Raised when the per-user ledger lock cannot be acquired in time."""

    def __init__(self, user_id: str, waited: float):
        self.user_id = user_id
        self.waited = waited
        super().__init__(f"Could not acquire ledger lock for user {user_id} after {waited:.1f}s")


class CompensationError(BillingError):
    """Raised when rolling back a partially applied ledger/profile change fails."""

    def __init__(self, user_id: str, cause: Exception):
        self.user_id = user_id
        self.cause = cause
        super().__init__(f"Compensation failed for user {user_id}: {cause}")
