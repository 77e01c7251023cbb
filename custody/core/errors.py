class CustodyError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(CustodyError):
    """Bad derivation parameters, unknown asset or missing secret. Never retried."""


class ProviderUnavailable(CustodyError):
    """Every configured balance/price source failed for this call."""

    def __init__(self, message: str, *, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class InsufficientFunds(CustodyError):
    def __init__(self, message: str, *, available=None, required=None):
        super().__init__(message)
        self.available = available
        self.required = required


class DuplicateEvent(CustodyError):
    def __init__(self, dedup_key: str):
        super().__init__(f"Event already processed: {dedup_key}")
        self.dedup_key = dedup_key


class AlreadyClosed(CustodyError):
    pass


class PositionNotFound(CustodyError):
    pass


class StakingUnavailable(CustodyError):
    pass


class ConcurrentUpdate(CustodyError):
    """A compare-and-swap kept losing to other writers; safe to retry."""
