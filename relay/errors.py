"""
Error taxonomy for the relay.

Every failure raised by a component derives from RelayError so the webhook
pipeline can catch one type per stage and the synchronous endpoints can map
failures to HTTP responses.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""


class ConfigurationError(RelayError):
    """A required credential or setting is missing."""


class ValidationError(RelayError):
    """A request body on a synchronous endpoint is malformed."""


class ProviderError(RelayError):
    """The completion service call failed."""


class StoreError(RelayError):
    """The persistence layer rejected or failed a write."""


class DeliveryError(RelayError):
    """
    The channel send API returned an error or could not be reached.

    Carries the provider's structured error detail when the response had one.
    """

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.status_code = status_code

    def __str__(self) -> str:
        return (
            f"{self.message} (status={self.status_code}, "
            f"code={self.code}, subcode={self.subcode})"
        )
