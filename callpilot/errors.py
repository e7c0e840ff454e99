"""
Error taxonomy shared by the call services and the API layer.
"""

from __future__ import annotations


class CallPilotError(Exception):
    """Base class for every error raised by callpilot."""


class ResolutionError(CallPilotError):
    """A webhook event could not be matched to, or create, a call record."""


class GenerationSchemaError(CallPilotError):
    """The model service answered, but not in the expected output schema."""


class ServiceUnavailableError(CallPilotError):
    """An external service is unreachable, timed out, or not configured."""


class ConfigurationError(ServiceUnavailableError):
    """A client was constructed without the credentials it needs."""


class InvalidRequestError(CallPilotError):
    """An administrative request is missing required fields."""


class ProviderError(CallPilotError):
    """The telephony provider rejected an origination or control request."""


class StoreError(CallPilotError):
    """The call store failed to read or write a record."""


class ConflictError(StoreError):
    """A write collided with a unique constraint (e.g. a duplicate call SID)."""


class NotFoundError(CallPilotError):
    """An administrative request referenced a call or contact that does not exist."""
