"""Exception taxonomy for the conversation core.

Only ConfigurationError and InputValidationError are meant to reach the
presentation layer as exceptions. Model and persistence failures are retried
and turned into outcomes by ResponseGenerator; rate limiting is an outcome,
never an exception.
"""


class SocialError(Exception):
    """Base class for every error raised by npc_social."""


class ModelTransportFailure(SocialError):
    """The model collaborator could not be reached or returned an error."""


class ModelValidationFailure(ModelTransportFailure):
    """The model answered, but not with a well-formed {"responseText": str} payload."""


class PersistenceConflict(SocialError):
    """A compare-and-set kept losing to concurrent writers."""


class ConfigurationError(SocialError):
    """Missing prompt or collaborator wiring. Fatal at startup."""


class InputValidationError(SocialError):
    """Player input rejected before any side effect."""


class InvalidCursor(InputValidationError):
    """A page cursor that was not produced by the paginator."""


class RequestSuperseded(SocialError):
    """A newer send replaced this one; its result must not be applied."""


class AccountLimitReached(SocialError):
    """The player already owns the maximum number of social accounts."""
