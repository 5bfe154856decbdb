"""Error taxonomy shared by the generation client, storage and the studio."""


class StrypError(Exception):
    """Base class for all application errors."""


class GenerationError(StrypError):
    """The model declined, returned unusable output, or a malformed response."""


class GenerationTimeout(GenerationError, TimeoutError):
    """A generation job exceeded its wall-clock budget."""


class QuotaExceededError(GenerationError):
    """The provider signalled a rate or billing limit."""


class EntitlementError(GenerationError, PermissionError):
    """The API key lacks the entitlement a job type needs."""


class UploadError(StrypError):
    """Persisting media to object storage failed."""


class AuthDomainError(StrypError):
    """Sign-in attempted from an origin that is not registered."""


class BatchBusyError(StrypError):
    """A conflicting batch (or panel job) is already running."""


class NotFoundError(StrypError):
    """A project, panel, character or location does not exist for this user."""
