class EngineError(Exception):
    """Base class for errors surfaced to request-path callers."""


class ValidationError(EngineError):
    pass


class NotFoundError(EngineError):
    pass


class PermissionDenied(EngineError):
    pass


class CapacityError(EngineError):
    """The mutation would exceed a limit; nothing was applied."""


class ActiveQuestLimitReached(CapacityError):
    pass


class InsufficientFunds(CapacityError):
    pass


class CollaboratorError(EngineError):
    """An external service (generation, push) failed."""


class FeatureUnavailable(EngineError):
    """A required table is not provisioned yet."""
