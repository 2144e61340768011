class PricehubError(Exception):
    """Base class for pipeline errors."""


class SelectorError(PricehubError):
    """Selector definition cannot be parsed."""


class TransformError(PricehubError):
    """Transform definition cannot be parsed or applied."""


class ConnectorError(PricehubError):
    """Platform connector is missing or misconfigured."""


class NotFoundError(PricehubError):
    """Entity does not exist or belongs to another tenant."""


class RuleNotFoundError(NotFoundError):
    pass


class RunNotFoundError(NotFoundError):
    pass


class ConflictError(PricehubError):
    """Operation not allowed in the current state."""


class RunConflictError(ConflictError):
    """Rule already has a pending run, or a run is not in a state that allows the operation."""


class NoTargetsError(PricehubError):
    """Manual trigger would not change any price."""


class DeadLetterNotFoundError(NotFoundError):
    pass


class DeadLetterResolvedError(ConflictError):
    """Dead letter was already replayed or discarded."""


class PolicyError(PricehubError):
    """Price policy definition cannot be parsed."""
