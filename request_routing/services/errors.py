"""Exceptions raised by the routing services."""


class RoutingError(Exception):
    """Base exception for routing operations."""
    pass


class InvalidRequestError(RoutingError):
    """Request input is malformed. Nothing was created."""
    pass


class RuleNotFoundError(RoutingError):
    """Routing rule does not exist."""
    pass


class DecisionNotFoundError(RoutingError):
    """Routing decision does not exist."""
    pass


class DecisionRecordError(RoutingError):
    """The routing decision could not be persisted."""
    pass
