"""Exceptions raised by the discovery engine and its gateway collaborators."""


class PermaroamError(RuntimeError):
    """Base class for permaroam errors."""


class GatewayError(PermaroamError):
    """A gateway request failed after retries and failover."""


class MalformedResponseError(GatewayError):
    """A gateway answered, but the payload is missing required fields."""


class QueueSupersededError(PermaroamError):
    """The discovery queue was re-initialized while a fetch was in flight."""
