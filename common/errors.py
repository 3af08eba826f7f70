class AgentError(Exception):
    pass

class ConfigurationError(AgentError):
    """Invalid or missing option; raised before any remote call."""

class EndpointResolutionError(AgentError):
    """The jobs endpoint could not be resolved; the whole run aborts."""

class RemoteUnavailable(AgentError):
    """A remote call failed.

    `retryable` marks throttling, 5xx and transport failures; `retry_after`
    carries the delay the server asked for, in seconds, when it gave one.
    """
    def __init__(self, message, device_id=None, op=None, status=None, retryable=False, retry_after=None):
        super().__init__(message)
        self.device_id, self.op, self.status = device_id, op, status
        self.retryable, self.retry_after = retryable, retry_after

class RateLimitInternalError(AgentError):
    """The limiter observed a broken invariant of its own window."""
