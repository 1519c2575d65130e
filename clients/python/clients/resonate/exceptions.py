class ResonateClientError(Exception):
    """Base exception for ResonateClient."""
    pass


class ResonateConnectionError(ResonateClientError):
    """The remote Resonate instance could not be created."""
    pass


class ResonateRPCError(ResonateClientError):
    """A durable invocation could not be started."""
    pass


class ResonatePromiseError(ResonateClientError):
    """A durable promise could not be cancelled."""

    def __init__(self, message: str, promise_id: str):
        self.promise_id = promise_id
        super().__init__(message)
