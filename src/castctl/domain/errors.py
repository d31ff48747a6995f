class CastError(Exception):
    """Base class for every error raised by castctl."""


class InvalidRecordError(CastError, ValueError):
    """A discovered device record cannot describe a reachable receiver."""


class NotFoundError(CastError):
    """No usable address, or the receiver did not answer in time."""


class OutOfOrderError(CastError):
    """The operation is not valid for the current connection or app state."""


class TransportError(CastError, ConnectionError):
    """I/O failure on the secured stream to the receiver."""


class ProtocolDecodeError(CastError, ValueError):
    """An inbound frame could not be decoded."""


class RequestFailedError(CastError):
    """The receiver rejected a request it could correlate."""

    def __init__(self, request_id: int, intent: str | None, reason: str) -> None:
        self.request_id = request_id
        self.intent = intent
        self.reason = reason
        super().__init__(
            f"request {request_id} ({intent or 'unknown'}) failed: {reason}"
        )


class TeardownError(CastError):
    """Collects every failure met while closing a connection."""

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = list(errors)
        detail = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s) during teardown: {detail}")
