"""Exchange error taxonomy shared by the REST client, the stream session and the risk monitor."""

from __future__ import annotations


class ExchangeError(RuntimeError):
    """Base class for every exchange-facing failure."""


class ConnectivityError(ExchangeError):
    """Transport is down. Recoverable by reconnecting; never process-fatal."""


class NetworkError(ConnectivityError):
    """A REST call received no response.

    `request_sent` is False only when the failure happened before the request left the
    process (connection refused, DNS failure); the exchange cannot have seen it.
    """

    def __init__(self, message: str, *, request_sent: bool = True, method: str = "", path: str = ""):
        super().__init__(message)
        self.request_sent = bool(request_sent)
        self.method = method
        self.path = path


class OrderSubmissionAmbiguous(NetworkError):
    """A non-idempotent request was sent but no response arrived.

    The side effect may or may not have happened at the exchange; callers must reconcile
    against a position snapshot instead of assuming success or failure.
    """


class ProtocolError(ExchangeError):
    """A response was received and the request was rejected."""

    def __init__(self, code: int | str | None, message: str, *, method: str = "", request_id: int | str | None = None):
        super().__init__(f"{code}: {message}" if code is not None else str(message))
        self.code = code
        self.message = str(message)
        self.method = method
        self.request_id = request_id


class AuthError(ExchangeError):
    """Credential rejected, expired, or the refresh call failed."""


AuthenticationError = AuthError
