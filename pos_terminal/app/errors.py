"""
Error types raised by the terminal core.

Every error carries a stable `code` so the presentation layer can branch on it
without parsing messages. Authentication failures are deliberately absent: they
are returned as `AuthResult(success=False, ...)`, never raised.
"""


class TerminalError(Exception):
    code = "TERMINAL_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.code)
        if code:
            self.code = code

    @property
    def detail(self) -> str:
        return str(self)


class CheckoutValidationError(TerminalError):
    """Empty cart, insufficient cash, bad quantity. Fixed by the operator, never queued."""

    code = "VALIDATION_ERROR"


class StockSyncError(TerminalError):
    """Local stock knowledge is stale or insufficient for the requested quantity."""

    code = "STOCK_SYNC_ERROR"


class NetworkError(TerminalError):
    code = "NETWORK_ERROR"


class RemoteError(TerminalError):
    # The remote answered but refused or failed the request.
    code = "REMOTE_ERROR"


class IllegalTransitionError(TerminalError):
    code = "ILLEGAL_TRANSITION"
