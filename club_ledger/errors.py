from typing import Optional


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class ConflictError(LedgerServiceError):
    pass


class InvalidStateError(LedgerServiceError):
    pass


class GatewayDeclinedError(LedgerServiceError):
    def __init__(self, message: str, code: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.detail = detail
