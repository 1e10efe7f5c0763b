class TokenError(Exception):
    """Базовая ошибка домена токенов: тип ошибки + HTTP-код для внешнего слоя"""
    kind: str = "internal"
    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequestError(TokenError):
    kind = "bad_request"
    status_code = 400
    default_message = "Bad request"


class NotFoundError(TokenError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class ConflictError(TokenError):
    kind = "conflict"
    status_code = 409
    default_message = "Conflict"


class InsufficientFundsError(BadRequestError):
    kind = "insufficient_funds"
    default_message = "Insufficient funds"


class TransactionExistsError(ConflictError):
    default_message = "This transaction has already been processed"


class InternalError(TokenError):
    kind = "internal"
    status_code = 500
    default_message = "Internal error"
