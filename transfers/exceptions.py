from common.exceptions import ConflictError, DomainError


class InvalidCodeError(DomainError):
    default_detail = "Invalid verification code."
    default_code = "invalid_code"


class InvalidStateError(ConflictError):
    default_detail = "The transfer is not at the step this verification belongs to."
    default_code = "invalid_state"
