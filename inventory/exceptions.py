from common.exceptions import ConflictError, DomainError


class BatchNotFoundError(DomainError):
    status_code = 404
    default_detail = "No matching batch was found."
    default_code = "batch_not_found"


class InvalidBatchTransitionError(ConflictError):
    default_detail = "The batch cannot move to the requested status."
    default_code = "invalid_batch_transition"
