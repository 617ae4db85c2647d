from common.exceptions import ConflictError


class RequisitionAlreadyDecidedError(ConflictError):
    default_detail = "The requisition has already been approved or rejected."
    default_code = "invalid_state"
