"""
Domain errors raised by the escrow, deals and disputes services.

Every error is a DRF ``APIException`` so views can let them propagate and the
default exception handler renders ``{"detail": ...}`` with the
matching HTTP status.
"""
from rest_framework import status
from rest_framework.exceptions import APIException


class EscrowError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Escrow operation failed."
    default_code = 'escrow_error'


class EscrowValidationError(EscrowError):
    """Malformed input. Never retried."""
    default_detail = "Invalid input."
    default_code = 'invalid'


class InvalidSplitError(EscrowValidationError):
    default_detail = "Milestone percentages must sum to 100."
    default_code = 'invalid_split'


class AuthorizationError(EscrowError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You are not allowed to perform this action."
    default_code = 'forbidden'


class NotFoundError(EscrowError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found."
    default_code = 'not_found'


class StateConflictError(EscrowError):
    """The operation is not valid in the current milestone/dispute state.

    Callers may retry only after re-fetching state.
    """
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Operation not allowed in the current state."
    default_code = 'state_conflict'


class AlreadyFundedError(StateConflictError):
    default_detail = "Milestone has already been funded."
    default_code = 'already_funded'


class NotFundedError(StateConflictError):
    default_detail = "Milestone has no escrowed funds."
    default_code = 'not_funded'


class AlreadyReleasedError(StateConflictError):
    default_detail = "Escrowed funds for this milestone are no longer held."
    default_code = 'already_released'


class ReleaseNotEligibleError(StateConflictError):
    default_detail = "Milestone is not eligible for release."
    default_code = 'release_not_eligible'


class DuplicateSubmissionError(StateConflictError):
    default_detail = "Deliverables have already been submitted for this milestone."
    default_code = 'duplicate_submission'


class ExternalGatewayError(EscrowError):
    """The payment gateway refused or failed. No state was persisted, safe to retry."""
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment gateway request failed."
    default_code = 'gateway_error'
