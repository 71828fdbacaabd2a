"""Exception hierarchy for the deal closure workflow."""

from typing import Optional


class ClosureError(Exception):
    """Base exception for all deal closure errors."""


class ClosurePreconditionError(ClosureError):
    """Raised before any write when the closure request cannot proceed."""


class UnauthenticatedError(ClosurePreconditionError):
    """Raised when the caller or its organization cannot be resolved."""


class LeadNotFoundError(ClosurePreconditionError):
    """Raised when the lead does not exist in the caller's organization."""


class InvalidClosureInputError(ClosurePreconditionError):
    """Raised when closure terms are out of range or inconsistent."""


class DuplicateClosureError(ClosurePreconditionError):
    """Raised when the lead already has a closure claimed or completed."""


class SequenceAllocationError(ClosureError):
    """Raised when the contract counter cannot be read or written."""


class ContractPersistenceError(ClosureError):
    """Raised when the contract row cannot be inserted."""


class CommissionMismatchError(ClosureError):
    """Raised when broker shares do not add up to the aggregate commission."""


class PartialClosureError(ClosureError):
    """Raised when a step after the contract insert fails.

    The contract (and whatever steps committed before ``step``) stays in
    place; nothing is rolled back automatically.
    """

    def __init__(
        self,
        message: str,
        step: str,
        contract_id: Optional[int] = None,
        contract_number: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.step = step
        self.contract_id = contract_id
        self.contract_number = contract_number
