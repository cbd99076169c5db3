"""Exceptions raised by the escrow engine.

Every failed operation raises one of these; none of them are reported as
silent no-ops. The HTTP layer maps each class to a status code.
"""


class EscrowError(Exception):
    """Base exception for escrow operations."""

    pass


class TransactionNotFoundError(EscrowError):
    """The referenced transaction does not exist."""

    pass


class ForbiddenError(EscrowError):
    """The actor lacks the role or relationship the operation requires."""

    pass


class InvalidStateError(EscrowError):
    """The transaction's current status does not permit the operation."""

    pass


class ConflictError(EscrowError):
    """A once-only invariant was already satisfied, e.g. the seller slot."""

    pass


class ValidationFailedError(EscrowError):
    """The operation payload is malformed."""

    pass


class StorageUnavailableError(EscrowError):
    """The row store or object store failed."""

    pass
