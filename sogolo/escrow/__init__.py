"""Escrow transactions for Sogolo.

A buyer opens a transaction, a seller joins and submits a product, the
buyer pays against an admin-verified proof, the product is dispatched,
delivered and inspected, and an admin releases the funds.

Modules:
- models.py: Transaction and dependent records, statuses, transition graph
- roles.py: Actor identity and the per-operation party/status rules
- service.py: EscrowService, one method per lifecycle operation
- storage.py: Storage protocol and in-memory implementation
- files.py: Uploads, object store protocol and path scheme
- notifications.py: Change notification protocol and in-memory feed
- supabase_storage.py: Supabase-backed collaborators
"""

from sogolo.escrow.errors import (
    ConflictError,
    EscrowError,
    ForbiddenError,
    InvalidStateError,
    StorageUnavailableError,
    TransactionNotFoundError,
    ValidationFailedError,
)
from sogolo.escrow.files import FileUpload, InMemoryObjectStore, ObjectStore
from sogolo.escrow.models import (
    STATUS_LABELS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    DispatchReceipt,
    PaymentProof,
    ProductImage,
    ProductSubmission,
    Transaction,
    TransactionMessage,
    TransactionStateTransition,
    TransactionStatus,
)
from sogolo.escrow.notifications import ChangeNotifier, InMemoryChangeFeed
from sogolo.escrow.roles import OPERATION_RULES, Actor, Party, Role
from sogolo.escrow.service import EscrowService, TransactionStats
from sogolo.escrow.storage import InMemoryTransactionStorage, TransactionStorage

__all__ = [
    # Models
    "Transaction",
    "TransactionStatus",
    "TransactionStateTransition",
    "ProductSubmission",
    "ProductImage",
    "PaymentProof",
    "DispatchReceipt",
    "TransactionMessage",
    "VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
    "STATUS_LABELS",
    # Roles
    "Actor",
    "Role",
    "Party",
    "OPERATION_RULES",
    # Service
    "EscrowService",
    "TransactionStats",
    # Errors
    "EscrowError",
    "TransactionNotFoundError",
    "ForbiddenError",
    "InvalidStateError",
    "ConflictError",
    "ValidationFailedError",
    "StorageUnavailableError",
    # Collaborators
    "TransactionStorage",
    "InMemoryTransactionStorage",
    "ObjectStore",
    "InMemoryObjectStore",
    "FileUpload",
    "ChangeNotifier",
    "InMemoryChangeFeed",
]
