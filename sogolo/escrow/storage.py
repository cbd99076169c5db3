"""
Escrow storage layer.

Provides persistence for transactions and their dependent records. Status
and seller changes go through ``update_transaction_if``, a conditional
single-row update: the write only applies when the row still holds the
expected field values.

Submissions, payment proofs and dispatch receipts are insert-only and keyed
by their own ID. The transaction row points at the record that drove its
transition, so a record whose commit lost a race is never current and can
be deleted again.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from sogolo.escrow.models import (
    DispatchReceipt,
    PaymentProof,
    ProductImage,
    ProductSubmission,
    Transaction,
    TransactionMessage,
    TransactionStateTransition,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

# Fields update_transaction_if may change
MUTABLE_FIELDS = frozenset(
    {
        "status",
        "seller_id",
        "price",
        "delivery_method",
        "delivery_branch",
        "dispatch_receipt_url",
        "rejection_reason",
        "submission_id",
        "payment_proof_id",
        "dispatch_receipt_id",
    }
)


class TransactionStorage(Protocol):
    """Protocol for escrow persistence backends.

    Implementations raise StorageUnavailableError when the backend fails.
    """

    # Transactions
    def save_transaction(self, transaction: Transaction) -> str:
        """Insert a new transaction. Returns the transaction ID."""
        ...

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get a transaction by ID."""
        ...

    def update_transaction_if(
        self,
        transaction_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Transaction]:
        """Apply changes only if every expected field still matches.

        A None value in ``expected`` means the field must be unset.
        Returns the updated transaction, or None if the row did not match.
        """
        ...

    def list_transactions(
        self,
        participant_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        limit: int = 100,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> List[Transaction]:
        """List transactions, newest first.

        ``participant_id`` keeps rows where it is buyer or seller; ``search``
        keeps rows whose title contains it, ignoring case.
        """
        ...

    # Product submissions
    def save_submission(self, submission: ProductSubmission, images: List[ProductImage]) -> str:
        """Insert a submission and its images. Returns the submission ID."""
        ...

    def get_submission(self, submission_id: str) -> Optional[ProductSubmission]:
        """Get a submission with its images."""
        ...

    def delete_submission(self, submission_id: str) -> None:
        """Remove a submission and its images."""
        ...

    # Payment proofs
    def save_payment_proof(self, proof: PaymentProof) -> str:
        """Insert a payment proof. Returns the proof ID."""
        ...

    def get_payment_proof(self, proof_id: str) -> Optional[PaymentProof]:
        """Get a payment proof by ID."""
        ...

    def list_payment_proofs(self, transaction_id: str) -> List[PaymentProof]:
        """Get every payment proof for a transaction, oldest first."""
        ...

    def delete_payment_proof(self, proof_id: str) -> None:
        """Remove a payment proof."""
        ...

    # Dispatch receipts
    def save_dispatch_receipt(self, receipt: DispatchReceipt) -> str:
        """Insert a dispatch receipt. Returns the receipt ID."""
        ...

    def get_dispatch_receipt(self, receipt_id: str) -> Optional[DispatchReceipt]:
        """Get a dispatch receipt by ID."""
        ...

    def delete_dispatch_receipt(self, receipt_id: str) -> None:
        """Remove a dispatch receipt."""
        ...

    # Messages
    def save_message(self, message: TransactionMessage) -> str:
        """Insert a transaction message. Returns the message ID."""
        ...

    def list_messages(self, transaction_id: str) -> List[TransactionMessage]:
        """Get a transaction's messages, oldest first."""
        ...

    # Transitions (audit log)
    def save_transition(self, transition: TransactionStateTransition) -> str:
        """Save a state transition record. Returns the transition ID."""
        ...

    def get_transitions(self, transaction_id: str) -> List[TransactionStateTransition]:
        """Get all state transitions for a transaction, oldest first."""
        ...


def _matches(transaction: Transaction, expected: Dict[str, Any]) -> bool:
    for key, value in expected.items():
        current = getattr(transaction, key)
        if isinstance(value, TransactionStatus):
            value = value.value
        if value is None:
            if current is not None:
                return False
        elif current != value:
            return False
    return True


class InMemoryTransactionStorage:
    """In-memory escrow storage for testing and local development.

    A lock serialises conditional updates so the first writer wins under
    threads, as a conditional UPDATE does in the database.
    """

    def __init__(self):
        """Initialize empty storage."""
        self._transactions: Dict[str, Transaction] = {}
        self._submissions: Dict[str, ProductSubmission] = {}
        self._images: Dict[str, List[ProductImage]] = {}  # submission_id -> images
        self._proofs: Dict[str, PaymentProof] = {}
        self._receipts: Dict[str, DispatchReceipt] = {}
        self._messages: Dict[str, List[TransactionMessage]] = {}
        self._transitions: Dict[str, List[TransactionStateTransition]] = {}
        self._lock = threading.Lock()

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    # === Transactions ===

    def save_transaction(self, transaction: Transaction) -> str:
        """Insert a new transaction."""
        now = self._utc_now()
        with self._lock:
            if transaction.id in self._transactions:
                raise ValueError(f"Transaction {transaction.id} already exists")
            if transaction.created_at is None:
                transaction.created_at = now
            if transaction.updated_at is None:
                transaction.updated_at = transaction.created_at
            self._transactions[transaction.id] = transaction
            self._transitions.setdefault(transaction.id, [])
        return transaction.id

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get a transaction by ID."""
        return self._transactions.get(transaction_id)

    def update_transaction_if(
        self,
        transaction_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Transaction]:
        """Apply changes only if every expected field still matches."""
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        with self._lock:
            current = self._transactions.get(transaction_id)
            if current is None or not _matches(current, expected):
                return None
            values = {
                key: value.value if isinstance(value, TransactionStatus) else value
                for key, value in changes.items()
            }
            updated = replace(current, updated_at=self._utc_now(), **values)
            self._transactions[transaction_id] = updated
            return updated

    def list_transactions(
        self,
        participant_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        limit: int = 100,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> List[Transaction]:
        """List transactions with optional filters."""
        transactions = list(self._transactions.values())

        if participant_id is not None:
            transactions = [
                t
                for t in transactions
                if t.buyer_id == participant_id or t.seller_id == participant_id
            ]
        if status is not None:
            status_val = status.value if isinstance(status, TransactionStatus) else status
            transactions = [t for t in transactions if t.status == status_val]
        if search:
            needle = search.lower()
            transactions = [t for t in transactions if needle in t.title.lower()]

        # Sort by created_at desc
        transactions.sort(key=lambda t: t.created_at or self._utc_now(), reverse=True)

        return transactions[offset : offset + limit]

    # === Product submissions ===

    def save_submission(self, submission: ProductSubmission, images: List[ProductImage]) -> str:
        """Insert the submission and its images."""
        now = self._utc_now()
        if submission.created_at is None:
            submission.created_at = now
        for image in images:
            if image.created_at is None:
                image.created_at = now
        with self._lock:
            if submission.id in self._submissions:
                raise ValueError(f"Submission {submission.id} already exists")
            self._submissions[submission.id] = submission
            self._images[submission.id] = list(images)
        return submission.id

    def get_submission(self, submission_id: str) -> Optional[ProductSubmission]:
        """Get a submission with its images."""
        submission = self._submissions.get(submission_id)
        if submission is None:
            return None
        return replace(submission, images=list(self._images.get(submission_id, [])))

    def delete_submission(self, submission_id: str) -> None:
        with self._lock:
            self._submissions.pop(submission_id, None)
            self._images.pop(submission_id, None)

    # === Payment proofs ===

    def save_payment_proof(self, proof: PaymentProof) -> str:
        """Insert a payment proof."""
        if proof.created_at is None:
            proof.created_at = self._utc_now()
        with self._lock:
            if proof.id in self._proofs:
                raise ValueError(f"Payment proof {proof.id} already exists")
            self._proofs[proof.id] = proof
        return proof.id

    def get_payment_proof(self, proof_id: str) -> Optional[PaymentProof]:
        return self._proofs.get(proof_id)

    def list_payment_proofs(self, transaction_id: str) -> List[PaymentProof]:
        """Get every payment proof for a transaction, oldest first."""
        # Dicts keep insertion order
        return [p for p in self._proofs.values() if p.transaction_id == transaction_id]

    def delete_payment_proof(self, proof_id: str) -> None:
        with self._lock:
            self._proofs.pop(proof_id, None)

    # === Dispatch receipts ===

    def save_dispatch_receipt(self, receipt: DispatchReceipt) -> str:
        """Insert a dispatch receipt."""
        if receipt.created_at is None:
            receipt.created_at = self._utc_now()
        with self._lock:
            if receipt.id in self._receipts:
                raise ValueError(f"Dispatch receipt {receipt.id} already exists")
            self._receipts[receipt.id] = receipt
        return receipt.id

    def get_dispatch_receipt(self, receipt_id: str) -> Optional[DispatchReceipt]:
        return self._receipts.get(receipt_id)

    def delete_dispatch_receipt(self, receipt_id: str) -> None:
        with self._lock:
            self._receipts.pop(receipt_id, None)

    # === Messages ===

    def save_message(self, message: TransactionMessage) -> str:
        if message.created_at is None:
            message.created_at = self._utc_now()
        with self._lock:
            self._messages.setdefault(message.transaction_id, []).append(message)
        return message.id

    def list_messages(self, transaction_id: str) -> List[TransactionMessage]:
        return list(self._messages.get(transaction_id, []))

    # === Transitions ===

    def save_transition(self, transition: TransactionStateTransition) -> str:
        """Save a state transition record."""
        if transition.created_at is None:
            transition.created_at = self._utc_now()
        with self._lock:
            self._transitions.setdefault(transition.transaction_id, []).append(transition)
        return transition.id

    def get_transitions(self, transaction_id: str) -> List[TransactionStateTransition]:
        """Get all state transitions for a transaction."""
        # Appended in commit order
        return list(self._transitions.get(transaction_id, []))
