"""
Supabase-backed escrow collaborators.

SupabaseTransactionStorage keeps rows in PostgREST tables,
SupabaseObjectStore keeps files in storage buckets, and
SupabaseNotificationWriter inserts rows into the notifications table that
clients subscribe to. Client failures are raised as StorageUnavailableError
with the original exception chained.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from sogolo.escrow.errors import StorageUnavailableError
from sogolo.escrow.models import (
    STATUS_LABELS,
    STATUS_MESSAGES,
    DispatchReceipt,
    PaymentProof,
    ProductImage,
    ProductSubmission,
    Transaction,
    TransactionMessage,
    TransactionStateTransition,
    TransactionStatus,
)
from sogolo.escrow.storage import MUTABLE_FIELDS

logger = logging.getLogger(__name__)

# =============================================================================
# Table names (keep in sync with SQL migrations)
# =============================================================================

TRANSACTIONS_TABLE = "transactions"
PRODUCT_SUBMISSIONS_TABLE = "product_submissions"
PRODUCT_IMAGES_TABLE = "product_images"
PAYMENT_PROOFS_TABLE = "payment_proofs"
DISPATCH_RECEIPTS_TABLE = "dispatch_receipts"
MESSAGES_TABLE = "transaction_messages"
TRANSITIONS_TABLE = "transaction_transitions"
NOTIFICATIONS_TABLE = "notifications"


def _storage_error(action: str, error: Exception) -> StorageUnavailableError:
    logger.error(f"Supabase {action} failed | error={error}")
    return StorageUnavailableError(f"Storage unavailable during {action}")


def _escape_like(term: str) -> str:
    """Escape LIKE wildcards so the term matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_value(value: Any) -> Any:
    if isinstance(value, TransactionStatus):
        return value.value
    if value is not None and not isinstance(value, (str, int, bool, dict, list)):
        # Decimal and friends travel as strings; PostgREST casts numerics
        return str(value)
    return value


class SupabaseTransactionStorage:
    """Escrow storage on Supabase tables."""

    def __init__(self, client: Client):
        self.client = client

    # === Transactions ===

    def save_transaction(self, transaction: Transaction) -> str:
        data = transaction.to_dict()
        # Let the database stamp timestamps it was not given
        data = {k: v for k, v in data.items() if v is not None}
        try:
            result = self.client.table(TRANSACTIONS_TABLE).insert(data).execute()
        except Exception as e:
            raise _storage_error("insert transaction", e) from e
        if result.data:
            row = Transaction.from_dict(result.data[0])
            transaction.created_at = row.created_at
            transaction.updated_at = row.updated_at
        return transaction.id

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        try:
            result = (
                self.client.table(TRANSACTIONS_TABLE)
                .select("*")
                .eq("id", transaction_id)
                .execute()
            )
        except Exception as e:
            raise _storage_error("get transaction", e) from e
        return Transaction.from_dict(result.data[0]) if result.data else None

    def update_transaction_if(
        self,
        transaction_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Transaction]:
        """UPDATE ... WHERE id = ? AND <expected>; an empty result means no match."""
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        update_data = {key: _row_value(value) for key, value in changes.items()}
        update_data["updated_at"] = datetime.now(timezone.utc).isoformat()

        try:
            query = (
                self.client.table(TRANSACTIONS_TABLE)
                .update(update_data)
                .eq("id", transaction_id)
            )
            for key, value in expected.items():
                if value is None:
                    query = query.is_(key, "null")
                else:
                    query = query.eq(key, _row_value(value))
            result = query.execute()
        except Exception as e:
            raise _storage_error("conditional update", e) from e

        if result.data:
            return Transaction.from_dict(result.data[0])
        return None

    def list_transactions(
        self,
        participant_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        limit: int = 100,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> List[Transaction]:
        try:
            query = self.client.table(TRANSACTIONS_TABLE).select("*")
            if participant_id is not None:
                query = query.or_(f"buyer_id.eq.{participant_id},seller_id.eq.{participant_id}")
            if status is not None:
                query = query.eq("status", _row_value(status))
            if search:
                query = query.ilike("title", f"%{_escape_like(search)}%")
            result = (
                query.order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
        except Exception as e:
            raise _storage_error("list transactions", e) from e
        return [Transaction.from_dict(row) for row in result.data or []]

    # === Product submissions ===

    def save_submission(self, submission: ProductSubmission, images: List[ProductImage]) -> str:
        data = {k: v for k, v in submission.to_dict().items() if v is not None}
        image_rows = [
            {k: v for k, v in image.to_dict().items() if v is not None} for image in images
        ]
        try:
            self.client.table(PRODUCT_SUBMISSIONS_TABLE).insert(data).execute()
            if image_rows:
                self.client.table(PRODUCT_IMAGES_TABLE).insert(image_rows).execute()
        except Exception as e:
            raise _storage_error("save submission", e) from e
        return submission.id

    def get_submission(self, submission_id: str) -> Optional[ProductSubmission]:
        try:
            result = (
                self.client.table(PRODUCT_SUBMISSIONS_TABLE)
                .select("*")
                .eq("id", submission_id)
                .limit(1)
                .execute()
            )
            if not result.data:
                return None
            images = (
                self.client.table(PRODUCT_IMAGES_TABLE)
                .select("*")
                .eq("submission_id", submission_id)
                .order("created_at")
                .execute()
            )
        except Exception as e:
            raise _storage_error("get submission", e) from e
        return ProductSubmission.from_dict(
            result.data[0],
            images=[ProductImage.from_dict(row) for row in images.data or []],
        )

    def delete_submission(self, submission_id: str) -> None:
        try:
            self.client.table(PRODUCT_IMAGES_TABLE).delete().eq(
                "submission_id", submission_id
            ).execute()
            self.client.table(PRODUCT_SUBMISSIONS_TABLE).delete().eq("id", submission_id).execute()
        except Exception as e:
            raise _storage_error("delete submission", e) from e

    # === Payment proofs ===

    def save_payment_proof(self, proof: PaymentProof) -> str:
        data = {k: v for k, v in proof.to_dict().items() if v is not None}
        try:
            self.client.table(PAYMENT_PROOFS_TABLE).insert(data).execute()
        except Exception as e:
            raise _storage_error("save payment proof", e) from e
        return proof.id

    def get_payment_proof(self, proof_id: str) -> Optional[PaymentProof]:
        try:
            result = (
                self.client.table(PAYMENT_PROOFS_TABLE)
                .select("*")
                .eq("id", proof_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise _storage_error("get payment proof", e) from e
        return PaymentProof.from_dict(result.data[0]) if result.data else None

    def list_payment_proofs(self, transaction_id: str) -> List[PaymentProof]:
        try:
            result = (
                self.client.table(PAYMENT_PROOFS_TABLE)
                .select("*")
                .eq("transaction_id", transaction_id)
                .order("created_at")
                .execute()
            )
        except Exception as e:
            raise _storage_error("list payment proofs", e) from e
        return [PaymentProof.from_dict(row) for row in result.data or []]

    def delete_payment_proof(self, proof_id: str) -> None:
        try:
            self.client.table(PAYMENT_PROOFS_TABLE).delete().eq("id", proof_id).execute()
        except Exception as e:
            raise _storage_error("delete payment proof", e) from e

    # === Dispatch receipts ===

    def save_dispatch_receipt(self, receipt: DispatchReceipt) -> str:
        data = {k: v for k, v in receipt.to_dict().items() if v is not None}
        try:
            self.client.table(DISPATCH_RECEIPTS_TABLE).insert(data).execute()
        except Exception as e:
            raise _storage_error("save dispatch receipt", e) from e
        return receipt.id

    def get_dispatch_receipt(self, receipt_id: str) -> Optional[DispatchReceipt]:
        try:
            result = (
                self.client.table(DISPATCH_RECEIPTS_TABLE)
                .select("*")
                .eq("id", receipt_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise _storage_error("get dispatch receipt", e) from e
        return DispatchReceipt.from_dict(result.data[0]) if result.data else None

    def delete_dispatch_receipt(self, receipt_id: str) -> None:
        try:
            self.client.table(DISPATCH_RECEIPTS_TABLE).delete().eq("id", receipt_id).execute()
        except Exception as e:
            raise _storage_error("delete dispatch receipt", e) from e

    # === Messages ===

    def save_message(self, message: TransactionMessage) -> str:
        data = {k: v for k, v in message.to_dict().items() if v is not None}
        try:
            self.client.table(MESSAGES_TABLE).insert(data).execute()
        except Exception as e:
            raise _storage_error("save message", e) from e
        return message.id

    def list_messages(self, transaction_id: str) -> List[TransactionMessage]:
        try:
            result = (
                self.client.table(MESSAGES_TABLE)
                .select("*")
                .eq("transaction_id", transaction_id)
                .order("created_at")
                .execute()
            )
        except Exception as e:
            raise _storage_error("list messages", e) from e
        return [TransactionMessage.from_dict(row) for row in result.data or []]

    # === Transitions ===

    def save_transition(self, transition: TransactionStateTransition) -> str:
        data = {k: v for k, v in transition.to_dict().items() if v is not None}
        try:
            self.client.table(TRANSITIONS_TABLE).insert(data).execute()
        except Exception as e:
            raise _storage_error("save transition", e) from e
        return transition.id

    def get_transitions(self, transaction_id: str) -> List[TransactionStateTransition]:
        try:
            result = (
                self.client.table(TRANSITIONS_TABLE)
                .select("*")
                .eq("transaction_id", transaction_id)
                .order("created_at")
                .execute()
            )
        except Exception as e:
            raise _storage_error("get transitions", e) from e
        return [TransactionStateTransition.from_dict(row) for row in result.data or []]


class SupabaseObjectStore:
    """Files in Supabase storage buckets, addressed by public URL."""

    def __init__(self, client: Client):
        self.client = client

    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        try:
            store = self.client.storage.from_(bucket)
            store.upload(path, content, {"content-type": content_type})
            return store.get_public_url(path)
        except Exception as e:
            raise _storage_error(f"upload to {bucket}", e) from e


class SupabaseNotificationWriter:
    """Inserts a notification row for each participant of a changed transaction."""

    def __init__(self, client: Client):
        self.client = client

    def publish(self, transaction: Transaction, previous_status: Optional[str]) -> None:
        status = transaction.status_enum
        if previous_status is None:
            kind = "transaction_created"
            title = "New Transaction Created"
        else:
            kind = "transaction_updated"
            title = STATUS_LABELS[status]

        recipients = [transaction.buyer_id]
        if transaction.seller_id:
            recipients.append(transaction.seller_id)

        rows = [
            {
                "user_id": user_id,
                "type": kind,
                "title": title,
                "message": f'Your transaction "{transaction.title}" {STATUS_MESSAGES[status]}.',
                "data": {
                    "transaction_id": transaction.id,
                    "status": transaction.status,
                    "previous_status": previous_status,
                },
                "is_read": False,
            }
            for user_id in recipients
        ]
        try:
            self.client.table(NOTIFICATIONS_TABLE).insert(rows).execute()
        except Exception as e:
            raise _storage_error("insert notifications", e) from e
