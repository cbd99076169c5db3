"""
Escrow transaction service.

One method per lifecycle operation. Every operation runs the same checks
in the same order and stops at the first failure:

1. the transaction exists (TransactionNotFoundError)
2. the actor holds a permitted relationship (ForbiddenError)
3. the current status permits the operation (InvalidStateError)
4. the payload is well formed (ValidationFailedError)
5. files are uploaded, then dependent records are written
6. the status change is committed with a conditional update that also
   points the row at the new record

A conditional update that misses means another request won the race; the
loser gets InvalidStateError (or ConflictError for the seller slot), the
status is left as the winner wrote it and the loser's record is deleted.
Reads resolve records through the row, so a losing record is never current.
Uploaded files are not removed when a later step fails.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sogolo.config import EscrowConfig
from sogolo.escrow.errors import (
    ConflictError,
    EscrowError,
    ForbiddenError,
    InvalidStateError,
    StorageUnavailableError,
    TransactionNotFoundError,
    ValidationFailedError,
)
from sogolo.escrow.files import (
    FileUpload,
    ObjectStore,
    dispatch_receipt_path,
    payment_proof_path,
    product_image_path,
)
from sogolo.escrow.models import (
    DispatchReceipt,
    PaymentProof,
    ProductImage,
    ProductSubmission,
    Transaction,
    TransactionMessage,
    TransactionStateTransition,
    TransactionStatus,
    generate_id,
)
from sogolo.escrow.notifications import ChangeNotifier
from sogolo.escrow.roles import (
    OPERATION_RULES,
    Actor,
    OperationRule,
    available_actions,
    can_view,
    is_buyer,
)
from sogolo.escrow.storage import TransactionStorage
from sogolo.escrow.validation import (
    DELIVERY_FIELD_MAX_LENGTH,
    validate_amount,
    validate_description,
    validate_document,
    validate_image,
    validate_message,
    validate_product_name,
    validate_reason,
    validate_search_term,
    validate_text,
    validate_title,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
_STATS_PAGE_SIZE = 500


@dataclass
class TransactionStats:
    """Summary of the transactions an actor takes part in."""

    total: int = 0
    active: int = 0
    created_this_month: int = 0
    total_value: Decimal = Decimal("0")
    by_status: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "active": self.active,
            "created_this_month": self.created_this_month,
            "total_value": str(self.total_value),
            "by_status": dict(self.by_status),
        }


class EscrowService:
    """Drives escrow transactions through their lifecycle.

    Collaborators are injected so tests can pass in-memory implementations.
    """

    def __init__(
        self,
        storage: TransactionStorage,
        files: ObjectStore,
        notifier: Optional[ChangeNotifier] = None,
        config: Optional[EscrowConfig] = None,
    ):
        self.storage = storage
        self.files = files
        self.notifier = notifier
        self.config = config or EscrowConfig()

    # =========================================================================
    # Creation and joining
    # =========================================================================

    def create_transaction(
        self,
        actor: Actor,
        title: str,
        description: Optional[str] = "",
    ) -> Transaction:
        """Open a new transaction with the actor as buyer."""
        title = validate_title(title)
        description = validate_description(description)

        transaction = Transaction(
            id=generate_id(),
            buyer_id=actor.id,
            title=title,
            description=description,
        )
        self.storage.save_transaction(transaction)
        self._record(transaction, None, actor, {"event": "created"})
        self._notify(transaction, None)

        logger.info(f"Transaction created | id={transaction.id} | buyer={actor.id}")
        return transaction

    def join_transaction(self, transaction_id: str, actor: Actor) -> Transaction:
        """Take the seller slot of a transaction.

        The slot is filled at most once. The buyer cannot join their own
        transaction.
        """
        transaction = self._get_or_raise(transaction_id)

        if is_buyer(actor, transaction):
            raise ForbiddenError("The buyer cannot join their own transaction as seller")
        if self.config.require_seller_kyc and not actor.kyc_approved:
            raise ForbiddenError("Seller KYC must be approved before joining")
        if transaction.has_seller:
            raise ConflictError("Transaction already has a seller")

        updated = self.storage.update_transaction_if(
            transaction_id,
            expected={"seller_id": None},
            changes={"seller_id": actor.id},
        )
        if updated is None:
            logger.warning(f"Join race lost | id={transaction_id} | seller={actor.id}")
            raise ConflictError("Transaction already has a seller")

        self._record(updated, transaction.status, actor, {"event": "seller_joined"})
        self._notify(updated, transaction.status)

        logger.info(f"Seller joined | id={transaction_id} | seller={actor.id}")
        return updated

    # =========================================================================
    # Product
    # =========================================================================

    def submit_product(
        self,
        transaction_id: str,
        actor: Actor,
        product_name: str,
        product_description: Optional[str],
        price: Any,
        images: List[FileUpload],
    ) -> Transaction:
        """Seller submits the product, its price and images for buyer review."""
        rule, transaction = self._begin("submit_product", transaction_id, actor)

        product_name = validate_product_name(product_name)
        product_description = validate_description(product_description, "Product description")
        price = validate_amount(price, self.config, "Price")
        if not images:
            raise ValidationFailedError("At least one product image is required")
        if len(images) > self.config.max_images:
            raise ValidationFailedError(
                f"At most {self.config.max_images} product images are allowed"
            )
        for image in images:
            validate_image(image, self.config)

        product_images = []
        for image in images:
            url = self._upload(
                self.config.image_bucket,
                product_image_path(transaction_id, image.filename),
                image,
            )
            product_images.append(
                ProductImage(id=generate_id(), transaction_id=transaction_id, image_url=url)
            )

        submission = ProductSubmission(
            id=generate_id(),
            transaction_id=transaction_id,
            product_name=product_name,
            product_description=product_description,
            price=price,
        )
        for product_image in product_images:
            product_image.submission_id = submission.id
        self.storage.save_submission(submission, product_images)

        try:
            return self._commit(
                rule,
                transaction,
                actor,
                changes={"price": price, "submission_id": submission.id},
                metadata={"submission_id": submission.id, "images": len(product_images)},
            )
        except InvalidStateError:
            self._discard(self.storage.delete_submission, submission.id)
            raise

    def approve_product(self, transaction_id: str, actor: Actor) -> Transaction:
        rule, transaction = self._begin("approve_product", transaction_id, actor)
        return self._commit(rule, transaction, actor)

    def reject_product(self, transaction_id: str, actor: Actor, reason: str) -> Transaction:
        """Buyer rejects the product. The transaction closes as rejected."""
        rule, transaction = self._begin("reject_product", transaction_id, actor)
        reason = validate_reason(reason)
        return self._commit(
            rule,
            transaction,
            actor,
            changes={"rejection_reason": reason},
            metadata={"reason": reason},
        )

    # =========================================================================
    # Payment
    # =========================================================================

    def upload_payment_proof(
        self,
        transaction_id: str,
        actor: Actor,
        proof: FileUpload,
        amount: Any,
    ) -> Transaction:
        """Buyer uploads proof of payment. Allowed again after a rejected proof."""
        rule, transaction = self._begin("upload_payment_proof", transaction_id, actor)

        amount = validate_amount(amount, self.config, "Amount")
        validate_document(proof, self.config, "Payment proof")
        if transaction.price is not None and amount != transaction.price:
            logger.warning(
                f"Payment amount differs from price | id={transaction_id} | "
                f"amount={amount} | price={transaction.price}"
            )

        url = self._upload(
            self.config.image_bucket,
            payment_proof_path(transaction_id, proof.filename),
            proof,
        )
        payment = PaymentProof(
            id=generate_id(),
            transaction_id=transaction_id,
            proof_url=url,
            amount=amount,
        )
        self.storage.save_payment_proof(payment)

        try:
            return self._commit(
                rule,
                transaction,
                actor,
                changes={"payment_proof_id": payment.id},
                metadata={"proof_id": payment.id, "amount": str(amount)},
            )
        except InvalidStateError:
            self._discard(self.storage.delete_payment_proof, payment.id)
            raise

    def verify_payment(self, transaction_id: str, actor: Actor) -> Transaction:
        rule, transaction = self._begin("verify_payment", transaction_id, actor)
        return self._commit(rule, transaction, actor)

    def reject_payment(self, transaction_id: str, actor: Actor) -> Transaction:
        rule, transaction = self._begin("reject_payment", transaction_id, actor)
        return self._commit(rule, transaction, actor)

    # =========================================================================
    # Delivery
    # =========================================================================

    def set_delivery_details(
        self,
        transaction_id: str,
        actor: Actor,
        method: str,
        branch: Optional[str] = None,
    ) -> Transaction:
        """Set how the product travels. Independent of status; the last write wins."""
        rule, transaction = self._begin("set_delivery_details", transaction_id, actor)

        method = validate_text(method, "Delivery method", max_length=DELIVERY_FIELD_MAX_LENGTH)
        branch = validate_text(
            branch, "Delivery branch", max_length=DELIVERY_FIELD_MAX_LENGTH, required=False
        )

        updated = self.storage.update_transaction_if(
            transaction_id,
            expected={},
            changes={"delivery_method": method, "delivery_branch": branch or None},
        )
        if updated is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

        self._record(
            updated,
            transaction.status,
            actor,
            {"event": "delivery_details_set", "method": method, "branch": branch or None},
        )
        self._notify(updated, transaction.status)

        logger.info(
            f"Delivery details set | id={transaction_id} | method={method} | actor={actor.id}"
        )
        return updated

    def dispatch(self, transaction_id: str, actor: Actor, receipt: FileUpload) -> Transaction:
        """Record the dispatch receipt and mark the product as dispatched."""
        rule, transaction = self._begin("dispatch", transaction_id, actor)

        validate_document(receipt, self.config, "Dispatch receipt")

        url = self._upload(
            self.config.receipt_bucket,
            dispatch_receipt_path(transaction_id, receipt.filename),
            receipt,
        )
        record = DispatchReceipt(id=generate_id(), transaction_id=transaction_id, receipt_url=url)
        self.storage.save_dispatch_receipt(record)

        try:
            return self._commit(
                rule,
                transaction,
                actor,
                changes={"dispatch_receipt_url": url, "dispatch_receipt_id": record.id},
                metadata={"receipt_id": record.id},
            )
        except InvalidStateError:
            self._discard(self.storage.delete_dispatch_receipt, record.id)
            raise

    def mark_delivered(self, transaction_id: str, actor: Actor) -> Transaction:
        rule, transaction = self._begin("mark_delivered", transaction_id, actor)
        return self._commit(rule, transaction, actor)

    # =========================================================================
    # Inspection and release
    # =========================================================================

    def pass_inspection(self, transaction_id: str, actor: Actor) -> Transaction:
        rule, transaction = self._begin("pass_inspection", transaction_id, actor)
        return self._commit(rule, transaction, actor)

    def fail_inspection(self, transaction_id: str, actor: Actor) -> Transaction:
        rule, transaction = self._begin("fail_inspection", transaction_id, actor)
        return self._commit(rule, transaction, actor)

    def release_funds(self, transaction_id: str, actor: Actor) -> Transaction:
        rule, transaction = self._begin("release_funds", transaction_id, actor)
        return self._commit(rule, transaction, actor)

    # =========================================================================
    # Messages
    # =========================================================================

    def add_message(self, transaction_id: str, actor: Actor, message: str) -> TransactionMessage:
        """Leave a note on a transaction. Participants and admins only."""
        self._get_viewable(transaction_id, actor)
        message = validate_message(message)

        record = TransactionMessage(
            id=generate_id(),
            transaction_id=transaction_id,
            user_id=actor.id,
            message=message,
        )
        self.storage.save_message(record)
        logger.info(f"Message added | id={transaction_id} | actor={actor.id}")
        return record

    def list_messages(self, transaction_id: str, actor: Actor) -> List[TransactionMessage]:
        """Get a transaction's messages, oldest first."""
        self._get_viewable(transaction_id, actor)
        return self.storage.list_messages(transaction_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_transaction(self, transaction_id: str, actor: Actor) -> Transaction:
        """Get a transaction the actor may see.

        Participants and admins always may. Anyone may see a transaction
        whose seller slot is still open, so a prospective seller can review
        it before joining.
        """
        transaction = self._get_or_raise(transaction_id)
        if not (can_view(actor, transaction) or not transaction.has_seller):
            raise ForbiddenError("Only participants can view this transaction")
        return transaction

    def list_transactions(
        self,
        actor: Actor,
        status: Optional[TransactionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Transaction]:
        """List transactions where the actor is buyer or seller, newest first."""
        self._check_page(limit, offset)
        return self.storage.list_transactions(
            participant_id=actor.id, status=status, limit=limit, offset=offset
        )

    def list_all_transactions(
        self,
        actor: Actor,
        status: Optional[TransactionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Transaction]:
        """List every transaction. Admin only."""
        if not actor.is_admin:
            raise ForbiddenError("Only an admin can list all transactions")
        self._check_page(limit, offset)
        return self.storage.list_transactions(status=status, limit=limit, offset=offset)

    def search_transactions(
        self,
        actor: Actor,
        term: str,
        status: Optional[TransactionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Transaction]:
        """Search the actor's transactions by title, newest first."""
        term = validate_search_term(term)
        self._check_page(limit, offset)
        return self.storage.list_transactions(
            participant_id=actor.id, status=status, limit=limit, offset=offset, search=term
        )

    def get_product_details(self, transaction_id: str, actor: Actor) -> Optional[ProductSubmission]:
        """The submission that moved the transaction to product_submitted, if any."""
        transaction = self._get_viewable(transaction_id, actor)
        if transaction.submission_id is None:
            return None
        return self.storage.get_submission(transaction.submission_id)

    def get_payment_proof(self, transaction_id: str, actor: Actor) -> Optional[PaymentProof]:
        """The proof behind the latest committed upload, if any."""
        transaction = self._get_viewable(transaction_id, actor)
        if transaction.payment_proof_id is None:
            return None
        return self.storage.get_payment_proof(transaction.payment_proof_id)

    def get_dispatch_receipt(self, transaction_id: str, actor: Actor) -> Optional[DispatchReceipt]:
        transaction = self._get_viewable(transaction_id, actor)
        if transaction.dispatch_receipt_id is None:
            return None
        return self.storage.get_dispatch_receipt(transaction.dispatch_receipt_id)

    def get_history(self, transaction_id: str, actor: Actor) -> List[TransactionStateTransition]:
        """Get the audit log for a transaction, oldest first."""
        self._get_viewable(transaction_id, actor)
        return self.storage.get_transitions(transaction_id)

    def available_actions(self, transaction_id: str, actor: Actor) -> List[str]:
        """Operations the actor may perform on the transaction right now."""
        transaction = self._get_or_raise(transaction_id)
        actions = available_actions(actor, transaction)
        if self.config.require_seller_kyc and not actor.kyc_approved and "join" in actions:
            actions.remove("join")
        return actions

    def get_stats(self, actor: Actor) -> TransactionStats:
        """Summarise the actor's transactions."""
        stats = TransactionStats()
        now = datetime.now(timezone.utc)
        offset = 0
        while True:
            page = self.storage.list_transactions(
                participant_id=actor.id, limit=_STATS_PAGE_SIZE, offset=offset
            )
            for transaction in page:
                stats.total += 1
                stats.by_status[transaction.status] = stats.by_status.get(transaction.status, 0) + 1
                if not transaction.is_terminal:
                    stats.active += 1
                if transaction.price is not None:
                    stats.total_value += transaction.price
                created = transaction.created_at
                if created and (created.year, created.month) == (now.year, now.month):
                    stats.created_this_month += 1
            if len(page) < _STATS_PAGE_SIZE:
                break
            offset += _STATS_PAGE_SIZE
        return stats

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_or_raise(self, transaction_id: str) -> Transaction:
        transaction = self.storage.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def _get_viewable(self, transaction_id: str, actor: Actor) -> Transaction:
        transaction = self._get_or_raise(transaction_id)
        if not can_view(actor, transaction):
            raise ForbiddenError("Only participants can view this transaction")
        return transaction

    def _begin(self, operation: str, transaction_id: str, actor: Actor):
        """Fetch the transaction and run the party and status checks for an operation."""
        rule = OPERATION_RULES[operation]
        transaction = self._get_or_raise(transaction_id)
        if not rule.allows_party(actor, transaction):
            logger.info(
                f"Forbidden | op={operation} | id={transaction_id} | actor={actor.id}"
            )
            raise ForbiddenError(rule.description)
        if not rule.allows_status(transaction):
            raise InvalidStateError(
                f"Cannot {operation.replace('_', ' ')} in status: {transaction.status}"
            )
        return rule, transaction

    def _commit(
        self,
        rule: OperationRule,
        transaction: Transaction,
        actor: Actor,
        changes: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Write the rule's target status if the row still has the status we read."""
        if not transaction.can_transition_to(rule.to_status):
            raise InvalidStateError(
                f"Invalid transition: {transaction.status} -> {rule.to_status.value}"
            )

        updated = self.storage.update_transaction_if(
            transaction.id,
            expected={"status": transaction.status},
            changes={"status": rule.to_status.value, **(changes or {})},
        )
        if updated is None:
            logger.warning(
                f"Transition race lost | id={transaction.id} | "
                f"expected={transaction.status} | target={rule.to_status.value}"
            )
            raise InvalidStateError(
                "Transaction status was modified by another request. Please refresh and try again."
            )

        self._record(updated, transaction.status, actor, metadata or {})
        self._notify(updated, transaction.status)

        logger.info(
            f"Transaction {rule.to_status.value} | id={transaction.id} | "
            f"from={transaction.status} | actor={actor.id}"
        )
        return updated

    def _upload(self, bucket: str, path: str, upload: FileUpload) -> str:
        try:
            return self.files.upload(bucket, path, upload.content, upload.content_type)
        except EscrowError:
            raise
        except Exception as e:
            logger.error(f"Upload failed | bucket={bucket} | path={path} | error={e}")
            raise StorageUnavailableError(f"Failed to upload {upload.filename}") from e

    def _record(
        self,
        transaction: Transaction,
        from_status: Optional[str],
        actor: Actor,
        metadata: Dict[str, Any],
    ) -> None:
        """Append to the audit log. The change is already committed, so a failure is only logged."""
        transition = TransactionStateTransition(
            id=generate_id(),
            transaction_id=transaction.id,
            from_status=from_status,
            to_status=transaction.status,
            actor_id=actor.id,
            metadata=metadata,
        )
        try:
            self.storage.save_transition(transition)
        except StorageUnavailableError as e:
            logger.error(f"Failed to record transition | id={transaction.id} | error={e}")

    def _discard(self, delete: Callable[[str], None], record_id: str) -> None:
        """Delete a record whose status commit did not go through."""
        try:
            delete(record_id)
        except StorageUnavailableError as e:
            logger.error(f"Failed to discard record | record={record_id} | error={e}")

    def _notify(self, transaction: Transaction, previous_status: Optional[str]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(transaction, previous_status)
        except Exception as e:
            logger.warning(f"Change notification failed | id={transaction.id} | error={e}")

    def _check_page(self, limit: int, offset: int) -> None:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationFailedError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationFailedError("offset must not be negative")
