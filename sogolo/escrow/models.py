"""
Escrow transaction data models.

A Transaction is the aggregate root. Product submissions, product images,
payment proofs, dispatch receipts and the state transition log all belong
to exactly one transaction.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class TransactionStatus(str, Enum):
    """Status of an escrow transaction.

    Having a seller is tracked separately through ``seller_id``; it is not
    a status value.
    """

    CREATED = "created"
    PRODUCT_SUBMITTED = "product_submitted"
    PRODUCT_APPROVED = "product_approved"
    REJECTED = "rejected"
    PAYMENT_UPLOADED = "payment_uploaded"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    DISPATCHED = "dispatched"
    PRODUCT_DELIVERED = "product_delivered"
    INSPECTION_PASSED = "inspection_passed"
    INSPECTION_FAILED = "inspection_failed"
    FUNDS_RELEASED = "funds_released"


VALID_TRANSITIONS: Dict[TransactionStatus, set] = {
    TransactionStatus.CREATED: {TransactionStatus.PRODUCT_SUBMITTED},
    TransactionStatus.PRODUCT_SUBMITTED: {
        TransactionStatus.PRODUCT_APPROVED,
        TransactionStatus.REJECTED,
    },
    TransactionStatus.PRODUCT_APPROVED: {TransactionStatus.PAYMENT_UPLOADED},
    TransactionStatus.REJECTED: set(),
    TransactionStatus.PAYMENT_UPLOADED: {
        TransactionStatus.PAYMENT_VERIFIED,
        TransactionStatus.PAYMENT_REJECTED,
    },
    # Buyer may upload a new proof after a rejected one
    TransactionStatus.PAYMENT_REJECTED: {TransactionStatus.PAYMENT_UPLOADED},
    TransactionStatus.PAYMENT_VERIFIED: {TransactionStatus.DISPATCHED},
    TransactionStatus.DISPATCHED: {TransactionStatus.PRODUCT_DELIVERED},
    TransactionStatus.PRODUCT_DELIVERED: {
        TransactionStatus.INSPECTION_PASSED,
        TransactionStatus.INSPECTION_FAILED,
    },
    TransactionStatus.INSPECTION_PASSED: {TransactionStatus.FUNDS_RELEASED},
    TransactionStatus.INSPECTION_FAILED: set(),
    TransactionStatus.FUNDS_RELEASED: set(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

# Presentation text, one entry per status
STATUS_LABELS: Dict[TransactionStatus, str] = {
    TransactionStatus.CREATED: "Awaiting seller",
    TransactionStatus.PRODUCT_SUBMITTED: "Product submitted",
    TransactionStatus.PRODUCT_APPROVED: "Product approved",
    TransactionStatus.REJECTED: "Product rejected",
    TransactionStatus.PAYMENT_UPLOADED: "Payment proof uploaded",
    TransactionStatus.PAYMENT_VERIFIED: "Payment verified",
    TransactionStatus.PAYMENT_REJECTED: "Payment rejected",
    TransactionStatus.DISPATCHED: "Dispatched",
    TransactionStatus.PRODUCT_DELIVERED: "Delivered",
    TransactionStatus.INSPECTION_PASSED: "Inspection passed",
    TransactionStatus.INSPECTION_FAILED: "Inspection failed",
    TransactionStatus.FUNDS_RELEASED: "Funds released",
}

STATUS_MESSAGES: Dict[TransactionStatus, str] = {
    TransactionStatus.CREATED: "has been created and is waiting for a seller",
    TransactionStatus.PRODUCT_SUBMITTED: "has a product waiting for buyer review",
    TransactionStatus.PRODUCT_APPROVED: "has an approved product and is awaiting payment",
    TransactionStatus.REJECTED: "was closed because the product was rejected",
    TransactionStatus.PAYMENT_UPLOADED: "has a payment proof waiting for verification",
    TransactionStatus.PAYMENT_VERIFIED: "has a verified payment and is ready for dispatch",
    TransactionStatus.PAYMENT_REJECTED: "has a rejected payment proof",
    TransactionStatus.DISPATCHED: "has been dispatched",
    TransactionStatus.PRODUCT_DELIVERED: "has been delivered and is awaiting inspection",
    TransactionStatus.INSPECTION_PASSED: "passed inspection and is awaiting fund release",
    TransactionStatus.INSPECTION_FAILED: "was closed because the product failed inspection",
    TransactionStatus.FUNDS_RELEASED: "is complete and the funds have been released",
}


def generate_id() -> str:
    """Generate a new record ID."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp as returned by the row store."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a numeric value to Decimal without float rounding artifacts."""
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _format_decimal(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _status_value(status: Any) -> str:
    value = status.value if isinstance(status, TransactionStatus) else status
    valid = [s.value for s in TransactionStatus]
    if value not in valid:
        raise ValueError(f"Invalid status: {status}. Must be one of {valid}")
    return value


@dataclass
class Transaction:
    """An escrow transaction between a buyer and (eventually) a seller.

    Attributes:
        id: Unique identifier
        buyer_id: Actor that opened the transaction
        title: Short listing title
        description: Free-form details from the buyer
        status: Current TransactionStatus value
        seller_id: Actor that joined the transaction, set at most once
        price: Product price, set once at product submission
        delivery_method: How the product will travel (courier, pickup, ...)
        delivery_branch: Depot or branch for the delivery method
        dispatch_receipt_url: Public reference of the dispatch receipt
        rejection_reason: Buyer's reason when the product was rejected
        submission_id: Product submission that moved the status to product_submitted
        payment_proof_id: Payment proof behind the latest payment_uploaded
        dispatch_receipt_id: Receipt recorded when the product was dispatched
    """

    id: str
    buyer_id: str
    title: str
    description: str = ""
    status: str = TransactionStatus.CREATED.value
    seller_id: Optional[str] = None
    price: Optional[Decimal] = None
    delivery_method: Optional[str] = None
    delivery_branch: Optional[str] = None
    dispatch_receipt_url: Optional[str] = None
    rejection_reason: Optional[str] = None
    submission_id: Optional[str] = None
    payment_proof_id: Optional[str] = None
    dispatch_receipt_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.buyer_id:
            raise ValueError("Buyer is required")
        if not self.title or not self.title.strip():
            raise ValueError("Title is required")
        if len(self.title) > 100:
            raise ValueError("Title too long (max 100 characters)")
        self.status = _status_value(self.status)
        self.price = to_decimal(self.price)
        if self.price is not None and self.price <= 0:
            raise ValueError("Price must be positive")

    @property
    def status_enum(self) -> TransactionStatus:
        return TransactionStatus(self.status)

    @property
    def has_seller(self) -> bool:
        return self.seller_id is not None

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self.status_enum in TERMINAL_STATUSES

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status_enum]

    def can_transition_to(self, new_status: TransactionStatus) -> bool:
        """Check if the graph has an edge from the current status to new_status."""
        return TransactionStatus(_status_value(new_status)) in VALID_TRANSITIONS[self.status_enum]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "price": _format_decimal(self.price),
            "delivery_method": self.delivery_method,
            "delivery_branch": self.delivery_branch,
            "dispatch_receipt_url": self.dispatch_receipt_url,
            "rejection_reason": self.rejection_reason,
            "submission_id": self.submission_id,
            "payment_proof_id": self.payment_proof_id,
            "dispatch_receipt_id": self.dispatch_receipt_id,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        return cls(
            id=data["id"],
            buyer_id=data["buyer_id"],
            seller_id=data.get("seller_id"),
            title=data["title"],
            description=data.get("description") or "",
            status=data.get("status", TransactionStatus.CREATED.value),
            price=data.get("price"),
            delivery_method=data.get("delivery_method"),
            delivery_branch=data.get("delivery_branch"),
            dispatch_receipt_url=data.get("dispatch_receipt_url"),
            rejection_reason=data.get("rejection_reason"),
            submission_id=data.get("submission_id"),
            payment_proof_id=data.get("payment_proof_id"),
            dispatch_receipt_id=data.get("dispatch_receipt_id"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class ProductImage:
    """A product photo stored in the object store."""

    id: str
    transaction_id: str
    image_url: str
    created_at: Optional[datetime] = None
    submission_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "image_url": self.image_url,
            "submission_id": self.submission_id,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProductImage":
        return cls(
            id=data["id"],
            transaction_id=data["transaction_id"],
            image_url=data["image_url"],
            created_at=parse_datetime(data.get("created_at")),
            submission_id=data.get("submission_id"),
        )


@dataclass
class ProductSubmission:
    """The seller's product offer for a transaction.

    ``images`` is populated on read; it is not part of the submission row.
    """

    id: str
    transaction_id: str
    product_name: str
    product_description: str
    price: Decimal
    images: List[ProductImage] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.price = to_decimal(self.price)
        if self.price is None or self.price <= 0:
            raise ValueError("Price must be positive")
        if not self.product_name or not self.product_name.strip():
            raise ValueError("Product name is required")

    @property
    def image_urls(self) -> List[str]:
        return [image.image_url for image in self.images]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "product_name": self.product_name,
            "product_description": self.product_description,
            "price": _format_decimal(self.price),
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict, images: Optional[List[ProductImage]] = None) -> "ProductSubmission":
        return cls(
            id=data["id"],
            transaction_id=data["transaction_id"],
            product_name=data["product_name"],
            product_description=data.get("product_description") or "",
            price=data["price"],
            images=images or [],
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class PaymentProof:
    """Evidence of payment uploaded by the buyer. The newest one is current."""

    id: str
    transaction_id: str
    proof_url: str
    amount: Decimal
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        if self.amount is None or self.amount <= 0:
            raise ValueError("Amount must be positive")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "proof_url": self.proof_url,
            "amount": _format_decimal(self.amount),
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentProof":
        return cls(
            id=data["id"],
            transaction_id=data["transaction_id"],
            proof_url=data["proof_url"],
            amount=data["amount"],
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class DispatchReceipt:
    """Courier or depot receipt recorded when the product is dispatched."""

    id: str
    transaction_id: str
    receipt_url: str
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "receipt_url": self.receipt_url,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DispatchReceipt":
        return cls(
            id=data["id"],
            transaction_id=data["transaction_id"],
            receipt_url=data["receipt_url"],
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class TransactionStateTransition:
    """Audit log entry for a committed change to a transaction."""

    id: str
    transaction_id: str
    to_status: str
    actor_id: str
    from_status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "metadata": self.metadata,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransactionStateTransition":
        return cls(
            id=data["id"],
            transaction_id=data["transaction_id"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            actor_id=data["actor_id"],
            metadata=data.get("metadata") or {},
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class TransactionMessage:
    """A note left on a transaction by one of its participants."""

    id: str
    transaction_id: str
    user_id: str
    message: str
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.message or not self.message.strip():
            raise ValueError("Message is required")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "message": self.message,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransactionMessage":
        return cls(
            id=data["id"],
            transaction_id=data["transaction_id"],
            user_id=data["user_id"],
            message=data["message"],
            created_at=parse_datetime(data.get("created_at")),
        )
