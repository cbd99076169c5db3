"""Configuration for the Sogolo escrow engine."""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import FrozenSet

DEFAULT_IMAGE_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
    }
)

DEFAULT_DOCUMENT_TYPES = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/jpg",
        "image/png",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").lower().strip()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass
class EscrowConfig:
    """Tunable limits and storage locations for escrow transactions.

    Attributes:
        image_bucket: Object store bucket for product images and payment proofs
        receipt_bucket: Object store bucket for dispatch receipts
        max_image_bytes: Upper bound for a single product image
        max_document_bytes: Upper bound for payment proofs and receipts
        image_types: Accepted content types for product images
        document_types: Accepted content types for proofs and receipts
        max_price: Largest accepted price or payment amount
        currency: ISO code prices are expressed in
        max_images: Largest number of images per product submission
        require_seller_kyc: Only sellers with approved KYC may join
    """

    image_bucket: str = "transaction-images"
    receipt_bucket: str = "transaction-receipts"
    max_image_bytes: int = 2 * 1024 * 1024
    max_document_bytes: int = 5 * 1024 * 1024
    image_types: FrozenSet[str] = field(default_factory=lambda: DEFAULT_IMAGE_TYPES)
    document_types: FrozenSet[str] = field(default_factory=lambda: DEFAULT_DOCUMENT_TYPES)
    max_price: Decimal = Decimal("10000000")
    currency: str = "MWK"
    max_images: int = 10
    require_seller_kyc: bool = False

    def __post_init__(self):
        if not isinstance(self.max_price, Decimal):
            self.max_price = Decimal(str(self.max_price))
        if self.max_price <= 0:
            raise ValueError("max_price must be positive")
        if self.max_image_bytes <= 0 or self.max_document_bytes <= 0:
            raise ValueError("File size limits must be positive")
        if self.max_images < 1:
            raise ValueError("max_images must be at least 1")

    @classmethod
    def from_env(cls) -> "EscrowConfig":
        """Build a config from SOGOLO_* environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            image_bucket=os.environ.get("SOGOLO_IMAGE_BUCKET", defaults.image_bucket),
            receipt_bucket=os.environ.get("SOGOLO_RECEIPT_BUCKET", defaults.receipt_bucket),
            max_image_bytes=int(
                os.environ.get("SOGOLO_MAX_IMAGE_BYTES", defaults.max_image_bytes)
            ),
            max_document_bytes=int(
                os.environ.get("SOGOLO_MAX_DOCUMENT_BYTES", defaults.max_document_bytes)
            ),
            max_price=Decimal(os.environ.get("SOGOLO_MAX_PRICE", str(defaults.max_price))),
            currency=os.environ.get("SOGOLO_CURRENCY", defaults.currency),
            max_images=int(os.environ.get("SOGOLO_MAX_IMAGES", defaults.max_images)),
            require_seller_kyc=_env_bool("SOGOLO_REQUIRE_SELLER_KYC", defaults.require_seller_kyc),
        )
