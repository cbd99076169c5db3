"""Payload validation for escrow operations.

Each validator returns the cleaned value or raises ValidationFailedError.
"""

import math
from decimal import Decimal, InvalidOperation
from typing import Any, FrozenSet, Optional

from sogolo.config import EscrowConfig
from sogolo.escrow.errors import ValidationFailedError
from sogolo.escrow.files import FileUpload

TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 1000
REASON_MAX_LENGTH = 500
DELIVERY_FIELD_MAX_LENGTH = 100
MESSAGE_MAX_LENGTH = 1000
SEARCH_MAX_LENGTH = 100


def validate_text(
    value: Optional[str],
    field_name: str,
    min_length: int = 0,
    max_length: Optional[int] = None,
    required: bool = True,
) -> str:
    """Trim a text field and check its length."""
    text = (value or "").strip()
    if required and not text:
        raise ValidationFailedError(f"{field_name} is required")
    if text and len(text) < min_length:
        raise ValidationFailedError(f"{field_name} must be at least {min_length} characters")
    if max_length is not None and len(text) > max_length:
        raise ValidationFailedError(f"{field_name} must be at most {max_length} characters")
    return text


def validate_title(title: Optional[str]) -> str:
    return validate_text(title, "Title", TITLE_MIN_LENGTH, TITLE_MAX_LENGTH)


def validate_description(description: Optional[str], field_name: str = "Description") -> str:
    return validate_text(description, field_name, max_length=DESCRIPTION_MAX_LENGTH, required=False)


def validate_product_name(name: Optional[str]) -> str:
    return validate_text(name, "Product name", TITLE_MIN_LENGTH, TITLE_MAX_LENGTH)


def validate_reason(reason: Optional[str]) -> str:
    return validate_text(reason, "Rejection reason", max_length=REASON_MAX_LENGTH)


def validate_message(message: Optional[str]) -> str:
    return validate_text(message, "Message", max_length=MESSAGE_MAX_LENGTH)


def validate_search_term(term: Optional[str]) -> str:
    return validate_text(term, "Search term", max_length=SEARCH_MAX_LENGTH)


def validate_amount(value: Any, config: EscrowConfig, field_name: str = "Price") -> Decimal:
    """Check that a price or payment amount is a positive, bounded number."""
    if value is None or isinstance(value, bool):
        raise ValidationFailedError(f"{field_name} is required")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationFailedError(f"{field_name} must be a finite number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationFailedError(f"{field_name} must be a number")
    if not amount.is_finite():
        raise ValidationFailedError(f"{field_name} must be a finite number")
    if amount <= 0:
        raise ValidationFailedError(f"{field_name} must be positive")
    if amount > config.max_price:
        raise ValidationFailedError(
            f"{field_name} must not exceed {config.max_price} {config.currency}"
        )
    return amount


def validate_file(
    upload: Optional[FileUpload],
    field_name: str,
    allowed_types: FrozenSet[str],
    max_bytes: int,
) -> FileUpload:
    """Check that a file is present, non-empty, small enough and of an accepted type."""
    if upload is None:
        raise ValidationFailedError(f"{field_name} is required")
    if not upload.content:
        raise ValidationFailedError(f"{field_name} is empty")
    if upload.size > max_bytes:
        limit_mb = max_bytes / (1024 * 1024)
        raise ValidationFailedError(f"{field_name} must be at most {limit_mb:g}MB")
    content_type = (upload.content_type or "").lower().split(";")[0].strip()
    if content_type not in allowed_types:
        raise ValidationFailedError(
            f"{field_name} has unsupported type {upload.content_type!r}"
        )
    return upload


def validate_image(upload: Optional[FileUpload], config: EscrowConfig) -> FileUpload:
    return validate_file(upload, "Image", config.image_types, config.max_image_bytes)


def validate_document(
    upload: Optional[FileUpload], config: EscrowConfig, field_name: str = "Document"
) -> FileUpload:
    return validate_file(upload, field_name, config.document_types, config.max_document_bytes)
