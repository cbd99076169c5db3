"""Escrow transaction routes.

One endpoint per lifecycle operation. Role, status and payload checks live
in the escrow engine; engine errors are turned into HTTP responses by the
exception handler registered in main.py.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile, status
from pydantic import BaseModel, Field

from sogolo.escrow.files import FileUpload
from sogolo.escrow.models import (
    DispatchReceipt,
    PaymentProof,
    ProductSubmission,
    Transaction,
    TransactionMessage,
    TransactionStateTransition,
    TransactionStatus,
)
from sogolo.escrow.validation import (
    DESCRIPTION_MAX_LENGTH,
    MESSAGE_MAX_LENGTH,
    SEARCH_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
)

from ..auth import CurrentActor
from ..database import Escrow
from ..logging_config import get_logger, log_transaction_event
from ..rate_limit import READ_LIMIT, UPLOAD_LIMIT, WRITE_LIMIT, limiter

logger = get_logger("sogolo.api.transactions")
router = APIRouter(prefix="/transactions", tags=["transactions"])


# =============================================================================
# Request/Response Models
# =============================================================================


class TransactionCreate(BaseModel):
    """Request to open a transaction."""

    title: str = Field(..., min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)
    description: str = Field("", max_length=DESCRIPTION_MAX_LENGTH)


class TransactionResponse(BaseModel):
    """Transaction details response."""

    id: str
    buyer_id: str
    seller_id: str | None = None
    title: str
    description: str
    status: TransactionStatus
    status_label: str
    price: Decimal | None = None
    delivery_method: str | None = None
    delivery_branch: str | None = None
    dispatch_receipt_url: str | None = None
    rejection_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransactionListResponse(BaseModel):
    """Paginated list of transactions."""

    transactions: list[TransactionResponse]
    limit: int
    offset: int


class RejectProductRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class DeliveryDetailsRequest(BaseModel):
    method: str = Field(..., min_length=1, max_length=100)
    branch: str | None = Field(None, max_length=100)


class ProductImageResponse(BaseModel):
    id: str
    image_url: str
    created_at: datetime | None = None


class ProductResponse(BaseModel):
    """Product submission with its images."""

    id: str
    transaction_id: str
    product_name: str
    product_description: str
    price: Decimal
    images: list[ProductImageResponse]
    created_at: datetime | None = None


class PaymentProofResponse(BaseModel):
    id: str
    transaction_id: str
    proof_url: str
    amount: Decimal
    created_at: datetime | None = None


class DispatchReceiptResponse(BaseModel):
    id: str
    transaction_id: str
    receipt_url: str
    created_at: datetime | None = None


class TransitionResponse(BaseModel):
    id: str
    from_status: str | None = None
    to_status: str
    actor_id: str
    metadata: dict[str, Any]
    created_at: datetime | None = None


class HistoryResponse(BaseModel):
    transaction_id: str
    transitions: list[TransitionResponse]


class MessageCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=MESSAGE_MAX_LENGTH)


class MessageResponse(BaseModel):
    id: str
    transaction_id: str
    user_id: str
    message: str
    created_at: datetime | None = None


class MessageListResponse(BaseModel):
    transaction_id: str
    messages: list[MessageResponse]


class ActionsResponse(BaseModel):
    """Operations the caller may perform right now."""

    transaction_id: str
    actions: list[str]


class StatsResponse(BaseModel):
    total: int
    active: int
    created_this_month: int
    total_value: Decimal
    by_status: dict[str, int]


# =============================================================================
# Conversion helpers
# =============================================================================


def to_transaction_response(tx: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=tx.id,
        buyer_id=tx.buyer_id,
        seller_id=tx.seller_id,
        title=tx.title,
        description=tx.description,
        status=tx.status,
        status_label=tx.status_label,
        price=tx.price,
        delivery_method=tx.delivery_method,
        delivery_branch=tx.delivery_branch,
        dispatch_receipt_url=tx.dispatch_receipt_url,
        rejection_reason=tx.rejection_reason,
        created_at=tx.created_at,
        updated_at=tx.updated_at,
    )


def to_product_response(submission: ProductSubmission) -> ProductResponse:
    return ProductResponse(
        id=submission.id,
        transaction_id=submission.transaction_id,
        product_name=submission.product_name,
        product_description=submission.product_description,
        price=submission.price,
        images=[
            ProductImageResponse(id=i.id, image_url=i.image_url, created_at=i.created_at)
            for i in submission.images
        ],
        created_at=submission.created_at,
    )


def to_payment_proof_response(proof: PaymentProof) -> PaymentProofResponse:
    return PaymentProofResponse(
        id=proof.id,
        transaction_id=proof.transaction_id,
        proof_url=proof.proof_url,
        amount=proof.amount,
        created_at=proof.created_at,
    )


def to_receipt_response(receipt: DispatchReceipt) -> DispatchReceiptResponse:
    return DispatchReceiptResponse(
        id=receipt.id,
        transaction_id=receipt.transaction_id,
        receipt_url=receipt.receipt_url,
        created_at=receipt.created_at,
    )


def to_transition_response(transition: TransactionStateTransition) -> TransitionResponse:
    return TransitionResponse(
        id=transition.id,
        from_status=transition.from_status,
        to_status=transition.to_status,
        actor_id=transition.actor_id,
        metadata=transition.metadata,
        created_at=transition.created_at,
    )


def to_message_response(message: TransactionMessage) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        transaction_id=message.transaction_id,
        user_id=message.user_id,
        message=message.message,
        created_at=message.created_at,
    )


async def read_upload(upload: UploadFile) -> FileUpload:
    """Read a multipart file into memory for the engine."""
    content = await upload.read()
    return FileUpload(
        filename=upload.filename or "file",
        content=content,
        content_type=upload.content_type or "application/octet-stream",
    )


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


# =============================================================================
# Creation and queries
# =============================================================================


@router.post("", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
async def create_transaction(
    request: Request,
    body: TransactionCreate,
    actor: CurrentActor,
    escrow: Escrow,
):
    """Open a transaction with the caller as buyer."""
    logger.info(f"POST /transactions | actor={actor.id}")
    tx = escrow.create_transaction(actor, body.title, body.description)
    return to_transaction_response(tx)


@router.get("", response_model=TransactionListResponse)
@limiter.limit(READ_LIMIT)
async def list_my_transactions(
    request: Request,
    actor: CurrentActor,
    escrow: Escrow,
    status_filter: TransactionStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List transactions where the caller is buyer or seller, newest first."""
    transactions = escrow.list_transactions(actor, status=status_filter, limit=limit, offset=offset)
    return TransactionListResponse(
        transactions=[to_transaction_response(t) for t in transactions],
        limit=limit,
        offset=offset,
    )


@router.get("/all", response_model=TransactionListResponse)
@limiter.limit(READ_LIMIT)
async def list_all_transactions(
    request: Request,
    actor: CurrentActor,
    escrow: Escrow,
    status_filter: TransactionStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List every transaction. Admin only."""
    transactions = escrow.list_all_transactions(
        actor, status=status_filter, limit=limit, offset=offset
    )
    return TransactionListResponse(
        transactions=[to_transaction_response(t) for t in transactions],
        limit=limit,
        offset=offset,
    )


@router.get("/search", response_model=TransactionListResponse)
@limiter.limit(READ_LIMIT)
async def search_transactions(
    request: Request,
    actor: CurrentActor,
    escrow: Escrow,
    q: str = Query(..., min_length=1, max_length=SEARCH_MAX_LENGTH),
    status_filter: TransactionStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Search the caller's transactions by title."""
    transactions = escrow.search_transactions(
        actor, q, status=status_filter, limit=limit, offset=offset
    )
    return TransactionListResponse(
        transactions=[to_transaction_response(t) for t in transactions],
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=StatsResponse)
@limiter.limit(READ_LIMIT)
async def get_stats(request: Request, actor: CurrentActor, escrow: Escrow):
    stats = escrow.get_stats(actor)
    return StatsResponse(
        total=stats.total,
        active=stats.active,
        created_this_month=stats.created_this_month,
        total_value=stats.total_value,
        by_status=stats.by_status,
    )


@router.get("/{transaction_id}", response_model=TransactionResponse)
@limiter.limit(READ_LIMIT)
async def get_transaction(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    return to_transaction_response(escrow.get_transaction(transaction_id, actor))


@router.get("/{transaction_id}/actions", response_model=ActionsResponse)
@limiter.limit(READ_LIMIT)
async def get_available_actions(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    return ActionsResponse(
        transaction_id=transaction_id,
        actions=escrow.available_actions(transaction_id, actor),
    )


@router.get("/{transaction_id}/history", response_model=HistoryResponse)
@limiter.limit(READ_LIMIT)
async def get_history(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    """Audit log of committed changes, oldest first."""
    transitions = escrow.get_history(transaction_id, actor)
    return HistoryResponse(
        transaction_id=transaction_id,
        transitions=[to_transition_response(t) for t in transitions],
    )


# =============================================================================
# Seller and product
# =============================================================================


@router.post("/{transaction_id}/join", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def join_transaction(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    """Take the seller slot. Fails with 409 once a seller has joined."""
    log_transaction_event(logger, "POST /transactions/join", transaction_id, actor.id)
    return to_transaction_response(escrow.join_transaction(transaction_id, actor))


@router.post("/{transaction_id}/product", response_model=TransactionResponse)
@limiter.limit(UPLOAD_LIMIT)
async def submit_product(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
    product_name: str = Form(...),
    price: str = Form(...),
    product_description: str = Form(""),
    images: list[UploadFile] = File(...),
):
    """Seller submits the product with its price and images (multipart)."""
    log_transaction_event(
        logger, "POST /transactions/product", transaction_id, actor.id, images=len(images)
    )
    uploads = [await read_upload(image) for image in images]
    tx = escrow.submit_product(
        transaction_id, actor, product_name, product_description, price, uploads
    )
    return to_transaction_response(tx)


@router.get("/{transaction_id}/product", response_model=ProductResponse)
@limiter.limit(READ_LIMIT)
async def get_product(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    submission = escrow.get_product_details(transaction_id, actor)
    if submission is None:
        raise _not_found("No product submitted yet")
    return to_product_response(submission)


@router.post("/{transaction_id}/product/approve", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def approve_product(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(logger, "POST /transactions/product/approve", transaction_id, actor.id)
    return to_transaction_response(escrow.approve_product(transaction_id, actor))


@router.post("/{transaction_id}/product/reject", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def reject_product(
    request: Request,
    transaction_id: str,
    body: RejectProductRequest,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(logger, "POST /transactions/product/reject", transaction_id, actor.id)
    return to_transaction_response(escrow.reject_product(transaction_id, actor, body.reason))


# =============================================================================
# Payment
# =============================================================================


@router.post("/{transaction_id}/payment-proof", response_model=TransactionResponse)
@limiter.limit(UPLOAD_LIMIT)
async def upload_payment_proof(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
    amount: str = Form(...),
    proof: UploadFile = File(...),
):
    """Buyer uploads proof of payment (multipart)."""
    log_transaction_event(
        logger, "POST /transactions/payment-proof", transaction_id, actor.id, amount=amount
    )
    upload = await read_upload(proof)
    return to_transaction_response(
        escrow.upload_payment_proof(transaction_id, actor, upload, amount)
    )


@router.get("/{transaction_id}/payment-proof", response_model=PaymentProofResponse)
@limiter.limit(READ_LIMIT)
async def get_payment_proof(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    proof = escrow.get_payment_proof(transaction_id, actor)
    if proof is None:
        raise _not_found("No payment proof uploaded yet")
    return to_payment_proof_response(proof)


@router.post("/{transaction_id}/payment/verify", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def verify_payment(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(logger, "POST /transactions/payment/verify", transaction_id, actor.id)
    return to_transaction_response(escrow.verify_payment(transaction_id, actor))


@router.post("/{transaction_id}/payment/reject", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def reject_payment(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(logger, "POST /transactions/payment/reject", transaction_id, actor.id)
    return to_transaction_response(escrow.reject_payment(transaction_id, actor))


# =============================================================================
# Delivery
# =============================================================================


@router.put("/{transaction_id}/delivery", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def set_delivery_details(
    request: Request,
    transaction_id: str,
    body: DeliveryDetailsRequest,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(
        logger, "PUT /transactions/delivery", transaction_id, actor.id, method=body.method
    )
    tx = escrow.set_delivery_details(transaction_id, actor, body.method, body.branch)
    return to_transaction_response(tx)


@router.post("/{transaction_id}/dispatch", response_model=TransactionResponse)
@limiter.limit(UPLOAD_LIMIT)
async def dispatch(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
    receipt: UploadFile = File(...),
):
    """Record the dispatch receipt (multipart) and mark the product dispatched."""
    log_transaction_event(logger, "POST /transactions/dispatch", transaction_id, actor.id)
    upload = await read_upload(receipt)
    return to_transaction_response(escrow.dispatch(transaction_id, actor, upload))


@router.get("/{transaction_id}/dispatch-receipt", response_model=DispatchReceiptResponse)
@limiter.limit(READ_LIMIT)
async def get_dispatch_receipt(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    receipt = escrow.get_dispatch_receipt(transaction_id, actor)
    if receipt is None:
        raise _not_found("Not dispatched yet")
    return to_receipt_response(receipt)


@router.post("/{transaction_id}/delivered", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def mark_delivered(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(logger, "POST /transactions/delivered", transaction_id, actor.id)
    return to_transaction_response(escrow.mark_delivered(transaction_id, actor))


# =============================================================================
# Inspection and release
# =============================================================================


@router.post("/{transaction_id}/inspection/pass", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def pass_inspection(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(logger, "POST /transactions/inspection/pass", transaction_id, actor.id)
    return to_transaction_response(escrow.pass_inspection(transaction_id, actor))


@router.post("/{transaction_id}/inspection/fail", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def fail_inspection(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(logger, "POST /transactions/inspection/fail", transaction_id, actor.id)
    return to_transaction_response(escrow.fail_inspection(transaction_id, actor))


@router.post("/{transaction_id}/release", response_model=TransactionResponse)
@limiter.limit(WRITE_LIMIT)
async def release_funds(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    """Release escrowed funds to the seller. Admin only, after a passed inspection."""
    log_transaction_event(logger, "POST /transactions/release", transaction_id, actor.id)
    return to_transaction_response(escrow.release_funds(transaction_id, actor))


# =============================================================================
# Messages
# =============================================================================


@router.post(
    "/{transaction_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(WRITE_LIMIT)
async def add_message(
    request: Request,
    transaction_id: str,
    body: MessageCreate,
    actor: CurrentActor,
    escrow: Escrow,
):
    log_transaction_event(logger, "POST /transactions/messages", transaction_id, actor.id)
    return to_message_response(escrow.add_message(transaction_id, actor, body.message))


@router.get("/{transaction_id}/messages", response_model=MessageListResponse)
@limiter.limit(READ_LIMIT)
async def list_messages(
    request: Request,
    transaction_id: str,
    actor: CurrentActor,
    escrow: Escrow,
):
    """Messages on a transaction, oldest first."""
    messages = escrow.list_messages(transaction_id, actor)
    return MessageListResponse(
        transaction_id=transaction_id,
        messages=[to_message_response(m) for m in messages],
    )
