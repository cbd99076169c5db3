"""
Pytest fixtures and test configuration for Sogolo tests.
"""

from unittest.mock import Mock

import pytest

from sogolo.config import EscrowConfig
from sogolo.escrow.files import FileUpload, InMemoryObjectStore
from sogolo.escrow.models import TransactionStatus
from sogolo.escrow.notifications import InMemoryChangeFeed
from sogolo.escrow.roles import Actor, Role
from sogolo.escrow.service import EscrowService
from sogolo.escrow.storage import InMemoryTransactionStorage

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PDF_BYTES = b"%PDF-1.4\n" + b"0" * 64


def make_image(name: str = "phone.png", content: bytes = PNG_BYTES) -> FileUpload:
    return FileUpload(filename=name, content=content, content_type="image/png")


def make_document(name: str = "proof.pdf", content: bytes = PDF_BYTES) -> FileUpload:
    return FileUpload(filename=name, content=content, content_type="application/pdf")


@pytest.fixture
def storage():
    return InMemoryTransactionStorage()


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def config():
    return EscrowConfig()


@pytest.fixture
def service(storage, object_store, feed, config):
    return EscrowService(storage, object_store, notifier=feed, config=config)


@pytest.fixture
def buyer():
    return Actor(id="buyer1")


@pytest.fixture
def seller():
    return Actor(id="seller1", kyc_status="approved")


@pytest.fixture
def admin():
    return Actor(id="admin1", role=Role.ADMIN)


@pytest.fixture
def stranger():
    return Actor(id="stranger1")


@pytest.fixture
def image():
    return make_image()


@pytest.fixture
def document():
    return make_document()


@pytest.fixture
def advance(service, buyer, seller, admin):
    """Return a helper that drives a new transaction to the requested status.

    Uses the happy path (plus a rejection branch where the target needs one),
    so every intermediate status is reached through real operations.
    """

    def _advance(target: TransactionStatus):
        target = TransactionStatus(target)
        tx = service.create_transaction(buyer, "Phone", "Used phone in good condition")
        if target == TransactionStatus.CREATED:
            return tx
        service.join_transaction(tx.id, seller)
        tx = service.submit_product(tx.id, seller, "iPhone", "used", 50000, [make_image()])
        if target == TransactionStatus.PRODUCT_SUBMITTED:
            return tx
        if target == TransactionStatus.REJECTED:
            return service.reject_product(tx.id, buyer, "Not as described")
        tx = service.approve_product(tx.id, buyer)
        if target == TransactionStatus.PRODUCT_APPROVED:
            return tx
        tx = service.upload_payment_proof(tx.id, buyer, make_document(), 50000)
        if target == TransactionStatus.PAYMENT_UPLOADED:
            return tx
        if target == TransactionStatus.PAYMENT_REJECTED:
            return service.reject_payment(tx.id, admin)
        tx = service.verify_payment(tx.id, admin)
        if target == TransactionStatus.PAYMENT_VERIFIED:
            return tx
        tx = service.dispatch(tx.id, admin, make_document("receipt.pdf"))
        if target == TransactionStatus.DISPATCHED:
            return tx
        tx = service.mark_delivered(tx.id, buyer)
        if target == TransactionStatus.PRODUCT_DELIVERED:
            return tx
        if target == TransactionStatus.INSPECTION_FAILED:
            return service.fail_inspection(tx.id, buyer)
        tx = service.pass_inspection(tx.id, buyer)
        if target == TransactionStatus.INSPECTION_PASSED:
            return tx
        return service.release_funds(tx.id, admin)

    return _advance


@pytest.fixture
def mock_supabase_client():
    """Mock Supabase client whose query builders chain back to themselves.

    ``client.query`` is the shared builder; set ``client.query.execute.return_value``
    to control what any query returns.
    """
    client = Mock()
    query = Mock()
    for method in (
        "select",
        "insert",
        "update",
        "upsert",
        "delete",
        "eq",
        "is_",
        "or_",
        "ilike",
        "order",
        "range",
        "limit",
    ):
        getattr(query, method).return_value = query
    query.execute.return_value = Mock(data=[])
    client.table.return_value = query
    client.query = query
    return client
