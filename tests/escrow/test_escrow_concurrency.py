"""Concurrency tests: the conditional update lets exactly one racer win."""

import concurrent.futures
import threading
from decimal import Decimal

import pytest

from sogolo.escrow.errors import ConflictError, InvalidStateError, StorageUnavailableError
from sogolo.escrow.models import TransactionStatus
from sogolo.escrow.roles import Actor, Role


def race(calls):
    """Run callables together on separate threads; return (results, errors)."""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []
    lock = threading.Lock()

    def run(call):
        barrier.wait()
        try:
            value = call()
            with lock:
                results.append(value)
        except Exception as e:
            with lock:
                errors.append(e)

    with concurrent.futures.ThreadPoolExecutor(max_workers=len(calls)) as executor:
        futures = [executor.submit(run, call) for call in calls]
        concurrent.futures.wait(futures)
    return results, errors


class TestConcurrentJoin:
    def test_two_sellers_race_for_the_slot(self, service, buyer):
        """Exactly one join succeeds; the other sees Conflict."""
        tx = service.create_transaction(buyer, "Phone", "desc")
        seller_a = Actor(id="sellerA")
        seller_b = Actor(id="sellerB")

        results, errors = race(
            [
                lambda: service.join_transaction(tx.id, seller_a),
                lambda: service.join_transaction(tx.id, seller_b),
            ]
        )

        assert len(results) == 1, f"Race condition! Both joined: {results}"
        assert len(errors) == 1
        assert isinstance(errors[0], ConflictError)
        final = service.get_transaction(tx.id, buyer).seller_id
        assert final in {"sellerA", "sellerB"}
        assert final == results[0].seller_id

    def test_many_sellers(self, service, buyer):
        tx = service.create_transaction(buyer, "Phone", "desc")
        calls = [
            (lambda i=i: service.join_transaction(tx.id, Actor(id=f"seller_{i}")))
            for i in range(10)
        ]

        results, errors = race(calls)

        assert len(results) == 1
        assert len(errors) == 9
        assert all(isinstance(e, ConflictError) for e in errors)


class TestConcurrentTransitions:
    def test_approve_and_reject_race(self, advance, service, buyer):
        tx = advance(TransactionStatus.PRODUCT_SUBMITTED)

        results, errors = race(
            [
                lambda: service.approve_product(tx.id, buyer),
                lambda: service.reject_product(tx.id, buyer, "Changed my mind"),
            ]
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        assert service.get_transaction(tx.id, buyer).status == results[0].status

    @pytest.mark.parametrize("workers", [2, 5])
    def test_admins_race_on_verification(self, advance, service, workers):
        tx = advance(TransactionStatus.PAYMENT_UPLOADED)
        admins = [Actor(id=f"admin_{i}", role=Role.ADMIN) for i in range(workers)]
        calls = []
        for i, admin in enumerate(admins):
            if i % 2:
                calls.append(lambda a=admin: service.reject_payment(tx.id, a))
            else:
                calls.append(lambda a=admin: service.verify_payment(tx.id, a))

        results, errors = race(calls)

        assert len(results) == 1
        assert len(errors) == workers - 1
        assert all(isinstance(e, InvalidStateError) for e in errors)

    def test_loser_writes_no_audit_entry(self, advance, service, buyer, storage):
        tx = advance(TransactionStatus.PRODUCT_DELIVERED)
        before = len(storage.get_transitions(tx.id))

        race(
            [
                lambda: service.pass_inspection(tx.id, buyer),
                lambda: service.fail_inspection(tx.id, buyer),
            ]
        )

        assert len(storage.get_transitions(tx.id)) == before + 1


def run_before_next_commit(storage, competitor):
    """Make the next conditional update run ``competitor`` to completion first.

    Returns a list that receives the changes of the update that went second.
    """
    original = storage.update_transaction_if
    second = []

    def update(transaction_id, expected, changes):
        storage.update_transaction_if = original
        competitor()
        second.append(changes)
        return original(transaction_id, expected, changes)

    storage.update_transaction_if = update
    return second


class TestRacingUploads:
    """The racer whose commit misses leaves no record behind."""

    def test_losing_submission_is_discarded(self, advance, service, storage, buyer, seller, image):
        tx = advance(TransactionStatus.CREATED)
        service.join_transaction(tx.id, seller)
        lost = run_before_next_commit(
            storage,
            lambda: service.submit_product(tx.id, seller, "Winning phone", "", 100, [image]),
        )

        with pytest.raises(InvalidStateError):
            service.submit_product(tx.id, seller, "Losing phone", "", 999, [image])

        current = service.get_transaction(tx.id, buyer)
        product = service.get_product_details(tx.id, buyer)
        assert current.price == Decimal("100")
        assert product.product_name == "Winning phone"
        assert product.price == current.price
        assert current.submission_id == product.id
        assert storage.get_submission(lost[0]["submission_id"]) is None
        submitted = [t for t in storage.get_transitions(tx.id) if t.to_status == "product_submitted"]
        assert len(submitted) == 1

    def test_losing_payment_proof_is_discarded(self, advance, service, storage, buyer, document):
        tx = advance(TransactionStatus.PRODUCT_APPROVED)
        lost = run_before_next_commit(
            storage,
            lambda: service.upload_payment_proof(tx.id, buyer, document, 50000),
        )

        with pytest.raises(InvalidStateError):
            service.upload_payment_proof(tx.id, buyer, document, 49000)

        proof = service.get_payment_proof(tx.id, buyer)
        assert proof.amount == Decimal("50000")
        assert [p.id for p in storage.list_payment_proofs(tx.id)] == [proof.id]
        assert storage.get_payment_proof(lost[0]["payment_proof_id"]) is None

    def test_losing_dispatch_receipt_is_discarded(
        self, advance, service, storage, buyer, seller, admin, document
    ):
        tx = advance(TransactionStatus.PAYMENT_VERIFIED)
        lost = run_before_next_commit(
            storage,
            lambda: service.dispatch(tx.id, admin, document),
        )

        with pytest.raises(InvalidStateError):
            service.dispatch(tx.id, seller, document)

        current = service.get_transaction(tx.id, buyer)
        receipt = service.get_dispatch_receipt(tx.id, buyer)
        assert current.dispatch_receipt_id == receipt.id
        assert current.dispatch_receipt_url == receipt.receipt_url
        assert storage.get_dispatch_receipt(lost[0]["dispatch_receipt_id"]) is None

    def test_discard_failure_still_reports_lost_race(
        self, advance, service, storage, buyer, document, caplog
    ):
        tx = advance(TransactionStatus.PRODUCT_APPROVED)
        run_before_next_commit(
            storage,
            lambda: service.upload_payment_proof(tx.id, buyer, document, 50000),
        )

        def broken_delete(proof_id):
            raise StorageUnavailableError("db down")

        storage.delete_payment_proof = broken_delete

        with pytest.raises(InvalidStateError):
            service.upload_payment_proof(tx.id, buyer, document, 49000)

        assert "Failed to discard record" in caplog.text
        assert service.get_payment_proof(tx.id, buyer).amount == Decimal("50000")

    def test_threaded_proof_uploads(self, advance, service, storage, buyer, document):
        tx = advance(TransactionStatus.PRODUCT_APPROVED)

        results, errors = race(
            [
                lambda: service.upload_payment_proof(tx.id, buyer, document, 50000),
                lambda: service.upload_payment_proof(tx.id, buyer, document, 49000),
            ]
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        proofs = storage.list_payment_proofs(tx.id)
        assert [p.id for p in proofs] == [results[0].payment_proof_id]
