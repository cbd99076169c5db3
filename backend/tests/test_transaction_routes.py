"""Tests for the escrow transaction API."""

from decimal import Decimal

import pytest

BASE = "/api/v1/transactions"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PDF = b"%PDF-1.4\n" + b"\x00" * 64


def create(client, headers, title="Used laptop", description="Dell, 8GB RAM"):
    response = client.post(BASE, json={"title": title, "description": description}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def submit_product(client, tx_id, headers, price="50000", images=1):
    return client.post(
        f"{BASE}/{tx_id}/product",
        data={"product_name": "Laptop", "price": price, "product_description": "Works"},
        files=[("images", (f"photo{i}.png", PNG, "image/png")) for i in range(images)],
        headers=headers,
    )


def upload_proof(client, tx_id, headers, amount="50000"):
    return client.post(
        f"{BASE}/{tx_id}/payment-proof",
        data={"amount": amount},
        files={"proof": ("slip.pdf", PDF, "application/pdf")},
        headers=headers,
    )


def dispatch(client, tx_id, headers):
    return client.post(
        f"{BASE}/{tx_id}/dispatch",
        files={"receipt": ("receipt.pdf", PDF, "application/pdf")},
        headers=headers,
    )


@pytest.fixture
def joined(client, buyer_headers, seller_headers):
    """A transaction with buyer1 and seller1."""
    tx = create(client, buyer_headers)
    response = client.post(f"{BASE}/{tx['id']}/join", headers=seller_headers)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def verified(client, joined, buyer_headers, seller_headers, admin_headers):
    """A transaction whose payment has been verified."""
    tx_id = joined["id"]
    assert submit_product(client, tx_id, seller_headers).status_code == 200
    assert client.post(f"{BASE}/{tx_id}/product/approve", headers=buyer_headers).status_code == 200
    assert upload_proof(client, tx_id, buyer_headers).status_code == 200
    assert client.post(f"{BASE}/{tx_id}/payment/verify", headers=admin_headers).status_code == 200
    return tx_id


class TestCreateAndJoin:
    def test_create(self, client, buyer_headers):
        tx = create(client, buyer_headers)
        assert tx["buyer_id"] == "buyer1"
        assert tx["seller_id"] is None
        assert tx["status"] == "created"
        assert tx["status_label"]

    def test_create_short_title_rejected(self, client, buyer_headers):
        response = client.post(BASE, json={"title": "ab"}, headers=buyer_headers)
        assert response.status_code == 422

    def test_create_title_and_description_bounds(self, client, buyer_headers):
        response = client.post(BASE, json={"title": "x" * 101}, headers=buyer_headers)
        assert response.status_code == 422
        response = client.post(
            BASE, json={"title": "Used laptop", "description": "x" * 1001}, headers=buyer_headers
        )
        assert response.status_code == 422
        assert client.post(BASE, json={"title": "x" * 100}, headers=buyer_headers).status_code == 201

    def test_join(self, joined):
        assert joined["seller_id"] == "seller1"
        assert joined["status"] == "created"

    def test_second_join_conflicts(self, client, joined, stranger_headers):
        response = client.post(f"{BASE}/{joined['id']}/join", headers=stranger_headers)
        assert response.status_code == 409

    def test_buyer_cannot_join_own(self, client, buyer_headers):
        tx = create(client, buyer_headers)
        response = client.post(f"{BASE}/{tx['id']}/join", headers=buyer_headers)
        assert response.status_code == 403

    def test_unknown_transaction(self, client, seller_headers):
        response = client.post(f"{BASE}/does-not-exist/join", headers=seller_headers)
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_open_transaction_visible_to_prospective_seller(
        self, client, buyer_headers, stranger_headers
    ):
        tx = create(client, buyer_headers)
        response = client.get(f"{BASE}/{tx['id']}", headers=stranger_headers)
        assert response.status_code == 200

    def test_joined_transaction_hidden_from_strangers(self, client, joined, stranger_headers):
        response = client.get(f"{BASE}/{joined['id']}", headers=stranger_headers)
        assert response.status_code == 403


class TestProductRoutes:
    def test_submit_product(self, client, joined, seller_headers):
        response = submit_product(client, joined["id"], seller_headers, images=2)
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["status"] == "product_submitted"
        assert Decimal(str(body["price"])) == Decimal("50000")

        product = client.get(f"{BASE}/{joined['id']}/product", headers=seller_headers).json()
        assert product["product_name"] == "Laptop"
        assert len(product["images"]) == 2

    def test_buyer_cannot_submit(self, client, joined, buyer_headers):
        response = submit_product(client, joined["id"], buyer_headers)
        assert response.status_code == 403

    def test_invalid_price(self, client, joined, seller_headers):
        response = submit_product(client, joined["id"], seller_headers, price="-5")
        assert response.status_code == 422

    def test_unsupported_image_type(self, client, joined, seller_headers):
        response = client.post(
            f"{BASE}/{joined['id']}/product",
            data={"product_name": "Laptop", "price": "100"},
            files=[("images", ("notes.txt", b"hello", "text/plain"))],
            headers=seller_headers,
        )
        assert response.status_code == 422

    def test_product_missing_is_404(self, client, joined, buyer_headers):
        response = client.get(f"{BASE}/{joined['id']}/product", headers=buyer_headers)
        assert response.status_code == 404

    def test_reject_product_records_reason(self, client, joined, seller_headers, buyer_headers):
        submit_product(client, joined["id"], seller_headers)
        response = client.post(
            f"{BASE}/{joined['id']}/product/reject",
            json={"reason": "Photos do not match"},
            headers=buyer_headers,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["rejection_reason"] == "Photos do not match"

    def test_approve_twice_is_invalid_state(self, client, joined, seller_headers, buyer_headers):
        submit_product(client, joined["id"], seller_headers)
        url = f"{BASE}/{joined['id']}/product/approve"
        assert client.post(url, headers=buyer_headers).status_code == 200
        assert client.post(url, headers=buyer_headers).status_code == 400


class TestPaymentRoutes:
    @pytest.fixture
    def approved(self, client, joined, seller_headers, buyer_headers):
        submit_product(client, joined["id"], seller_headers)
        client.post(f"{BASE}/{joined['id']}/product/approve", headers=buyer_headers)
        return joined["id"]

    def test_upload_and_fetch_proof(self, client, approved, buyer_headers, seller_headers):
        response = upload_proof(client, approved, buyer_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "payment_uploaded"

        proof = client.get(f"{BASE}/{approved}/payment-proof", headers=seller_headers).json()
        assert Decimal(str(proof["amount"])) == Decimal("50000")
        assert proof["proof_url"]

    def test_seller_cannot_verify(self, client, approved, buyer_headers, seller_headers):
        upload_proof(client, approved, buyer_headers)
        response = client.post(f"{BASE}/{approved}/payment/verify", headers=seller_headers)
        assert response.status_code == 403

    def test_reject_then_reupload(self, client, approved, buyer_headers, admin_headers):
        upload_proof(client, approved, buyer_headers)
        response = client.post(f"{BASE}/{approved}/payment/reject", headers=admin_headers)
        assert response.json()["status"] == "payment_rejected"
        first = client.get(f"{BASE}/{approved}/payment-proof", headers=buyer_headers).json()

        response = upload_proof(client, approved, buyer_headers, amount="50000")
        assert response.status_code == 200
        assert response.json()["status"] == "payment_uploaded"
        current = client.get(f"{BASE}/{approved}/payment-proof", headers=buyer_headers).json()
        assert current["id"] != first["id"]


class TestDeliveryAndRelease:
    def test_full_lifecycle(
        self, client, verified, buyer_headers, seller_headers, admin_headers
    ):
        response = client.put(
            f"{BASE}/{verified}/delivery",
            json={"method": "Bus courier", "branch": "Lilongwe"},
            headers=seller_headers,
        )
        assert response.status_code == 200
        assert response.json()["delivery_branch"] == "Lilongwe"

        response = dispatch(client, verified, seller_headers)
        assert response.json()["status"] == "dispatched"
        assert response.json()["dispatch_receipt_url"]

        receipt = client.get(f"{BASE}/{verified}/dispatch-receipt", headers=buyer_headers)
        assert receipt.status_code == 200

        response = client.post(f"{BASE}/{verified}/delivered", headers=buyer_headers)
        assert response.json()["status"] == "product_delivered"

        response = client.post(f"{BASE}/{verified}/inspection/pass", headers=buyer_headers)
        assert response.json()["status"] == "inspection_passed"

        response = client.post(f"{BASE}/{verified}/release", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "funds_released"

        history = client.get(f"{BASE}/{verified}/history", headers=buyer_headers).json()
        to_statuses = [t["to_status"] for t in history["transitions"]]
        assert to_statuses[-1] == "funds_released"
        assert "payment_verified" in to_statuses

    def test_buyer_cannot_release(self, client, verified, seller_headers, buyer_headers):
        dispatch(client, verified, seller_headers)
        client.post(f"{BASE}/{verified}/delivered", headers=buyer_headers)
        client.post(f"{BASE}/{verified}/inspection/pass", headers=buyer_headers)
        response = client.post(f"{BASE}/{verified}/release", headers=buyer_headers)
        assert response.status_code == 403

    def test_release_before_inspection(self, client, verified, admin_headers):
        response = client.post(f"{BASE}/{verified}/release", headers=admin_headers)
        assert response.status_code == 400

    def test_dispatch_receipt_missing_is_404(self, client, verified, buyer_headers):
        response = client.get(f"{BASE}/{verified}/dispatch-receipt", headers=buyer_headers)
        assert response.status_code == 404

    def test_failed_inspection_is_terminal(
        self, client, verified, seller_headers, buyer_headers, admin_headers
    ):
        dispatch(client, verified, seller_headers)
        client.post(f"{BASE}/{verified}/delivered", headers=seller_headers)
        response = client.post(f"{BASE}/{verified}/inspection/fail", headers=buyer_headers)
        assert response.json()["status"] == "inspection_failed"

        actions = client.get(f"{BASE}/{verified}/actions", headers=admin_headers).json()
        assert "release_funds" not in actions["actions"]


class TestQueries:
    def test_list_mine(self, client, joined, buyer_headers, seller_headers, stranger_headers):
        create(client, buyer_headers, title="Second item")

        assert len(client.get(BASE, headers=buyer_headers).json()["transactions"]) == 2
        assert len(client.get(BASE, headers=seller_headers).json()["transactions"]) == 1
        assert client.get(BASE, headers=stranger_headers).json()["transactions"] == []

    def test_list_status_filter(self, client, joined, buyer_headers, seller_headers):
        submit_product(client, joined["id"], seller_headers)
        create(client, buyer_headers, title="Second item")

        response = client.get(BASE, params={"status": "product_submitted"}, headers=buyer_headers)
        ids = [t["id"] for t in response.json()["transactions"]]
        assert ids == [joined["id"]]

    def test_list_all_admin_only(self, client, joined, buyer_headers, admin_headers):
        assert client.get(f"{BASE}/all", headers=buyer_headers).status_code == 403
        response = client.get(f"{BASE}/all", headers=admin_headers)
        assert response.status_code == 200
        assert len(response.json()["transactions"]) == 1

    def test_stats(self, client, joined, buyer_headers):
        stats = client.get(f"{BASE}/stats", headers=buyer_headers).json()
        assert stats["total"] == 1
        assert stats["active"] == 1
        assert stats["by_status"] == {"created": 1}

    def test_actions_for_each_party(self, client, joined, buyer_headers, seller_headers):
        seller_actions = client.get(f"{BASE}/{joined['id']}/actions", headers=seller_headers)
        assert "submit_product" in seller_actions.json()["actions"]
        buyer_actions = client.get(f"{BASE}/{joined['id']}/actions", headers=buyer_headers)
        assert "submit_product" not in buyer_actions.json()["actions"]

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_search(self, client, joined, buyer_headers, seller_headers, stranger_headers):
        submit_product(client, joined["id"], seller_headers)
        bike = create(client, buyer_headers, title="Mountain bike")

        response = client.get(f"{BASE}/search", params={"q": "BIKE"}, headers=buyer_headers)
        assert response.status_code == 200
        assert [t["id"] for t in response.json()["transactions"]] == [bike["id"]]

        response = client.get(
            f"{BASE}/search",
            params={"q": "laptop", "status": "product_submitted"},
            headers=buyer_headers,
        )
        assert [t["id"] for t in response.json()["transactions"]] == [joined["id"]]

        response = client.get(f"{BASE}/search", params={"q": "bike"}, headers=stranger_headers)
        assert response.json()["transactions"] == []

    def test_search_requires_term(self, client, buyer_headers):
        assert client.get(f"{BASE}/search", headers=buyer_headers).status_code == 422
        response = client.get(f"{BASE}/search", params={"q": "   "}, headers=buyer_headers)
        assert response.status_code == 422


class TestMessages:
    def test_post_and_list(self, client, joined, buyer_headers, seller_headers, admin_headers):
        tx_id = joined["id"]
        response = client.post(
            f"{BASE}/{tx_id}/messages", json={"message": "When can you ship?"}, headers=buyer_headers
        )
        assert response.status_code == 201
        assert response.json()["user_id"] == "buyer1"
        client.post(f"{BASE}/{tx_id}/messages", json={"message": "Tomorrow"}, headers=seller_headers)

        response = client.get(f"{BASE}/{tx_id}/messages", headers=admin_headers)
        assert response.status_code == 200
        assert [m["message"] for m in response.json()["messages"]] == [
            "When can you ship?",
            "Tomorrow",
        ]

    def test_strangers_are_forbidden(self, client, joined, stranger_headers):
        tx_id = joined["id"]
        response = client.post(
            f"{BASE}/{tx_id}/messages", json={"message": "Hi"}, headers=stranger_headers
        )
        assert response.status_code == 403
        assert client.get(f"{BASE}/{tx_id}/messages", headers=stranger_headers).status_code == 403

    def test_message_bounds(self, client, joined, buyer_headers):
        tx_id = joined["id"]
        response = client.post(f"{BASE}/{tx_id}/messages", json={"message": ""}, headers=buyer_headers)
        assert response.status_code == 422
        response = client.post(
            f"{BASE}/{tx_id}/messages", json={"message": "x" * 1001}, headers=buyer_headers
        )
        assert response.status_code == 422

    def test_unknown_transaction(self, client, buyer_headers):
        response = client.get(f"{BASE}/missing/messages", headers=buyer_headers)
        assert response.status_code == 404
