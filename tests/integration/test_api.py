"""Integration tests for API endpoints"""

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from settlement_gateway.infrastructure.database.inventory import SqlInventory

PRODUCT_A = 101
PRODUCT_B = 202


def _seed_stock(client, headers, stock: dict):
    for product_id, quantity in stock.items():
        response = client.put(f"/v1/products/{product_id}/stock", json={"quantity": quantity}, headers=headers)
        assert response.status_code == 200, response.text


def _open_account(client, headers, customer_id="cust-1", limit="1000000", term_days=30) -> int:
    created = client.post(
        "/v1/credit-requests",
        json={"customer_id": customer_id, "requested_amount": limit, "requested_term_days": term_days},
        headers=headers,
    )
    assert created.status_code == 201
    decided = client.post(
        f"/v1/credit-requests/{created.json()['id']}/decide", json={"verdict": "approve"}, headers=headers
    )
    assert decided.status_code == 200
    return decided.json()["resulting_account_id"]


def _sell(client, headers, items, payment_method="cash", customer_id="cust-1"):
    response = client.post(
        "/v1/sales",
        json={"customer_id": customer_id, "payment_method": payment_method, "items": items},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "settlement_installment_decisions_total" in response.text


def test_request_id_is_propagated(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "trace-123"})
    assert response.headers["X-Request-ID"] == "trace-123"


# Credit requests and installments


def test_credit_request_approval_opens_account(client: TestClient, operator_headers):
    account_id = _open_account(client, operator_headers)

    account = client.get(f"/v1/credit-accounts/{account_id}").json()
    assert account["state"] == "active"
    assert account["approved_limit"] == "1000000.00"
    assert account["available_for_purchase"] == "1000000.00"
    assert account["due_at"] == "2025-02-14"


def test_second_active_account_is_a_conflict(client: TestClient, operator_headers):
    _open_account(client, operator_headers)
    created = client.post(
        "/v1/credit-requests",
        json={"customer_id": "cust-1", "requested_amount": "5000", "requested_term_days": 10},
        headers=operator_headers,
    ).json()

    response = client.post(
        f"/v1/credit-requests/{created['id']}/decide", json={"verdict": "approve"}, headers=operator_headers
    )

    assert response.status_code == 409
    assert response.json()["error"] == "ACTIVE_ACCOUNT_EXISTS"
    assert client.get(f"/v1/credit-requests/{created['id']}").json()["state"] == "pending"


def test_rejecting_credit_request_requires_note(client: TestClient, operator_headers):
    created = client.post(
        "/v1/credit-requests",
        json={"customer_id": "cust-2", "requested_amount": "5000", "requested_term_days": 10},
        headers=operator_headers,
    ).json()

    response = client.post(
        f"/v1/credit-requests/{created['id']}/decide", json={"verdict": "reject"}, headers=operator_headers
    )

    assert response.status_code == 400
    assert response.json() == {
        "error": "VALIDATION_ERROR",
        "kind": "validation",
        "detail": "A note is required to reject a credit request",
    }


def test_installment_lifecycle(client: TestClient, db: Session, operator_headers):
    """Test limit 1,000,000 with 400,000 owed: 500,000 refused, 400,000 pays off"""
    _seed_stock(client, operator_headers, {PRODUCT_A: 10})
    account_id = _open_account(client, operator_headers)
    _sell(client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 4, "unit_price": "100000"}], "credit_account")

    too_much = client.post(
        f"/v1/credit-accounts/{account_id}/installments",
        json={"amount": "500000", "paid_on_date": "2025-01-15", "payment_method": "transfer"},
    )
    assert too_much.status_code == 422
    assert too_much.json()["error"] == "OVERPAYMENT_REJECTED"

    installment = client.post(
        f"/v1/credit-accounts/{account_id}/installments",
        json={"amount": "400000", "paid_on_date": "2025-01-15", "payment_method": "transfer", "proof_ref": "blob-1"},
    )
    assert installment.status_code == 201
    installment_id = installment.json()["id"]
    assert client.get(f"/v1/credit-accounts/{account_id}").json()["principal_owed"] == "400000.00"

    verified = client.post(f"/v1/installments/{installment_id}/verify", headers=operator_headers)
    assert verified.status_code == 200
    body = verified.json()
    assert body["installment"]["state"] == "verified"
    assert body["account"]["state"] == "paid_off"
    assert body["account"]["total_payable"] == "0.00"

    again = client.post(f"/v1/installments/{installment_id}/verify", headers=operator_headers)
    assert again.status_code == 409
    assert again.json()["error"] == "ALREADY_DECIDED"

    trail = client.get(f"/v1/audit/installment/{installment_id}").json()["transitions"]
    assert [(t["from_state"], t["to_state"]) for t in trail] == [(None, "pending"), ("pending", "verified")]


def test_verification_needs_capability(client: TestClient, db: Session, operator_headers):
    _seed_stock(client, operator_headers, {PRODUCT_A: 10})
    account_id = _open_account(client, operator_headers)
    _sell(client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 1, "unit_price": "1000"}], "credit_account")
    installment_id = client.post(
        f"/v1/credit-accounts/{account_id}/installments",
        json={"amount": "1000", "paid_on_date": "2025-01-10", "payment_method": "cash", "proof_ref": "blob-1"},
    ).json()["id"]

    response = client.post(
        f"/v1/installments/{installment_id}/verify",
        headers={"X-Actor-Id": "clerk-1", "X-Actor-Capabilities": "sales.record"},
    )

    assert response.status_code == 403
    assert response.json()["error"] == "PERMISSION_DENIED"


def test_unknown_proof_reference_is_refused(client: TestClient, db: Session, blob_store, operator_headers):
    _seed_stock(client, operator_headers, {PRODUCT_A: 10})
    account_id = _open_account(client, operator_headers)
    _sell(client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 1, "unit_price": "1000"}], "credit_account")
    blob_store.missing.add("blob-ghost")

    response = client.post(
        f"/v1/credit-accounts/{account_id}/installments",
        json={"amount": "1000", "paid_on_date": "2025-01-10", "payment_method": "cash", "proof_ref": "blob-ghost"},
    )

    assert response.status_code == 400
    assert client.get(f"/v1/credit-accounts/{account_id}/installments").json() == []


def test_accrue_interest_is_idempotent_per_date(client: TestClient, db: Session, operator_headers):
    _seed_stock(client, operator_headers, {PRODUCT_A: 10})
    account_id = _open_account(client, operator_headers)
    _sell(client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 4, "unit_price": "100000"}], "credit_account")

    first = client.post(
        f"/v1/credit-accounts/{account_id}/accrue-interest", json={"as_of": "2025-02-24"}, headers=operator_headers
    )
    second = client.post(
        f"/v1/credit-accounts/{account_id}/accrue-interest", json={"as_of": "2025-02-24"}, headers=operator_headers
    )

    # Due 2025-02-14, 10 days late: 400000 * 0.24 * 10 / 365
    assert first.json()["interest_added"] == "2630.14"
    assert second.json()["interest_added"] == "0.00"
    assert second.json()["account"]["accrued_interest"] == "2630.14"


def test_malformed_body_is_a_validation_error(client: TestClient):
    response = client.post("/v1/credit-requests", json={"customer_id": "cust-1"})

    assert response.status_code == 400
    assert response.json()["kind"] == "validation"


def test_missing_entity_is_not_found(client: TestClient):
    response = client.get("/v1/credit-accounts/999")

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


# Returns and supplier cases


def test_return_with_exchange_owed_by_customer(client: TestClient, db: Session, operator_headers):
    """Test A x2 @ 50,000, return one defective, exchange for B @ 60,000"""
    _seed_stock(client, operator_headers, {PRODUCT_A: 2, PRODUCT_B: 3})
    sale = _sell(client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 2, "unit_price": "50000"}])

    response = client.post(
        f"/v1/sales/{sale['id']}/returns",
        json={
            "returned_items": [{"sale_item_id": sale["items"][0]["id"], "quantity": 1, "reason_code": "defective"}],
            "exchange_items": [{"product_id": PRODUCT_B, "quantity": 1, "unit_price": "60000"}],
            "general_reason": "Does not power on",
            "payment_method": "cash",
        },
        headers=operator_headers,
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["balance"] == "10000.00"
    assert body["settlement"] == {
        "direction": "owed_by_customer",
        "amount": "10000.00",
        "refund_method": None,
        "payment_method": "cash",
    }
    assert body["exchange_tag"] == "different_product"
    assert body["supplier_case_id"] is not None

    inventory = SqlInventory(db)
    assert inventory.stock_of(PRODUCT_A) == 1
    assert inventory.stock_of(PRODUCT_B) == 2

    case = client.get(f"/v1/returns/{body['id']}/supplier-case").json()
    assert case["state"] == "pending"


def test_second_return_for_sale_is_a_conflict(client: TestClient, db: Session, operator_headers):
    _seed_stock(client, operator_headers, {PRODUCT_A: 2})
    sale = _sell(client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 2, "unit_price": "50000"}])
    payload = {
        "returned_items": [{"sale_item_id": sale["items"][0]["id"], "quantity": 1, "reason_code": "not_needed"}],
        "refund_method": "cash",
    }

    assert client.post(f"/v1/sales/{sale['id']}/returns", json=payload, headers=operator_headers).status_code == 201
    second = client.post(f"/v1/sales/{sale['id']}/returns", json=payload, headers=operator_headers)

    assert second.status_code == 409
    assert second.json()["error"] == "DUPLICATE_RETURN"


def test_refund_to_credit_account_restores_credit(client: TestClient, db: Session, operator_headers):
    _seed_stock(client, operator_headers, {PRODUCT_A: 5})
    account_id = _open_account(client, operator_headers)
    sale = _sell(
        client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 2, "unit_price": "50000"}], "credit_account"
    )

    client.post(
        f"/v1/sales/{sale['id']}/returns",
        json={
            "returned_items": [{"sale_item_id": sale["items"][0]["id"], "quantity": 2, "reason_code": "wrong_item"}],
            "refund_method": "credit_account",
        },
        headers=operator_headers,
    )

    account = client.get(f"/v1/credit-accounts/{account_id}").json()
    assert account["principal_owed"] == "0.00"
    assert account["available_for_purchase"] == "1000000.00"


def test_failed_return_leaves_stock_unchanged(client: TestClient, db: Session, operator_headers):
    _seed_stock(client, operator_headers, {PRODUCT_A: 2, PRODUCT_B: 0})
    sale = _sell(client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 2, "unit_price": "50000"}])

    response = client.post(
        f"/v1/sales/{sale['id']}/returns",
        json={
            "returned_items": [{"sale_item_id": sale["items"][0]["id"], "quantity": 1, "reason_code": "defective"}],
            "exchange_items": [{"product_id": PRODUCT_B, "quantity": 1, "unit_price": "50000"}],
        },
        headers=operator_headers,
    )

    assert response.status_code == 422
    assert response.json()["error"] == "INSUFFICIENT_STOCK"
    assert SqlInventory(db).stock_of(PRODUCT_A) == 0


def test_supplier_case_ship_and_short_reception(client: TestClient, db: Session, operator_headers):
    """Test ship 5, receive 3: partially received, stock +3, second confirmation refused"""
    _seed_stock(client, operator_headers, {PRODUCT_A: 5})
    sale = _sell(client, operator_headers, [{"product_id": PRODUCT_A, "quantity": 5, "unit_price": "1000"}])
    sale_return = client.post(
        f"/v1/sales/{sale['id']}/returns",
        json={
            "returned_items": [{"sale_item_id": sale["items"][0]["id"], "quantity": 5, "reason_code": "defective"}],
            "refund_method": "cash",
        },
        headers=operator_headers,
    ).json()
    return_id = sale_return["id"]

    shipped = client.post(
        f"/v1/returns/{return_id}/supplier-case/ship", json={"supplier_ref": "RMA-1"}, headers=operator_headers
    )
    assert shipped.json()["state"] == "shipped"
    assert SqlInventory(db).stock_of(PRODUCT_A) == 0

    reception = {"reception_date": "2025-01-15", "lines": [{"product_id": PRODUCT_A, "quantity_received": 3}]}
    received = client.post(
        f"/v1/returns/{return_id}/supplier-case/confirm-reception", json=reception, headers=operator_headers
    )
    assert received.status_code == 200
    assert received.json()["state"] == "partially_received"
    assert SqlInventory(db).stock_of(PRODUCT_A) == 3

    again = client.post(
        f"/v1/returns/{return_id}/supplier-case/confirm-reception", json=reception, headers=operator_headers
    )
    assert again.status_code == 409
    assert again.json()["error"] == "ALREADY_RECONCILED"
    assert SqlInventory(db).stock_of(PRODUCT_A) == 3


# Guest orders


def _create_order(client, total="80000", timeboxed=False, delivery_method="shipping"):
    response = client.post(
        "/v1/orders", json={"total": total, "timeboxed": timeboxed, "delivery_method": delivery_method}
    )
    assert response.status_code == 201
    return response.json()


def test_timeboxed_order_cancelled_on_read_after_deadline(client: TestClient, clock):
    order = _create_order(client, timeboxed=True)
    assert order["state"] == "awaiting_payment_timeboxed"
    assert order["payment_deadline"] == "2025-01-15T10:00:00"

    clock.advance(minutes=61)
    token = order["tracking_token"]

    assert client.get(f"/v1/orders/{token}").json()["state"] == "cancelled_by_inactivity"
    late = client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-late"})
    assert late.status_code == 409
    assert late.json()["error"] == "ALREADY_DECIDED"

    trail = client.get("/v1/audit/guest_order/1").json()["transitions"]
    assert [t["to_state"] for t in trail] == ["awaiting_payment_timeboxed", "cancelled_by_inactivity"]


def test_late_proof_without_prior_read_still_loses(client: TestClient, clock):
    token = _create_order(client, timeboxed=True)["tracking_token"]
    clock.advance(hours=2)

    response = client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-late"})

    assert response.status_code == 409
    order = client.get(f"/v1/orders/{token}").json()
    assert order["state"] == "cancelled_by_inactivity"
    assert order["proofs"] == []


def test_order_payment_verification(client: TestClient, clock, operator_headers):
    token = _create_order(client, timeboxed=True)["tracking_token"]
    clock.advance(minutes=30)

    submitted = client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-1"})
    assert submitted.json()["state"] == "in_verification"
    assert submitted.json()["payment_deadline"] is None

    partial = client.post(
        f"/v1/orders/{token}/decide", json={"verdict": "approve", "verified_amount": "30000"}, headers=operator_headers
    )
    assert partial.json()["state"] == "partially_paid"
    assert partial.json()["outstanding"] == "50000.00"

    client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-2"})
    confirmed = client.post(
        f"/v1/orders/{token}/decide", json={"verdict": "approve", "verified_amount": "50000"}, headers=operator_headers
    )
    assert confirmed.json()["state"] == "confirmed"

    again = client.post(
        f"/v1/orders/{token}/decide", json={"verdict": "approve", "verified_amount": "1"}, headers=operator_headers
    )
    assert again.status_code == 409


def test_order_fulfilment(client: TestClient, operator_headers):
    token = _create_order(client)["tracking_token"]
    client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-1"})
    client.post(
        f"/v1/orders/{token}/decide", json={"verdict": "approve", "verified_amount": "80000"}, headers=operator_headers
    )

    shipped = client.post(f"/v1/orders/{token}/status", json={"status": "shipped"}, headers=operator_headers)
    delivered = client.post(f"/v1/orders/{token}/status", json={"status": "delivered"}, headers=operator_headers)

    assert shipped.json()["state"] == "shipped"
    assert delivered.json()["state"] == "delivered"


def test_order_paid_partly_with_credit_released_on_rejection(client: TestClient, db: Session, operator_headers):
    account_id = _open_account(client, operator_headers, customer_id="cust-7")
    order = client.post(
        "/v1/orders",
        json={"total": "100000", "customer_id": "cust-7", "credit_amount": "40000"},
        headers=operator_headers,
    ).json()
    assert order["outstanding"] == "60000.00"
    assert client.get(f"/v1/credit-accounts/{account_id}").json()["principal_owed"] == "40000.00"

    token = order["tracking_token"]
    client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-1"})
    rejected = client.post(
        f"/v1/orders/{token}/decide", json={"verdict": "reject", "reason": "Amount mismatch"}, headers=operator_headers
    )

    assert rejected.json()["state"] == "cancelled"
    assert client.get(f"/v1/credit-accounts/{account_id}").json()["principal_owed"] == "0.00"


def test_order_rejected_after_credit_repaid_reports_refund_due(client: TestClient, operator_headers):
    """Test the customer repays the order's credit before its proof is rejected"""
    account_id = _open_account(client, operator_headers, customer_id="cust-8")
    token = client.post(
        "/v1/orders",
        json={"total": "100000", "customer_id": "cust-8", "credit_amount": "40000"},
        headers=operator_headers,
    ).json()["tracking_token"]
    installment_id = client.post(
        f"/v1/credit-accounts/{account_id}/installments",
        json={"amount": "40000", "paid_on_date": "2025-01-15", "payment_method": "cash", "proof_ref": "blob-9"},
    ).json()["id"]
    paid = client.post(f"/v1/installments/{installment_id}/verify", headers=operator_headers)
    assert paid.json()["account"]["state"] == "paid_off"

    client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-1"})
    rejected = client.post(
        f"/v1/orders/{token}/decide", json={"verdict": "reject", "reason": "Amount mismatch"}, headers=operator_headers
    )

    assert rejected.status_code == 200
    assert rejected.json()["state"] == "cancelled"
    assert rejected.json()["credit_refund_due"] == "40000.00"
    trail = client.get("/v1/audit/guest_order/1").json()["transitions"]
    assert trail[-1]["detail"]["credit_refund_due"] == "40000.00"


def test_store_pickup_order_skips_shipping(client: TestClient, operator_headers):
    token = _create_order(client, delivery_method="store_pickup")["tracking_token"]
    client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-1"})
    client.post(
        f"/v1/orders/{token}/decide", json={"verdict": "approve", "verified_amount": "80000"}, headers=operator_headers
    )

    shipped = client.post(f"/v1/orders/{token}/status", json={"status": "shipped"}, headers=operator_headers)
    delivered = client.post(f"/v1/orders/{token}/status", json={"status": "delivered"}, headers=operator_headers)

    assert shipped.status_code == 409
    assert delivered.json()["state"] == "delivered"
    assert delivered.json()["delivery_method"] == "store_pickup"


def test_confirmed_order_can_be_cancelled(client: TestClient, operator_headers):
    token = _create_order(client)["tracking_token"]
    client.post(f"/v1/orders/{token}/proofs", json={"proof_ref": "blob-1"})
    client.post(
        f"/v1/orders/{token}/decide", json={"verdict": "approve", "verified_amount": "80000"}, headers=operator_headers
    )

    cancelled = client.post(
        f"/v1/orders/{token}/status", json={"status": "cancelled", "reason": "Out of stock"}, headers=operator_headers
    )

    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "cancelled"
    assert cancelled.json()["cancellation_reason"] == "Out of stock"


def test_sweep_cancels_only_overdue_orders(client: TestClient, clock, operator_headers):
    overdue = _create_order(client, timeboxed=True)["tracking_token"]
    clock.advance(minutes=45)
    fresh = _create_order(client, timeboxed=True)["tracking_token"]
    open_order = _create_order(client)["tracking_token"]
    clock.advance(minutes=20)

    swept = client.post("/v1/orders/sweep-deadlines", headers=operator_headers)

    assert swept.json()["cancelled"] == [overdue]
    assert client.get(f"/v1/orders/{fresh}").json()["state"] == "awaiting_payment_timeboxed"
    assert client.get(f"/v1/orders/{open_order}").json()["state"] == "awaiting_payment"
    assert client.post("/v1/orders/sweep-deadlines", headers=operator_headers).json()["cancelled"] == []


def test_unknown_order_token(client: TestClient):
    assert client.get("/v1/orders/nope").status_code == 404


# Inventory


def test_stock_sync_overwrites_level(client: TestClient, operator_headers):
    assert client.get(f"/v1/products/{PRODUCT_A}/stock").json() == {"product_id": PRODUCT_A, "quantity": 0}

    client.put(f"/v1/products/{PRODUCT_A}/stock", json={"quantity": 7}, headers=operator_headers)
    synced = client.put(f"/v1/products/{PRODUCT_A}/stock", json={"quantity": 4}, headers=operator_headers)

    assert synced.status_code == 200
    assert client.get(f"/v1/products/{PRODUCT_A}/stock").json()["quantity"] == 4


def test_stock_sync_needs_capability(client: TestClient):
    clerk_headers = {"X-Actor-Id": "clerk-1", "X-Actor-Capabilities": "sales.record"}

    response = client.put(f"/v1/products/{PRODUCT_A}/stock", json={"quantity": 4}, headers=clerk_headers)

    assert response.status_code == 403
    assert response.json()["error"] == "PERMISSION_DENIED"


def test_negative_stock_level_is_refused(client: TestClient, operator_headers):
    response = client.put(f"/v1/products/{PRODUCT_A}/stock", json={"quantity": -1}, headers=operator_headers)

    assert response.status_code == 400
