from datetime import datetime, timedelta

import pytest

import checkout
from benefitpay import WalletCredentials
from gateway import CANCELLED, FAILED, PAID, PENDING, PaymentResult
from inventory import StockReservationError

NOW = datetime(2026, 1, 10, 12, 0, 0)
ADDRESS = {"name": "Sara", "phone": "+97333333333", "city": "Manama"}
CART = [{"productId": "p1", "quantity": 2}, {"productId": "p2", "quantity": 1}]


@pytest.fixture
def catalogue(add_product):
    add_product("p1", 10.5, 5, name="Kettle")
    add_product("p2", 4.25, 3, name="Filter")


def _open_session(db, payment_method="card", total=25.25, user_id="user-1", now=NOW):
    return checkout.create_session(db, user_id, CART, ADDRESS, total, payment_method, now)["session"]


def _count(fetch_one, table, where="1 = 1", params=()):
    return fetch_one(f"SELECT COUNT(*) AS n FROM {table} WHERE {where}", params)["n"]


class FakeEazyPay:
    def __init__(self, response):
        self.response = response
        self.queried = []

    def query_transaction(self, gid):
        self.queried.append(gid)
        return self.response


class FakeWallet:
    def __init__(self, response):
        self.response = response

    def check_status(self, reference_number):
        return self.response


def test_create_session_reserves_stock_with_server_prices(db, catalogue, stock_of):
    result = checkout.create_session(db, "user-1", CART, ADDRESS, "25.25", "card", NOW)
    session = result["session"]
    assert result["order"] is None
    assert session["status"] == "initiated"
    assert session["expires_at"] == NOW + timedelta(minutes=30)
    assert float(session["total"]) == pytest.approx(25.25)
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_create_session_rejects_tampered_total(db, catalogue, stock_of, fetch_one):
    with pytest.raises(checkout.InvalidCheckout, match="total mismatch"):
        _open_session(db, total=1.0)
    assert (stock_of("p1"), stock_of("p2")) == (5, 3)
    assert _count(fetch_one, "checkout_sessions") == 0


def test_create_session_out_of_stock_rolls_back(db, catalogue, stock_of, fetch_one):
    with pytest.raises(StockReservationError):
        checkout.create_session(
            db, "user-1", [{"productId": "p1", "quantity": 1}, {"productId": "p2", "quantity": 9}],
            ADDRESS, 48.75, "card", NOW,
        )
    assert (stock_of("p1"), stock_of("p2")) == (5, 3)
    assert _count(fetch_one, "checkout_sessions") == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"payment_method": "bitcoin"},
        {"shipping_address": None},
        {"total": 0},
        {"items": []},
    ],
)
def test_create_session_validation(db, catalogue, kwargs):
    args = {"items": CART, "shipping_address": ADDRESS, "total": 25.25, "payment_method": "card"}
    args.update(kwargs)
    with pytest.raises(checkout.InvalidCheckout):
        checkout.create_session(db, "user-1", now=NOW, **args)


def test_cod_session_converts_immediately(db, catalogue, stock_of):
    result = checkout.create_session(db, "user-1", CART, ADDRESS, 25.25, "cod", NOW)
    order = result["order"]
    assert result["session"]["status"] == "paid"
    assert result["session"]["order_id"] == order["id"]
    assert order["payment_status"] == "unpaid"
    assert order["inventory_status"] == "sold"
    assert order["paid_on"] is None
    assert sorted((item["product_id"], item["quantity"]) for item in order["items"]) == [("p1", 2), ("p2", 1)]
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_get_session_is_owner_scoped(db, catalogue):
    session = _open_session(db)
    assert checkout.get_session(db, session["id"], "user-1")["id"] == session["id"]
    with pytest.raises(checkout.SessionNotFound):
        checkout.get_session(db, session["id"], "someone-else")


def test_paid_result_creates_exactly_one_order(db, catalogue, stock_of, fetch_one):
    session = _open_session(db)
    result = PaymentResult(PAID, raw={"isPaid": True}, fields={"global_transactions_id": "GT-9"})

    first = checkout.apply_gateway_result(db, session, result, NOW)
    second = checkout.apply_gateway_result(db, session, result, NOW)

    assert first["success"] and second["success"]
    assert first["orderId"] == second["orderId"]
    assert _count(fetch_one, "orders") == 1
    order = checkout.get_order(db, first["orderId"])
    assert order["payment_status"] == "paid"
    assert order["global_transactions_id"] == "GT-9"
    assert order["paid_on"] == NOW
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_failed_result_releases_stock_once(db, catalogue, stock_of, fetch_one):
    session = _open_session(db)
    failed = PaymentResult(FAILED, raw={"status": "FAILED"}, message="Payment failed")

    outcome = checkout.apply_gateway_result(db, session, failed, NOW)
    checkout.apply_gateway_result(db, session, failed, NOW)
    assert checkout.fail_session(db, session["id"], CANCELLED, NOW) is False

    assert outcome == {"success": False, "pending": False, "orderId": None, "message": "Payment failed"}
    assert (stock_of("p1"), stock_of("p2")) == (5, 3)
    row = fetch_one("SELECT status, inventory_released_at FROM checkout_sessions WHERE id = %s", (session["id"],))
    assert row["status"] == "failed"
    assert row["inventory_released_at"] == NOW


def test_pending_result_changes_nothing(db, catalogue, stock_of):
    session = _open_session(db)
    outcome = checkout.apply_gateway_result(db, session, PaymentResult(PENDING), NOW)
    assert outcome["pending"] is True
    assert checkout.get_session(db, session["id"], "user-1")["status"] == "initiated"
    assert stock_of("p1") == 3


def test_failure_after_payment_keeps_the_order(db, catalogue, stock_of):
    session = _open_session(db)
    paid = checkout.apply_gateway_result(db, session, PaymentResult(PAID), NOW)
    late_failure = checkout.apply_gateway_result(db, session, PaymentResult(FAILED), NOW)
    assert late_failure["success"] is True
    assert late_failure["orderId"] == paid["orderId"]
    assert stock_of("p1") == 3


def test_fail_session_rejects_non_failure_status(db):
    with pytest.raises(ValueError):
        checkout.fail_session(db, "anything", "expired", NOW)


def test_expire_sessions_releases_only_stale_sessions(db, catalogue, stock_of):
    stale = _open_session(db, now=NOW - timedelta(minutes=45))
    fresh = _open_session(db, now=NOW)
    assert (stock_of("p1"), stock_of("p2")) == (1, 1)

    result = checkout.expire_sessions(db, NOW)
    again = checkout.expire_sessions(db, NOW)

    assert result == {"processed": 1, "total": 1, "errors": []}
    assert again["total"] == 0
    assert checkout.get_session(db, stale["id"], "user-1")["status"] == "expired"
    assert checkout.get_session(db, fresh["id"], "user-1")["status"] == "initiated"
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_late_payment_after_expiry_re_reserves_stock(db, catalogue, stock_of):
    session = _open_session(db, now=NOW - timedelta(hours=1))
    checkout.expire_sessions(db, NOW)
    assert stock_of("p1") == 5

    outcome = checkout.apply_gateway_result(db, session, PaymentResult(PAID, raw={"late": True}), NOW)

    assert outcome["success"] is True
    assert checkout.get_session(db, session["id"], "user-1")["status"] == "paid"
    assert checkout.get_order(db, outcome["orderId"])["payment_status"] == "paid"
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_late_payment_without_stock_is_flagged(db, catalogue, stock_of, fetch_one):
    session = _open_session(db, now=NOW - timedelta(hours=1))
    checkout.expire_sessions(db, NOW)
    with db.cursor() as cur:
        cur.execute("UPDATE products SET stock_quantity = 0 WHERE id = %s", ("p2",))
    db.commit()

    with pytest.raises(checkout.SessionClosed, match="manual review"):
        checkout.apply_gateway_result(db, session, PaymentResult(PAID), NOW)

    row = checkout.get_session(db, session["id"], "user-1")
    assert row["status"] == "expired"
    assert row["wallet_state"] == "UNKNOWN_NEEDS_MANUAL_REVIEW"
    assert _count(fetch_one, "orders") == 0
    assert stock_of("p1") == 5


def test_complete_session_queries_eazypay(db, catalogue):
    session = _open_session(db)
    gateway = FakeEazyPay({"isPaid": True, "globalTransactionsId": "GT-1", "paidOn": "2026-01-10T12:05:00Z"})

    outcome = checkout.complete_session(db, session["id"], "user-1", "GT-1", client=gateway, now=NOW)

    assert outcome["success"] is True
    assert gateway.queried == ["GT-1"]
    order = checkout.get_order(db, outcome["orderId"])
    assert order["global_transactions_id"] == "GT-1"
    assert order["paid_on"] == datetime(2026, 1, 10, 12, 5, 0)

    repeat = checkout.complete_session(db, session["id"], "user-1", client=gateway, now=NOW)
    assert repeat["orderId"] == outcome["orderId"]
    assert gateway.queried == ["GT-1"]


def test_complete_session_needs_a_transaction_id(db, catalogue):
    session = _open_session(db)
    with pytest.raises(checkout.InvalidCheckout):
        checkout.complete_session(db, session["id"], "user-1", client=FakeEazyPay({}))


def test_complete_session_pending_keeps_session_open(db, catalogue, stock_of):
    session = _open_session(db)
    checkout.attach_invoice(db, session["id"], "GT-2", "token-2", NOW)
    outcome = checkout.complete_session(
        db, session["id"], "user-1", client=FakeEazyPay({"status": "PENDING"}), now=NOW
    )
    assert outcome["pending"] is True
    assert checkout.get_session(db, session["id"], "user-1")["status"] == "initiated"
    assert stock_of("p1") == 3


def test_wallet_state_updates(db, catalogue):
    session = _open_session(db, payment_method="benefitpay_wallet")
    assert session["wallet_state"] == "INITIATED"
    updated = checkout.update_wallet_state(
        db, session["id"], "user-1", "WALLET_POPUP_OPENED", previous_state="SOMETHING_ELSE", now=NOW
    )
    assert updated["wallet_state"] == "WALLET_POPUP_OPENED"
    with pytest.raises(checkout.InvalidCheckout):
        checkout.update_wallet_state(db, session["id"], "user-1", "DANCING")


def _start_wallet(db, session):
    credentials = WalletCredentials("M-1", "A-1", "wallet-secret", "https://wallet.example/status")
    return checkout.start_wallet_payment(db, session["id"], "user-1", credentials=credentials, now=NOW)


def test_start_wallet_payment_signs_and_stores_reference(db, catalogue):
    session = _open_session(db, payment_method="benefitpay_wallet")

    started = _start_wallet(db, session)

    params = started["signedParams"]
    assert started["referenceNumber"].startswith("HB_" + session["id"].replace("-", "")[:20] + "_")
    assert params["referenceNumber"] == started["referenceNumber"]
    assert params["transactionAmount"] == "25.250"
    assert params["secure_hash"]
    row = checkout.get_session(db, session["id"], "user-1")
    assert row["reference_number"] == started["referenceNumber"]


def test_start_wallet_payment_needs_an_open_wallet_session(db, catalogue):
    card = _open_session(db, payment_method="card")
    with pytest.raises(checkout.InvalidCheckout):
        _start_wallet(db, card)

    wallet = _open_session(db, payment_method="benefitpay_wallet")
    checkout.fail_session(db, wallet["id"], now=NOW)
    with pytest.raises(checkout.SessionClosed):
        _start_wallet(db, wallet)


def test_wallet_status_rejects_foreign_reference(db, catalogue, stock_of):
    session = _open_session(db, payment_method="benefitpay_wallet")
    wallet = FakeWallet({"status": "success", "rrn": "123"})
    with pytest.raises(checkout.InvalidCheckout, match="not been started"):
        checkout.check_wallet_status(db, session["id"], "user-1", "HB_other_1", client=wallet, now=NOW)

    _start_wallet(db, session)
    with pytest.raises(checkout.InvalidCheckout, match="does not match"):
        checkout.check_wallet_status(db, session["id"], "user-1", "HB_other_1", client=wallet, now=NOW)
    assert checkout.get_session(db, session["id"], "user-1")["status"] == "initiated"
    assert stock_of("p1") == 3


def test_wallet_status_failure_releases_stock(db, catalogue, stock_of):
    session = _open_session(db, payment_method="benefitpay_wallet")
    reference = _start_wallet(db, session)["referenceNumber"]
    wallet = FakeWallet({"status": "failed", "error_description": "Declined"})

    outcome = checkout.check_wallet_status(db, session["id"], "user-1", reference, client=wallet, now=NOW)

    assert outcome["status"] == "failed"
    assert outcome["message"] == "Declined"
    row = checkout.get_session(db, session["id"], "user-1")
    assert row["wallet_state"] == "FAILED"
    assert stock_of("p1") == 5

    again = checkout.check_wallet_status(db, session["id"], "user-1", reference, client=wallet, now=NOW)
    assert again["message"] == "Payment previously failed"
    assert stock_of("p1") == 5


def test_wallet_status_success_creates_order(db, catalogue):
    session = _open_session(db, payment_method="benefitpay_wallet")
    reference = _start_wallet(db, session)["referenceNumber"]
    outcome = checkout.check_wallet_status(
        db, session["id"], "user-1", reference, client=FakeWallet({"status": "success", "rrn": "123"}), now=NOW
    )
    assert outcome["status"] == "paid"
    order = checkout.get_order(db, outcome["orderId"])
    assert order["reference_number"] == reference
    assert order["payment_method"] == "benefitpay_wallet"
    assert checkout.get_session(db, session["id"], "user-1")["wallet_state"] == "PAID"


def test_place_order_benefit_reserves_with_expiry(db, catalogue, stock_of):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)
    assert order["inventory_status"] == "reserved"
    assert order["reservation_expires_at"] == NOW + timedelta(minutes=15)
    assert float(order["total"]) == pytest.approx(25.25)
    assert stock_of("p1") == 3


def test_expired_reservation_is_cancelled_and_restocked_once(db, catalogue, stock_of):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)
    later = NOW + timedelta(minutes=20)

    assert checkout.expire_reservations(db, later)["processed"] == 1
    assert checkout.expire_reservations(db, later)["total"] == 0

    row = checkout.get_order(db, order["id"])
    assert (row["status"], row["inventory_status"]) == ("cancelled", "released")
    assert (stock_of("p1"), stock_of("p2")) == (5, 3)


def test_mark_order_paid_is_idempotent(db, catalogue):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)
    assert checkout.mark_order_paid(db, order["id"], {"benefit_trans_id": "T1", "bogus": "x"}, NOW) is True
    assert checkout.mark_order_paid(db, order["id"], {}, NOW) is False
    row = checkout.get_order(db, order["id"])
    assert row["payment_status"] == "paid"
    assert row["inventory_status"] == "sold"
    assert row["benefit_trans_id"] == "T1"
    with pytest.raises(checkout.OrderNotFound):
        checkout.mark_order_paid(db, "missing", {}, NOW)


def test_payment_after_reservation_expired_reinstates_order(db, catalogue, stock_of):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)
    checkout.expire_reservations(db, NOW + timedelta(minutes=20))

    assert checkout.mark_order_paid(db, order["id"], {}, NOW + timedelta(minutes=21)) is True

    row = checkout.get_order(db, order["id"])
    assert (row["status"], row["inventory_status"], row["needs_review"]) == ("pending", "sold", 0)
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_payment_after_reservation_expired_without_stock_needs_review(db, catalogue, stock_of):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)
    checkout.expire_reservations(db, NOW + timedelta(minutes=20))
    checkout.place_order(db, "user-2", [{"productId": "p2", "quantity": 3}], ADDRESS, "cod", NOW)

    assert checkout.mark_order_paid(db, order["id"], {}, NOW + timedelta(minutes=21)) is True

    row = checkout.get_order(db, order["id"])
    assert row["payment_status"] == "paid"
    assert row["needs_review"] == 1
    assert (stock_of("p1"), stock_of("p2")) == (5, 0)


def test_mark_cod_paid(db, catalogue):
    cod = checkout.place_order(db, "user-1", CART, ADDRESS, "cod", NOW)
    card = checkout.place_order(db, "user-1", CART[:1], ADDRESS, "benefit", NOW)

    assert checkout.mark_cod_paid(db, cod["id"], NOW)["payment_status"] == "paid"
    with pytest.raises(checkout.InvalidCheckout, match="already paid"):
        checkout.mark_cod_paid(db, cod["id"], NOW)
    with pytest.raises(checkout.InvalidCheckout):
        checkout.mark_cod_paid(db, card["id"], NOW)


def test_cancelling_unpaid_order_restocks_once(db, catalogue, stock_of):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "cod", NOW)
    assert stock_of("p1") == 3

    checkout.update_order_status(db, order["id"], "cancelled", NOW)
    row = checkout.update_order_status(db, order["id"], "cancelled", NOW)

    assert row["status"] == "cancelled"
    assert row["inventory_status"] == "released"
    assert stock_of("p1") == 5
    with pytest.raises(checkout.InvalidCheckout):
        checkout.update_order_status(db, order["id"], "lost", NOW)


def test_reopening_cancelled_order_takes_stock_again(db, catalogue, stock_of):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "cod", NOW)
    checkout.update_order_status(db, order["id"], "cancelled", NOW)
    assert stock_of("p1") == 5

    row = checkout.update_order_status(db, order["id"], "shipped", NOW)

    assert row["status"] == "shipped"
    assert row["inventory_status"] == "sold"
    assert row["inventory_released_at"] is None
    assert (stock_of("p1"), stock_of("p2")) == (3, 2)


def test_reopening_cancelled_order_fails_when_stock_is_gone(db, catalogue, stock_of):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "cod", NOW)
    checkout.update_order_status(db, order["id"], "cancelled", NOW)
    checkout.place_order(db, "user-2", [{"productId": "p2", "quantity": 3}], ADDRESS, "cod", NOW)

    with pytest.raises(StockReservationError):
        checkout.update_order_status(db, order["id"], "shipped", NOW)

    row = checkout.get_order(db, order["id"])
    assert (row["status"], row["inventory_status"]) == ("cancelled", "released")
    assert (stock_of("p1"), stock_of("p2")) == (5, 0)


def test_webhook_for_expired_session_without_stock_needs_review(db, catalogue, stock_of, fetch_one):
    session = _open_session(db, now=NOW - timedelta(hours=1))
    checkout.attach_invoice(db, session["id"], "GT-LATE", now=NOW - timedelta(hours=1))
    checkout.expire_sessions(db, NOW)
    checkout.place_order(db, "user-2", [{"productId": "p1", "quantity": 5}], ADDRESS, "cod", NOW)

    message = checkout.handle_eazypay_webhook(db, {"globalTransactionsId": "GT-LATE", "isPaid": True}, NOW)

    assert message == "Payment flagged for manual review"
    row = checkout.get_session(db, session["id"], "user-1")
    assert row["status"] == "expired"
    assert row["wallet_state"] == "UNKNOWN_NEEDS_MANUAL_REVIEW"
    assert _count(fetch_one, "orders", "checkout_session_id = %s", (session["id"],)) == 0
    assert (stock_of("p1"), stock_of("p2")) == (0, 3)


def _benefit_data(order_id, trans_id="T-9", amount="25.250"):
    return {
        "result": "CAPTURED",
        "trackId": order_id,
        "amt": amount,
        "transId": trans_id,
        "ref": "R-9",
        "authRespCode": "00",
    }


def test_benefit_response_must_name_its_order(db, catalogue):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)

    data = _benefit_data(order["id"])
    del data["trackId"]
    missing = checkout.settle_benefit_payment(db, order["id"], data, now=NOW)
    other = checkout.settle_benefit_payment(db, order["id"], _benefit_data("someone-else"), now=NOW)

    assert missing == {"success": False, "message": "Order reference mismatch"}
    assert other == {"success": False, "message": "Order reference mismatch"}
    assert checkout.get_order(db, order["id"])["payment_status"] == "unpaid"


def test_benefit_transaction_cannot_pay_two_orders(db, catalogue):
    first = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)
    second = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)
    assert checkout.settle_benefit_payment(db, first["id"], _benefit_data(first["id"]), now=NOW)["success"]

    replayed = checkout.settle_benefit_payment(db, second["id"], _benefit_data(first["id"]), now=NOW)
    reused = checkout.settle_benefit_payment(db, second["id"], _benefit_data(second["id"]), now=NOW)

    assert replayed["message"] == "Order reference mismatch"
    assert reused == {"success": False, "message": "Transaction already used for another order"}
    assert checkout.get_order(db, second["id"])["payment_status"] == "unpaid"


def test_benefit_declined_response_uses_gateway_message(db, catalogue):
    order = checkout.place_order(db, "user-1", CART, ADDRESS, "benefit", NOW)
    data = dict(_benefit_data(order["id"]), result="NOT CAPTURED", authRespCode="05")

    outcome = checkout.settle_benefit_payment(db, order["id"], data, now=NOW)

    assert outcome == {"success": False, "message": "Payment failed: Transaction NOT CAPTURED"}


def test_list_user_orders_newest_first(db, catalogue):
    older = checkout.place_order(db, "user-1", CART[:1], ADDRESS, "cod", NOW - timedelta(days=1))
    newer = checkout.place_order(db, "user-1", CART[1:], ADDRESS, "cod", NOW)
    checkout.place_order(db, "user-2", CART[:1], ADDRESS, "cod", NOW)

    orders = checkout.list_user_orders(db, "user-1")
    assert [order["id"] for order in orders] == [newer["id"], older["id"]]
    assert orders[0]["items"][0]["product_id"] == "p2"
