"""API tests for payment confirmation and provider webhooks.

Both producers end in ``PaymentReconciler.report_outcome``; these tests
check that they agree: one transition per order whatever the delivery order,
and signatures verified before anything is applied.
"""

import hashlib
import hmac
import json
import time

import pytest

from apps.checkout.models import OrderModel, OrderStatusChange

CHECKOUT_URL = "/api/checkout/"
CONFIRM_URL = "/api/checkout/payments/confirm/"
WEBHOOK_URL = "/api/checkout/webhooks/{method}/"
ADDRESS = {"name": "Asha", "line1": "12 MG Road", "city": "Pune", "postal_code": "411001", "country": "IN"}


def _checkout(client, method):
    r = client.post(
        CHECKOUT_URL,
        data={"shipping_address": ADDRESS, "payment_method": method},
        content_type="application/json",
    )
    assert r.status_code == 201, r.content
    return r.json()


def _confirm(client, payload):
    return client.post(CONFIRM_URL, data=payload, content_type="application/json")


def _stripe_webhook(client, event, secret="whsec_test"):
    payload = json.dumps(event)
    t = int(time.time())
    sig = hmac.new(secret.encode(), f"{t}.{payload}".encode(), hashlib.sha256).hexdigest()
    return client.post(
        WEBHOOK_URL.format(method="hosted_checkout"),
        data=payload,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE=f"t={t},v1={sig}",
    )


def _signed_webhook(client, event, secret="rzp_whsec_test"):
    body = json.dumps(event).encode()
    return client.post(
        WEBHOOK_URL.format(method="signed_provider"),
        data=body,
        content_type="application/json",
        HTTP_X_RAZORPAY_SIGNATURE=hmac.new(secret.encode(), body, hashlib.sha256).hexdigest(),
    )


def _transitions(order_id):
    return list(OrderStatusChange.objects.filter(order_id=order_id).values_list("to_status", flat=True))


@pytest.fixture
def hosted(checkout_services):
    return checkout_services.payment_methods.get("hosted_checkout")


@pytest.fixture
def signed(checkout_services):
    return checkout_services.payment_methods.get("signed_provider")


# ---- client confirmation ----

@pytest.mark.django_db
def test_hosted_confirm_marks_paid_once(auth_client, user, add_to_cart, inventory, hosted):
    add_to_cart(user, "P1", 2)
    body = _checkout(auth_client, "hosted_checkout")
    order_id, session_id = body["order"]["id"], body["payment"]["payment_ref"]
    hosted.complete(session_id)

    r1 = _confirm(auth_client, {"order_id": order_id, "session_id": session_id})
    r2 = _confirm(auth_client, {"order_id": order_id, "session_id": session_id})

    assert r1.status_code == r2.status_code == 200
    assert r1.json()["status"] == r2.json()["status"] == "paid"
    assert r1.json()["paid_at"]
    assert _transitions(order_id) == ["pending", "paid"]
    assert inventory.stock("P1") == 3
    reservation_id = OrderModel.objects.get(pk=order_id).reservation_id
    assert inventory.reservation(reservation_id).state.value == "COMMITTED"


@pytest.mark.django_db
def test_hosted_confirm_before_payment_is_409(auth_client, user, add_to_cart):
    add_to_cart(user, "P1", 1)
    body = _checkout(auth_client, "hosted_checkout")

    r = _confirm(auth_client, {"order_id": body["order"]["id"], "session_id": body["payment"]["payment_ref"]})

    assert r.status_code == 409
    assert r.json()["detail"] == "PAYMENT_NOT_COMPLETED"
    assert OrderModel.objects.get(pk=body["order"]["id"]).status == "pending"


@pytest.mark.django_db
def test_confirm_with_wrong_session_is_rejected(auth_client, user, add_to_cart, hosted):
    add_to_cart(user, "P1", 1)
    body = _checkout(auth_client, "hosted_checkout")
    hosted.complete(body["payment"]["payment_ref"])

    r = _confirm(auth_client, {"order_id": body["order"]["id"], "session_id": "cs_test_forged"})

    assert r.status_code == 400
    assert r.json()["detail"] == "REFERENCE_MISMATCH"
    assert OrderModel.objects.get(pk=body["order"]["id"]).status == "pending"


@pytest.mark.django_db
def test_confirm_other_users_order_is_404(auth_client, user, add_to_cart, django_user_model):
    add_to_cart(user, "P1", 1)
    body = _checkout(auth_client, "hosted_checkout")
    mallory = django_user_model.objects.create_user(username="mallory", password="pw")
    auth_client.force_login(mallory)

    r = _confirm(auth_client, {"order_id": body["order"]["id"], "outcome": "cancelled"})

    assert r.status_code == 404
    assert OrderModel.objects.get(pk=body["order"]["id"]).status == "pending"


@pytest.mark.django_db
def test_client_cancel_restores_stock(auth_client, user, add_to_cart, inventory):
    add_to_cart(user, "P1", 2)
    body = _checkout(auth_client, "hosted_checkout")

    r = _confirm(auth_client, {"order_id": body["order"]["id"], "outcome": "cancelled"})

    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert inventory.stock("P1") == 5


@pytest.mark.django_db
def test_signed_provider_confirm(auth_client, user, add_to_cart, signed):
    add_to_cart(user, "P2", 1)
    body = _checkout(auth_client, "signed_provider")
    provider_order_id = body["payment"]["client_data"]["provider_order_id"]
    payment_id, signature = signed.pay(provider_order_id)

    r = _confirm(
        auth_client,
        {
            "order_id": body["order"]["id"],
            "provider_order_id": provider_order_id,
            "payment_id": payment_id,
            "signature": signature,
        },
    )

    assert r.status_code == 200
    assert r.json()["status"] == "paid"
    assert r.json()["payment_ref"] == payment_id


@pytest.mark.django_db
def test_signed_provider_forged_signature(auth_client, user, add_to_cart, signed):
    add_to_cart(user, "P2", 1)
    body = _checkout(auth_client, "signed_provider")
    provider_order_id = body["payment"]["payment_ref"]

    r = _confirm(
        auth_client,
        {
            "order_id": body["order"]["id"],
            "provider_order_id": provider_order_id,
            "payment_id": "pay_forged",
            "signature": "f" * 64,
        },
    )

    assert r.status_code == 400
    assert r.json()["detail"] == "SIGNATURE_MISMATCH"


# ---- webhooks ----

@pytest.mark.django_db
def test_stripe_webhook_marks_paid_and_duplicate_is_noop(auth_client, user, add_to_cart, hosted, inventory):
    add_to_cart(user, "P1", 2)
    body = _checkout(auth_client, "hosted_checkout")
    session = hosted.complete(body["payment"]["payment_ref"])
    event = {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}}

    r1 = _stripe_webhook(auth_client, event)
    r2 = _stripe_webhook(auth_client, event)

    assert r1.status_code == r2.status_code == 200
    assert r1.json() == {"received": True, "order_id": body["order"]["id"], "status": "paid"}
    order = OrderModel.objects.get(pk=body["order"]["id"])
    assert order.status == "paid"
    assert order.payment_ref == session["payment_intent"]
    assert _transitions(order.pk) == ["pending", "paid"]
    assert inventory.stock("P1") == 3


@pytest.mark.django_db
def test_webhook_then_client_confirm_agree(auth_client, user, add_to_cart, hosted):
    add_to_cart(user, "P1", 1)
    body = _checkout(auth_client, "hosted_checkout")
    session = hosted.complete(body["payment"]["payment_ref"])
    _stripe_webhook(auth_client, {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}})

    r = _confirm(auth_client, {"order_id": body["order"]["id"], "session_id": session["id"]})

    assert r.status_code == 200
    assert r.json()["status"] == "paid"
    assert _transitions(body["order"]["id"]) == ["pending", "paid"]


@pytest.mark.django_db
def test_stripe_webhook_bad_signature(auth_client, user, add_to_cart, hosted):
    add_to_cart(user, "P1", 1)
    body = _checkout(auth_client, "hosted_checkout")
    session = hosted.complete(body["payment"]["payment_ref"])

    r = _stripe_webhook(
        auth_client, {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}}, secret="nope"
    )

    assert r.status_code == 400
    assert r.json()["detail"] == "SIGNATURE_MISMATCH"
    assert OrderModel.objects.get(pk=body["order"]["id"]).status == "pending"


@pytest.mark.django_db
def test_stripe_session_expired_cancels(auth_client, user, add_to_cart, hosted, inventory):
    add_to_cart(user, "P1", 2)
    body = _checkout(auth_client, "hosted_checkout")
    session = dict(hosted.sessions[body["payment"]["payment_ref"]], status="expired")

    r = _stripe_webhook(auth_client, {"id": "evt_2", "type": "checkout.session.expired", "data": {"object": session}})

    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert inventory.stock("P1") == 5


@pytest.mark.django_db
def test_stripe_webhook_unknown_order_is_acknowledged(client):
    session = {"id": "cs_x", "object": "checkout.session", "metadata": {"order_id": "00000000-0000-0000-0000-000000000000"}}

    r = _stripe_webhook(client, {"id": "evt_3", "type": "checkout.session.completed", "data": {"object": session}})

    assert r.status_code == 200
    assert r.json() == {"received": True, "detail": "NOT_FOUND"}


@pytest.mark.django_db
def test_signed_provider_webhook_marks_paid(auth_client, user, add_to_cart, inventory):
    add_to_cart(user, "P2", 1)
    body = _checkout(auth_client, "signed_provider")
    payment = {
        "id": "pay_1",
        "order_id": body["payment"]["payment_ref"],
        "amount": 250,
        "currency": "INR",
        "status": "captured",
    }

    r = _signed_webhook(auth_client, {"event": "payment.captured", "payload": {"payment": {"entity": payment}}})

    assert r.status_code == 200
    assert r.json()["status"] == "paid"
    assert OrderModel.objects.get(pk=body["order"]["id"]).payment_ref == "pay_1"
    assert inventory.stock("P2") == 0


@pytest.mark.django_db
def test_signed_provider_webhook_amount_mismatch(auth_client, user, add_to_cart):
    add_to_cart(user, "P2", 1)
    body = _checkout(auth_client, "signed_provider")
    payment = {"id": "pay_1", "order_id": body["payment"]["payment_ref"], "amount": 1, "currency": "INR",
               "status": "captured"}

    r = _signed_webhook(auth_client, {"event": "payment.captured", "payload": {"payment": {"entity": payment}}})

    assert r.status_code == 400
    assert r.json()["detail"] == "AMOUNT_MISMATCH"
    assert OrderModel.objects.get(pk=body["order"]["id"]).status == "pending"


@pytest.mark.django_db
def test_signed_provider_failed_attempt_then_captured(auth_client, user, add_to_cart, inventory):
    add_to_cart(user, "P2", 1)
    body = _checkout(auth_client, "signed_provider")
    provider_order_id = body["payment"]["payment_ref"]
    declined = {"id": "pay_2", "order_id": provider_order_id, "status": "failed"}
    captured = {"id": "pay_3", "order_id": provider_order_id, "amount": 250, "currency": "INR", "status": "captured"}

    r1 = _signed_webhook(auth_client, {"event": "payment.failed", "payload": {"payment": {"entity": declined}}})

    assert r1.status_code == 200
    assert r1.json() == {"received": True}
    assert OrderModel.objects.get(pk=body["order"]["id"]).status == "pending"
    assert inventory.stock("P2") == 0

    r2 = _signed_webhook(auth_client, {"event": "payment.captured", "payload": {"payment": {"entity": captured}}})

    assert r2.json()["status"] == "paid"
    assert OrderModel.objects.get(pk=body["order"]["id"]).payment_ref == "pay_3"
    assert inventory.stock("P2") == 0


@pytest.mark.django_db
def test_declined_card_then_paid_in_same_session(auth_client, user, add_to_cart, hosted, inventory):
    add_to_cart(user, "P1", 2)
    body = _checkout(auth_client, "hosted_checkout")
    session_id = body["payment"]["payment_ref"]
    intent = {"id": "pi_declined", "object": "payment_intent", "metadata": {"order_id": body["order"]["id"]}}

    r1 = _stripe_webhook(
        auth_client, {"id": "evt_4", "type": "payment_intent.payment_failed", "data": {"object": intent}}
    )

    assert r1.status_code == 200
    assert r1.json() == {"received": True}
    assert OrderModel.objects.get(pk=body["order"]["id"]).status == "pending"
    assert inventory.stock("P1") == 3

    session = hosted.complete(session_id)
    r2 = _stripe_webhook(
        auth_client, {"id": "evt_5", "type": "checkout.session.completed", "data": {"object": session}}
    )

    assert r2.json()["status"] == "paid"
    assert _transitions(body["order"]["id"]) == ["pending", "paid"]
    assert inventory.stock("P1") == 3


@pytest.mark.django_db
def test_async_payment_failure_closes_order(auth_client, user, add_to_cart, hosted, inventory):
    add_to_cart(user, "P1", 2)
    body = _checkout(auth_client, "hosted_checkout")
    session = dict(hosted.sessions[body["payment"]["payment_ref"]])

    r = _stripe_webhook(
        auth_client, {"id": "evt_6", "type": "checkout.session.async_payment_failed", "data": {"object": session}}
    )

    assert r.json()["status"] == "payment_failed"
    assert inventory.stock("P1") == 5


@pytest.mark.django_db
def test_webhook_for_unknown_method_is_404(client):
    r = client.post(WEBHOOK_URL.format(method="paypal"), data="{}", content_type="application/json")
    assert r.status_code == 404


@pytest.mark.django_db
def test_cash_on_delivery_has_no_webhook(client):
    r = client.post(WEBHOOK_URL.format(method="cash_on_delivery"), data="{}", content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "WEBHOOK_NOT_SUPPORTED"
