import json

import httpx
import pytest

from conftest import HOST, FakeWallet, make_client, run
from messagebox.errors import PaymentError, ValidationError
from messagebox.payments import (
    DELIVERY_FEE_BASKET, Payment, Permission, PaymentBuilder, Quote, permission_status,
)
from messagebox.script import p2pkh_locking_script
from messagebox.transaction import subject_transaction
from messagebox.wallet import PAYMENT_PROTOCOL, KeyWallet

AGENT = KeyWallet(0x5E4E4)


def quote_route(delivery_fee, recipient_fee):
    return {"status": "success", "quote": {"deliveryFee": delivery_fee, "recipientFee": recipient_fee}}


def test_quote_flags():

    assert Quote(0, -1, AGENT.identity_key).blocked
    assert not Quote(0, 0, AGENT.identity_key).requires_payment
    assert Quote(5, 0, AGENT.identity_key).requires_payment
    assert Quote(0, 5, AGENT.identity_key).requires_payment


def test_permission_status():

    assert permission_status(-1) == "blocked"
    assert permission_status(0) == "always_allow"
    assert permission_status(25) == "payment_required"
    assert Permission.from_json({"messageBox": "inbox", "recipientFee": 7}).status == "payment_required"


def test_blocked_builds_nothing(alice, bob):

    with pytest.raises(PaymentError):
        run(PaymentBuilder(alice).build(Quote(10, -1, AGENT.identity_key), bob.identity_key))
    assert alice.actions == []


def test_free_builds_nothing(alice, bob):

    assert run(PaymentBuilder(alice).build(Quote(0, 0, AGENT.identity_key), bob.identity_key)) is None
    assert alice.actions == []


def test_recipient_fee_output(alice, bob):

    payment = run(PaymentBuilder(alice).build(Quote(0, 120, AGENT.identity_key), bob.identity_key))

    assert len(alice.actions) == 1
    assert [o["satoshis"] for o in alice.actions[0]["outputs"]] == [120]
    assert alice.actions[0]["options"] == {"randomize_outputs": False}

    [output] = payment.outputs
    assert output["outputIndex"] == 0
    assert output["protocol"] == "wallet payment"
    remittance = output["paymentRemittance"]
    assert remittance["senderIdentityKey"] == KeyWallet.anyone().identity_key

    # bob can claim it from the remittance alone
    key_id = "%s %s" % (remittance["derivationPrefix"], remittance["derivationSuffix"])
    expected = bob.derive_public_key(PAYMENT_PROTOCOL, key_id, remittance["senderIdentityKey"], for_self=True)
    tx = subject_transaction(payment.tx)
    assert tx.outputs[0].satoshis == 120
    assert tx.outputs[0].locking_script == p2pkh_locking_script(expected)


def test_delivery_fee_output(alice, bob):

    payment = run(PaymentBuilder(alice).build(Quote(15, 30, AGENT.identity_key), bob.identity_key))

    assert [o["satoshis"] for o in alice.actions[0]["outputs"]] == [15, 30]
    delivery, recipient = payment.outputs
    assert delivery["outputIndex"] == 0
    assert delivery["protocol"] == "basket insertion"
    assert delivery["insertionRemittance"]["basket"] == DELIVERY_FEE_BASKET
    instructions = json.loads(delivery["insertionRemittance"]["customInstructions"])
    assert instructions["recipientIdentityKey"] == AGENT.identity_key

    key_id = "%s %s" % (instructions["derivationPrefix"], instructions["derivationSuffix"])
    expected = alice.derive_public_key(PAYMENT_PROTOCOL, key_id, AGENT.identity_key)
    assert subject_transaction(payment.tx).outputs[0].locking_script == p2pkh_locking_script(expected)
    assert recipient["outputIndex"] == 1


def test_wallet_failure_is_payment_error(bob):

    wallet = FakeWallet(0xF00, fail_actions=True)
    with pytest.raises(PaymentError) as e:
        run(PaymentBuilder(wallet).build(Quote(0, 10, AGENT.identity_key), bob.identity_key))
    assert "insufficient funds" in str(e.value)


def test_payment_from_json():

    assert Payment.from_json({"tx": [1, 2], "outputs": []}).tx == b"\x01\x02"
    with pytest.raises(PaymentError):
        Payment.from_json({"outputs": []})


def test_get_quote(alice, bob, router):

    router.add(HOST, "/permissions/quote", quote_route(3, 9))
    quote = run(make_client(alice, router).get_message_box_quote(bob.identity_key, "inbox"))

    assert quote == Quote(3, 9, router.identity_key)
    request = router.calls[0][4]
    assert request.url.params["recipient"] == bob.identity_key
    assert request.url.params["messageBox"] == "inbox"


def test_quote_without_agent_header(alice, bob, router):

    router.add(HOST, "/permissions/quote", lambda request: httpx.Response(200, json=quote_route(3, 9)))
    with pytest.raises(PaymentError):
        run(make_client(alice, router).get_message_box_quote(bob.identity_key, "inbox"))


def test_send_blocked(alice, bob, router):

    router.add(HOST, "/permissions/quote", quote_route(0, -1))
    router.add(HOST, "/sendMessage", {"status": "success"})

    with pytest.raises(PaymentError):
        run(make_client(alice, router).send_message(bob.identity_key, "inbox", "hi", check_permissions=True))
    assert alice.actions == []
    assert router.bodies(HOST, "/sendMessage") == []


def test_send_free(alice, bob, router):

    router.add(HOST, "/permissions/quote", quote_route(0, 0))
    router.add(HOST, "/sendMessage", {"status": "success"})

    run(make_client(alice, router).send_message(bob.identity_key, "inbox", "hi", check_permissions=True))
    assert alice.actions == []
    assert "payment" not in router.bodies(HOST, "/sendMessage")[0]


def test_send_paid(alice, bob, router):

    router.add(HOST, "/permissions/quote", quote_route(0, 42))
    router.add(HOST, "/sendMessage", {"status": "success"})

    run(make_client(alice, router).send_message(bob.identity_key, "inbox", "hi", check_permissions=True))
    sent = router.bodies(HOST, "/sendMessage")[0]
    assert [o["protocol"] for o in sent["payment"]["outputs"]] == ["wallet payment"]
    assert subject_transaction(bytes(sent["payment"]["tx"])).outputs[0].satoshis == 42


def test_send_without_permission_check_skips_quote(alice, bob, router):

    router.add(HOST, "/sendMessage", {"status": "success"})
    run(make_client(alice, router).send_message(bob.identity_key, "inbox", "hi"))
    assert [call[2] for call in router.calls] == ["/sendMessage"]


def test_set_permission(alice, router):

    router.add(HOST, "/permissions/set", {"status": "success"})
    client = make_client(alice, router)
    run(client.set_message_box_permission("inbox", 0))
    run(client.set_message_box_permission("inbox", 500, sender="03" + "11" * 32))

    assert router.bodies(HOST, "/permissions/set") == [
        {"messageBox": "inbox", "recipientFee": 0},
        {"messageBox": "inbox", "recipientFee": 500, "sender": "03" + "11" * 32},
    ]


def test_set_permission_validation(alice, router):

    client = make_client(alice, router)
    with pytest.raises(ValidationError):
        run(client.set_message_box_permission("inbox", -2))
    with pytest.raises(ValidationError):
        run(client.set_message_box_permission("", 0))
    assert router.calls == []


def test_get_permission(alice, bob, router):

    router.add(HOST, "/permissions/get", {"status": "success", "permission": {
        "sender": alice.identity_key, "messageBox": "inbox", "recipientFee": -1,
        "createdAt": "2024-01-01", "updatedAt": "2024-01-02"}})
    permission = run(make_client(alice, router).get_message_box_permission(bob.identity_key, "inbox",
                                                                           sender=alice.identity_key))
    assert permission.status == "blocked"
    assert permission.recipient_fee == -1
    assert permission.updated_at == "2024-01-02"
    assert router.calls[0][4].url.params["sender"] == alice.identity_key


def test_get_permission_missing(alice, bob, router):

    router.add(HOST, "/permissions/get", {"status": "success", "permission": None})
    assert run(make_client(alice, router).get_message_box_permission(bob.identity_key, "inbox")) is None
    assert "sender" not in router.calls[0][4].url.params


def test_list_permissions(alice, router):

    router.add(HOST, "/permissions/list", {"status": "success", "permissions": [
        {"sender": None, "messageBox": "inbox", "recipientFee": 0},
        {"sender": "03" + "22" * 32, "messageBox": "inbox", "recipientFee": 10},
    ]})
    permissions = run(make_client(alice, router).list_message_box_permissions("inbox", limit=5))

    assert [p.status for p in permissions] == ["always_allow", "payment_required"]
    params = router.calls[0][4].url.params
    assert params["message_box"] == "inbox"
    assert params["limit"] == "5"
    assert "offset" not in params
