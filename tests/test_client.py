import json

import httpx
import pytest

from conftest import (
    HOST, OTHER_HOST, OVERLAY, FakeChannel, advertisement_beef, funded_key_wallet, make_client, run,
)
from messagebox import MessageBoxClient, log
from messagebox.advertisement import decode_advertisement
from messagebox.config import DEFAULT_HOST, NETWORK_PRESETS, ClientConfig
from messagebox.errors import IdentityError, TransportError, ValidationError
from messagebox.session import room_id

ADMITTED = {"tm_messagebox": {"outputsToAdmit": [0], "coinsToRetain": []}}


def lookup(*beefs):
    return {"type": "output-list", "outputs": [{"beef": list(b), "outputIndex": 0} for b in beefs]}


def test_config_defaults(monkeypatch):

    for name in ("MESSAGEBOX_HOST", "MESSAGEBOX_NETWORK", "MESSAGEBOX_OVERLAY", "MESSAGEBOX_OVERLAY_HOSTS",
                 "MESSAGEBOX_LOGGING", "MESSAGEBOX_ACK_TIMEOUT", "MESSAGEBOX_AUTH_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)

    config = ClientConfig.from_env()
    assert config.host == DEFAULT_HOST
    assert config.overlay_hosts == NETWORK_PRESETS["mainnet"]
    assert config.overlay_enabled


def test_config_from_env(monkeypatch):

    monkeypatch.setenv("MESSAGEBOX_HOST", "http://localhost:8080/")
    monkeypatch.setenv("MESSAGEBOX_NETWORK", "local")
    monkeypatch.setenv("MESSAGEBOX_OVERLAY", "off")
    monkeypatch.setenv("MESSAGEBOX_ACK_TIMEOUT", "2.5")

    config = ClientConfig.from_env(network_preset="testnet")
    assert config.host == "http://localhost:8080"
    assert config.network_preset == "testnet"
    assert config.overlay_hosts == NETWORK_PRESETS["testnet"]
    assert not config.overlay_enabled
    assert config.ack_timeout == 2.5


def test_config_rejects_unknown_preset():

    with pytest.raises(ValidationError):
        ClientConfig(network_preset="moonnet")


def test_client_constructor_overrides(alice, monkeypatch):

    monkeypatch.delenv("MESSAGEBOX_OVERLAY", raising=False)
    client = MessageBoxClient(alice, host=OTHER_HOST + "/", network_preset="local", overlay_enabled=False)
    assert client.host == OTHER_HOST
    assert client.config.overlay_hosts == NETWORK_PRESETS["local"]
    assert not client.config.overlay_enabled
    run(client.close())

    with pytest.raises(ValidationError):
        MessageBoxClient(None)


def test_logging_toggle(alice):

    try:
        log.disable()
        assert not log.is_enabled()
        client = MessageBoxClient(alice, config=ClientConfig(host=HOST, enable_logging=True))
        assert log.is_enabled()
        run(client.close())
    finally:
        log.disable()


def test_identity_key_is_cached(alice, router):

    client = make_client(alice, router)
    assert run(client.get_identity_key()) == alice.identity_key

    calls = []

    async def counting(**kwargs):
        calls.append(kwargs)
        return "unused"

    alice.get_public_key = counting
    assert run(client.get_identity_key()) == alice.identity_key
    assert calls == []


def test_identity_key_missing(router):

    class EmptyWallet:
        async def get_public_key(self, **kwargs):
            return ""

    with pytest.raises(IdentityError) as e:
        run(make_client(EmptyWallet(), router).get_identity_key())
    assert str(e.value) == "Identity key is missing"


def test_init_without_overlay_does_no_lookup(alice, router):

    client = make_client(alice, router)
    run(client.init())
    assert router.calls == []
    assert alice.actions == []


def test_init_anoints_unadvertised_host(alice, router):

    router.add(OVERLAY, "/lookup", lookup())
    router.add(OVERLAY, "/submit", ADMITTED)
    client = make_client(alice, router, overlay=True)

    run(client.init())
    run(client.init())

    assert len(alice.actions) == 1
    lookups = router.bodies(OVERLAY, "/lookup")
    assert len(lookups) == 1
    assert lookups[0]["service"] == "ls_messagebox"
    assert lookups[0]["query"] == {"identityKey": alice.identity_key, "host": HOST}
    assert len(router.bodies(OVERLAY, "/submit")) == 1


def test_init_skips_advertised_host(alice, router):

    _, beef = advertisement_beef(alice, HOST)
    router.add(OVERLAY, "/lookup", lookup(beef))
    client = make_client(alice, router, overlay=True)

    run(client.init())
    assert alice.actions == []
    assert router.bodies(OVERLAY, "/submit") == []


def test_overlay_outage_does_not_anoint(alice, bob, router):

    router.add(OVERLAY, "/lookup", lambda request: httpx.Response(503))
    router.add(OVERLAY, "/submit", lambda request: httpx.Response(503))
    router.add(HOST, "/sendMessage", {"status": "success"})
    client = make_client(alice, router, overlay=True)

    run(client.send_message(bob.identity_key, "inbox", "hi"))
    assert len(router.bodies(HOST, "/sendMessage")) == 1
    assert alice.actions == []
    assert router.bodies(OVERLAY, "/submit") == []
    assert HOST not in client._initialized_hosts

    # once the overlay answers, the next call advertises
    router.add(OVERLAY, "/lookup", lookup())
    router.add(OVERLAY, "/submit", ADMITTED)
    run(client.init())
    assert len(alice.actions) == 1
    assert HOST in client._initialized_hosts


def test_first_send_with_key_wallet_advertises(monkeypatch, broadcasts, bob, router):

    wallet = funded_key_wallet(monkeypatch, 10000)
    router.add(OVERLAY, "/lookup", lookup())
    router.add(OVERLAY, "/submit", ADMITTED)
    router.add(HOST, "/sendMessage", {"status": "success"})

    run(make_client(wallet, router, overlay=True).send_message(bob.identity_key, "inbox", "hi"))

    [submitted] = [call[4].content for call in router.calls if call[2] == "/submit"]
    token = decode_advertisement(submitted, 0)
    assert (token.identity_key, token.host) == (wallet.identity_key, HOST)
    assert len(broadcasts) == 1
    assert len(router.bodies(HOST, "/sendMessage")) == 1


def test_send_resolves_recipient_host(alice, bob, router):

    _, beef = advertisement_beef(bob, OTHER_HOST)
    mine = advertisement_beef(alice, HOST)[1]
    router.add(OVERLAY, "/lookup", lambda request: lookup(
        mine if json.loads(request.content)["query"]["identityKey"] == alice.identity_key else beef))
    router.add(OTHER_HOST, "/sendMessage", {"status": "success"})

    client = make_client(alice, router, overlay=True)
    run(client.send_message(bob.identity_key, "inbox", "hi"))
    assert len(router.bodies(OTHER_HOST, "/sendMessage")) == 1
    assert run(client.resolve_host_for_recipient(alice.identity_key)) == HOST


def test_anoint_and_revoke_track_init(alice, router):

    router.add(OVERLAY, "/submit", ADMITTED)
    client = make_client(alice, router, overlay=True)

    run(client.anoint_host(OTHER_HOST))
    assert OTHER_HOST in client._initialized_hosts

    _, beef = advertisement_beef(alice, OTHER_HOST)
    router.add(OVERLAY, "/lookup", lookup(beef))
    [token] = run(client.query_advertisements(host=OTHER_HOST))

    run(client.revoke_host_advertisement(token))
    assert OTHER_HOST not in client._initialized_hosts


def test_context_manager_closes_channel(alice, router):

    channel = FakeChannel()

    async def scenario():
        async with make_client(alice, router, channel=channel) as client:
            await client.join_room("inbox")
            rooms = client.get_joined_rooms()
        return client, rooms

    client, rooms = run(scenario())
    assert rooms == [room_id(alice.identity_key, "inbox")]
    assert client.session is None
    assert client.get_joined_rooms() == []
    assert not channel.connected


def test_join_and_leave_rooms(alice, router):

    channel = FakeChannel()

    async def scenario():
        client = make_client(alice, router, channel=channel)
        await client.initialize_connection()
        await client.join_room("inbox")
        await client.join_room("payment_inbox")
        await client.leave_room("inbox")
        rooms = client.get_joined_rooms()
        await client.disconnect_web_socket()
        return client, rooms

    client, rooms = run(scenario())
    assert rooms == [room_id(alice.identity_key, "payment_inbox")]
    assert channel.events("leaveRoom") == [room_id(alice.identity_key, "inbox")]
    assert client.session is None


def test_leave_room_without_session(alice, router):

    client = make_client(alice, router)
    run(client.leave_room("inbox"))
    assert client.get_joined_rooms() == []


def test_session_follows_override_host(alice, router):

    channels = {}

    def factory(host):
        channels[host] = FakeChannel()
        return channels[host]

    async def scenario():
        client = make_client(alice, router)
        client._channel_factory = factory
        await client.initialize_connection()
        await client.initialize_connection(OTHER_HOST + "/")
        host = client.session.host
        await client.close()
        return host

    assert run(scenario()) == OTHER_HOST
    assert sorted(channels) == [HOST, OTHER_HOST]
    assert not channels[HOST].connected


def test_notifications(alice, bob, router):

    router.add(HOST, "/permissions/set", {"status": "success"})
    router.add(HOST, "/permissions/get", {"status": "success", "permission": {
        "sender": bob.identity_key, "messageBox": "notifications", "recipientFee": 0}})
    router.add(HOST, "/permissions/list", {"status": "success", "permissions": []})
    client = make_client(alice, router)

    run(client.allow_notifications_from_peer(bob.identity_key))
    run(client.allow_notifications_from_peer(bob.identity_key, recipient_fee=25))
    run(client.deny_notifications_from_peer(bob.identity_key))
    assert [b["recipientFee"] for b in router.bodies(HOST, "/permissions/set")] == [0, 25, -1]
    assert {b["messageBox"] for b in router.bodies(HOST, "/permissions/set")} == {"notifications"}

    status = run(client.check_peer_notification_status(bob.identity_key))
    assert status.status == "always_allow"
    params = [call[4] for call in router.calls if call[2] == "/permissions/get"][0].url.params
    assert params["recipient"] == alice.identity_key
    assert params["sender"] == bob.identity_key

    assert run(client.list_peer_notifications()) == []


def test_send_notification_checks_permissions(alice, bob, router):

    router.add(HOST, "/permissions/quote", {"status": "success", "quote": {"deliveryFee": 0, "recipientFee": 0}})
    router.add(HOST, "/sendMessage", {"status": "success"})

    result = run(make_client(alice, router).send_notification(bob.identity_key, {"title": "ping"}))
    assert [call[2] for call in router.calls] == ["/permissions/quote", "/sendMessage"]
    assert router.bodies(HOST, "/sendMessage")[0]["message"]["messageBox"] == "notifications"
    assert result.transport == "http"


def test_register_device(alice, router):

    router.add(HOST, "/registerDevice", {"status": "success", "deviceId": 7})
    client = make_client(alice, router)

    assert run(client.register_device(" token-1 ", device_id="phone", platform="ios"))["deviceId"] == 7
    run(client.register_device("token-2"))
    assert router.bodies(HOST, "/registerDevice") == [
        {"fcmToken": "token-1", "deviceId": "phone", "platform": "ios"},
        {"fcmToken": "token-2"},
    ]


def test_register_device_validation(alice, router):

    client = make_client(alice, router)
    with pytest.raises(ValidationError):
        run(client.register_device("  "))
    with pytest.raises(ValidationError):
        run(client.register_device("token", platform="blackberry"))
    assert router.calls == []


def test_list_registered_devices(alice, router):

    router.add(HOST, "/devices", {"status": "success", "devices": [{"deviceId": "phone", "platform": "ios"}]})
    client = make_client(alice, router)
    assert run(client.list_registered_devices()) == [{"deviceId": "phone", "platform": "ios"}]

    router.add(HOST, "/devices", {"status": "error", "description": "nope"})
    with pytest.raises(TransportError):
        run(client.list_registered_devices())
