import asyncio
import json

import httpx
import pytest
from bitsv import Key
from bitsv.network.meta import Unspent

from messagebox.advertisement import build_advertisement_script
from messagebox.client import MessageBoxClient
from messagebox.config import ClientConfig
from messagebox.errors import ChannelError
from messagebox.transaction import Transaction, TxInput, TxOutput, serialize_beef
from messagebox.transport import IDENTITY_HEADER, PushChannel
from messagebox.wallet import KeyWallet

HOST = "https://mb.example"
OTHER_HOST = "https://mb2.example"
OVERLAY = "https://overlay.example"

ACK_SUCCESS = {"status": "success"}


class FakeChannel(PushChannel):
    """
    In-memory push channel. Records every emit and plays the server side:
    answers "authenticated" with auth_reply and "sendMessage" with ack after
    ack_delay seconds (no answer when ack is None).
    """

    def __init__(self, auth_reply="authenticationSuccess", ack=ACK_SUCCESS, ack_delay=0.0, fail_connect=False):
        super().__init__()
        self.auth_reply = auth_reply
        self.ack = ack
        self.ack_delay = ack_delay
        self.fail_connect = fail_connect
        self.emitted = []
        self._connected = False
        self._tasks = []

    @property
    def connected(self):
        return self._connected

    async def connect(self):
        if self.fail_connect:
            raise ChannelError("connection refused")
        self._connected = True
        await self.dispatch("connect")

    async def disconnect(self):
        self._connected = False
        await self.dispatch("disconnect")

    async def emit(self, event, data=None):
        if not self._connected:
            raise ChannelError("push channel is not connected")
        self.emitted.append((event, data))
        if event == "authenticated" and self.auth_reply:
            self._later(0, self.auth_reply, {"status": "ok"})
        elif event == "sendMessage" and self.ack is not None:
            self._later(self.ack_delay, "sendMessageAck-%s" % data["roomId"], self.ack)

    def _later(self, delay, event, data):
        async def fire():
            await asyncio.sleep(delay)
            await self.dispatch(event, data)
        self._tasks.append(asyncio.ensure_future(fire()))

    def events(self, name):
        return [data for event, data in self.emitted if event == name]


class FakeWallet(KeyWallet):
    """KeyWallet whose create_action builds an unfunded transaction locally and records the call."""

    def __init__(self, priv, fail_actions=False):
        super().__init__(priv)
        self.actions = []
        self.fail_actions = fail_actions

    async def create_action(self, description, outputs=None, inputs=None, input_beef=None, options=None):
        if self.fail_actions:
            raise RuntimeError("insufficient funds")
        self.actions.append({"description": description, "outputs": outputs or [], "inputs": inputs or [],
                             "input_beef": input_beef, "options": options or {}})
        tx = Transaction(
            inputs=[TxInput("11" * 32, len(self.actions), b"")],
            outputs=[TxOutput(o["satoshis"], bytes.fromhex(o["locking_script"])) for o in outputs or []],
        )
        return {"txid": tx.txid, "tx": serialize_beef([tx], atomic=True)}


class Router:
    """
    httpx.MockTransport handler. Routes are keyed by (host, path); a route is
    either a JSON-able dict or a function taking the request and returning an
    httpx.Response or a dict. Every request is recorded in calls.
    """

    def __init__(self, identity_key="02" + "ab" * 32):
        self.routes = {}
        self.calls = []
        self.identity_key = identity_key

    def add(self, host, path, answer):
        self.routes[(host, path)] = answer

    def __call__(self, request):
        host = "%s://%s" % (request.url.scheme, request.url.host)
        try:
            body = json.loads(request.content) if request.content else None
        except ValueError:
            body = request.content
        self.calls.append((host, request.method, request.url.path, body, request))
        answer = self.routes.get((host, request.url.path))
        if answer is None:
            return httpx.Response(404, json={"status": "error", "description": "no route"})
        if callable(answer):
            answer = answer(request)
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer, headers={IDENTITY_HEADER: self.identity_key})

    def bodies(self, host, path):
        return [body for h, _, p, body, _ in self.calls if h == host and p == path]


def advertisement_beef(wallet, host=HOST, extra_outputs=()):
    """An advertisement for wallet at host as Atomic BEEF, as the overlay would return it."""
    script = run(build_advertisement_script(wallet, wallet.identity_key, host))
    outputs = [TxOutput(1, script)] + [TxOutput(1, s) for s in extra_outputs]
    tx = Transaction(inputs=[TxInput("33" * 32, 0, b"")], outputs=outputs)
    return tx, serialize_beef([tx], atomic=True)


def funded_key_wallet(monkeypatch, *amounts):
    """A real KeyWallet whose bitsv key sees one coin per amount."""
    wallet = KeyWallet.from_wif(Key().to_wif())
    coins = [Unspent(amount, 1, "%064x" % (i + 1), i) for i, amount in enumerate(amounts)]
    monkeypatch.setattr(wallet.key, "get_unspents", lambda: list(coins))
    return wallet


def make_client(wallet, router, channel=None, overlay=False, cls=MessageBoxClient, ack_timeout=0.3):
    config = ClientConfig(host=HOST, overlay_hosts=[OVERLAY], overlay_enabled=overlay,
                          ack_timeout=ack_timeout, auth_timeout=0.3)
    channel = channel if channel is not None else FakeChannel(fail_connect=True)
    return cls(wallet, config=config, http_transport=httpx.MockTransport(router),
               channel_factory=lambda host: channel)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def alice():
    return FakeWallet(0xA11CE)


@pytest.fixture
def bob():
    return FakeWallet(0xB0B)


@pytest.fixture
def router():
    return Router()


@pytest.fixture
def broadcasts(monkeypatch):
    """Stands in for bitsv's NetworkAPI; collects (network, raw tx hex)."""
    sent = []

    class RecordingNetwork:
        def __init__(self, network):
            self.network = network

        def broadcast_tx(self, tx_hex):
            sent.append((self.network, tx_hex))

    monkeypatch.setattr("messagebox.wallet.NetworkAPI", RecordingNetwork)
    return sent
