"""
Authenticated transport.

AuthFetch signs every HTTP request with the wallet's identity so a MessageBox
server knows who is asking. PushChannel is the event-based live channel: a
small actor that dispatches named events to subscribed handlers, with
WebSocketChannel as its websockets implementation.
"""

import asyncio
import base64
import inspect
import json
import logging
import os
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import HTTP_TIMEOUT
from .errors import ChannelError, TransportError

logger = logging.getLogger(__name__)

AUTH_PROTOCOL = (2, "auth message signature")

IDENTITY_HEADER = "x-bsv-auth-identity-key"
NONCE_HEADER = "x-bsv-auth-nonce"
SIGNATURE_HEADER = "x-bsv-auth-signature"

Handler = Callable[[Any], Any]


# ------------------------------
# HTTP
# ------------------------------
class AuthFetch:
    """httpx.AsyncClient whose requests carry an identity signature."""

    def __init__(self, wallet, timeout: float = HTTP_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.wallet = wallet
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._identity_key: Optional[str] = None

    async def _sign(self, method: str, url: str, body: bytes) -> Dict[str, str]:
        if self._identity_key is None:
            self._identity_key = await self.wallet.get_public_key(identity_key=True)
        nonce = base64.b64encode(os.urandom(32)).decode()
        parsed = urlparse(url)
        preimage = b"\n".join([method.upper().encode(), (parsed.path or "/").encode(),
                               parsed.query.encode(), nonce.encode(), body])
        signature = await self.wallet.create_signature(preimage, protocol_id=AUTH_PROTOCOL,
                                                       key_id=nonce, counterparty="anyone")
        return {
            IDENTITY_HEADER: self._identity_key,
            NONCE_HEADER: nonce,
            SIGNATURE_HEADER: bytes(signature).hex(),
        }

    async def request(self, method: str, url: str, json_body: Optional[Dict] = None,
                      params: Optional[Dict] = None) -> httpx.Response:
        if params:
            url = str(httpx.URL(url, params={k: v for k, v in params.items() if v is not None}))
        body = b""
        headers = {}
        if json_body is not None:
            body = json.dumps(json_body, separators=(",", ":")).encode("utf-8")
            headers["Content-Type"] = "application/json"
        headers.update(await self._sign(method, url, body))
        logger.debug("%s %s", method, url)
        try:
            return await self.client.request(method, url, content=body or None, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError("%s %s: %s" % (method, url, e)) from e

    async def get(self, url: str, params: Optional[Dict] = None) -> httpx.Response:
        return await self.request("GET", url, params=params)

    async def post(self, url: str, json_body: Dict) -> httpx.Response:
        return await self.request("POST", url, json_body=json_body)

    async def aclose(self) -> None:
        await self.client.aclose()


def read_json(response: httpx.Response, operation: str) -> Dict[str, Any]:
    """
    Body of a MessageBox server answer. Anything but a JSON object with
    status "success" raises TransportError carrying the server's description
    when it sent one.
    """
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise TransportError("%s failed: HTTP %d with a non-JSON body" % (operation, response.status_code),
                             status_code=response.status_code)
    if response.is_error or data.get("status") != "success":
        description = data.get("description") or "HTTP %d" % response.status_code
        raise TransportError("%s failed: %s" % (operation, description), status_code=response.status_code)
    return data


# ------------------------------
# Push channel
# ------------------------------
class PushChannel:
    """
    Event actor. subscribe()/unsubscribe() manage handlers per event key;
    dispatch() hands an incoming event to a snapshot of the current handlers
    so a handler may unsubscribe itself while being called.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    @property
    def connected(self) -> bool:
        return False

    async def connect(self) -> None:
        raise NotImplementedError

    async def disconnect(self) -> None:
        raise NotImplementedError

    async def emit(self, event: str, data: Any = None) -> None:
        raise NotImplementedError

    def subscribe(self, event: str, handler: Handler) -> Handler:
        self._handlers[event].append(handler)
        return handler

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass
        if not handlers:
            del self._handlers[event]

    def subscribers(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    async def dispatch(self, event: str, data: Any = None) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("handler for %r failed", event)


def websocket_url(host: str) -> str:
    parsed = urlparse(host)
    scheme = {"https": "wss", "http": "ws"}.get(parsed.scheme, parsed.scheme)
    return parsed._replace(scheme=scheme).geturl()


class WebSocketChannel(PushChannel):
    """JSON frames {"event": name, "data": payload} over one websocket."""

    def __init__(self, host: str):
        super().__init__()
        self.url = websocket_url(host)
        self.ws = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.ws is not None

    async def connect(self) -> None:
        try:
            self.ws = await websockets.connect(self.url)
        except (OSError, WebSocketException) as e:
            raise ChannelError("could not connect to %s: %s" % (self.url, e))
        self._reader = asyncio.ensure_future(self._run())
        await self.dispatch("connect")

    async def _run(self) -> None:
        ws = self.ws
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                    event = frame["event"]
                except (ValueError, KeyError, TypeError):
                    logger.warning("dropping malformed frame from %s", self.url)
                    continue
                await self.dispatch(event, frame.get("data"))
        except ConnectionClosed:
            pass
        except Exception as e:
            logger.error("websocket reader for %s failed: %s", self.url, e)
            await self.dispatch("error", e)
        finally:
            if self.ws is ws:
                self.ws = None
            await self.dispatch("disconnect")

    async def emit(self, event: str, data: Any = None) -> None:
        if self.ws is None:
            raise ChannelError("push channel is not connected")
        try:
            await self.ws.send(json.dumps({"event": event, "data": data}))
        except ConnectionClosed as e:
            raise ChannelError("push channel closed while sending %r: %s" % (event, e))

    async def disconnect(self) -> None:
        ws, self.ws = self.ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
