"""
Delivery engine.

Per send:

    Idle -> RoomJoin -> PushSend -> WaitAck -> Success
                           |           |
                           +-----------+--> Fallback (HTTP /sendMessage)

A push send that is not acknowledged with status "success" within the ack
timeout is repeated over HTTP with the same id, recipient, box and body, so
both paths agree on what was sent. Only an HTTP failure is terminal.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .envelope import EnvelopeCodec, counterparty_for
from .errors import ChannelError, PaymentError, ValidationError
from .inbox import PeerMessage
from .payments import Payment, PaymentBuilder, QuoteNegotiator
from .session import ConnectionSession, room_id
from .transport import AuthFetch, read_json

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    status: str
    message_id: str
    transport: str = "http"


def validate_send(recipient: str, message_box: str, body: Any) -> None:
    if not recipient or not str(recipient).strip():
        raise ValidationError("You must provide a message recipient!")
    if not message_box or not str(message_box).strip():
        raise ValidationError("You must provide a messageBox to send this message into!")
    if body is None or (isinstance(body, (str, dict, list)) and len(body) == 0):
        raise ValidationError("Every message must have a body!")


class DeliveryEngine:

    def __init__(self, fetch: AuthFetch, codec: EnvelopeCodec, negotiator: QuoteNegotiator,
                 payments: PaymentBuilder, resolve_host: Callable[[str], Awaitable[str]],
                 session: Callable[[Optional[str]], Awaitable[ConnectionSession]],
                 identity_key: Callable[[], Awaitable[str]]):
        self.fetch = fetch
        self.codec = codec
        self.negotiator = negotiator
        self.payments = payments
        self._resolve_host = resolve_host
        self._session = session
        self._identity_key = identity_key

    async def send_message(self, recipient: str, message_box: str, body: Any, message_id: Optional[str] = None,
                           skip_encryption: bool = False, check_permissions: bool = False,
                           override_host: Optional[str] = None) -> SendResult:
        """Durable send over HTTP. Raises on any failure."""
        validate_send(recipient, message_box, body)
        me = await self._identity_key()
        counterparty = counterparty_for(recipient, me)
        host = override_host or await self._resolve_host(recipient)

        payment: Optional[Payment] = None
        if check_permissions:
            quote = await self.negotiator.get_quote(host, recipient, message_box)
            if quote.blocked:
                raise PaymentError("You have been blocked from sending messages to this recipient.")
            payment = await self.payments.build(quote, recipient)

        if message_id is None:
            message_id = await self.codec.message_id(body, counterparty)
        wire_body = await self.codec.seal(body, counterparty, skip_encryption)

        request: Dict[str, Any] = {"message": {
            "recipient": recipient,
            "messageBox": message_box,
            "messageId": message_id,
            "body": wire_body,
        }}
        if payment is not None:
            request["payment"] = payment.to_json()

        logger.debug("sending %s to %s/%s via %s", message_id, recipient, message_box, host)
        response = await self.fetch.post(host + "/sendMessage", request)
        data = read_json(response, "sendMessage")
        logger.info("message %s stored on %s", message_id, host)
        return SendResult(status=data.get("status", "success"), message_id=data.get("messageId") or message_id)

    async def send_live_message(self, recipient: str, message_box: str, body: Any,
                                message_id: Optional[str] = None, skip_encryption: bool = False,
                                override_host: Optional[str] = None) -> SendResult:
        """Push send racing an ack; falls back to send_message() with the same id and body."""
        validate_send(recipient, message_box, body)
        me = await self._identity_key()
        counterparty = counterparty_for(recipient, me)
        if message_id is None:
            message_id = await self.codec.message_id(body, counterparty)

        try:
            session = await self._session(override_host)
            await session.join_room(message_box)
        except ChannelError as e:
            logger.warning("push channel unavailable (%s), sending %s over HTTP", e, message_id)
            return await self.send_message(recipient, message_box, body, message_id=message_id,
                                           skip_encryption=skip_encryption, override_host=override_host)

        wire_body = await self.codec.seal(body, counterparty, skip_encryption)
        room = room_id(recipient, message_box)
        try:
            await session.send_and_await_ack(room, {
                "messageId": message_id,
                "recipient": recipient,
                "body": wire_body,
            })
        except ChannelError as e:
            logger.warning("%s, falling back to HTTP", e)
            return await self.send_message(recipient, message_box, body, message_id=message_id,
                                           skip_encryption=skip_encryption, override_host=override_host)
        logger.info("message %s delivered live to %s", message_id, room)
        return SendResult(status="success", message_id=message_id, transport="push")

    async def listen_for_live_messages(self, message_box: str, on_message: Callable[[Any], Any],
                                       override_host: Optional[str] = None) -> str:
        """
        Join our own room and hand every pushed message, decoded, to on_message.
        The listener stays with the session: if the channel drops, the next call
        that reinitializes it joins the room again.
        """
        if not message_box or not str(message_box).strip():
            raise ValidationError("You must provide a messageBox to listen on!")
        me = await self._identity_key()
        session = await self._session(override_host)
        room = await session.join_room(message_box)

        async def on_push(data):
            if not isinstance(data, dict):
                logger.warning("dropping malformed push in %s: %r", room, data)
                return
            message = PeerMessage.from_json(data)
            message.body = await self.codec.open_body(data.get("body"), message.sender or me, me,
                                                      message.message_id)
            result = on_message(message)
            if inspect.isawaitable(result):
                await result

        session.subscribe("sendMessage-%s" % room, on_push, room=room)
        logger.debug("listening on %s", room)
        return room
