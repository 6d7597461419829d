"""
Inbox aggregator.

A sender may have stored a message on any host it believed serves us, so
list and acknowledge go to every host we know of: the configured default plus
every host we advertise. Hosts are asked concurrently and individual failures
are tolerated; only when every host fails does the call fail.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import normalize_host
from .envelope import EnvelopeCodec, PaymentWrapped, classify
from .errors import AggregateError, EnvelopeError, ValidationError
from .payments import Payment
from .transport import AuthFetch, read_json

logger = logging.getLogger(__name__)


@dataclass
class PeerMessage:
    message_id: str
    body: Any
    sender: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    acknowledged: bool = False

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "PeerMessage":
        return PeerMessage(
            message_id=str(data.get("messageId", "")),
            body=data.get("body"),
            sender=data.get("sender", ""),
            created_at=data.get("created_at") or data.get("createdAt"),
            updated_at=data.get("updated_at") or data.get("updatedAt"),
            acknowledged=bool(data.get("acknowledged", False)),
        )


def dedupe_hosts(hosts: List[str]) -> List[str]:
    seen = []
    for host in hosts:
        host = normalize_host(host)
        if host and host not in seen:
            seen.append(host)
    return seen


class InboxAggregator:

    def __init__(self, fetch: AuthFetch, codec: EnvelopeCodec, wallet, default_host: str,
                 advertised_hosts: Callable[[], Awaitable[List[str]]],
                 identity_key: Callable[[], Awaitable[str]]):
        self.fetch = fetch
        self.codec = codec
        self.wallet = wallet
        self.default_host = default_host
        self._advertised_hosts = advertised_hosts
        self._identity_key = identity_key

    async def hosts(self, host: Optional[str] = None) -> List[str]:
        if host:
            return [normalize_host(host)]
        return dedupe_hosts([self.default_host] + list(await self._advertised_hosts()))

    async def _fan_out(self, operation: str, hosts: List[str], call) -> Dict[str, Any]:
        """{host: result} for hosts that answered; AggregateError when none did."""
        results = await asyncio.gather(*(call(h) for h in hosts), return_exceptions=True)
        succeeded: Dict[str, Any] = {}
        errors: Dict[str, Exception] = {}
        for host, result in zip(hosts, results):
            if isinstance(result, Exception):
                logger.warning("%s on %s failed: %s", operation, host, result)
                errors[host] = result
            else:
                succeeded[host] = result
        if not succeeded:
            raise AggregateError(operation, errors)
        return succeeded

    async def list_messages(self, message_box: str, host: Optional[str] = None,
                            accept_payments: bool = True) -> List[PeerMessage]:
        if not message_box or not str(message_box).strip():
            raise ValidationError("You must provide a messageBox to list messages from!")
        me = await self._identity_key()
        hosts = await self.hosts(host)

        async def list_on(h: str) -> List[Dict[str, Any]]:
            response = await self.fetch.post(h + "/listMessages", {"messageBox": message_box})
            return read_json(response, "listMessages").get("messages") or []

        per_host = await self._fan_out("listMessages", hosts, list_on)

        merged: Dict[str, Dict[str, Any]] = {}
        for h in hosts:
            for raw in per_host.get(h, ()):
                if not isinstance(raw, dict):
                    logger.warning("skipping malformed message entry from %s: %r", h, raw)
                    continue
                message_id = str(raw.get("messageId", ""))
                if message_id and message_id not in merged:
                    merged[message_id] = raw

        messages = []
        for raw in merged.values():
            message = PeerMessage.from_json(raw)
            message.body = await self._process_body(message, me, accept_payments)
            messages.append(message)
        messages.sort(key=lambda m: m.created_at or "", reverse=True)
        return messages

    async def _process_body(self, message: PeerMessage, me: str, accept_payments: bool) -> Any:
        try:
            body = classify(message.body)
        except EnvelopeError:
            body = None
        if accept_payments and isinstance(body, PaymentWrapped):
            await self._internalize(message, body.payment)
        return await self.codec.open_body(message.body, message.sender, me, message.message_id)

    async def _internalize(self, message: PeerMessage, payment_json: Dict[str, Any]) -> None:
        try:
            payment = Payment.from_json(payment_json)
            outputs = [o for o in payment.outputs if o.get("protocol") == "wallet payment"]
            if not outputs:
                return
            await self.wallet.internalize_action(payment.tx, outputs,
                                                 "MessageBox recipient payment from %s" % message.sender)
            logger.info("internalized %d payment output(s) from message %s", len(outputs), message.message_id)
        except Exception as e:
            logger.error("could not internalize payment in message %s: %s", message.message_id, e)

    async def acknowledge(self, message_ids: List[str], host: Optional[str] = None) -> List[str]:
        """Hosts that accepted the acknowledgment."""
        if not message_ids or not isinstance(message_ids, (list, tuple)):
            raise ValidationError("Message IDs array cannot be empty")
        ids = [str(i) for i in message_ids]
        hosts = await self.hosts(host)

        async def ack_on(h: str) -> Dict[str, Any]:
            response = await self.fetch.post(h + "/acknowledgeMessage", {"messageIds": ids})
            return read_json(response, "acknowledgeMessage")

        accepted = await self._fan_out("acknowledgeMessage", hosts, ack_on)
        logger.debug("acknowledged %s on %s", ids, list(accepted))
        return list(accepted)
