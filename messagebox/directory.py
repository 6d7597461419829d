"""
Host directory: which MessageBox host answers for an identity.

Hosts are discovered from advertisement tokens held by the overlay. Lookups
never fail loudly: a dead overlay, a garbage answer or an undecodable token
all mean "no advertisement", and resolution falls back to the configured
default host.
"""

import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from .advertisement import (
    ADVERTISEMENT_COUNTERPARTY, ADVERTISEMENT_KEY_ID, ADVERTISEMENT_PROTOCOL, ADVERTISEMENT_SATOSHIS,
    LOOKUP_SERVICE, TOPIC, AdvertisementToken, build_advertisement_script, decode_advertisement,
    is_valid_host,
)
from .config import HTTP_TIMEOUT, normalize_host
from .errors import DirectoryError, PublishError, ValidationError
from .transaction import to_bytes

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    txid: str
    accepted_by: List[str]


# ------------------------------
# Overlay services
# ------------------------------
class LookupResolver:
    """Asks overlay hosts, in order, for outputs matching a lookup query."""

    def __init__(self, hosts: List[str], timeout: float = HTTP_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.hosts = list(hosts)
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def query(self, service: str, query: Dict) -> List[Dict]:
        errors = {}
        for host in self.hosts:
            try:
                response = await self.client.post(host + "/lookup", json={"service": service, "query": query})
                response.raise_for_status()
                answer = response.json()
            except (httpx.HTTPError, ValueError) as e:
                errors[host] = e
                continue
            if not isinstance(answer, dict) or answer.get("type") != "output-list":
                errors[host] = ValueError("unexpected lookup answer type %r" % (answer.get("type")
                                                                               if isinstance(answer, dict) else answer))
                continue
            return list(answer.get("outputs") or [])
        raise DirectoryError("lookup %s failed on every overlay host: %s"
                             % (service, "; ".join("%s: %s" % kv for kv in errors.items()) or "no hosts"))

    async def aclose(self) -> None:
        await self.client.aclose()


class OverlayBroadcaster:
    """Submits BEEF to overlay hosts under a topic; one acceptance is enough."""

    def __init__(self, hosts: List[str], topics: Optional[List[str]] = None, timeout: float = HTTP_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.hosts = list(hosts)
        self.topics = topics or [TOPIC]
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def broadcast(self, beef: bytes) -> List[str]:
        headers = {"Content-Type": "application/octet-stream", "X-Topics": json.dumps(self.topics)}
        accepted = []
        errors = {}
        for host in self.hosts:
            try:
                response = await self.client.post(host + "/submit", content=bytes(beef), headers=headers)
                response.raise_for_status()
                steak = response.json()
            except (httpx.HTTPError, ValueError) as e:
                errors[host] = e
                continue
            admitted = any((steak.get(t) or {}).get("outputsToAdmit") or (steak.get(t) or {}).get("coinsRemoved")
                           for t in self.topics) if isinstance(steak, dict) else False
            if not admitted:
                logger.warning("overlay %s admitted nothing for %s", host, self.topics)
            accepted.append(host)
        if not accepted:
            raise PublishError("broadcast to %s rejected by every overlay host: %s"
                               % (",".join(self.topics), "; ".join("%s: %s" % kv for kv in errors.items()) or "no hosts"))
        return accepted

    async def aclose(self) -> None:
        await self.client.aclose()


# ------------------------------
# Directory
# ------------------------------
class HostDirectory:
    """
    - query_advertisements / resolve_host_for_recipient: read side, never raise
    - lookup_advertisements: read side for callers that must not mistake an
      unreachable overlay for "no advertisement"
    - anoint_host / revoke_host_advertisement: write side, raise PublishError
    """

    def __init__(self, wallet, resolver: LookupResolver, broadcaster: OverlayBroadcaster, default_host: str,
                 identity_key: Callable[[], Awaitable[str]]):
        self.wallet = wallet
        self.resolver = resolver
        self.broadcaster = broadcaster
        self.default_host = normalize_host(default_host)
        self._identity_key = identity_key

    async def lookup_advertisements(self, identity_key: str, host: Optional[str] = None) -> List[AdvertisementToken]:
        """query_advertisements() that lets DirectoryError through, so callers can tell an outage from absence."""
        query = {"identityKey": identity_key}
        if host:
            query["host"] = normalize_host(host)
        results = await self.resolver.query(LOOKUP_SERVICE, query)

        tokens: List[AdvertisementToken] = []
        for result in results:
            try:
                token = decode_advertisement(result["beef"], int(result["outputIndex"]))
            except Exception as e:
                logger.debug("skipping undecodable lookup result: %s", e)
                continue
            if token.identity_key != identity_key:
                continue
            if host and normalize_host(token.host) != query["host"]:
                continue
            tokens.append(token)
        return tokens

    async def query_advertisements(self, identity_key: Optional[str] = None,
                                   host: Optional[str] = None) -> List[AdvertisementToken]:
        if identity_key is None:
            identity_key = await self._identity_key()
        try:
            return await self.lookup_advertisements(identity_key, host)
        except DirectoryError as e:
            logger.warning("advertisement lookup for %s failed: %s", identity_key, e)
        except Exception as e:
            logger.error("advertisement lookup for %s failed unexpectedly: %s", identity_key, e)
        return []

    async def resolve_host_for_recipient(self, identity_key: str) -> str:
        tokens = await self.query_advertisements(identity_key)
        if tokens:
            return normalize_host(tokens[0].host)
        logger.debug("no advertisement for %s, using %s", identity_key, self.default_host)
        return self.default_host

    async def anoint_host(self, host: str) -> PublishResult:
        host = normalize_host(host)
        if not is_valid_host(host):
            raise ValidationError("host %r is not an absolute http(s) URL" % host)
        identity_key = await self._identity_key()
        try:
            script = await build_advertisement_script(self.wallet, identity_key, host)
            action = await self.wallet.create_action(
                description="Anoint host for overlay routing",
                outputs=[{
                    "basket": "overlay advertisements",
                    "locking_script": script.hex(),
                    "satoshis": ADVERTISEMENT_SATOSHIS,
                    "output_description": "Overlay advertisement output",
                }],
                options={"randomize_outputs": False, "accept_delayed_broadcast": False},
            )
        except PublishError:
            raise
        except Exception as e:
            raise PublishError("could not create advertisement for %s: %s" % (host, e)) from e
        return await self._publish(action, "advertisement for %s" % host)

    async def revoke_host_advertisement(self, token: AdvertisementToken) -> PublishResult:
        try:
            action = await self.wallet.create_action(
                description="Revoke MessageBox host advertisement",
                input_beef=token.beef,
                inputs=[{
                    "outpoint": token.outpoint,
                    "input_description": "Revoking host advertisement",
                    "unlocking": {
                        "type": "pushdrop",
                        "protocol_id": ADVERTISEMENT_PROTOCOL,
                        "key_id": ADVERTISEMENT_KEY_ID,
                        "counterparty": ADVERTISEMENT_COUNTERPARTY,
                    },
                }],
                options={"accept_delayed_broadcast": False},
            )
        except Exception as e:
            raise PublishError("could not spend advertisement %s: %s" % (token.outpoint, e)) from e
        return await self._publish(action, "revocation of %s" % token.outpoint)

    async def _publish(self, action: Dict, what: str) -> PublishResult:
        txid = (action or {}).get("txid")
        tx = (action or {}).get("tx")
        if not txid or not tx:
            raise PublishError("wallet returned no transaction for %s" % what)
        accepted = await self.broadcaster.broadcast(to_bytes(tx))
        logger.info("published %s as %s", what, txid)
        return PublishResult(txid=txid, accepted_by=accepted)

    async def aclose(self) -> None:
        await self.resolver.aclose()
        await self.broadcaster.aclose()
