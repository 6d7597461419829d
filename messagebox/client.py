"""
MessageBoxClient: the public face of the package.

    async with MessageBoxClient(KeyWallet.from_wif(wif)) as client:
        await client.send_message(bob, "inbox", {"hello": "world"})
        for message in await client.list_messages("inbox"):
            ...
        await client.acknowledge_message([m.message_id for m in messages])

The client lazily runs init() before the first operation that needs the
network: it resolves our identity key and, when the overlay is enabled, makes
sure the host we use is advertised for that identity.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from . import log
from .advertisement import AdvertisementToken
from .config import ClientConfig, normalize_host
from .delivery import DeliveryEngine, SendResult
from .directory import HostDirectory, LookupResolver, OverlayBroadcaster, PublishResult
from .envelope import EnvelopeCodec
from .errors import ChannelError, DirectoryError, IdentityError, ValidationError
from .inbox import InboxAggregator, PeerMessage
from .payments import Permission, PaymentBuilder, Quote, QuoteNegotiator
from .session import ConnectionSession
from .transport import AuthFetch, PushChannel, WebSocketChannel, read_json
from .wallet import Wallet

logger = logging.getLogger(__name__)

NOTIFICATIONS_BOX = "notifications"


class MessageBoxClient:

    def __init__(self, wallet: Wallet, host: Optional[str] = None, network_preset: Optional[str] = None,
                 overlay_enabled: Optional[bool] = None, enable_logging: Optional[bool] = None,
                 config: Optional[ClientConfig] = None,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None,
                 channel_factory: Optional[Callable[[str], PushChannel]] = None):
        if wallet is None:
            raise ValidationError("a wallet is required")
        if config is None:
            overrides = {"host": host, "network_preset": network_preset,
                         "overlay_enabled": overlay_enabled, "enable_logging": enable_logging}
            config = ClientConfig.from_env(**{k: v for k, v in overrides.items() if v is not None})
        self.config = config
        if config.enable_logging:
            log.enable()

        self.wallet = wallet
        self.host = config.host
        self._identity_key: Optional[str] = None
        self._initialized_hosts = set()
        self._channel_factory = channel_factory or WebSocketChannel
        self.session: Optional[ConnectionSession] = None

        self.fetch = AuthFetch(wallet, timeout=config.http_timeout, transport=http_transport)
        self.directory = HostDirectory(
            wallet,
            LookupResolver(config.overlay_hosts, timeout=config.http_timeout, transport=http_transport),
            OverlayBroadcaster(config.overlay_hosts, timeout=config.http_timeout, transport=http_transport),
            config.host,
            self.get_identity_key,
        )
        self.codec = EnvelopeCodec(wallet)
        self.negotiator = QuoteNegotiator(self.fetch)
        self.payments = PaymentBuilder(wallet)
        self.delivery = DeliveryEngine(self.fetch, self.codec, self.negotiator, self.payments,
                                       self._resolve_host, self._live_session, self.get_identity_key)
        self.inbox = InboxAggregator(self.fetch, self.codec, wallet, config.host,
                                     self._advertised_hosts, self.get_identity_key)

    async def __aenter__(self) -> "MessageBoxClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ---------- identity & init ----------
    async def get_identity_key(self) -> str:
        if self._identity_key is None:
            try:
                key = await self.wallet.get_public_key(identity_key=True)
            except Exception as e:
                raise IdentityError("Identity key is missing") from e
            if not key:
                raise IdentityError("Identity key is missing")
            self._identity_key = key
        return self._identity_key

    async def init(self, target_host: Optional[str] = None) -> None:
        """Make sure target_host (default: our host) is advertised for our identity. Runs once per host."""
        host = normalize_host(target_host or self.host)
        if host in self._initialized_hosts:
            return
        me = await self.get_identity_key()
        if self.config.overlay_enabled:
            try:
                existing = await self.directory.lookup_advertisements(me, host)
            except DirectoryError as e:
                # unknown, not absent: retried on the next call
                logger.warning("cannot check advertisement of %s, not anointing: %s", host, e)
                return
            if existing:
                logger.debug("%s already advertised for %s", host, me)
            else:
                logger.info("advertising %s for %s", host, me)
                await self.directory.anoint_host(host)
        self._initialized_hosts.add(host)

    async def _resolve_host(self, identity_key: str) -> str:
        if not self.config.overlay_enabled:
            return self.host
        return await self.directory.resolve_host_for_recipient(identity_key)

    async def _advertised_hosts(self) -> List[str]:
        if not self.config.overlay_enabled:
            return []
        tokens = await self.directory.query_advertisements(await self.get_identity_key())
        return [t.host for t in tokens]

    # ---------- push channel ----------
    async def _live_session(self, override_host: Optional[str] = None) -> ConnectionSession:
        await self.init()
        host = normalize_host(override_host or self.host)
        if self.session is not None and self.session.host != host:
            await self.session.close()
            self.session = None
        if self.session is None:
            self.session = ConnectionSession(self._channel_factory, host, await self.get_identity_key(),
                                             ack_timeout=self.config.ack_timeout,
                                             auth_timeout=self.config.auth_timeout)
        await self.session.initialize()
        return self.session

    async def initialize_connection(self, override_host: Optional[str] = None) -> None:
        await self._live_session(override_host)

    async def join_room(self, message_box: str) -> str:
        session = await self._live_session()
        return await session.join_room(message_box)

    async def leave_room(self, message_box: str) -> None:
        if self.session is None:
            logger.warning("leave_room(%s) without a push channel", message_box)
            return
        await self.session.leave_room(message_box)

    def get_joined_rooms(self) -> List[str]:
        return sorted(self.session.joined_rooms) if self.session is not None else []

    async def listen_for_live_messages(self, message_box: str, on_message: Callable[[PeerMessage], Any],
                                       override_host: Optional[str] = None) -> str:
        return await self.delivery.listen_for_live_messages(message_box, on_message, override_host)

    async def disconnect_web_socket(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None

    # ---------- messaging ----------
    async def send_live_message(self, recipient: str, message_box: str, body: Any,
                                message_id: Optional[str] = None, skip_encryption: bool = False,
                                override_host: Optional[str] = None) -> SendResult:
        return await self.delivery.send_live_message(recipient, message_box, body, message_id=message_id,
                                                      skip_encryption=skip_encryption, override_host=override_host)

    async def send_message(self, recipient: str, message_box: str, body: Any, message_id: Optional[str] = None,
                           skip_encryption: bool = False, check_permissions: bool = False,
                           override_host: Optional[str] = None) -> SendResult:
        await self.init()
        return await self.delivery.send_message(recipient, message_box, body, message_id=message_id,
                                                 skip_encryption=skip_encryption,
                                                 check_permissions=check_permissions, override_host=override_host)

    async def list_messages(self, message_box: str, host: Optional[str] = None,
                            accept_payments: bool = True) -> List[PeerMessage]:
        await self.init()
        return await self.inbox.list_messages(message_box, host=host, accept_payments=accept_payments)

    async def acknowledge_message(self, message_ids: List[str], host: Optional[str] = None) -> List[str]:
        await self.init()
        return await self.inbox.acknowledge(message_ids, host=host)

    # ---------- directory ----------
    async def query_advertisements(self, identity_key: Optional[str] = None,
                                   host: Optional[str] = None) -> List[AdvertisementToken]:
        return await self.directory.query_advertisements(identity_key, host)

    async def resolve_host_for_recipient(self, identity_key: str) -> str:
        return await self.directory.resolve_host_for_recipient(identity_key)

    async def anoint_host(self, host: str) -> PublishResult:
        result = await self.directory.anoint_host(host)
        self._initialized_hosts.add(normalize_host(host))
        return result

    async def revoke_host_advertisement(self, token: AdvertisementToken) -> PublishResult:
        result = await self.directory.revoke_host_advertisement(token)
        self._initialized_hosts.discard(normalize_host(token.host))
        return result

    # ---------- permissions ----------
    async def set_message_box_permission(self, message_box: str, recipient_fee: int,
                                         sender: Optional[str] = None,
                                         override_host: Optional[str] = None) -> None:
        await self.init()
        await self.negotiator.set_permission(normalize_host(override_host or self.host), message_box,
                                             recipient_fee, sender)

    async def get_message_box_permission(self, recipient: str, message_box: str, sender: Optional[str] = None,
                                         override_host: Optional[str] = None) -> Optional[Permission]:
        await self.init()
        host = normalize_host(override_host) if override_host else await self._resolve_host(recipient)
        return await self.negotiator.get_permission(host, recipient, message_box, sender)

    async def list_message_box_permissions(self, message_box: Optional[str] = None, limit: Optional[int] = None,
                                           offset: Optional[int] = None,
                                           override_host: Optional[str] = None) -> List[Permission]:
        await self.init()
        return await self.negotiator.list_permissions(normalize_host(override_host or self.host),
                                                      message_box, limit, offset)

    async def get_message_box_quote(self, recipient: str, message_box: str,
                                    override_host: Optional[str] = None) -> Quote:
        await self.init()
        host = normalize_host(override_host) if override_host else await self._resolve_host(recipient)
        return await self.negotiator.get_quote(host, recipient, message_box)

    # ---------- notifications ----------
    async def allow_notifications_from_peer(self, identity_key: str, recipient_fee: int = 0) -> None:
        await self.set_message_box_permission(NOTIFICATIONS_BOX, recipient_fee, sender=identity_key)

    async def deny_notifications_from_peer(self, identity_key: str) -> None:
        await self.set_message_box_permission(NOTIFICATIONS_BOX, -1, sender=identity_key)

    async def check_peer_notification_status(self, identity_key: str) -> Optional[Permission]:
        me = await self.get_identity_key()
        return await self.get_message_box_permission(me, NOTIFICATIONS_BOX, sender=identity_key,
                                                     override_host=self.host)

    async def list_peer_notifications(self) -> List[Permission]:
        return await self.list_message_box_permissions(NOTIFICATIONS_BOX)

    async def send_notification(self, recipient: str, body: Any,
                                override_host: Optional[str] = None) -> SendResult:
        return await self.send_message(recipient, NOTIFICATIONS_BOX, body, check_permissions=True,
                                       override_host=override_host)

    # ---------- devices ----------
    async def register_device(self, fcm_token: str, device_id: Optional[str] = None,
                              platform: Optional[str] = None, override_host: Optional[str] = None) -> Dict:
        if not fcm_token or not fcm_token.strip():
            raise ValidationError("fcm_token is required and must be a non-empty string")
        if platform is not None and platform not in ("ios", "android", "web"):
            raise ValidationError("platform must be one of ios, android, web")
        await self.init()
        body = {"fcmToken": fcm_token.strip()}
        if device_id:
            body["deviceId"] = device_id
        if platform:
            body["platform"] = platform
        response = await self.fetch.post(normalize_host(override_host or self.host) + "/registerDevice", body)
        return read_json(response, "registerDevice")

    async def list_registered_devices(self, override_host: Optional[str] = None) -> List[Dict]:
        await self.init()
        response = await self.fetch.get(normalize_host(override_host or self.host) + "/devices")
        return read_json(response, "list devices").get("devices") or []

    # ---------- shutdown ----------
    async def close(self) -> None:
        try:
            await self.disconnect_web_socket()
        except ChannelError as e:
            logger.warning("error closing push channel: %s", e)
        await self.fetch.aclose()
        await self.directory.aclose()
