"""
Connection session: the one push channel a client owns, its authentication
state and the rooms it has joined.

Rooms are named "{identityKey}-{messageBox}". The session never decides what
to do when the channel is unusable; it raises ChannelError and the delivery
engine falls back to HTTP.

Listeners added with subscribe() belong to the session, not to one channel:
when a dropped channel is replaced by initialize() they are moved over and
their rooms joined again.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .config import ACK_TIMEOUT, AUTH_TIMEOUT
from .errors import ChannelError
from .transport import Handler, PushChannel

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[str], PushChannel]


def room_id(identity_key: str, message_box: str) -> str:
    return "%s-%s" % (identity_key, message_box)


class ConnectionSession:

    def __init__(self, channel_factory: ChannelFactory, host: str, identity_key: str,
                 ack_timeout: float = ACK_TIMEOUT, auth_timeout: float = AUTH_TIMEOUT):
        self.channel_factory = channel_factory
        self.host = host
        self.identity_key = identity_key
        self.ack_timeout = ack_timeout
        self.auth_timeout = auth_timeout
        self.channel: Optional[PushChannel] = None
        self.authenticated = False
        self.joined_rooms: Set[str] = set()
        self._listeners: List[Tuple[str, Handler]] = []
        self._listened_rooms: Set[str] = set()
        self._on_disconnect: Optional[Handler] = None

    @property
    def connected(self) -> bool:
        return self.channel is not None and self.authenticated and self.channel.connected

    async def initialize(self) -> None:
        """Connect and authenticate; a no-op when already live. Raises ChannelError."""
        if self.connected:
            return
        channel = self.channel_factory(self.host)
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def on_success(data):
            if not outcome.done():
                outcome.set_result(data)

        def on_failure(data):
            if not outcome.done():
                outcome.set_exception(ChannelError("authentication rejected by %s: %s" % (self.host, data)))

        def on_disconnect(_):
            self.authenticated = False
            self.joined_rooms.clear()
            if self._listeners:
                logger.warning("push channel to %s dropped, %d live listener(s) paused until it is reinitialized",
                               self.host, len(self._listeners))

        channel.subscribe("authenticationSuccess", on_success)
        channel.subscribe("authenticationFailed", on_failure)
        try:
            await channel.connect()
            await channel.emit("authenticated", {"identityKey": self.identity_key})
            await asyncio.wait_for(outcome, self.auth_timeout)
        except asyncio.TimeoutError:
            await self._abandon(channel)
            raise ChannelError("no authentication answer from %s within %ss" % (self.host, self.auth_timeout))
        except ChannelError:
            await self._abandon(channel)
            raise
        finally:
            channel.unsubscribe("authenticationSuccess", on_success)
            channel.unsubscribe("authenticationFailed", on_failure)

        previous, self.channel = self.channel, channel
        if previous is not None and self._on_disconnect is not None:
            previous.unsubscribe("disconnect", self._on_disconnect)
        self._on_disconnect = channel.subscribe("disconnect", on_disconnect)
        self.authenticated = True
        self.joined_rooms.clear()
        logger.info("push channel to %s authenticated as %s", self.host, self.identity_key)
        await self._restore_listeners(previous)

    async def _restore_listeners(self, previous: Optional[PushChannel]) -> None:
        if not self._listeners and not self._listened_rooms:
            return
        for event, handler in self._listeners:
            if previous is not None:
                previous.unsubscribe(event, handler)
            self.channel.unsubscribe(event, handler)
            self.channel.subscribe(event, handler)
        for room in sorted(self._listened_rooms):
            await self.channel.emit("joinRoom", room)
            self.joined_rooms.add(room)
        logger.info("restored %d live listener(s) in %s on %s",
                    len(self._listeners), sorted(self._listened_rooms), self.host)

    async def _abandon(self, channel: PushChannel) -> None:
        try:
            await channel.disconnect()
        except Exception as e:
            logger.debug("error dropping unauthenticated channel: %s", e)
        self.channel = None
        self.authenticated = False

    async def join_room(self, message_box: str, identity_key: Optional[str] = None) -> str:
        room = room_id(identity_key or self.identity_key, message_box)
        if room in self.joined_rooms:
            return room
        if not self.connected:
            raise ChannelError("cannot join %s: push channel is not connected" % room)
        await self.channel.emit("joinRoom", room)
        self.joined_rooms.add(room)
        logger.debug("joined %s", room)
        return room

    async def leave_room(self, message_box: str) -> None:
        room = room_id(self.identity_key, message_box)
        self.joined_rooms.discard(room)
        self._listened_rooms.discard(room)
        if self.channel is None:
            logger.warning("leaving %s without a push channel", room)
            return
        try:
            await self.channel.emit("leaveRoom", room)
        except Exception as e:
            logger.error("leaveRoom %s failed: %s", room, e)

    def subscribe(self, event: str, handler: Handler, room: Optional[str] = None) -> None:
        """Attach a live listener; it and its room, if given, outlive the current channel."""
        if self.channel is None:
            raise ChannelError("push channel is not connected")
        self.channel.subscribe(event, handler)
        self._listeners.append((event, handler))
        if room is not None:
            self._listened_rooms.add(room)

    async def send_and_await_ack(self, room: str, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Emit sendMessage into room and wait for sendMessageAck-{room}.

        The ack handler and the timeout race for one future; whichever comes
        second finds it done and does nothing, and the handler is detached in
        every case. Returns the ack payload on status "success", raises
        ChannelError otherwise.
        """
        if not self.connected:
            raise ChannelError("push channel is not connected")
        loop = asyncio.get_running_loop()
        ack: asyncio.Future = loop.create_future()
        event = "sendMessageAck-%s" % room

        def on_ack(data):
            if not ack.done():
                ack.set_result(data)

        self.channel.subscribe(event, on_ack)
        try:
            await self.channel.emit("sendMessage", {"roomId": room, "message": message})
            try:
                result = await asyncio.wait_for(ack, self.ack_timeout)
            except asyncio.TimeoutError:
                raise ChannelError("no ack for %s within %ss" % (message.get("messageId"), self.ack_timeout))
        finally:
            self.channel.unsubscribe(event, on_ack)
        if not isinstance(result, dict) or result.get("status") != "success":
            raise ChannelError("push delivery of %s not acknowledged: %r" % (message.get("messageId"), result))
        return result

    async def close(self) -> None:
        channel, self.channel = self.channel, None
        self.authenticated = False
        self.joined_rooms.clear()
        self._listeners.clear()
        self._listened_rooms.clear()
        if channel is not None:
            await channel.disconnect()
            logger.info("push channel to %s closed", self.host)
