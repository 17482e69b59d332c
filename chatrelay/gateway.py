"""A gateway: a named group of channels on several bridges that relay to each other."""

from __future__ import annotations

import dataclasses
import logging
import queue
import re
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from chatrelay.bridge import Bridge
from chatrelay.bridgemap import BridgeMap
from chatrelay.config import (
    PARENT_ID_NOT_FOUND,
    BridgeEntry,
    ChannelInfo,
    Config,
    Event,
    GatewayConfig,
    Message,
)
from chatrelay.filters import (
    API_PROTOCOL,
    channel_id,
    extract_nick,
    ignore_event,
    ignore_files_comment,
    ignore_text,
    ignore_text_empty,
    is_api,
    protocol_of,
)

logger = logging.getLogger(__name__)

_STRIP_NICK = re.compile(r"[^a-zA-Z0-9]+")
_GROUP_REF = re.compile(r"\$(?:\$|\{([A-Za-z0-9_]+)\}|([A-Za-z0-9_]+))")

DEFAULT_CACHE_SIZE = 5000


class GatewayError(Exception):
    """Raised when a gateway definition cannot be set up."""


@dataclass
class BrMsgID:
    """The ID a destination bridge gave to a relayed message."""

    bridge: Bridge
    id: str
    channel_id: str


class MessageCache:
    """A least-recently-used map from canonical message IDs to relayed IDs."""

    def __init__(self, size: int = DEFAULT_CACHE_SIZE) -> None:
        if size <= 0:
            raise ValueError("cache size must be positive")
        self._size = size
        self._items: OrderedDict[str, list[BrMsgID]] = OrderedDict()

    def add(self, key: str, value: list[BrMsgID]) -> bool:
        """Store a value; return True when an older entry was evicted."""
        if key in self._items:
            self._items.move_to_end(key)
            self._items[key] = value
            return False
        self._items[key] = value
        if len(self._items) > self._size:
            self._items.popitem(last=False)
            return True
        return False

    def get(self, key: str) -> list[BrMsgID] | None:
        """Look up a value and mark it as recently used."""
        if key not in self._items:
            return None
        self._items.move_to_end(key)
        return self._items[key]

    def peek(self, key: str) -> list[BrMsgID] | None:
        """Look up a value without touching its recency."""
        return self._items.get(key)

    def keys(self) -> list[str]:
        """Keys from the oldest to the newest."""
        return list(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))


def _expand(template: str, match: re.Match[str]) -> str:
    """Expand $1, ${1}, $name and ${name} references; unknown ones become empty."""

    def reference(ref: re.Match[str]) -> str:
        if ref.group(0) == "$$":
            return "$"
        name = ref.group(1) or ref.group(2)
        try:
            value = match.group(int(name)) if name.isdigit() else match.group(name)
        except IndexError:
            value = None
        return value or ""

    return _GROUP_REF.sub(reference, template)


def _replace_all(pattern: re.Pattern[str], template: str, text: str) -> str:
    return pattern.sub(lambda m: _expand(template, m), text)


class Gateway:
    """Channels on several bridges whose messages are relayed to one another.

    Bridge factories from the bridge map are called as ``factory(bridge, remote)``,
    where ``remote`` is the queue on which the bridger delivers received messages.
    """

    def __init__(
        self,
        config: Config,
        gateway_config: GatewayConfig | None = None,
        *,
        bridge_map: BridgeMap,
        bridge_lookup: Callable[[str], Bridge | None] | None = None,
        remote: queue.Queue[Message] | None = None,
        plugin_queue: queue.Queue[Message] | None = None,
        sleep: Callable[[float], Any] = time.sleep,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self.config = config
        self.bridge_map = bridge_map
        self.name = ""
        self.my_config: GatewayConfig | None = None
        self.bridges: dict[str, Bridge] = {}
        self.channels: dict[str, ChannelInfo] = {}
        self.messages = MessageCache(cache_size)
        self.remote: queue.Queue[Message] = remote if remote is not None else queue.Queue()
        self._lookup = bridge_lookup
        self._plugin_queue = plugin_queue
        self._sleep = sleep
        if gateway_config is not None:
            self.add_config(gateway_config)

    # -- setup -----------------------------------------------------------

    def add_config(self, cfg: GatewayConfig) -> None:
        """Take over a gateway definition: map its channels and add its bridges."""
        self.name = cfg.name
        self.my_config = cfg
        self._map_channels()
        for entry in [*cfg.in_, *cfg.inout, *cfg.out]:
            self.add_bridge(entry)

    def add_bridge(self, entry: BridgeEntry) -> Bridge:
        """Set up (or reuse) the bridge for an entry's account."""
        bridge = self._lookup(entry.account) if self._lookup is not None else None
        if bridge is None:
            bridge = self.bridges.get(entry.account)
        if bridge is None:
            self._check_config(entry)
            bridge = Bridge.from_entry(entry, self.config)
            if bridge.protocol not in self.bridge_map:
                raise GatewayError(
                    f"Incorrect protocol {bridge.protocol} specified in gateway "
                    f"configuration {entry.account}"
                )
            bridge.bridger = self.bridge_map.factory(bridge.protocol)(bridge, self.remote)
        self._map_channels_to_bridge(bridge)
        self.bridges[entry.account] = bridge
        return bridge

    def _check_config(self, entry: BridgeEntry) -> None:
        prefix = entry.account.lower()
        if not any(key.startswith(prefix) for key in self.config.keys()):
            raise GatewayError(
                f"Account {entry.account} defined in gateway {self.name} "
                "but no configuration found"
            )

    def _map_channels_to_bridge(self, bridge: Bridge) -> None:
        for cid, channel in self.channels.items():
            if bridge.account == channel.account:
                bridge.channels[cid] = channel

    def _map_channels(self) -> None:
        assert self.my_config is not None
        self._map_channel_config(self.my_config.in_, "in")
        self._map_channel_config(self.my_config.out, "out")
        self._map_channel_config(self.my_config.inout, "inout")

    def _map_channel_config(self, entries: list[BridgeEntry], direction: str) -> None:
        for entry in entries:
            channel_name = entry.channel
            if is_api(entry.account):
                channel_name = API_PROTOCOL
            if entry.account.startswith("irc."):
                channel_name = channel_name.lower()
            if entry.account.startswith("mattermost.") and channel_name.startswith("#"):
                raise GatewayError(
                    f"Mattermost channels do not start with a #: remove the # in {channel_name}"
                )
            if entry.account.startswith("zulip.") and "/topic:" not in channel_name:
                raise GatewayError(
                    "zulip channels need to specify the topic with channel/topic:mytopic "
                    f"in {channel_name} of {entry.account}"
                )
            cid = channel_name + entry.account
            existing = self.channels.get(cid)
            if existing is None:
                existing = ChannelInfo(
                    name=channel_name,
                    account=entry.account,
                    direction=direction,
                    id=cid,
                    options=entry.options,
                )
                self.channels[cid] = existing
            elif existing.direction != direction:
                existing.direction = "inout"
            existing.same_channel[self.name] = entry.same_channel

    # -- message IDs -----------------------------------------------------

    def find_canonical_msg_id(self, protocol: str, msg_id: str) -> str:
        """The cache key under which a message (or one relayed from it) is stored."""
        key = f"{protocol} {msg_id}"
        if key in self.messages:
            return key
        for canonical in self.messages.keys():
            for downstream in self.messages.peek(canonical) or []:
                if downstream.id == key:
                    return canonical
        return ""

    def dest_msg_id(self, msg_id: str, dest: Bridge, channel: ChannelInfo) -> str:
        """The ID the destination bridge gave to a cached message in that channel."""
        for entry in self.messages.get(msg_id) or []:
            if (
                dest.protocol == entry.bridge.protocol
                and dest.name == entry.bridge.name
                and channel.id == entry.channel_id
            ):
                return entry.id.replace(dest.protocol + " ", "", 1)
        return ""

    # -- routing ---------------------------------------------------------

    def _valid_gateway_dest(self, msg: Message) -> bool:
        return msg.gateway == self.name

    def dest_channels(self, msg: Message, dest: Bridge) -> list[ChannelInfo]:
        """The channels on the destination bridge the message is to be sent to."""
        if msg.protocol == API_PROTOCOL and self.name != msg.gateway:
            return []

        # a discord join/leave concerns the whole bridge, not one channel
        if msg.event == Event.JOIN_LEAVE and protocol_of(msg) == "discord" and msg.channel == "":
            return [
                channel
                for channel in self.channels.values()
                if channel.account == dest.account
                and "out" in channel.direction
                and self._valid_gateway_dest(msg)
            ]

        source = self.channels.get(channel_id(msg))
        if source is None or "in" not in source.direction:
            return []

        result = []
        for channel in self.channels.values():
            if channel.same_channel.get(msg.gateway, False):
                if msg.channel == channel.name and msg.account != dest.account:
                    result.append(channel)
                continue
            if (
                "out" in channel.direction
                and channel.account == dest.account
                and self._valid_gateway_dest(msg)
            ):
                result.append(channel)
        return result

    def ignore_message(self, msg: Message) -> bool:
        """Return True when the message is not to be relayed at all."""
        bridge = self.bridges.get(msg.account)
        if bridge is None:
            return True
        ignore_nicks = bridge.get_string("IgnoreNicks").split()
        ignore_messages = bridge.get_string("IgnoreMessages").split()
        return (
            ignore_text_empty(msg)
            or ignore_text(msg.username, ignore_nicks)
            or ignore_text(msg.text, ignore_messages)
            or ignore_files_comment(msg.extra, ignore_messages)
        )

    # -- rewriting -------------------------------------------------------

    def modify_username(self, msg: Message, dest: Bridge) -> str:
        """The nick to show on the destination, built from its RemoteNickFormat."""
        if dest.get_bool("StripNick"):
            msg.username = _STRIP_NICK.sub("", msg.username)
        nick = dest.get_string("RemoteNickFormat")

        source = self.bridges[msg.account]
        for search, replace, *_ in source.get_string_slice_2d("ReplaceNicks"):
            try:
                pattern = re.compile(search)
            except re.error as exc:
                logger.error("regexp in %s failed: %s", msg.account, exc)
                break
            msg.username = _replace_all(pattern, replace, msg.username)

        if msg.username:
            nick = nick.replace("{NOPINGNICK}", msg.username[:1] + "\u200b" + msg.username[1:])

        for placeholder, value in (
            ("{BRIDGE}", source.name),
            ("{PROTOCOL}", source.protocol),
            ("{GATEWAY}", self.name),
            ("{LABEL}", source.get_string("Label")),
            ("{NICK}", msg.username),
            ("{USERID}", msg.user_id),
            ("{CHANNEL}", msg.channel),
            ("{TENGO}", ""),
        ):
            nick = nick.replace(placeholder, value)
        return nick

    def modify_avatar(self, msg: Message, dest: Bridge) -> str:
        """The avatar URL, falling back to the destination's IconURL."""
        icon_url = dest.get_string("IconURL").replace("{NICK}", msg.username)
        if not msg.avatar:
            msg.avatar = icon_url
        return msg.avatar

    def modify_message(self, msg: Message) -> None:
        """Apply the source bridge's message replacements and nick extraction."""
        source = self.bridges[msg.account]
        for search, replace, *_ in source.get_string_slice_2d("ReplaceMessages"):
            try:
                pattern = re.compile(search)
            except re.error as exc:
                logger.error("regexp in %s failed: %s", msg.account, exc)
                break
            msg.text = _replace_all(pattern, replace, msg.text)

        for search, extract, *_ in source.get_string_slice_2d("ExtractNicks"):
            try:
                msg.username, msg.text = extract_nick(search, extract, msg.username, msg.text)
            except re.error as exc:
                logger.error("regexp in %s failed: %s", msg.account, exc)
                break

        # messages from the api name their gateway themselves
        if msg.protocol != API_PROTOCOL:
            msg.gateway = self.name

    # -- sending ---------------------------------------------------------

    def send_message(
        self,
        msg: Message,
        dest: Bridge,
        channel: ChannelInfo,
        canonical_parent_id: str,
    ) -> str:
        """Send a copy of the message to one channel; return the ID it got there, or ""."""
        source_id = channel_id(msg)
        if msg.event == Event.AVATAR_DOWNLOAD:
            if channel.id != source_id:
                return ""
        elif channel.id == source_id:
            return ""

        if msg.event == Event.NOTICE_IRC and dest.protocol != "irc":
            return ""

        out = dataclasses.replace(msg)
        out.channel = channel.name
        out.avatar = self.modify_avatar(msg, dest)
        out.username = self.modify_username(msg, dest)

        # a file delete carries the native file ID, which must be kept
        if out.event != Event.FILE_DELETE:
            out.id = self.dest_msg_id(f"{msg.protocol} {msg.id}", dest, channel)

        if dest.protocol == API_PROTOCOL:
            out.channel = msg.channel

        out.parent_id = self.dest_msg_id(canonical_parent_id, dest, channel)
        if not out.parent_id:
            out.parent_id = canonical_parent_id.replace(dest.protocol + " ", "", 1)
        if not out.parent_id and msg.parent_id:
            out.parent_id = PARENT_ID_NOT_FOUND

        if out.event != Event.USER_TYPING:
            logger.debug(
                "=> Sending %r from %s (%s) to %s (%s)",
                out, out.account, msg.channel, dest.account, channel.name,
            )

        if dest.account == "mattermost.plugin" and self._plugin_queue is not None:
            self._plugin_queue.put(out)

        started = time.monotonic()
        try:
            sent_id = dest.send(out)
        finally:
            logger.debug(
                "=> Send from %s (%s) to %s (%s) took %.3fs",
                out.account, msg.channel, dest.account, channel.name,
                time.monotonic() - started,
            )
        if sent_id:
            logger.debug("mID %s: %s", dest.account, sent_id)
            return sent_id
        return ""

    def handle_message(self, msg: Message, dest: Bridge) -> list[BrMsgID]:
        """Relay the message to every matching channel of the destination bridge."""
        if msg.event == Event.USER_TYPING and not self.bridge_map.supports_user_typing(
            dest.protocol
        ):
            return []

        if msg.extra and msg.extra.get(Event.FILE_FAILURE_SIZE) and not msg.text:
            return []

        if ignore_event(msg.event, dest):
            return []

        if not msg.channel and msg.event != Event.JOIN_LEAVE:
            logger.debug("empty channel")
            return []

        canonical_parent_id = ""
        if msg.parent_id and dest.get_bool("PreserveThreading"):
            canonical_parent_id = self.find_canonical_msg_id(msg.protocol, msg.parent_id)

        relayed = []
        for channel in self.dest_channels(msg, dest):
            try:
                sent_id = self.send_message(msg, dest, channel, canonical_parent_id)
            except Exception as exc:  # a failing bridge must not stop the others
                logger.error("SendMessage failed: %s", exc)
                continue
            if sent_id:
                relayed.append(BrMsgID(dest, f"{dest.protocol} {sent_id}", channel.id))
        return relayed

    def reconnect_bridge(self, bridge: Bridge) -> None:
        """Disconnect, reconnect until it succeeds, then rejoin every channel."""
        try:
            bridge.disconnect()
        except Exception as exc:
            logger.error("Disconnect() %s failed: %s", bridge.account, exc)
        self._sleep(5)
        while True:
            logger.info("Reconnecting %s", bridge.account)
            try:
                bridge.connect()
            except Exception as exc:
                logger.error("Reconnection failed: %s. Trying again in 60 seconds", exc)
                self._sleep(60)
                continue
            break
        bridge.joined = {}
        try:
            bridge.join_channels()
        except Exception as exc:
            logger.error("JoinChannels() %s failed: %s", bridge.account, exc)