"""The router: owns every gateway and moves received messages between them."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from chatrelay.bridge import Bridge
from chatrelay.bridgemap import BridgeMap
from chatrelay.config import Config, Event, Message
from chatrelay.gateway import DEFAULT_CACHE_SIZE, BrMsgID, Gateway, GatewayError
from chatrelay.media import handle_files
from chatrelay.samechannel import same_channel_gateways

logger = logging.getLogger(__name__)

_STOP = object()


def _spawn_thread(target: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


class Router:
    """Sets up all enabled gateways and relays messages received from their bridges."""

    def __init__(
        self,
        config: Config,
        bridge_map: BridgeMap,
        *,
        sleep: Callable[[float], Any] = time.sleep,
        spawn: Callable[..., Any] | None = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self.config = config
        self.bridge_map = bridge_map
        self.gateways: dict[str, Gateway] = {}
        self.message: queue.Queue[Any] = queue.Queue()
        self.mattermost_plugin: queue.Queue[Message] = queue.Queue()
        self._spawn = spawn if spawn is not None else _spawn_thread
        self._receiver: threading.Thread | None = None

        for entry in [*same_channel_gateways(config), *config.gateways]:
            if not entry.enable:
                continue
            if not entry.name:
                raise GatewayError("Gateway without name found")
            if entry.name in self.gateways:
                raise GatewayError(f"Gateway with name {entry.name} already exists")
            self.gateways[entry.name] = Gateway(
                config,
                entry,
                bridge_map=bridge_map,
                bridge_lookup=self.get_bridge,
                remote=self.message,
                plugin_queue=self.mattermost_plugin,
                sleep=sleep,
                cache_size=cache_size,
            )

    def get_bridge(self, account: str) -> Bridge | None:
        """The bridge of an account in any gateway, or None."""
        for gateway in self.gateways.values():
            bridge = gateway.bridges.get(account)
            if bridge is not None:
                return bridge
        return None

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        """Connect every bridge, join its channels and start relaying in the background."""
        if not self.gateways:
            raise GatewayError("no [[gateway]] configured")
        bridges: dict[str, Bridge] = {}
        for gateway in self.gateways.values():
            logger.info("Parsing gateway %s", gateway.name)
            if not gateway.bridges:
                raise GatewayError(f"no bridges configured for gateway {gateway.name}")
            for bridge in gateway.bridges.values():
                bridges[bridge.account] = bridge

        for bridge in bridges.values():
            logger.info("Starting bridge: %s", bridge.account)
            try:
                bridge.connect()
            except Exception as exc:
                error = GatewayError(f"Bridge {bridge.account} failed to start: {exc}")
                if self._disable_bridge(bridge, error):
                    continue
                raise error from exc
            try:
                bridge.join_channels()
            except Exception as exc:
                error = GatewayError(f"Bridge {bridge.account} failed to join channel: {exc}")
                if self._disable_bridge(bridge, error):
                    continue
                raise error from exc

        for gateway in self.gateways.values():
            for account, bridge in list(gateway.bridges.items()):
                if bridge.bridger is None:
                    logger.error("removing failed bridge %s", account)
                    del gateway.bridges[account]

        self._receiver = threading.Thread(target=self.run, name="chatrelay-router", daemon=True)
        self._receiver.start()

    def _disable_bridge(self, bridge: Bridge, error: Exception) -> bool:
        """Empty the bridge when failures on start are to be ignored."""
        if not self.config.general.ignore_failure_on_start:
            return False
        logger.error("%s", error)
        bridge.bridger = None
        bridge.channels = {}
        bridge.joined = {}
        bridge.channel_members = None
        return True

    def run(self) -> None:
        """Relay messages from the queue until stop() is called."""
        while True:
            item = self.message.get()
            if item is _STOP:
                return
            try:
                self.handle(item)
            except Exception:
                logger.exception("handling message from %s failed", getattr(item, "account", ""))

    def stop(self) -> None:
        """Finish relaying queued messages and stop the background receiver."""
        self.message.put(_STOP)
        if self._receiver is not None:
            self._receiver.join()
            self._receiver = None

    # -- events ----------------------------------------------------------

    def _handle_event_failure(self, msg: Message) -> None:
        if msg.event != Event.FAILURE:
            return
        for gateway in self.gateways.values():
            for bridge in gateway.bridges.values():
                if msg.account == bridge.account:
                    self._spawn(gateway.reconnect_bridge, bridge)
                    return

    def _handle_event_get_channel_members(self, msg: Message) -> None:
        if msg.event != Event.GET_CHANNEL_MEMBERS:
            return
        members = (msg.extra or {}).get(Event.GET_CHANNEL_MEMBERS)
        if not members:
            logger.error("channel members event from %s without members", msg.account)
            return
        for gateway in self.gateways.values():
            for bridge in gateway.bridges.values():
                if msg.account == bridge.account:
                    logger.debug("Syncing channelmembers from %s", msg.account)
                    bridge.set_channel_members(members[0])
                    return

    def _handle_event_rejoin_channels(self, msg: Message) -> None:
        if msg.event != Event.REJOIN_CHANNELS:
            return
        for gateway in self.gateways.values():
            for bridge in gateway.bridges.values():
                if msg.account == bridge.account:
                    bridge.joined = {}
                    try:
                        bridge.join_channels()
                    except Exception as exc:
                        logger.error("channel join failed for %s: %s", msg.account, exc)

    # -- relaying --------------------------------------------------------

    def handle(self, msg: Message) -> None:
        """Process one received message: events first, then relaying through each gateway."""
        self._handle_event_get_channel_members(msg)
        self._handle_event_failure(msg)
        self._handle_event_rejoin_channels(msg)

        source = self.get_bridge(msg.account)
        if source is None:
            logger.error("message from unknown account %s", msg.account)
            return
        msg.protocol = source.protocol

        files_handled = False
        for gateway in self.gateways.values():
            if gateway.ignore_message(msg):
                continue
            msg.timestamp = datetime.now()
            gateway.modify_message(msg)
            if not files_handled:
                handle_files(msg, self.config.general)
                files_handled = True
            relayed: list[BrMsgID] = []
            for bridge in list(gateway.bridges.values()):
                relayed.extend(gateway.handle_message(msg, bridge))

            if msg.id:
                key = f"{msg.protocol} {msg.id}"
                # keep the first mapping so that edits reach the same relayed messages
                if gateway.messages.get(key) is None:
                    gateway.messages.add(key, relayed)