"""Bridges: one connected account on a chat protocol."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from chatrelay.config import BridgeEntry, ChannelInfo, Config, Message

_TRUE_STRINGS = frozenset({"1", "t", "true"})


class Bridger(ABC):
    """The protocol-specific half of a bridge."""

    @abstractmethod
    def connect(self) -> None:
        """Connect to the chat service."""

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the chat service."""

    @abstractmethod
    def join_channel(self, channel: ChannelInfo) -> None:
        """Join a single channel."""

    @abstractmethod
    def send(self, msg: Message) -> str:
        """Send a message and return the ID the service gave it, or ""."""


@dataclass(eq=False)
class Bridge:
    """An account on a protocol, the channels mapped to it and its bridger."""

    account: str = ""
    protocol: str = ""
    name: str = ""
    config: Config | None = None
    bridger: Bridger | None = None
    channels: dict[str, ChannelInfo] = field(default_factory=dict)
    joined: dict[str, bool] = field(default_factory=dict)
    channel_members: Any = None
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("chatrelay.bridge"), repr=False
    )

    @classmethod
    def from_entry(cls, entry: BridgeEntry, config: Config | None) -> Bridge:
        """Build a bridge for the account named by a gateway entry."""
        protocol, _, name = entry.account.partition(".")
        return cls(
            account=entry.account,
            protocol=protocol,
            name=name,
            config=config,
            logger=logging.getLogger(f"chatrelay.{protocol or 'bridge'}"),
        )

    def _settings(self) -> dict[str, Any]:
        if self.config is None:
            return {}
        if not self.config.has_account(self.account):
            return dict(self.config.general_table)
        return self.config.account_settings(self.account)

    def get_string(self, key: str) -> str:
        """A setting as a string; "" when it is not set."""
        value = self._settings().get(key.lower())
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        return ""

    def get_bool(self, key: str) -> bool:
        """A setting as a boolean; False when it is not set."""
        value = self._settings().get(key.lower())
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_STRINGS
        if isinstance(value, (int, float)):
            return value != 0
        return False

    def get_string_slice_2d(self, key: str) -> list[list[str]]:
        """A setting holding a list of lists of strings, such as replacement pairs."""
        value = self._settings().get(key.lower())
        if not isinstance(value, list):
            return []
        return [[str(item) for item in row] for row in value if isinstance(row, (list, tuple))]

    def _require_bridger(self) -> Bridger:
        if self.bridger is None:
            raise RuntimeError(f"bridge {self.account} has no protocol handler")
        return self.bridger

    def connect(self) -> None:
        self._require_bridger().connect()

    def disconnect(self) -> None:
        self._require_bridger().disconnect()

    def join_channels(self) -> None:
        """Join every mapped channel that has not been joined yet."""
        bridger = self._require_bridger()
        for channel_id, channel in self.channels.items():
            if self.joined.get(channel_id):
                continue
            self.logger.info("%s: joining %s", self.account, channel.name)
            bridger.join_channel(channel)
            self.joined[channel_id] = True

    def send(self, msg: Message) -> str:
        return self._require_bridger().send(msg)

    def set_channel_members(self, members: Any) -> None:
        self.channel_members = members