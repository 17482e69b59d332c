"""Configuration model and TOML loading for the relay."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

PARENT_ID_NOT_FOUND = "msg-parent-not-found"

_RESERVED_SECTIONS = frozenset({"general", "gateway", "samechannelgateway", "tengo"})


class Event(StrEnum):
    """Special message events passed between bridges and the router."""

    JOIN_LEAVE = "join_leave"
    TOPIC_CHANGE = "topic_change"
    FAILURE = "failure"
    FILE_FAILURE_SIZE = "file_failure_size"
    AVATAR_DOWNLOAD = "avatar_download"
    REJOIN_CHANNELS = "rejoin_channels"
    USER_ACTION = "user_action"
    MSG_DELETE = "msg_delete"
    FILE_DELETE = "file_delete"
    API_CONNECTED = "api_connected"
    USER_TYPING = "user_typing"
    GET_CHANNEL_MEMBERS = "get_channel_members"
    NOTICE_IRC = "notice_irc"


class ConfigError(Exception):
    """Raised when the configuration cannot be read or is malformed."""


@dataclass
class ChannelOptions:
    key: str = ""
    webhook_url: str = ""


@dataclass
class ChannelInfo:
    name: str
    account: str
    direction: str
    id: str
    same_channel: dict[str, bool] = field(default_factory=dict)
    options: ChannelOptions = field(default_factory=ChannelOptions)


@dataclass
class FileInfo:
    name: str = ""
    data: bytes | None = None
    comment: str = ""
    url: str = ""
    size: int = 0
    avatar: bool = False
    sha: str = ""
    native_id: str = ""


@dataclass
class Message:
    text: str = ""
    channel: str = ""
    username: str = ""
    user_id: str = ""
    avatar: str = ""
    account: str = ""
    event: str = ""
    protocol: str = ""
    gateway: str = ""
    parent_id: str = ""
    timestamp: datetime | None = None
    id: str = ""
    extra: dict[str, list[Any]] = field(default_factory=dict)


@dataclass
class BridgeEntry:
    """One account/channel pair inside a gateway definition."""

    account: str
    channel: str = ""
    options: ChannelOptions = field(default_factory=ChannelOptions)
    same_channel: bool = False


@dataclass
class GatewayConfig:
    name: str = ""
    enable: bool = False
    in_: list[BridgeEntry] = field(default_factory=list)
    out: list[BridgeEntry] = field(default_factory=list)
    inout: list[BridgeEntry] = field(default_factory=list)


@dataclass
class SameChannelGatewayConfig:
    name: str = ""
    enable: bool = False
    accounts: list[str] = field(default_factory=list)
    channels: list[str] = field(default_factory=list)


def _get(table: dict[str, Any], key: str, kind: type, where: str, default: Any) -> Any:
    value = table.get(key, default)
    if not isinstance(value, kind):
        raise ConfigError(f"{where}.{key}: expected {kind.__name__}, got {value!r}")
    return value


def _items(table: dict[str, Any], key: str, kind: type, where: str) -> list[Any]:
    value = _get(table, key, list, where, [])
    if not all(isinstance(item, kind) for item in value):
        raise ConfigError(f"{where}.{key}: expected an array of {kind.__name__}")
    return list(value)


@dataclass
class GeneralSettings:
    debug: bool = False
    media_server_upload: str = ""
    media_server_download: str = ""
    media_download_path: str = ""
    ignore_failure_on_start: bool = False

    @classmethod
    def from_table(cls, table: dict[str, Any]) -> GeneralSettings:
        def get(key: str, kind: type, default: Any) -> Any:
            return _get(table, key, kind, "general", default)

        return cls(
            debug=get("debug", bool, False),
            media_server_upload=get("mediaserverupload", str, ""),
            media_server_download=get("mediaserverdownload", str, ""),
            media_download_path=get("mediadownloadpath", str, ""),
            ignore_failure_on_start=get("ignorefailureonstart", bool, False),
        )


def _lower_keys(value: Any) -> Any:
    """Lower-case every table key, recursively; keys are case-insensitive."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def _parse_entry(table: dict[str, Any], where: str) -> BridgeEntry:
    if "account" not in table:
        raise ConfigError(f"{where}: missing account")
    options = _get(table, "options", dict, where, {})
    return BridgeEntry(
        account=_get(table, "account", str, where, ""),
        channel=_get(table, "channel", str, where, ""),
        options=ChannelOptions(
            key=_get(options, "key", str, f"{where}.options", ""),
            webhook_url=_get(options, "webhookurl", str, f"{where}.options", ""),
        ),
        same_channel=_get(table, "samechannel", bool, where, False),
    )


def _parse_gateway(table: dict[str, Any], where: str) -> GatewayConfig:
    def entries(key: str) -> list[BridgeEntry]:
        return [
            _parse_entry(entry, f"{where}.{key}[{i}]")
            for i, entry in enumerate(_items(table, key, dict, where))
        ]

    return GatewayConfig(
        name=_get(table, "name", str, where, ""),
        enable=_get(table, "enable", bool, where, False),
        in_=entries("in"),
        out=entries("out"),
        inout=entries("inout"),
    )


def _parse_same_channel(table: dict[str, Any], where: str) -> SameChannelGatewayConfig:
    return SameChannelGatewayConfig(
        name=_get(table, "name", str, where, ""),
        enable=_get(table, "enable", bool, where, False),
        accounts=_items(table, "accounts", str, where),
        channels=_items(table, "channels", str, where),
    )


def _flatten(prefix: str, value: Any):
    if isinstance(value, dict):
        for key, sub in value.items():
            yield from _flatten(f"{prefix}.{key}" if prefix else key, sub)
    elif prefix:
        yield prefix


@dataclass
class Config:
    """The whole relay configuration."""

    general: GeneralSettings = field(default_factory=GeneralSettings)
    gateways: list[GatewayConfig] = field(default_factory=list)
    same_channel_gateways: list[SameChannelGatewayConfig] = field(default_factory=list)
    accounts: dict[str, dict[str, Any]] = field(default_factory=dict)
    general_table: dict[str, Any] = field(default_factory=dict)
    document: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_string(cls, text: str | bytes) -> Config:
        """Parse configuration from TOML text."""
        if isinstance(text, bytes):
            text = text.decode("utf-8")
        try:
            document = _lower_keys(tomllib.loads(text))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"invalid configuration: {exc}") from exc

        general_table = _get(document, "general", dict, "config", {})
        accounts = {
            f"{protocol}.{name}": settings
            for protocol, table in document.items()
            if protocol not in _RESERVED_SECTIONS and isinstance(table, dict)
            for name, settings in table.items()
            if isinstance(settings, dict)
        }
        return cls(
            general=GeneralSettings.from_table(general_table),
            gateways=[
                _parse_gateway(table, f"gateway[{i}]")
                for i, table in enumerate(_items(document, "gateway", dict, "config"))
            ],
            same_channel_gateways=[
                _parse_same_channel(table, f"samechannelgateway[{i}]")
                for i, table in enumerate(_items(document, "samechannelgateway", dict, "config"))
            ],
            accounts=accounts,
            general_table=general_table,
            document=document,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> Config:
        """Read and parse a TOML configuration file."""
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"cannot read configuration {path}: {exc}") from exc
        return cls.from_string(text)

    def has_account(self, account: str) -> bool:
        return account.lower() in self.accounts

    def account_settings(self, account: str) -> dict[str, Any]:
        """Settings of an account, falling back to the general section."""
        key = account.lower()
        if key not in self.accounts:
            raise ConfigError(f"no configuration found for account {account}")
        return {**self.general_table, **self.accounts[key]}

    def keys(self) -> list[str]:
        """All leaf keys of the configuration as lower-case dotted paths."""
        return list(_flatten("", self.document))