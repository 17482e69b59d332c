"""Registry of bridge factories keyed by protocol."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

USER_TYPING_PROTOCOLS = frozenset({"discord", "slack"})


class BridgeMap:
    """Maps protocol names to bridge factories and typing-indicator support."""

    def __init__(self) -> None:
        self._factories: dict[str, Callable[..., Any]] = {}
        self._user_typing: set[str] = set()

    def register(self, protocol: str, factory: Callable[..., Any], user_typing: bool | None = None) -> None:
        """Register a factory; typing support defaults to the known protocols."""
        self._factories[protocol] = factory
        if protocol in USER_TYPING_PROTOCOLS if user_typing is None else user_typing:
            self._user_typing.add(protocol)
        else:
            self._user_typing.discard(protocol)

    def factory(self, protocol: str) -> Callable[..., Any]:
        if protocol not in self._factories:
            raise KeyError(f"no bridge registered for protocol {protocol!r}")
        return self._factories[protocol]

    def supports_user_typing(self, protocol: str) -> bool:
        return protocol in self._user_typing

    def __contains__(self, protocol: object) -> bool:
        return protocol in self._factories

    def protocols(self) -> list[str]:
        return sorted(self._factories)