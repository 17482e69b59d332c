"""Rocket.Chat outgoing webhooks."""

from __future__ import annotations

import json
import logging
import queue
import re
import threading
from dataclasses import dataclass, fields
from http.server import ThreadingHTTPServer
from typing import Any

from chatrelay.matterhook import _CLOSED, HookError, _split_host_port, _start_http_server

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")


@dataclass
class RocketMessage:
    """A message Rocket.Chat posts to an outgoing webhook."""

    token: str = ""
    channel_id: str = ""
    channel_name: str = ""
    timestamp: str = ""
    user_id: str = ""
    user_name: str = ""
    text: str = ""


_FIELDS_BY_LOWER = {f.name.lower(): f.name for f in fields(RocketMessage)}


@dataclass
class RocketConfig:
    """Settings of a Rocket.Chat webhook client."""

    bind_address: str = ""
    token: str = ""
    insecure_skip_verify: bool = False


def _decode_json(body: bytes | str) -> RocketMessage:
    try:
        doc = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise HookError(f"invalid JSON: {exc}") from exc
    if doc is None:
        return RocketMessage()
    if not isinstance(doc, dict):
        raise HookError("expected a JSON object")
    values: dict[str, str] = {}
    for key, value in doc.items():
        name = _FIELDS_BY_LOWER.get(str(key).lower())
        if name is None or value is None:
            continue
        if not isinstance(value, str):
            raise HookError(f"field {key!r} is not a string")
        values[name] = value
    return RocketMessage(**values)


class RocketClient:
    """Serves Rocket.Chat outgoing webhooks and queues the messages received."""

    def __init__(self, url: str, config: RocketConfig | None = None) -> None:
        self.url = url
        self.config = config if config is not None else RocketConfig()
        self.incoming: queue.Queue[Any] = queue.Queue()
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        _split_host_port(self.config.bind_address)
        self.start_server()

    def __enter__(self) -> RocketClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def server_address(self) -> tuple[str, int] | None:
        """The address the server is listening on, or None."""
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def start_server(self) -> tuple[str, int]:
        """Listen for posts from Rocket.Chat in the background; return the bound address."""
        if self._server is None:
            self._server, self._thread = _start_http_server(
                self.config.bind_address,
                lambda method, _content_type, body, remote: self._accept(method, body, remote),
            )
        address = self.server_address
        assert address is not None
        return address

    def accept(self, method: str, body: bytes | str) -> bool:
        """Validate a posted JSON body and queue its message; return False when rejected."""
        return self._accept(method, body, "")

    def _accept(self, method: str, body: bytes | str, remote: str) -> bool:
        if method != "POST":
            logger.info("invalid %s connection from %s", method, remote)
            return False
        try:
            msg = _decode_json(body)
        except HookError as exc:
            logger.info("%s", exc)
            return False
        if not msg.token:
            logger.info("no token from %s", remote)
            return False
        msg.channel_name = "#" + msg.channel_name
        if self.config.token and msg.token != self.config.token:
            if _NON_ALNUM.search(msg.token):
                logger.info("invalid token %s from %s", msg.token, remote)
            else:
                logger.info("invalid token from %s", remote)
            return False
        self.incoming.put(msg)
        return True

    def receive(self, timeout: float | None = None) -> RocketMessage:
        """The next received message; an empty one once the client is closed."""
        try:
            item = self.incoming.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no message received") from None
        if item is _CLOSED:
            self.incoming.put(_CLOSED)
            return RocketMessage()
        return item

    def close(self) -> None:
        """Stop the server and wake up any pending receive."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.incoming.put(_CLOSED)