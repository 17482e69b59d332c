"""Mattermost incoming and outgoing webhooks."""

from __future__ import annotations

import json
import logging
import queue
import socket
import ssl
import threading
import urllib.error
import urllib.request
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs

logger = logging.getLogger(__name__)

_CLOSED = object()
_NOT_FOUND_BODY = b"404 page not found\n"
_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


class HookError(Exception):
    """Raised for an invalid webhook setup or a failed webhook delivery."""


@dataclass
class OutgoingMessage:
    """A message posted to a Mattermost incoming webhook."""

    text: str = ""
    channel: str = ""
    icon_url: str = ""
    icon_emoji: str = ""
    username: str = ""
    attachments: list[dict[str, Any]] = field(default_factory=list)
    type: str = ""
    props: dict[str, Any] | None = None

    def to_json(self) -> str:
        """Compact JSON; empty optional fields are left out, text and props always present."""
        doc: dict[str, Any] = {}
        for key, value in (
            ("channel", self.channel),
            ("icon_url", self.icon_url),
            ("icon_emoji", self.icon_emoji),
            ("username", self.username),
        ):
            if value:
                doc[key] = value
        doc["text"] = self.text
        if self.attachments:
            doc["attachments"] = self.attachments
        if self.type:
            doc["type"] = self.type
        doc["props"] = self.props
        encoded = json.dumps(doc, separators=(",", ":"), ensure_ascii=False)
        for char, escape in _JSON_ESCAPES:
            encoded = encoded.replace(char, escape)
        return encoded


@dataclass
class IncomingMessage:
    """A message Mattermost posts to an outgoing webhook."""

    bot_id: str = ""
    bot_name: str = ""
    token: str = ""
    team_id: str = ""
    team_domain: str = ""
    channel_id: str = ""
    channel_name: str = ""
    timestamp: str = ""
    user_id: str = ""
    user_name: str = ""
    post_id: str = ""
    raw_text: str = ""
    service_id: str = ""
    text: str = ""
    trigger_word: str = ""
    file_ids: str = ""


_FORM_FIELDS = frozenset(f.name for f in fields(IncomingMessage))


@dataclass
class HookConfig:
    """Settings of a webhook client."""

    bind_address: str = ""
    token: str = ""
    insecure_skip_verify: bool = False
    disable_server: bool = False


def _split_host_port(address: str) -> tuple[str, int]:
    """Split "host:port" (with "[v6]:port" for IPv6); raise HookError when malformed."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1 : end + 2] != ":":
            raise HookError(f"incorrect bindaddress {address}")
        host, port = address[1:end], address[end + 2 :]
    else:
        host, sep, port = address.rpartition(":")
        if not sep or ":" in host:
            raise HookError(f"incorrect bindaddress {address}")
    if port and not port.isdigit():
        raise HookError(f"incorrect bindaddress {address}")
    return host, int(port) if port else 0


class _IPv6Server(ThreadingHTTPServer):
    address_family = socket.AF_INET6


RequestHandler = Callable[[str, str, bytes, str], bool]


def _start_http_server(
    bind_address: str, handle: RequestHandler
) -> tuple[ThreadingHTTPServer, threading.Thread]:
    """Serve requests in a background thread; `handle` decides acceptance per request."""
    host, port = _split_host_port(bind_address)

    class Handler(BaseHTTPRequestHandler):
        timeout = 5

        def _dispatch(self) -> None:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = 0
            body = self.rfile.read(length) if length > 0 else b""
            remote = f"{self.client_address[0]}:{self.client_address[1]}"
            accepted = handle(self.command, self.headers.get("Content-Type", ""), body, remote)
            if accepted:
                self.send_response(200)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            self.send_response(404)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("X-Content-Type-Options", "nosniff")
            self.send_header("Content-Length", str(len(_NOT_FOUND_BODY)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(_NOT_FOUND_BODY)

        do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_HEAD = do_OPTIONS = _dispatch

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            logger.debug(format, *args)

    server_cls = _IPv6Server if ":" in host else ThreadingHTTPServer
    try:
        server = server_cls((host, port), Handler)
    except OSError as exc:
        raise HookError(f"cannot listen on {bind_address}: {exc}") from exc
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, name="webhook-server", daemon=True)
    thread.start()
    logger.info("Listening on http://%s...", bind_address)
    return server, thread


def _decode_form(form: Mapping[str, Any]) -> IncomingMessage:
    values: dict[str, str] = {}
    for key, value in form.items():
        if key not in _FORM_FIELDS:
            raise HookError(f"unknown form field {key!r}")
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = value[-1]
        if not isinstance(value, str):
            raise HookError(f"form field {key!r} is not a string")
        values[key] = value
    return IncomingMessage(**values)


class Client:
    """Sends to a Mattermost incoming webhook and serves its outgoing webhooks."""

    def __init__(self, url: str, config: HookConfig | None = None) -> None:
        self.url = url
        self.config = config if config is not None else HookConfig()
        self.incoming: queue.Queue[Any] = queue.Queue()
        self._ssl_context: ssl.SSLContext | None = None
        if self.config.insecure_skip_verify:
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            self._ssl_context = context
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        if not self.config.disable_server:
            _split_host_port(self.config.bind_address)
            self.start_server()

    def __enter__(self) -> Client:
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
        """Listen for posts from Mattermost in the background; return the bound address."""
        if self._server is None:
            self._server, self._thread = _start_http_server(
                self.config.bind_address, self._handle_request
            )
        address = self.server_address
        assert address is not None
        return address

    def _handle_request(self, method: str, content_type: str, body: bytes, remote: str) -> bool:
        form: dict[str, list[str]] = {}
        if content_type.split(";")[0].strip().lower() == "application/x-www-form-urlencoded":
            form = parse_qs(body.decode("utf-8", errors="replace"), keep_blank_values=True)
        return self._accept(method, form, remote)

    def accept(self, method: str, form: Mapping[str, Any]) -> bool:
        """Validate a posted form and queue its message; return False when rejected."""
        return self._accept(method, form, "")

    def _accept(self, method: str, form: Mapping[str, Any], remote: str) -> bool:
        if method != "POST":
            logger.info("invalid %s connection from %s", method, remote)
            return False
        try:
            msg = _decode_form(form)
        except HookError as exc:
            logger.info("%s", exc)
            return False
        if not msg.token:
            logger.info("no token from %s", remote)
            return False
        if self.config.token and msg.token != self.config.token:
            logger.info("invalid token %s from %s", msg.token, remote)
            return False
        self.incoming.put(msg)
        return True

    def receive(self, timeout: float | None = None) -> IncomingMessage:
        """The next received message; an empty one once the client is closed."""
        try:
            item = self.incoming.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no message received") from None
        if item is _CLOSED:
            self.incoming.put(_CLOSED)
            return IncomingMessage()
        return item

    def send(self, msg: OutgoingMessage) -> None:
        """Post a message to the incoming webhook URL."""
        request = urllib.request.Request(
            self.url,
            data=msg.to_json().encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, context=self._ssl_context) as response:
                response.read()
                status = response.status
        except urllib.error.HTTPError as exc:
            with exc:
                exc.read()
            status = exc.code
        except (OSError, ValueError) as exc:
            raise HookError(f"webhook request failed: {exc}") from exc
        if status != 200:
            raise HookError(f"unexpected status code: {status}")

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