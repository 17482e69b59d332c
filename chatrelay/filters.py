"""Rules deciding which messages are relayed and how nicks are extracted."""

from __future__ import annotations

import logging
import re
from typing import Any

from chatrelay.bridge import Bridge
from chatrelay.config import Event, FileInfo, Message

API_PROTOCOL = "api"

logger = logging.getLogger(__name__)


def extract_nick(search: str, extract: str, username: str, text: str) -> tuple[str, str]:
    """Take the nick out of the text when the username matches `search`.

    Raises re.error when either pattern does not compile.
    """
    if re.search(search, username) is None:
        return username, text
    match = re.compile(extract).search(text)
    if match is not None and len(match.groups()) == 1:
        nick = match.group(1) or ""
        return nick, text.replace(match.group(0), "", 1)
    return username, text


def ignore_text(text: str, patterns: list[str]) -> bool:
    """Return True when the text matches any of the patterns."""
    for pattern in patterns:
        if not pattern:
            continue
        try:
            compiled = re.compile(pattern)
        except re.error:
            logger.error("incorrect regexp %s", pattern)
            continue
        if compiled.search(text):
            logger.debug("matching %s. ignoring %s", pattern, text)
            return True
    return False


def ignore_text_empty(msg: Message) -> bool:
    """Return True when a message without text carries nothing else worth relaying."""
    if msg.text:
        return False
    if msg.event == Event.USER_TYPING:
        return False
    extra = msg.extra
    if extra and (
        extra.get("attachments") is not None
        or extra.get("file")
        or extra.get(Event.FILE_FAILURE_SIZE)
    ):
        return False
    logger.debug("ignoring empty message %r from %s", msg, msg.account)
    return True


def ignore_files_comment(extra: dict[str, list[Any]] | None, patterns: list[str]) -> bool:
    """Return True when a file's comment matches any of the patterns."""
    if not extra:
        return False
    return any(
        isinstance(item, FileInfo) and ignore_text(item.comment, patterns)
        for item in extra.get("file", [])
    )


def ignore_event(event: str, dest: Bridge) -> bool:
    """Return True when the event is not to be relayed to the destination bridge."""
    if event == Event.AVATAR_DOWNLOAD:
        return dest.protocol not in ("mattermost", "telegram", "xmpp")
    if event == Event.JOIN_LEAVE:
        return not dest.get_bool("ShowJoinPart")
    if event == Event.TOPIC_CHANGE:
        return not dest.get_bool("ShowTopicChange") and not dest.get_bool("SyncTopic")
    return False


def channel_id(msg: Message) -> str:
    return msg.channel + msg.account


def protocol_of(msg: Message) -> str:
    return msg.account.split(".")[0]


def is_api(account: str) -> bool:
    return account.startswith("api.")