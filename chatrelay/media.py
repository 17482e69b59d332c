"""Placing relayed files on a media server or in a local directory."""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import re
import urllib.error
import urllib.request
from pathlib import Path

from chatrelay.config import FileInfo, GeneralSettings, Message

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^a-zA-Z0-9]+")


def short_sha1(data: bytes | None) -> str:
    """First eight hex digits of the SHA-1 of the data."""
    return hashlib.sha1(data or b"").hexdigest()[:8]  # noqa: S324


def _split_ext(name: str) -> tuple[str, str]:
    slash = name.rfind("/")
    dot = name.rfind(".")
    if dot > slash:
        return name[:dot], name[dot:]
    return name, ""


def sanitize_filename(name: str) -> str:
    """Replace every run of non-alphanumeric characters before the extension with "_"."""
    base, ext = _split_ext(name)
    return _UNSAFE.sub("_", base) + ext


def upload_file(upload_base: str, info: FileInfo, timeout: float = 5.0) -> str:
    """PUT the file to the media server; return the URL it was sent to."""
    url = f"{upload_base}/{short_sha1(info.data)}/{info.name}"
    logger.debug("mediaserver upload url: %s", url)
    request = urllib.request.Request(
        url,
        data=info.data or b"",
        method="PUT",
        headers={"Content-Type": "binary/octet-stream"},
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            response.read()
    except urllib.error.HTTPError:
        pass
    except (OSError, ValueError) as exc:
        raise OSError(f"mediaserver upload failed, could not do request: {exc}") from exc
    return url


def store_file(directory: str | Path, info: FileInfo) -> Path:
    """Write the file under directory/<sha>/<name>; return its path."""
    target_dir = Path(directory) / short_sha1(info.data)
    try:
        target_dir.mkdir(exist_ok=True)
    except OSError as exc:
        raise OSError(f"mediaserver path failed, could not mkdir: {exc}") from exc
    path = target_dir / info.name
    logger.debug("mediaserver path placing file: %s", path)
    try:
        path.write_bytes(info.data or b"")
    except OSError as exc:
        raise OSError(f"mediaserver path failed, could not writefile: {exc}") from exc
    return path


def handle_files(msg: Message, general: GeneralSettings) -> None:
    """Upload or store every file of the message and record its download URL and SHA."""
    if not msg.extra or (not general.media_server_upload and not general.media_download_path):
        return
    files = msg.extra.get("file")
    if not files:
        return
    for index, original in enumerate(files):
        if not isinstance(original, FileInfo):
            continue
        info = dataclasses.replace(original, name=sanitize_filename(original.name))
        sha = short_sha1(info.data)
        try:
            if general.media_server_upload:
                upload_file(general.media_server_upload, info)
            else:
                store_file(general.media_download_path, info)
        except OSError as exc:
            logger.error("%s", exc)
            continue
        download_url = f"{general.media_server_download}/{sha}/{info.name}"
        logger.debug("mediaserver download URL = %s", download_url)
        files[index] = dataclasses.replace(original, url=download_url, sha=sha)