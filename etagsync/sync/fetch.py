"""HTTP manifest fetcher."""

from __future__ import annotations

import json
import logging
import socket
from typing import Any, Dict, List, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .collaborators import ManifestFetcher
from .errors import FetchError
from .manifest import FileEntry, ManifestSnapshot

logger = logging.getLogger("etagsync.sync.fetch")

# Field names used by the manifest server, mapped to FileEntry attributes.
_WIRE_ALIASES: Dict[str, tuple] = {
    "path": ("path", "filename"),
    "content_hash": ("content_hash", "md5hash", "hash"),
    "size": ("size", "contentLength"),
    "content_type": ("content_type", "contentType"),
    "download_url": ("download_url", "downloadUrl"),
}


class HttpManifestFetcher(ManifestFetcher):
    """Fetches a manifest document for each configured source over HTTP."""

    def __init__(self, urls: Mapping[str, str], timeout: float = 30.0):
        self.urls = dict(urls)
        self.timeout = timeout

    def fetch_manifest(self, source_id: str) -> ManifestSnapshot:
        url = self.urls.get(source_id)
        if not url:
            raise FetchError(f"No manifest URL configured for source '{source_id}'", source_id)

        req = Request(url, headers={"Accept": "application/json"}, method="GET")
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                header_token = resp.headers.get("ETag")
                body = json.loads(resp.read().decode("utf-8"))
        except HTTPError as e:
            raise FetchError(f"HTTP error: {e.code} {e.reason}", source_id) from e
        except URLError as e:
            raise FetchError(f"Connection error: {e.reason}", source_id) from e
        except socket.timeout as e:
            raise FetchError(f"Timed out after {self.timeout}s fetching {url}", source_id) from e
        except (ValueError, UnicodeDecodeError) as e:
            raise FetchError(f"Invalid manifest document from {url}: {e}", source_id) from e

        snapshot = parse_manifest(body, header_token=header_token, source_id=source_id)
        logger.info(
            "Fetched manifest for %s: token=%s entries=%d",
            source_id,
            snapshot.token,
            len(snapshot.entries),
        )
        return snapshot


def parse_manifest(
    body: Any,
    header_token: Optional[str] = None,
    source_id: Optional[str] = None,
) -> ManifestSnapshot:
    """Validate a decoded manifest document and build a snapshot."""
    if not isinstance(body, dict):
        raise FetchError("Manifest document must be a JSON object", source_id)

    raw_token = header_token or body.get("eTag") or body.get("etag") or body.get("token")
    token = normalize_token(raw_token) if raw_token else ""
    if not token:
        raise FetchError("Manifest has no version token", source_id)

    raw_files = body.get("files", body.get("entries", []))
    if not isinstance(raw_files, list):
        raise FetchError("Manifest 'files' must be a list", source_id)

    entries: List[FileEntry] = []
    seen = set()
    for idx, raw in enumerate(raw_files):
        entry = _parse_entry(raw, idx, source_id)
        if entry.path in seen:
            raise FetchError(f"Duplicate path in manifest: {entry.path}", source_id)
        seen.add(entry.path)
        entries.append(entry)

    return ManifestSnapshot(token=token, entries=tuple(entries))


def normalize_token(raw: Any) -> str:
    """Reduce an ETag value such as ``W/"abc"`` or ``"abc"`` to ``abc``."""
    token = str(raw).strip()
    if token.startswith("W/"):
        token = token[2:]
    if len(token) >= 2 and token[0] == token[-1] == '"':
        token = token[1:-1]
    return token


def _parse_entry(raw: Any, idx: int, source_id: Optional[str]) -> FileEntry:
    if not isinstance(raw, dict):
        raise FetchError(f"Manifest entry #{idx} is not an object", source_id)

    values = {attr: _first(raw, names) for attr, names in _WIRE_ALIASES.items()}
    if not values["path"]:
        raise FetchError(f"Manifest entry #{idx} has no path", source_id)
    if not values["content_hash"]:
        raise FetchError(f"Manifest entry '{values['path']}' has no content hash", source_id)

    size = values["size"]
    if size is not None:
        try:
            size = int(size)
        except (TypeError, ValueError) as e:
            raise FetchError(f"Manifest entry '{values['path']}' has invalid size", source_id) from e

    return FileEntry(
        path=str(values["path"]),
        content_hash=str(values["content_hash"]),
        size=size,
        content_type=values["content_type"],
        download_url=values["download_url"],
    )


def _first(raw: Dict[str, Any], names: tuple) -> Any:
    for name in names:
        if raw.get(name) is not None:
            return raw[name]
    return None


__all__ = ["HttpManifestFetcher", "normalize_token", "parse_manifest"]
