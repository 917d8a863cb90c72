"""Resolution of buffer and image URIs to bytes.

A URI is one of: a base64 ``data:`` URI, an absolute http(s) URL, or a path
relative to the directory (or URL directory) the document was loaded from.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol
from urllib.parse import unquote, urljoin, urlparse

import httpx

from glimport.errors import FetchError, RecordError


class Fetcher(Protocol):
    def fetch(self, url: str, headers: Mapping[str, str]) -> bytes:
        """Return the response body, or raise FetchError."""
        ...


@dataclass
class HttpFetcher:
    """Fetcher backed by httpx. Any non-2xx response is a FetchError; no retries."""

    timeout: float = 30.0
    client: httpx.Client | None = None

    def fetch(self, url: str, headers: Mapping[str, str]) -> bytes:
        try:
            if self.client is not None:
                response = self.client.get(url, headers=dict(headers), follow_redirects=True)
            else:
                response = httpx.get(
                    url, headers=dict(headers), timeout=self.timeout, follow_redirects=True
                )
        except httpx.HTTPError as e:
            raise FetchError(f"Request to {url} failed: {e}") from e
        if not response.is_success:
            raise FetchError(f"Request to {url} failed with HTTP {response.status_code}")
        return response.content


def is_url(value: str) -> bool:
    return urlparse(value).scheme in ("http", "https")


def parse_data_uri(uri: str) -> tuple[str | None, bytes]:
    """Split a ``data:`` URI into (mime type, decoded payload)."""
    header, sep, payload = uri.partition(",")
    if not sep:
        raise RecordError(f"Malformed data URI: {uri[:40]!r}")
    meta = header[len("data:") :].split(";")
    mime_type = meta[0] or None
    if "base64" in meta[1:]:
        try:
            return mime_type, base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise RecordError(f"Invalid base64 payload in data URI: {e}") from e
    return mime_type, unquote(payload).encode("utf-8")


@dataclass
class ResourceResolver:
    """Turns record URIs into bytes relative to ``base``.

    ``base`` is a local directory, a URL ending in ``/``, or None when relative
    paths are not resolved against the document location.
    """

    base: Path | str | None = None
    fetcher: Fetcher | None = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def for_document(
        cls,
        location: str | Path | None,
        *,
        resolve_relative_paths: bool = True,
        fetcher: Fetcher | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> ResourceResolver:
        base: Path | str | None = None
        if location is not None and resolve_relative_paths:
            if isinstance(location, str) and is_url(location):
                base = urljoin(location, ".")
            else:
                base = Path(location).parent
        return cls(base=base, fetcher=fetcher, headers=dict(headers or {}))

    def target(self, uri: str) -> str | Path:
        """Return the URL or local path a non-data URI points at."""
        if is_url(uri):
            return uri
        if isinstance(self.base, str):
            return urljoin(self.base, uri)
        local = Path(unquote(uri))
        if self.base is not None and not local.is_absolute():
            return self.base / local
        return local

    def read(self, uri: str) -> bytes:
        """Resolve ``uri`` to its bytes.

        Raises:
            FetchError: If the file or remote resource cannot be retrieved.
            RecordError: On a malformed data URI.
        """
        if uri.startswith("data:"):
            return parse_data_uri(uri)[1]
        target = self.target(uri)
        if isinstance(target, str):
            if self.fetcher is None:
                raise FetchError(f"No fetcher configured to retrieve {target}")
            return self.fetcher.fetch(target, self.headers)
        try:
            return target.read_bytes()
        except OSError as e:
            raise FetchError(f"Cannot read {target}: {e}") from e
