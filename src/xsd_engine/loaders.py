"""Loader capabilities used by the resolver to fetch schema documents.

A loader is anything with a ``fetch(location, expected_namespace) -> bytes``
method that raises :class:`~xsd_engine.exceptions.LoaderNotFound` when the
location cannot be obtained. Retrieval policy (caching proxies, sandboxes,
catalogs) belongs to the caller; the loaders here cover the common cases.

Example:
    from xsd_engine.loaders import MappingLoader
    loader = MappingLoader({"main.xsd": SCHEMA_TEXT})
    data = loader.fetch("main.xsd", None)
"""

from __future__ import annotations

import logging
import os
import posixpath
import urllib.error
import urllib.request
from pathlib import Path
from typing import Mapping, Optional, Protocol, Union
from urllib.parse import urljoin, urlparse

from .exceptions import LoaderNotFound

logger = logging.getLogger(__name__)


class SchemaLoader(Protocol):
    def fetch(self, location: str, expected_namespace: Optional[str]) -> bytes:
        ...


def normalize_location(hint: str, base: Optional[str] = None) -> str:
    """Resolve ``hint`` against the location of the referring document.

    URLs are joined with :func:`urllib.parse.urljoin`; plain paths are joined
    and normalized so ``a/../b.xsd`` and ``b.xsd`` share one visited-set key.
    """
    hint = hint.strip()
    if urlparse(hint).scheme in ("http", "https", "file"):
        return hint
    if base and urlparse(base).scheme in ("http", "https", "file"):
        return urljoin(base, hint)
    if base and not os.path.isabs(hint):
        hint = posixpath.join(posixpath.dirname(base.replace(os.sep, "/")), hint)
    return posixpath.normpath(hint.replace(os.sep, "/"))


class MappingLoader:
    """Serve documents from an in-memory ``{location: text-or-bytes}`` mapping."""

    def __init__(self, documents: Mapping[str, Union[str, bytes]]) -> None:
        self.documents = {
            normalize_location(key): value for key, value in documents.items()
        }

    def fetch(self, location: str, expected_namespace: Optional[str]) -> bytes:
        data = self.documents.get(normalize_location(location))
        if data is None:
            raise LoaderNotFound(f"No document registered for '{location}'", location)
        if isinstance(data, str):
            return data.encode("utf-8")
        return data


class FileSystemLoader:
    """Read documents from disk, relative paths resolved against ``base_dir``."""

    def __init__(self, base_dir: Optional[Union[str, Path]] = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else None

    def fetch(self, location: str, expected_namespace: Optional[str]) -> bytes:
        parsed = urlparse(location)
        if parsed.scheme == "file":
            path = Path(urllib.request.url2pathname(parsed.path))
        else:
            path = Path(location)
            if self.base_dir is not None and not path.is_absolute():
                path = self.base_dir / path
        if not path.is_file():
            raise LoaderNotFound(f"Schema file not found: {path}", location)
        logger.debug(f"Reading schema document {path}")
        return path.read_bytes()


class UrlLoader:
    """Fetch ``http(s)`` locations with :mod:`urllib`.

    Args:
        timeout: Socket timeout in seconds for each request.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout

    def fetch(self, location: str, expected_namespace: Optional[str]) -> bytes:
        logger.info(f"Downloading schema document from {location}")
        request = urllib.request.Request(
            location, headers={"User-Agent": "xsd-engine"}
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.read()
        except (urllib.error.URLError, OSError) as exc:
            logger.error(f"Failed to download schema from {location}: {exc}")
            raise LoaderNotFound(f"Could not download '{location}': {exc}", location) from exc


class DefaultLoader:
    """Dispatch to :class:`UrlLoader` for URLs and :class:`FileSystemLoader` otherwise."""

    def __init__(
        self, base_dir: Optional[Union[str, Path]] = None, timeout: float = 30.0
    ) -> None:
        self.files = FileSystemLoader(base_dir)
        self.urls = UrlLoader(timeout)

    def fetch(self, location: str, expected_namespace: Optional[str]) -> bytes:
        if urlparse(location).scheme in ("http", "https"):
            return self.urls.fetch(location, expected_namespace)
        return self.files.fetch(location, expected_namespace)


def default_loader() -> DefaultLoader:
    return DefaultLoader()
