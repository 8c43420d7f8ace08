#!/usr/bin/env python3
from __future__ import annotations

"""Object store contract plus a filesystem-backed implementation.

The filesystem store publishes objects under `base_url`, which lets the
segment fetcher resolve its own URLs back to local files without a network
round trip.
"""

import os
import posixpath
import shutil
import tempfile
import urllib.parse
import urllib.request
from typing import Iterable, Optional, Protocol, runtime_checkable

from .errors import StoreError


@runtime_checkable
class ObjectStore(Protocol):
    """Contract for durable storage of audio objects behind public URLs."""

    def upload(self, local_path: str, remote_key: str) -> str:
        ...

    def exists(self, remote_key: str) -> bool:
        ...

    def download(self, url: str) -> bytes:
        ...

    def public_url(self, remote_key: str) -> str:
        ...

    def local_path_for_url(self, url: str) -> Optional[str]:
        ...


def _clean_key(remote_key: str) -> str:
    key = posixpath.normpath("/" + str(remote_key or "").replace("\\", "/")).lstrip("/")
    if not key or key == "." or key.startswith(".."):
        raise StoreError(f"Invalid object key: {remote_key!r}")
    return key


class LocalObjectStore:
    def __init__(
        self,
        *,
        root_dir: str,
        base_url: str,
        local_hosts: Iterable[str] = ("localhost", "127.0.0.1"),
        download_timeout_seconds: int = 60,
    ) -> None:
        self.root_dir = os.path.abspath(root_dir)
        self.base_url = str(base_url or "").rstrip("/")
        parsed = urllib.parse.urlparse(self.base_url)
        self._base_host = (parsed.hostname or "").lower()
        self._base_path = parsed.path.rstrip("/")
        hosts = {str(h).strip().lower() for h in local_hosts if str(h).strip()}
        if self._base_host:
            hosts.add(self._base_host)
        self.local_hosts = frozenset(hosts)
        self.download_timeout_seconds = int(download_timeout_seconds)
        os.makedirs(self.root_dir, exist_ok=True)

    def path_for_key(self, remote_key: str) -> str:
        return os.path.join(self.root_dir, *_clean_key(remote_key).split("/"))

    def public_url(self, remote_key: str) -> str:
        key = _clean_key(remote_key)
        return f"{self.base_url}/{urllib.parse.quote(key)}"

    def upload(self, local_path: str, remote_key: str) -> str:
        """Copy `local_path` into the store atomically and return its public URL."""
        target = self.path_for_key(remote_key)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".upload_", dir=os.path.dirname(target))
        os.close(fd)
        try:
            shutil.copyfile(local_path, tmp_path)
            os.replace(tmp_path, target)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StoreError(f"Upload failed for key={remote_key}: {exc}") from exc
        return self.public_url(remote_key)

    def exists(self, remote_key: str) -> bool:
        try:
            return os.path.isfile(self.path_for_key(remote_key))
        except StoreError:
            return False

    def delete(self, remote_key: str) -> bool:
        path = self.path_for_key(remote_key)
        if not os.path.isfile(path):
            return False
        os.remove(path)
        return True

    def local_path_for_url(self, url: str) -> Optional[str]:
        """Map one of this store's public URLs to its backing file path, if any."""
        parsed = urllib.parse.urlparse(str(url or ""))
        host = (parsed.hostname or "").lower()
        if not host or host not in self.local_hosts:
            return None
        path = urllib.parse.unquote(parsed.path)
        prefix = self._base_path + "/"
        if not path.startswith(prefix):
            return None
        try:
            return self.path_for_key(path[len(prefix) :])
        except StoreError:
            return None

    def download(self, url: str) -> bytes:
        local = self.local_path_for_url(url)
        try:
            if local is not None and os.path.isfile(local):
                with open(local, "rb") as f:
                    return f.read()
            with urllib.request.urlopen(str(url), timeout=self.download_timeout_seconds) as resp:
                return resp.read()
        except OSError as exc:
            raise StoreError(f"Download failed for {url}: {exc}") from exc
