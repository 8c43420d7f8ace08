#!/usr/bin/env python3
from __future__ import annotations

"""Metadata store contract and a JSON-file implementation (one file per content id)."""

import os
import re
import threading
from typing import Dict, Iterator, Optional, Protocol, runtime_checkable

from .errors import StoreError
from .io_utils import atomic_write_json, load_json_or_quarantine
from .logging_utils import Logger
from .models import ContentRecord

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


@runtime_checkable
class MetadataStore(Protocol):
    def get(self, content_id: str) -> Optional[ContentRecord]:
        ...

    def put(self, content_id: str, record: ContentRecord) -> None:
        ...


class JsonMetadataStore:
    def __init__(self, *, base_dir: str, logger: Logger) -> None:
        self.base_dir = os.path.abspath(base_dir)
        self.logger = logger
        self._lock = threading.Lock()
        os.makedirs(self.base_dir, exist_ok=True)

    def _path(self, content_id: str) -> str:
        cid = str(content_id or "")
        if not _SAFE_ID_RE.match(cid) or cid in {".", ".."}:
            raise StoreError(f"Invalid content id: {content_id!r}")
        return os.path.join(self.base_dir, f"{cid}.json")

    def get(self, content_id: str) -> Optional[ContentRecord]:
        path = self._path(content_id)
        with self._lock:
            payload, backup = load_json_or_quarantine(path)
        if backup:
            self.logger.warn("metadata_record_quarantined", content_id=content_id, backup=backup)
        if payload is None:
            return None
        record = ContentRecord.from_dict(payload)
        record.content_id = str(content_id)
        return record

    def put(self, content_id: str, record: ContentRecord) -> None:
        path = self._path(content_id)
        record.content_id = str(content_id)
        try:
            with self._lock:
                atomic_write_json(path, record.to_dict())
        except OSError as exc:
            raise StoreError(f"Metadata write failed for {content_id}: {exc}") from exc

    def delete(self, content_id: str) -> bool:
        path = self._path(content_id)
        with self._lock:
            if not os.path.exists(path):
                return False
            os.remove(path)
            return True

    def iter_records(self) -> Iterator[ContentRecord]:
        for name in sorted(os.listdir(self.base_dir)):
            if not name.endswith(".json") or ".corrupt." in name:
                continue
            record = self.get(name[: -len(".json")])
            if record is not None:
                yield record

    def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in self.iter_records():
            counts[record.conversion_status] = counts.get(record.conversion_status, 0) + 1
        return counts
