#!/usr/bin/env python3
from __future__ import annotations

"""I/O helpers shared by stores and entrypoints."""

import json
import os
import time
from typing import Any, Callable, Dict, Optional, Tuple


def read_text_file_with_fallback(
    path: str,
    *,
    on_fallback: Optional[Callable[[str], None]] = None,
) -> Tuple[str, str]:
    """Read text file trying a safe sequence of fallback encodings.

    Returns `(content, encoding_used)`.
    """
    encodings = ["utf-8", "utf-8-sig", "cp1252", "latin-1"]
    last_exc: Exception | None = None
    for enc in encodings:
        try:
            with open(path, "r", encoding=enc) as f:
                data = f.read()
            if enc != "utf-8" and on_fallback is not None:
                on_fallback(enc)
            return data, enc
        except UnicodeDecodeError as exc:
            last_exc = exc
            continue
    raise RuntimeError(f"Failed to decode input file with supported encodings: {last_exc}")


def atomic_write_json(path: str, payload: Dict[str, Any]) -> None:
    """Write JSON atomically to avoid partial record files."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, sort_keys=True)
        f.write("\n")
    os.replace(tmp, path)


def load_json_or_quarantine(path: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """Load a JSON object; move unreadable files aside.

    Returns `(payload, backup_path)` where `backup_path` is set only when the
    file was corrupt and got quarantined.
    """
    if not os.path.exists(path):
        return None, ""
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        if not isinstance(payload, dict):
            raise ValueError("JSON payload is not an object")
        return payload, ""
    except (OSError, ValueError) as exc:
        backup = f"{path}.corrupt.{int(time.time())}.json"
        try:
            os.replace(path, backup)
        except OSError:
            backup = ""
        if not backup:
            raise RuntimeError(f"Unreadable JSON file could not be quarantined: {path}: {exc}") from exc
        return None, backup
