#!/usr/bin/env python3
from __future__ import annotations

"""Structured stderr logger with job ids, stage timing and heartbeats.

Lines look like::

    [2024-05-01 12:00:00] [INFO] [job:3f9c2a7d10] stitch_fetch_completed {"elapsed_ms": 812, "segments": 4}

Fields bound with `Logger.bind` (cache key, content id) are merged into every
line so a single grep follows one stitch job end to end.
"""

import json
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, Optional, TextIO

from .config import LoggingConfig


LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "WARNING": 30, "ERROR": 40}


def format_log_line(
    *,
    level: str,
    job_id: str,
    message: str,
    fields: Dict[str, object],
    event_id: str = "",
    now: Optional[float] = None,
) -> str:
    stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now))
    parts = [f"[{stamp}]", f"[{level}]", f"[job:{job_id}]"]
    if event_id:
        parts.append(f"[event:{event_id}]")
    parts.append(message)
    if fields:
        parts.append(json.dumps(fields, ensure_ascii=True, sort_keys=True, default=str))
    return " ".join(parts)


@dataclass
class Logger:
    """Structured logger shared by the fetch, stitch, synthesize and serve layers."""

    config: LoggingConfig
    job_id: str
    context: Dict[str, object] = field(default_factory=dict)
    stream: Optional[TextIO] = None

    @staticmethod
    def create(config: LoggingConfig, job_id: str = "", stream: Optional[TextIO] = None) -> "Logger":
        return Logger(config=config, job_id=job_id or uuid.uuid4().hex[:10], stream=stream)

    @staticmethod
    def quiet() -> "Logger":
        """Errors only; used by library callers and tests."""
        return Logger.create(
            LoggingConfig(level="ERROR", heartbeat_seconds=1, debug_events=False, include_event_ids=False)
        )

    def bind(self, job_id: str = "", **fields: object) -> "Logger":
        """Child logger that stamps `fields` on every line."""
        return Logger(
            config=self.config,
            job_id=job_id or self.job_id,
            context={**self.context, **fields},
            stream=self.stream,
        )

    def enabled_for(self, level: str) -> bool:
        return LEVELS.get(level, 20) >= LEVELS.get(self.config.level, 20)

    def _emit(self, level: str, message: str, fields: Dict[str, object]) -> None:
        if not self.enabled_for(level):
            return
        line = format_log_line(
            level=level,
            job_id=self.job_id,
            message=message,
            fields={**self.context, **fields},
            event_id=uuid.uuid4().hex[:8] if self.config.include_event_ids else "",
        )
        print(line, file=self.stream or sys.stderr, flush=True)

    def debug(self, message: str, **fields: object) -> None:
        # Debug lines are opt-in even when LOG_LEVEL=DEBUG.
        if self.config.debug_events:
            self._emit("DEBUG", message, fields)

    def info(self, message: str, **fields: object) -> None:
        self._emit("INFO", message, fields)

    def warn(self, message: str, **fields: object) -> None:
        self._emit("WARN", message, fields)

    def error(self, message: str, **fields: object) -> None:
        self._emit("ERROR", message, fields)

    @contextmanager
    def timed(self, stage: str, **fields: object) -> Iterator[Dict[str, object]]:
        """Bracket a stage with `<stage>_started` and `<stage>_completed` / `<stage>_failed`.

        The yielded dict is merged into the closing line, so callers can
        report results (bytes written, chunk counts) measured inside the block.
        """
        extra: Dict[str, object] = {}
        started = time.monotonic()
        self.info(f"{stage}_started", **fields)
        try:
            yield extra
        except BaseException as exc:
            closing = {**fields, **extra, "elapsed_ms": int((time.monotonic() - started) * 1000)}
            closing["error"] = type(exc).__name__
            self.warn(f"{stage}_failed", **closing)
            raise
        closing = {**fields, **extra, "elapsed_ms": int((time.monotonic() - started) * 1000)}
        self.info(f"{stage}_completed", **closing)

    @contextmanager
    def heartbeat(
        self,
        label: str,
        status_fn: Optional[Callable[[], Dict[str, object]]] = None,
    ) -> Iterator[None]:
        """Emit `heartbeat` lines every `heartbeat_seconds` while the block runs."""
        stop = threading.Event()
        interval = max(1, int(self.config.heartbeat_seconds))
        started = time.monotonic()

        def beat() -> None:
            while not stop.wait(interval):
                status: Dict[str, object] = {}
                if status_fn is not None:
                    try:
                        status = dict(status_fn())
                    except Exception as exc:  # pragma: no cover - status is best effort
                        status = {"status_error": str(exc)}
                status.update(label=label, running_s=int(time.monotonic() - started))
                self.info("heartbeat", **status)

        worker = threading.Thread(target=beat, name=f"heartbeat-{label}", daemon=True)
        worker.start()
        try:
            yield
        finally:
            stop.set()
            worker.join(timeout=interval)
