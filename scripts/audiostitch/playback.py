#!/usr/bin/env python3
from __future__ import annotations

"""Gapless-ish sequential playback of several sources through one player.

The controller keeps exactly one one-shot `ended` listener attached to the
player. When segment i ends it swaps the source to segment i+1 and resumes
without asking for a new user gesture.
"""

import threading
from typing import Callable, List, Optional, Protocol, Sequence

from .logging_utils import Logger

STATE_IDLE = "idle"
STATE_PLAYING = "playing"
STATE_ENDED = "ended"
STATE_CANCELLED = "cancelled"

EVENT_ENDED = "ended"


class Player(Protocol):
    def set_source(self, url: str) -> None:
        ...

    def play(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def once(self, event: str, callback: Callable[[], None]) -> Callable[[], None]:
        """Attach a one-shot listener; returns a function that detaches it."""
        ...


class SequentialPlaybackController:
    def __init__(
        self,
        *,
        player: Player,
        sources: Sequence[str],
        logger: Optional[Logger] = None,
        on_state_change: Optional[Callable[[str, int], None]] = None,
    ) -> None:
        if not sources:
            raise ValueError("At least one playback source is required")
        self.player = player
        self.sources: List[str] = list(sources)
        self.logger = logger
        self.on_state_change = on_state_change
        self.state = STATE_IDLE
        self.current_index = -1
        self.resume_allowed = False
        self._detach: Optional[Callable[[], None]] = None
        self._generation = 0
        self._lock = threading.RLock()

    def _set_state(self, state: str) -> None:
        self.state = state
        if self.logger is not None:
            self.logger.debug("playback_state", state=state, index=self.current_index)
        if self.on_state_change is not None:
            self.on_state_change(state, self.current_index)

    def _start_segment(self, index: int) -> None:
        self.current_index = index
        self.player.set_source(self.sources[index])
        generation = self._generation

        def _on_ended() -> None:
            self._handle_ended(generation, index)

        self._detach = self.player.once(EVENT_ENDED, _on_ended)
        self.player.play()
        self._set_state(STATE_PLAYING)

    def start(self) -> None:
        """Begin playback from segment 0; the initial call carries the user gesture."""
        with self._lock:
            if self.state != STATE_IDLE:
                raise RuntimeError(f"Cannot start playback from state={self.state}")
            self.resume_allowed = True
            self._start_segment(0)

    def _handle_ended(self, generation: int, index: int) -> None:
        with self._lock:
            # Late signals from a cancelled run or an earlier segment are ignored.
            if generation != self._generation or self.state != STATE_PLAYING or index != self.current_index:
                return
            self._detach = None
            next_index = index + 1
            if next_index < len(self.sources) and self.resume_allowed:
                self._start_segment(next_index)
                return
            self._set_state(STATE_ENDED)

    def cancel(self) -> None:
        with self._lock:
            if self.state in (STATE_ENDED, STATE_CANCELLED):
                return
            self._generation += 1
            if self._detach is not None:
                self._detach()
                self._detach = None
            self.player.stop()
            self._set_state(STATE_CANCELLED)
