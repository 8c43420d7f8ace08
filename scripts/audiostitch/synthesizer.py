#!/usr/bin/env python3
from __future__ import annotations

"""Text -> chunk plan -> provider calls -> stored chunk URLs.

Every chunk is stored under a key derived from its content hash, so a rerun
after a provider failure reuses chunks that were already synthesized instead
of paying for them again.
"""

import hashlib
import os
import tempfile
import time
from dataclasses import dataclass
from typing import List, Optional

from .config import SynthesisConfig
from .errors import ProviderError, StitchError
from .logging_utils import Logger
from .models import AudioRef, ChunkedAudio, SingleAudio
from .object_store import ObjectStore
from .text_chunker import TextChunk, plan_chunks
from .tts_provider import TTSProvider


def chunk_content_hash(text: str, *, voice_id: str, style_id: str, output_format: str) -> str:
    payload = "\x1f".join([text, voice_id, style_id, output_format])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def chunk_object_key(content_id: str, chunk: TextChunk, digest: str, output_format: str) -> str:
    return f"{content_id}/chunk-{chunk.chunk_number:03d}-{digest[:16]}.{output_format}"


@dataclass(frozen=True)
class NarrationResult:
    content_id: str
    audio: AudioRef
    chunk_urls: List[str]
    chunks_total: int
    chunks_cached: int
    preroll_included: bool


class NarrationSynthesizer:
    def __init__(
        self,
        *,
        provider: TTSProvider,
        store: ObjectStore,
        config: SynthesisConfig,
        logger: Logger,
    ) -> None:
        self.provider = provider
        self.store = store
        self.config = config
        self.logger = logger

    def _synthesize_chunk(self, content_id: str, chunk: TextChunk, *, voice_id: str, style_id: str) -> tuple[str, bool]:
        fmt = self.config.output_format
        digest = chunk_content_hash(chunk.text, voice_id=voice_id, style_id=style_id, output_format=fmt)
        key = chunk_object_key(content_id, chunk, digest, fmt)
        if self.store.exists(key):
            self.logger.info("synth_chunk_cached", chunk=chunk.chunk_number, key=key)
            return self.store.public_url(key), True

        started = time.time()
        try:
            result = self.provider.synthesize(chunk.text, voice_id=voice_id, style_id=style_id, output_format=fmt)
        except ProviderError as exc:
            exc.chunk_index = chunk.chunk_number - 1
            exc.segment_index = exc.chunk_index
            raise
        if result.file_extension and result.file_extension != fmt:
            raise ProviderError(
                f"Provider returned {result.file_extension} audio, expected {fmt}",
                chunk_index=chunk.chunk_number - 1,
            )
        fd, tmp_path = tempfile.mkstemp(prefix="audiostitch_chunk_", suffix=f".{fmt}")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(result.audio_bytes)
            url = self.store.upload(tmp_path, key)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        self.logger.info(
            "synth_chunk_ok",
            chunk=chunk.chunk_number,
            total=chunk.total_chunks,
            chars=chunk.length,
            bytes=len(result.audio_bytes),
            elapsed_ms=int((time.time() - started) * 1000),
        )
        return url, False

    def synthesize(
        self,
        content_id: str,
        text: str,
        *,
        voice_id: Optional[str] = None,
        style_id: Optional[str] = None,
        include_preroll: bool = True,
    ) -> NarrationResult:
        """Synthesize all chunks of `text`; any provider failure aborts the run."""
        voice = voice_id if voice_id is not None else self.config.voice_id
        style = style_id if style_id is not None else self.config.style_id
        chunks = plan_chunks(text, self.config.max_chunk_chars, logger=self.logger)
        if not chunks:
            raise ProviderError("No text to synthesize after normalization")

        urls: List[str] = []
        cached = 0
        with self.logger.timed("synthesize", content_id=content_id, chunks=len(chunks)) as stage:
            for chunk in chunks:
                try:
                    url, was_cached = self._synthesize_chunk(content_id, chunk, voice_id=voice, style_id=style)
                except StitchError as exc:
                    self.logger.error(
                        "synth_chunk_failed",
                        chunk=chunk.chunk_number,
                        kind=exc.error_kind,
                        error=str(exc),
                    )
                    raise
                urls.append(url)
                cached += int(was_cached)
            stage["chunks_cached"] = cached

        preroll = bool(include_preroll and self.config.preroll_url)
        all_urls = ([self.config.preroll_url] if preroll else []) + urls
        audio: AudioRef
        if len(all_urls) == 1:
            audio = SingleAudio(url=all_urls[0])
        else:
            audio = ChunkedAudio(chunk_urls=tuple(all_urls))
        return NarrationResult(
            content_id=content_id,
            audio=audio,
            chunk_urls=urls,
            chunks_total=len(chunks),
            chunks_cached=cached,
            preroll_included=preroll,
        )
