#!/usr/bin/env python3
from __future__ import annotations

"""Centralized runtime configuration for audiostitch.

This module maps environment variables and optional CLI overrides into typed
dataclasses used by fetch/stitch/synthesis/serving components.
"""

import dataclasses
import hashlib
import json
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


def _env_str(name: str, default: str) -> str:
    """Read string env var with trim + default fallback."""
    v = os.environ.get(name)
    return default if v is None else str(v).strip()


def _env_int(name: str, default: int) -> int:
    """Read integer env var with defensive fallback."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    try:
        return int(str(v).strip())
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    """Read finite float env var with defensive fallback."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    try:
        value = float(str(v).strip())
        if not math.isfinite(value):
            return default
        return value
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    """Read boolean env var from common truthy literals."""
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Read comma separated env var into a tuple of lowercase tokens."""
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return default
    items = [part.strip().lower() for part in v.split(",")]
    return tuple(item for item in items if item)


def _coalesce(value: Any, fallback: Any) -> Any:
    """Return fallback when value is None."""
    return fallback if value is None else value


def _clamp_int(value: int, low: int, high: int) -> int:
    """Clamp integer to inclusive range."""
    return max(low, min(high, value))


SUPPORTED_OUTPUT_FORMATS = ("wav", "mp3")
SUPPORTED_BITS_PER_SAMPLE = (8, 16, 24, 32)


@dataclass(frozen=True)
class LoggingConfig:
    """Logging behavior used by `Logger`."""

    level: str
    heartbeat_seconds: int
    debug_events: bool
    include_event_ids: bool

    @staticmethod
    def from_env() -> "LoggingConfig":
        """Build logging config from environment."""
        return LoggingConfig(
            level=_env_str("LOG_LEVEL", "INFO").upper(),
            heartbeat_seconds=max(1, _env_int("LOG_HEARTBEAT_SECONDS", 15)),
            debug_events=_env_bool("LOG_DEBUG_EVENTS", False),
            include_event_ids=_env_bool("LOG_INCLUDE_EVENT_IDS", True),
        )


@dataclass(frozen=True)
class StitchConfig:
    """Stitching, cache and retention configuration."""

    cache_dir: str
    cache_base_url: str
    min_output_bytes: int
    copy_block_bytes: int
    job_time_budget_seconds: float
    write_id3: bool
    id3_title: str
    id3_artist: str
    default_sample_rate: int
    default_channels: int
    default_bits_per_sample: int
    preroll_prefix: str
    min_free_disk_mb: int
    retention_days: int
    max_cache_mb: int

    @staticmethod
    def from_env(
        *,
        cache_dir: Optional[str] = None,
        cache_base_url: Optional[str] = None,
    ) -> "StitchConfig":
        """Build stitch config from env and optional CLI overrides."""
        bits = _env_int("STITCH_DEFAULT_BITS", 16)
        if bits not in SUPPORTED_BITS_PER_SAMPLE:
            bits = 16
        return StitchConfig(
            cache_dir=str(_coalesce(cache_dir, _env_str("STITCH_CACHE_DIR", "./.audiostitch/cache"))),
            cache_base_url=str(_coalesce(cache_base_url, _env_str("STITCH_CACHE_BASE_URL", ""))).rstrip("/"),
            min_output_bytes=max(0, _env_int("STITCH_MIN_OUTPUT_BYTES", 1000)),
            copy_block_bytes=_clamp_int(_env_int("STITCH_COPY_BLOCK_BYTES", 65536), 4096, 8 * 1024 * 1024),
            job_time_budget_seconds=max(1.0, _env_float("STITCH_JOB_TIME_BUDGET_SECONDS", 300.0)),
            write_id3=_env_bool("STITCH_WRITE_ID3", True),
            id3_title=_env_str("STITCH_ID3_TITLE", "Concatenated Audio"),
            id3_artist=_env_str("STITCH_ID3_ARTIST", "audiostitch"),
            default_sample_rate=_clamp_int(_env_int("STITCH_DEFAULT_SAMPLE_RATE", 44100), 8000, 192000),
            default_channels=_clamp_int(_env_int("STITCH_DEFAULT_CHANNELS", 1), 1, 8),
            default_bits_per_sample=bits,
            preroll_prefix=_env_str("STITCH_PREROLL_PREFIX", "preroll-"),
            min_free_disk_mb=max(0, _env_int("MIN_FREE_DISK_MB", 256)),
            retention_days=max(1, _env_int("STITCH_RETENTION_DAYS", 14)),
            max_cache_mb=max(0, _env_int("STITCH_MAX_CACHE_MB", 2048)),
        )


@dataclass(frozen=True)
class FetchConfig:
    """Segment download behavior."""

    timeout_seconds: int
    retries: int
    backoff_base_ms: int
    backoff_max_ms: int
    parallel: bool
    max_workers: int
    local_hosts: Tuple[str, ...]

    @staticmethod
    def from_env() -> "FetchConfig":
        """Build fetch config from environment."""
        return FetchConfig(
            timeout_seconds=max(1, _env_int("FETCH_TIMEOUT_SECONDS", 60)),
            retries=_clamp_int(_env_int("FETCH_RETRIES", 3), 1, 10),
            backoff_base_ms=max(0, _env_int("FETCH_BACKOFF_BASE_MS", 500)),
            backoff_max_ms=max(0, _env_int("FETCH_BACKOFF_MAX_MS", 8000)),
            parallel=_env_bool("FETCH_PARALLEL", False),
            max_workers=_clamp_int(_env_int("FETCH_MAX_WORKERS", 4), 1, 16),
            local_hosts=_env_csv("FETCH_LOCAL_HOSTS", ("localhost", "127.0.0.1")),
        )


@dataclass(frozen=True)
class StoreConfig:
    """Object/metadata store locations."""

    object_root: str
    object_base_url: str
    metadata_dir: str

    @staticmethod
    def from_env() -> "StoreConfig":
        """Build store config from environment."""
        return StoreConfig(
            object_root=_env_str("OBJECT_STORE_ROOT", "./.audiostitch/objects"),
            object_base_url=_env_str("OBJECT_STORE_BASE_URL", "http://localhost:8000/uploads").rstrip("/"),
            metadata_dir=_env_str("METADATA_STORE_DIR", "./.audiostitch/metadata"),
        )


@dataclass(frozen=True)
class SynthesisConfig:
    """TTS provider and chunking configuration."""

    provider: str
    base_url: str
    api_key: str
    voice_id: str
    style_id: str
    output_format: str
    max_chunk_chars: int
    timeout_seconds: int
    retries: int
    backoff_base_ms: int
    backoff_max_ms: int
    preroll_url: str

    @staticmethod
    def from_env(
        *,
        voice_id: Optional[str] = None,
        style_id: Optional[str] = None,
        output_format: Optional[str] = None,
    ) -> "SynthesisConfig":
        """Build synthesis config from env and optional CLI overrides."""
        fmt = str(_coalesce(output_format, _env_str("TTS_FORMAT", "mp3"))).strip().lower()
        if fmt not in SUPPORTED_OUTPUT_FORMATS:
            fmt = "mp3"
        return SynthesisConfig(
            provider=_env_str("TTS_PROVIDER", "http").lower(),
            base_url=_env_str("TTS_BASE_URL", "").rstrip("/"),
            api_key=_env_str("TTS_API_KEY", ""),
            voice_id=str(_coalesce(voice_id, _env_str("TTS_VOICE_ID", ""))),
            style_id=str(_coalesce(style_id, _env_str("TTS_STYLE_ID", ""))),
            output_format=fmt,
            max_chunk_chars=_clamp_int(_env_int("TTS_MAX_CHUNK_CHARS", 2800), 100, 20000),
            timeout_seconds=max(5, _env_int("TTS_TIMEOUT_SECONDS", 120)),
            retries=_clamp_int(_env_int("TTS_RETRIES", 3), 1, 10),
            backoff_base_ms=max(0, _env_int("TTS_BACKOFF_BASE_MS", 800)),
            backoff_max_ms=max(0, _env_int("TTS_BACKOFF_MAX_MS", 12000)),
            preroll_url=_env_str("TTS_PREROLL_URL", ""),
        )


@dataclass(frozen=True)
class ClientConfig:
    """PCM fallback concatenation settings."""

    decode_timeout_seconds: float
    embed_info: bool
    software: str

    @staticmethod
    def from_env() -> "ClientConfig":
        """Build client-side concatenation config from environment."""
        return ClientConfig(
            decode_timeout_seconds=max(1.0, _env_float("CLIENT_DECODE_TIMEOUT_SECONDS", 30.0)),
            embed_info=_env_bool("CLIENT_EMBED_INFO", True),
            software=_env_str("CLIENT_SOFTWARE_TAG", "audiostitch"),
        )


def fingerprint_dict(value: Dict[str, Any]) -> str:
    """Return stable SHA-256 hash for a dictionary payload."""
    encoded = json.dumps(value, sort_keys=True, ensure_ascii=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def config_fingerprint(
    stitch_cfg: Optional[StitchConfig] = None,
    fetch_cfg: Optional[FetchConfig] = None,
    synthesis_cfg: Optional[SynthesisConfig] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """Build a composite fingerprint across config sections."""
    payload: Dict[str, Any] = {}
    if stitch_cfg is not None:
        payload["stitch"] = dataclasses.asdict(stitch_cfg)
    if fetch_cfg is not None:
        payload["fetch"] = dataclasses.asdict(fetch_cfg)
    if synthesis_cfg is not None:
        synth = dataclasses.asdict(synthesis_cfg)
        # Never leak credentials into logged fingerprints.
        synth["api_key"] = bool(synth.get("api_key"))
        payload["synthesis"] = synth
    if extra:
        payload["extra"] = extra
    return fingerprint_dict(payload)
