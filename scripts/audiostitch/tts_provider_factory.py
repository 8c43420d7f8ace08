#!/usr/bin/env python3
from __future__ import annotations

from .config import SynthesisConfig
from .logging_utils import Logger
from .tts_provider import HttpTTSProvider, TTSProvider


def create_tts_provider(*, config: SynthesisConfig, logger: Logger) -> TTSProvider:
    provider = str(config.provider or "http").strip().lower()
    if provider != "http":
        raise RuntimeError("Unsupported TTS_PROVIDER value. Use http.")
    if not config.base_url:
        raise RuntimeError("TTS_BASE_URL must be set to use the http TTS provider.")
    if not config.api_key:
        logger.warn("tts_api_key_missing", provider=provider)
    return HttpTTSProvider(config=config, logger=logger)
