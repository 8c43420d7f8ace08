#!/usr/bin/env python3
from __future__ import annotations

import json
import random
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, runtime_checkable

from .config import SynthesisConfig
from .errors import ProviderError, classify_fetch_exception
from .logging_utils import Logger


CONTENT_TYPE_EXTENSION_MAP = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/wave": "wav",
    "audio/x-wav": "wav",
    "audio/ogg": "ogg",
    "audio/flac": "flac",
}


def normalize_file_extension(
    file_extension: str = "",
    *,
    content_type: str = "",
    fallback: str = "mp3",
) -> str:
    ext = str(file_extension or "").strip().lower().lstrip(".")
    if ext and re.match(r"^[a-z0-9]+$", ext):
        return ext
    normalized_content_type = str(content_type or "").split(";", 1)[0].strip().lower()
    mapped = CONTENT_TYPE_EXTENSION_MAP.get(normalized_content_type)
    if mapped:
        return mapped
    fb = str(fallback or "mp3").strip().lower().lstrip(".")
    if fb and re.match(r"^[a-z0-9]+$", fb):
        return fb
    return "mp3"


def _extract_url_extension(url: str) -> str:
    path = urllib.parse.urlparse(str(url or "")).path
    if "." not in path.rsplit("/", 1)[-1]:
        return ""
    return str(path.rsplit(".", 1)[-1]).strip().lower()


def _is_retriable_http(code: int) -> bool:
    return int(code) in {408, 409, 429, 500, 502, 503, 504}


def _redact_sensitive_text(text: str, *, api_key: str) -> str:
    out = str(text or "")
    if api_key:
        out = out.replace(api_key, "***")
    return out


@dataclass(frozen=True)
class TTSAudioResult:
    audio_bytes: bytes
    content_type: str
    file_extension: str
    provider: str
    source_url: str = ""


@runtime_checkable
class TTSProvider(Protocol):
    """Provider contract for TTS adapters.

    `synthesize` raises `ProviderError` on any failure; callers decide
    whether a partial run can be resumed.
    """

    provider_name: str

    def synthesize(self, text: str, *, voice_id: str, style_id: str, output_format: str) -> TTSAudioResult:
        ...


class HttpTTSProvider:
    """JSON-over-HTTP provider: POST text, receive an `audioFile` URL, download it."""

    provider_name = "http"

    def __init__(
        self,
        *,
        config: SynthesisConfig,
        logger: Logger,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        if not config.base_url:
            raise ValueError("TTS_BASE_URL is required for the HTTP TTS provider")
        self.config = config
        self.logger = logger
        self._sleep = sleep_fn
        self._state_lock = threading.Lock()
        self._requests_made = 0
        self._retries_total = 0

    @property
    def requests_made(self) -> int:
        with self._state_lock:
            return self._requests_made

    @property
    def retries_total(self) -> int:
        with self._state_lock:
            return self._retries_total

    def _sleep_backoff(self, attempt: int, *, retry_is_5xx: bool) -> None:
        backoff_s = min(
            self.config.backoff_max_ms / 1000.0,
            (self.config.backoff_base_ms / 1000.0) * (2 ** max(0, int(attempt) - 1)),
        )
        if retry_is_5xx:
            backoff_s = min(self.config.backoff_max_ms / 1000.0, backoff_s * 1.6)
        backoff_s += random.uniform(0.0, 0.2)
        with self._state_lock:
            self._retries_total += 1
        self._sleep(backoff_s)

    def _request_with_retry(self, request: urllib.request.Request, *, stage: str) -> Tuple[bytes, str]:
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.config.retries + 1):
            retry_is_5xx = False
            started = time.time()
            with self._state_lock:
                self._requests_made += 1
            try:
                with urllib.request.urlopen(request, timeout=self.config.timeout_seconds) as resp:
                    body = resp.read()
                    content_type = str(resp.headers.get("Content-Type", "") or "").split(";", 1)[0].strip()
                self.logger.info(
                    "tts_http_ok",
                    stage=stage,
                    attempt=attempt,
                    bytes=len(body),
                    elapsed_ms=int((time.time() - started) * 1000),
                )
                return body, content_type
            except urllib.error.HTTPError as exc:
                code = int(getattr(exc, "code", 0) or 0)
                retry_is_5xx = 500 <= code <= 599
                retriable = _is_retriable_http(code)
                self.logger.warn("tts_http_error", stage=stage, attempt=attempt, code=code, retriable=retriable)
                last_exc = exc
                if not retriable or attempt >= self.config.retries:
                    break
            except OSError as exc:
                self.logger.warn(
                    "tts_http_transport_error",
                    stage=stage,
                    attempt=attempt,
                    error=_redact_sensitive_text(str(exc), api_key=self.config.api_key),
                )
                last_exc = exc
                if attempt >= self.config.retries:
                    break
            self._sleep_backoff(attempt, retry_is_5xx=retry_is_5xx)
        safe_error = _redact_sensitive_text(str(last_exc), api_key=self.config.api_key)
        raise ProviderError(
            f"TTS {stage} failed: {safe_error}",
            error_kind=classify_fetch_exception(last_exc) if last_exc is not None else "",
        ) from last_exc

    def _generate(self, text: str, *, voice_id: str, style_id: str, output_format: str) -> str:
        payload: Dict[str, Any] = {
            "text": text,
            "voiceId": voice_id or self.config.voice_id,
            "format": str(output_format or self.config.output_format).upper(),
        }
        style = style_id or self.config.style_id
        if style:
            payload["style"] = style
        request = urllib.request.Request(
            f"{self.config.base_url}/speech/generate",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "api-key": self.config.api_key},
            method="POST",
        )
        body, _ = self._request_with_retry(request, stage="generate")
        try:
            decoded = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ProviderError("TTS response is not valid JSON") from exc
        audio_url = str(decoded.get("audioFile", "") if isinstance(decoded, dict) else "").strip()
        if not audio_url:
            raise ProviderError("TTS response did not include audioFile")
        return audio_url

    def synthesize(
        self,
        text: str,
        *,
        voice_id: str = "",
        style_id: str = "",
        output_format: str = "",
    ) -> TTSAudioResult:
        if not str(text or "").strip():
            raise ProviderError("Cannot synthesize empty text")
        audio_url = self._generate(text, voice_id=voice_id, style_id=style_id, output_format=output_format)
        audio_bytes, content_type = self._request_with_retry(urllib.request.Request(audio_url), stage="download")
        if not audio_bytes:
            raise ProviderError("TTS audio download returned empty content")
        extension = normalize_file_extension(
            _extract_url_extension(audio_url),
            content_type=content_type,
            fallback=output_format or self.config.output_format,
        )
        if not content_type:
            content_type = "audio/wav" if extension == "wav" else "audio/mpeg"
        return TTSAudioResult(
            audio_bytes=audio_bytes,
            content_type=content_type,
            file_extension=extension,
            provider=self.provider_name,
            source_url=audio_url,
        )
