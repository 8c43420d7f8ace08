#!/usr/bin/env python3
from __future__ import annotations

import argparse
import dataclasses
import json
import os
import sys

from audiostitch.config import FetchConfig, LoggingConfig, StitchConfig, StoreConfig, SynthesisConfig
from audiostitch.errors import StitchError, StitchJobError
from audiostitch.io_utils import read_text_file_with_fallback
from audiostitch.logging_utils import Logger
from audiostitch.models import ChunkedAudio, ContentRecord
from audiostitch.runtime import build_runtime
from audiostitch.synthesizer import NarrationSynthesizer
from audiostitch.tts_provider_factory import create_tts_provider


def _basename_arg(value: str) -> str:
    name = str(value).strip()
    if not name:
        raise argparse.ArgumentTypeError("content id must not be empty")
    if name in {".", ".."}:
        raise argparse.ArgumentTypeError("content id cannot be '.' or '..'")
    if os.path.basename(name) != name:
        raise argparse.ArgumentTypeError("content id must be a plain name, not a path")
    if os.path.altsep and os.path.altsep in name:
        raise argparse.ArgumentTypeError("content id cannot contain path separators")
    return name


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Narrate a text file: chunk, synthesize, store, and optionally stitch.",
    )
    parser.add_argument("text_path", help="Input text (plain or HTML)")
    parser.add_argument("content_id", type=_basename_arg)
    parser.add_argument("--format", choices=["wav", "mp3"], default=None)
    parser.add_argument("--voice", default=None)
    parser.add_argument("--style", default=None)
    parser.add_argument("--no-preroll", action="store_true")
    parser.add_argument("--stitch", action="store_true", help="Stitch chunks into one file afterwards")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    log_cfg = LoggingConfig.from_env()
    if args.debug:
        log_cfg = dataclasses.replace(log_cfg, level="DEBUG", debug_events=True)
    elif args.verbose:
        log_cfg = dataclasses.replace(log_cfg, level="INFO")
    logger = Logger.create(log_cfg, job_id=args.content_id)

    synth_cfg = SynthesisConfig.from_env(voice_id=args.voice, style_id=args.style, output_format=args.format)
    runtime = build_runtime(
        stitch_cfg=StitchConfig.from_env(),
        fetch_cfg=FetchConfig.from_env(),
        store_cfg=StoreConfig.from_env(),
        logger=logger,
    )

    text, encoding = read_text_file_with_fallback(
        args.text_path,
        on_fallback=lambda enc: logger.warn("input_encoding_fallback", encoding=enc),
    )
    try:
        provider = create_tts_provider(config=synth_cfg, logger=logger)
    except RuntimeError as exc:
        logger.error("tts_provider_unavailable", error=str(exc))
        return 2
    synthesizer = NarrationSynthesizer(
        provider=provider,
        store=runtime.objects,
        config=synth_cfg,
        logger=logger,
    )

    try:
        result = synthesizer.synthesize(args.content_id, text, include_preroll=not args.no_preroll)
    except StitchError as exc:
        logger.error("narration_failed", kind=exc.error_kind, chunk=exc.segment_index, error=str(exc))
        return 1

    record = runtime.metadata.get(args.content_id) or ContentRecord(content_id=args.content_id)
    record.audio = result.audio
    record.output_format = synth_cfg.output_format
    record.stitched_url = ""
    runtime.metadata.put(args.content_id, record)
    summary = {
        "content_id": args.content_id,
        "input_encoding": encoding,
        "chunks": result.chunks_total,
        "chunks_cached": result.chunks_cached,
        "preroll": result.preroll_included,
        "urls": result.audio.urls(),
    }

    if args.stitch and isinstance(result.audio, ChunkedAudio):
        try:
            outcome = runtime.service.stitch_content(args.content_id, output_format=synth_cfg.output_format)
        except StitchJobError as exc:
            logger.error("narration_stitch_failed", kind=exc.error_kind, error=str(exc))
            print(json.dumps(summary, sort_keys=True))
            return 1
        summary["stitched_url"] = outcome.url
    print(json.dumps(summary, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
