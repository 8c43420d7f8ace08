#!/usr/bin/env python3
from __future__ import annotations

import argparse
import dataclasses
import sys

import uvicorn

from audiostitch.config import FetchConfig, LoggingConfig, StitchConfig, StoreConfig
from audiostitch.http_app import create_app
from audiostitch.logging_utils import Logger
from audiostitch.runtime import build_runtime


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve stitched downloads and cached audio files over HTTP.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--cache-dir", default=None)
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    log_cfg = LoggingConfig.from_env()
    if args.debug:
        log_cfg = dataclasses.replace(log_cfg, level="DEBUG", debug_events=True)
    logger = Logger.create(log_cfg, job_id="server")
    runtime = build_runtime(
        stitch_cfg=StitchConfig.from_env(cache_dir=args.cache_dir),
        fetch_cfg=FetchConfig.from_env(),
        store_cfg=StoreConfig.from_env(),
        logger=logger,
    )
    app = create_app(
        service=runtime.service,
        metadata=runtime.metadata,
        objects=runtime.objects,
        logger=logger,
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.debug else "info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
