#!/usr/bin/env python3
from __future__ import annotations

"""Wiring of stores, fetcher, stitcher and service from config sections."""

from dataclasses import dataclass

from .config import FetchConfig, StitchConfig, StoreConfig, config_fingerprint
from .logging_utils import Logger
from .metadata_store import JsonMetadataStore
from .object_store import LocalObjectStore
from .segment_fetcher import SegmentFetcher
from .stitch_service import StitchService
from .stitcher import BinaryStitcher


@dataclass
class Runtime:
    service: StitchService
    metadata: JsonMetadataStore
    objects: LocalObjectStore
    logger: Logger


def build_runtime(
    *,
    stitch_cfg: StitchConfig,
    fetch_cfg: FetchConfig,
    store_cfg: StoreConfig,
    logger: Logger,
) -> Runtime:
    objects = LocalObjectStore(
        root_dir=store_cfg.object_root,
        base_url=store_cfg.object_base_url,
        local_hosts=fetch_cfg.local_hosts,
        download_timeout_seconds=fetch_cfg.timeout_seconds,
    )
    metadata = JsonMetadataStore(base_dir=store_cfg.metadata_dir, logger=logger)
    fetcher = SegmentFetcher(
        config=fetch_cfg,
        logger=logger,
        store=objects,
        copy_block_bytes=stitch_cfg.copy_block_bytes,
    )
    stitcher = BinaryStitcher(config=stitch_cfg, logger=logger)
    service = StitchService(
        config=stitch_cfg,
        logger=logger,
        fetcher=fetcher,
        stitcher=stitcher,
        metadata=metadata,
    )
    logger.info(
        "runtime_ready",
        cache_dir=stitch_cfg.cache_dir,
        object_root=store_cfg.object_root,
        config_fingerprint=config_fingerprint(stitch_cfg=stitch_cfg, fetch_cfg=fetch_cfg)[:16],
    )
    return Runtime(service=service, metadata=metadata, objects=objects, logger=logger)
