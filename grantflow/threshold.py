"""Effective multisig threshold: live chain read with cached fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from grantflow.errors import CollaboratorFailure
from grantflow.models import Allocator

logger = logging.getLogger(__name__)

SOURCE_CHAIN = "chain"
SOURCE_CACHE = "cache"
SOURCE_DEFAULT = "default"


@dataclass(frozen=True)
class ThresholdResolution:
    value: int
    source: str


def resolve_threshold(
    *,
    allocator: Allocator,
    blockchain,
    allocators,
    default: int = 2,
) -> ThresholdResolution:
    cached = allocator.multisig_threshold
    live: int | None = None
    if allocator.multisig_address:
        try:
            live = blockchain.get_multisig_threshold_for_actor(allocator.multisig_address)
        except CollaboratorFailure as exc:
            logger.warning(
                "threshold_chain_read_failed owner=%s repo=%s address=%s code=%s",
                allocator.owner,
                allocator.repo,
                allocator.multisig_address,
                exc.code,
            )

    if live is None:
        if cached is not None:
            return ThresholdResolution(value=cached, source=SOURCE_CACHE)
        return ThresholdResolution(value=default, source=SOURCE_DEFAULT)

    if live != cached:
        try:
            allocators.update_threshold(owner=allocator.owner, repo=allocator.repo, value=live)
        except CollaboratorFailure as exc:
            logger.warning(
                "threshold_cache_update_failed owner=%s repo=%s value=%s code=%s",
                allocator.owner,
                allocator.repo,
                live,
                exc.code,
            )
        else:
            logger.info(
                "threshold_cache_updated owner=%s repo=%s cached=%s live=%s",
                allocator.owner,
                allocator.repo,
                cached,
                live,
            )
    return ThresholdResolution(value=live, source=SOURCE_CHAIN)
