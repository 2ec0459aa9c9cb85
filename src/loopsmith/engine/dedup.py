"""
engine/dedup.py — Deduplication Guard

Stops the same (tool, parameters) pair from running twice in one turn.

Keys are canonical: parameters are serialised with every dict level sorted,
so construction order never matters. Keys are never removed from
SessionContext.executed_keys; under DedupPolicy.RETRY_FAILED a key whose
execution failed is additionally placed in retryable_keys, which makes it
eligible to run exactly once more.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from loopsmith.config.settings import DedupPolicy
from loopsmith.engine.context import SessionContext
from loopsmith.observability.logger import get_logger

log = get_logger(__name__)


def canonical_params(params: Optional[dict[str, Any]]) -> str:
    return json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)


class DeduplicationGuard:

    def __init__(self, policy: DedupPolicy = DedupPolicy.BLOCK):
        self.policy = policy

    @staticmethod
    def key(tool: str, params: Optional[dict[str, Any]], session_id: Optional[str] = None) -> str:
        return f"{session_id or 'nosession'}::{tool}::{canonical_params(params)}"

    def is_duplicate(self, ctx: SessionContext, key: str) -> bool:
        return key in ctx.executed_keys and key not in ctx.retryable_keys

    def mark_executed(self, ctx: SessionContext, key: str) -> bool:
        """Record ``key``. Returns True when this execution used up a retry."""
        retried = key in ctx.retryable_keys
        ctx.executed_keys.add(key)
        ctx.retryable_keys.discard(key)
        return retried

    def mark_failed(self, ctx: SessionContext, key: str, retried: bool = False) -> bool:
        """
        Record that the execution behind ``key`` failed. Returns True when
        the key became eligible for one more attempt. A failed retry stays
        blocked.
        """
        if self.policy is DedupPolicy.RETRY_FAILED and not retried:
            return self.allow_retry(ctx, key)
        return False

    def allow_retry(self, ctx: SessionContext, key: str) -> bool:
        if key not in ctx.executed_keys:
            return False
        ctx.retryable_keys.add(key)
        log.debug("dedup.retry_allowed", session_id=ctx.session_id, key=key)
        return True
