"""Workspace-scoped admission control for enrichment requests.

A fixed window per workspace id (default 10/minute). Over-limit requests are
rejected immediately, never queued. Storage is in-memory for single-worker
and test runs, Redis for multi-worker deployments.
"""

from __future__ import annotations

import structlog
from limits import parse
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = structlog.get_logger(__name__)


class WorkspaceRateLimiter:
    """Fixed-window limiter keyed by workspace id.

    Args:
        limit: Rate limit string, e.g. "10/minute".
        storage_uri: limits storage URI ("memory://", "redis://host:6379/0").
        namespace: Key namespace so several limiters can share one storage.
    """

    def __init__(
        self,
        limit: str = "10/minute",
        storage_uri: str = "memory://",
        namespace: str = "enrich",
    ) -> None:
        self._item = parse(limit)
        self._limiter = FixedWindowRateLimiter(storage_from_string(storage_uri))
        self._namespace = namespace

    @property
    def limit(self) -> str:
        return str(self._item)

    def hit(self, workspace_id: str) -> bool:
        """Consume one slot. Returns False when the workspace is over its limit."""
        allowed = self._limiter.hit(self._item, self._namespace, workspace_id)
        if not allowed:
            logger.warning(
                "rate_limit.rejected",
                namespace=self._namespace,
                workspace_id=workspace_id,
                limit=self.limit,
            )
        return allowed

    def remaining(self, workspace_id: str) -> int:
        """Slots left in the current window."""
        stats = self._limiter.get_window_stats(self._item, self._namespace, workspace_id)
        return stats.remaining

    def reset(self, workspace_id: str) -> None:
        """Clear the window for a workspace."""
        self._limiter.clear(self._item, self._namespace, workspace_id)
