"""Durable queue of actions waiting for human consent."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from wallet_bridge.errors import NotFound
from wallet_bridge.storage.database import Database
from wallet_bridge.storage.models import ActionKind, ActionStatus, PendingAction

logger = logging.getLogger("wallet_bridge.approvals.queue")

ChangedCallback = Callable[[int], Awaitable[None]]
ResolvedCallback = Callable[[PendingAction], Awaitable[None]]


@dataclass(frozen=True)
class ResolveOutcome:
    """Result of a terminal-transition attempt.

    ``applied`` is False when the action had already left ``pending``; in
    that case ``action`` is the state committed by the earlier winner.
    """

    action: PendingAction
    applied: bool


class PendingActionQueue:
    """SQLite-backed pending-action queue.

    All terminal transitions go through :meth:`_resolve`, which updates the
    row only while it is still ``pending``.  The first transition wins, both
    between coroutines of this process (the lock) and between processes
    sharing the database file (the conditional ``UPDATE``).
    """

    def __init__(self, db: Database, now_fn: Callable[[], float] = time.time) -> None:
        self.db = db
        self._now = now_fn
        self._lock = asyncio.Lock()
        self._changed: list[ChangedCallback] = []
        self._resolved: list[ResolvedCallback] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_changed(self, callback: ChangedCallback) -> None:
        """Register a callback receiving the pending count after each change."""
        self._changed.append(callback)

    def on_resolved(self, callback: ResolvedCallback) -> None:
        """Register a callback receiving each action that just became terminal."""
        self._resolved.append(callback)

    async def _notify_changed(self) -> None:
        count = await self.pending_count()
        for callback in self._changed:
            try:
                await callback(count)
            except Exception as e:
                logger.error(f"Queue change listener error: {e}")

    async def _notify_resolved(self, action: PendingAction) -> None:
        for callback in self._resolved:
            try:
                await callback(action)
            except Exception as e:
                logger.error(f"Queue resolution listener error for {action.id}: {e}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(
        self,
        kind: ActionKind,
        method: str,
        payload: dict[str, Any],
        *,
        origin: str = "",
        request_id: str | None = None,
        action_id: str | None = None,
    ) -> PendingAction:
        """Persist a new ``pending`` action and return it.

        Callers that must be ready for the resolution before the action is
        visible pass a pre-generated *action_id*.
        """
        action = PendingAction(
            id=action_id or PendingAction.new_id(),
            kind=kind,
            method=method,
            payload=payload,
            origin=origin,
            request_id=request_id,
            created_at=self._now(),
        )
        async with self._lock:
            await self.db.execute(
                "INSERT INTO pending_actions "
                "(id, kind, method, request_id, origin, payload_json, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    action.id,
                    action.kind.value,
                    action.method,
                    action.request_id,
                    action.origin,
                    json.dumps(action.payload, default=str),
                    action.status.value,
                    action.created_at,
                ),
            )
        logger.info(
            f"Pending action queued: {action.kind.value} for {action.origin or '-'} "
            f"(id={action.id}, request={action.request_id})"
        )
        await self._notify_changed()
        return action

    async def approve(self, action_id: str, result: Any = None) -> ResolveOutcome:
        return await self._resolve(action_id, ActionStatus.APPROVED, result=result)

    async def reject(self, action_id: str, reason: str | None = None) -> ResolveOutcome:
        return await self._resolve(
            action_id, ActionStatus.REJECTED, error=reason or "User rejected the request"
        )

    async def expire(self, action_id: str) -> ResolveOutcome:
        return await self._resolve(action_id, ActionStatus.EXPIRED, error="Request expired")

    async def _resolve(
        self,
        action_id: str,
        status: ActionStatus,
        *,
        result: Any = None,
        error: str | None = None,
    ) -> ResolveOutcome:
        async with self._lock:
            cursor = await self.db.execute(
                "UPDATE pending_actions SET status = ?, result_json = ?, error = ?, resolved_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    status.value,
                    json.dumps(result, default=str) if result is not None else None,
                    error,
                    self._now(),
                    action_id,
                    ActionStatus.PENDING.value,
                ),
            )
            applied = cursor.rowcount == 1
            action = await self.get(action_id)

        if not applied:
            logger.info(
                f"Ignoring {status.value} for action {action_id}: already {action.status.value}"
            )
            return ResolveOutcome(action=action, applied=False)

        logger.info(f"Pending action {action_id} -> {status.value}")
        await self._notify_changed()
        await self._notify_resolved(action)
        return ResolveOutcome(action=action, applied=True)

    async def expire_stale(self, max_age_seconds: float) -> list[PendingAction]:
        """Expire every pending action older than *max_age_seconds*."""
        cutoff = self._now() - max_age_seconds
        rows = await self.db.fetch_all(
            "SELECT id FROM pending_actions WHERE status = ? AND created_at <= ?",
            (ActionStatus.PENDING.value, cutoff),
        )
        expired = []
        for row in rows:
            outcome = await self.expire(row["id"])
            if outcome.applied:
                expired.append(outcome.action)
        if expired:
            logger.info(f"Expired {len(expired)} stale pending action(s)")
        return expired

    async def purge(self, retention_seconds: float) -> int:
        """Delete terminal actions resolved more than *retention_seconds* ago."""
        cutoff = self._now() - retention_seconds
        async with self._lock:
            cursor = await self.db.execute(
                "DELETE FROM pending_actions WHERE status != ? AND resolved_at IS NOT NULL "
                "AND resolved_at <= ?",
                (ActionStatus.PENDING.value, cutoff),
            )
        removed = cursor.rowcount
        if removed:
            logger.info(f"Purged {removed} resolved action(s)")
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find(self, action_id: str) -> Optional[PendingAction]:
        row = await self.db.fetch_one(
            "SELECT * FROM pending_actions WHERE id = ?", (action_id,)
        )
        return PendingAction.from_row(row) if row else None

    async def get(self, action_id: str) -> PendingAction:
        """Fetch an action by id. Raises :class:`NotFound` if unknown."""
        action = await self.find(action_id)
        if action is None:
            raise NotFound(f"Pending action {action_id} not found")
        return action

    async def list_pending(self) -> list[PendingAction]:
        """Actions still waiting for a human, oldest first."""
        return await self.list_actions(ActionStatus.PENDING)

    async def list_actions(self, status: ActionStatus | str | None = None) -> list[PendingAction]:
        if status:
            rows = await self.db.fetch_all(
                "SELECT * FROM pending_actions WHERE status = ? ORDER BY created_at, rowid",
                (ActionStatus(status).value,),
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM pending_actions ORDER BY created_at, rowid"
            )
        return [PendingAction.from_row(r) for r in rows]

    async def pending_count(self) -> int:
        count = await self.db.fetch_value(
            "SELECT COUNT(*) FROM pending_actions WHERE status = ?",
            (ActionStatus.PENDING.value,),
        )
        return int(count or 0)
