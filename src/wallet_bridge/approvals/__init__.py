"""Durable pending-action queue and the badge counter derived from it."""

from wallet_bridge.approvals.badge import BadgeCounter
from wallet_bridge.approvals.queue import PendingActionQueue, ResolveOutcome

__all__ = ["BadgeCounter", "PendingActionQueue", "ResolveOutcome"]
