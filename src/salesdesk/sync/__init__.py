"""Client-side sync: optimistic boards, API client, periodic refresh."""

from salesdesk.sync.optimistic import MutationOutcome, OptimisticBoard, PendingMutation

__all__ = ["MutationOutcome", "OptimisticBoard", "PendingMutation"]
