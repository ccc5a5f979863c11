"""Core modules: models, database, config."""

from salesdesk.core.config import Settings
from salesdesk.core.models import (
    ActionResult,
    Deal,
    PipelineStage,
    QueueItem,
    QueueStats,
)

__all__ = [
    "Settings",
    "ActionResult",
    "QueueItem",
    "QueueStats",
    "Deal",
    "PipelineStage",
]
