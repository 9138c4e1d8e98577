"""Scheduled classification of stored log objects."""

from piiwatch.classification.scheduler import ClassificationScheduler, OverlapPolicy, SlotState
from piiwatch.classification.service import ClassificationService, LocalClassificationService

__all__ = [
    "ClassificationScheduler",
    "OverlapPolicy",
    "SlotState",
    "ClassificationService",
    "LocalClassificationService",
]
