"""Sync module: planner, batch worker and the service that ties them to accounts"""
from .models import WorkPlan, BatchResult, ItemOutcome

__all__ = [
    "WorkPlan",
    "BatchResult",
    "ItemOutcome",
]
