"""
Value objects passed between the sync planner, job store and batch worker.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class WorkPlan:
    """Per-mailbox identifiers not yet ingested (mailbox -> ascending uids)"""
    owner_id: str
    mailboxes: Dict[str, List[int]] = field(default_factory=dict)

    @property
    def total_count(self) -> int:
        return sum(len(uids) for uids in self.mailboxes.values())

    @property
    def is_empty(self) -> bool:
        return self.total_count == 0

    def to_dict(self) -> Dict[str, List[int]]:
        return {mailbox: list(uids) for mailbox, uids in self.mailboxes.items() if uids}


@dataclass
class ItemOutcome:
    """What happened to one planned message during a batch"""
    item_id: int
    mailbox: str
    uid: int
    stored: bool = False
    duplicate: bool = False
    missing: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class BatchResult:
    """Result of one batch worker invocation"""
    job_id: Optional[str] = None
    status: Optional[str] = None
    attempted: int = 0
    stored: int = 0
    duplicates: int = 0
    failed: int = 0
    remaining: int = 0
    error: Optional[str] = None

    @property
    def idle(self) -> bool:
        return self.job_id is None

    @property
    def has_more(self) -> bool:
        return self.status == "processing" and self.remaining > 0

    @property
    def message(self) -> str:
        if self.idle:
            return "No pending sync jobs."
        if self.status == "failed":
            return f"Sync job {self.job_id} failed: {self.error}"
        text = f"Processed {self.attempted} message(s) ({self.stored} new"
        if self.duplicates:
            text += f", {self.duplicates} already stored"
        if self.failed:
            text += f", {self.failed} failed"
        text += ")."
        if self.status == "completed":
            text += " Sync completed."
        else:
            text += f" {self.remaining} remaining."
        return text

    def to_dict(self) -> dict:
        return {
            'message': self.message,
            'job_id': self.job_id,
            'status': self.status,
            'processed': self.attempted,
            'stored': self.stored,
            'duplicates': self.duplicates,
            'failed': self.failed,
            'remaining': self.remaining,
        }
