from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class IngestionJob:
    job_id: str
    total: int
    start_time: datetime
    progress: int = 0
    percentage: int = 0
    status: str = "processing"
    message: str = "Initializing..."
    end_time: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


@dataclass
class KnowledgeBaseEntry:
    """Row ready for the bulk insert; `embedding` is already a pgvector literal."""

    collection_name: str
    embedding: str
    source_id: Optional[str] = None
    title: Optional[str] = None
    text: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    comment: Optional[str] = None
    tags: Optional[str] = None
    source: Optional[str] = None
    last_updated: Optional[str] = None
    entry_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestionResult:
    success: bool
    message: str
    records_processed: int
    errors: List[str] = field(default_factory=list)
