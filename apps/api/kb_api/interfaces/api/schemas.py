from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UserPublic(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: str = "user"


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error: Optional[str] = None


class IngestResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "Ingestion started"
    job_id: str = Field(alias="jobId")


class IngestionStatus(str, Enum):
    processing = "processing"
    completed = "completed"
    failed = "failed"


class IngestionProgress(BaseModel):
    job_id: str
    progress: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    percentage: int = Field(default=0, ge=0, le=100)
    status: IngestionStatus
    message: str
    start_time: datetime
    end_time: Optional[datetime] = None


class IngestionProgressResponse(BaseModel):
    success: bool = True
    data: IngestionProgress


class KnowledgeBaseEntryPublic(BaseModel):
    id: int
    source_id: Optional[str] = None
    collection_name: str
    title: Optional[str] = None
    text: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    comment: Optional[str] = None
    tags: Optional[str] = None
    source: Optional[str] = None
    last_updated: Optional[str] = None
    entry_metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @field_validator("entry_metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value or {}


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class KnowledgeBaseListResponse(BaseModel):
    success: bool = True
    data: List[KnowledgeBaseEntryPublic]
    pagination: Pagination


class KnowledgeBaseEntryResponse(BaseModel):
    success: bool = True
    data: KnowledgeBaseEntryPublic


class CollectionSummary(BaseModel):
    collection_name: str
    entry_count: int


class CollectionListResponse(BaseModel):
    success: bool = True
    data: List[CollectionSummary]


class CategoryCount(BaseModel):
    category: str
    count: int


class KnowledgeBaseStats(BaseModel):
    total_entries: int
    total_collections: int
    top_categories: List[CategoryCount] = Field(default_factory=list)


class KnowledgeBaseStatsResponse(BaseModel):
    success: bool = True
    data: KnowledgeBaseStats


class CollectionDeleteResult(BaseModel):
    entries_deleted: int


class CollectionDeleteResponse(BaseModel):
    success: bool = True
    message: str
    data: CollectionDeleteResult


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class KnowledgeSearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=2000)
    collection_name: Optional[str] = None
    category: Optional[str] = None
    limit: int = Field(default=5, ge=1, le=50)
    # Cosine distance, 0 = identical direction.
    max_distance: Optional[float] = Field(default=None, ge=0.0, le=2.0)

    @field_validator("query")
    @classmethod
    def strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query cannot be blank.")
        return value


class KnowledgeSearchResult(BaseModel):
    id: int
    source_id: Optional[str] = None
    collection_name: str
    title: Optional[str] = None
    text: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[str] = None
    source: Optional[str] = None
    entry_metadata: Dict[str, Any] = Field(default_factory=dict)
    distance: float


class KnowledgeSearchResponse(BaseModel):
    success: bool = True
    data: List[KnowledgeSearchResult]
