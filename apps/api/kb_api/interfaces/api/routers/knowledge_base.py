import logging
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse
from psycopg_pool import ConnectionPool

from kb_api.application import ingestion_service
from kb_api.application.ingestion_service import IngestionPipeline, get_ingestion_pipeline
from kb_api.application.progress_tracker import ProgressTracker, get_progress_tracker
from kb_api.application.search_service import run_search
from kb_api.core.domain.errors import EmbeddingError
from kb_api.infrastructure.db import connection as db
from kb_api.infrastructure.db import knowledge_base_repository as kb_repo
from kb_api.infrastructure.embeddings.provider import EmbeddingProvider, get_embedding_provider
from kb_api.interfaces.api.routers.auth import get_current_user, require_admin
from kb_api.interfaces.api.schemas import (
    CollectionDeleteResponse,
    CollectionDeleteResult,
    CollectionListResponse,
    ErrorResponse,
    IngestionProgress,
    IngestionProgressResponse,
    IngestResponse,
    KnowledgeBaseEntryResponse,
    KnowledgeBaseListResponse,
    KnowledgeBaseStatsResponse,
    KnowledgeSearchRequest,
    KnowledgeSearchResponse,
    MessageResponse,
    UserPublic,
)

router = APIRouter(tags=["knowledge-base"])
logger = logging.getLogger(__name__)


def _error(status_code: int, message: str, error: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(message=message, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@router.get("/knowledge-base", response_model=KnowledgeBaseListResponse)
def list_entries(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    collection_name: Optional[str] = Query(default=None, alias="collectionName"),
    category: Optional[str] = None,
    search: Optional[str] = None,
    pool: ConnectionPool = Depends(db.get_pool),
    _: UserPublic = Depends(require_admin),
) -> KnowledgeBaseListResponse:
    entries, pagination = kb_repo.find_all(
        pool,
        page=page,
        limit=limit,
        collection_name=collection_name,
        category=category,
        search=search,
    )
    return KnowledgeBaseListResponse(data=entries, pagination=pagination)


@router.get("/knowledge-base/collections", response_model=CollectionListResponse)
def list_collections(
    pool: ConnectionPool = Depends(db.get_pool),
    _: UserPublic = Depends(require_admin),
) -> CollectionListResponse:
    return CollectionListResponse(data=kb_repo.get_collections(pool))


@router.get("/knowledge-base/stats", response_model=KnowledgeBaseStatsResponse)
def stats(
    pool: ConnectionPool = Depends(db.get_pool),
    _: UserPublic = Depends(require_admin),
) -> KnowledgeBaseStatsResponse:
    return KnowledgeBaseStatsResponse(data=kb_repo.get_stats(pool))


@router.post(
    "/knowledge-base/ingest",
    response_model=IngestResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def ingest(
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(default=None),
    collection_name: Optional[str] = Form(default=None, alias="collectionName"),
    fresh: str = Form(default="false"),
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
    _: UserPublic = Depends(require_admin),
):
    if file is None or not file.filename:
        return _error(status.HTTP_400_BAD_REQUEST, "CSV file is required")
    collection_name = (collection_name or "").strip()
    if not collection_name:
        return _error(status.HTTP_400_BAD_REQUEST, "Collection name is required")
    if not ingestion_service.is_csv_upload(file):
        return _error(status.HTTP_400_BAD_REQUEST, "Only CSV files are allowed")

    job_id = str(uuid.uuid4())
    saved_path: Optional[Path] = None
    try:
        saved_path = ingestion_service.save_upload(job_id, file)
        # Registered before scheduling so early polls do not 404.
        pipeline.tracker.init(job_id, 0)
        pipeline.tracker.update(job_id, 0, "Upload received, waiting to start...")
        background_tasks.add_task(
            ingestion_service.run_ingestion_job,
            pipeline,
            saved_path,
            collection_name,
            fresh.strip().lower() == "true",
            job_id,
        )
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    except Exception as exc:  # pragma: no cover - runtime protection
        logger.exception("Could not start ingestion for %s", collection_name)
        if saved_path is not None:
            ingestion_service.remove_upload(saved_path)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to start ingestion", str(exc))

    logger.info("Queued ingestion job %s for collection %s", job_id, collection_name)
    return IngestResponse(job_id=job_id)


@router.get(
    "/knowledge-base/ingest/progress/{job_id}",
    response_model=IngestionProgressResponse,
    responses={404: {"model": ErrorResponse}},
)
def ingestion_progress(
    job_id: str,
    tracker: ProgressTracker = Depends(get_progress_tracker),
    _: UserPublic = Depends(require_admin),
):
    job = tracker.get(job_id)
    if job is None:
        return _error(status.HTTP_404_NOT_FOUND, "Job not found or expired")
    return IngestionProgressResponse(
        data=IngestionProgress(
            job_id=job.job_id,
            progress=job.progress,
            total=job.total,
            percentage=job.percentage,
            status=job.status,
            message=job.message,
            start_time=job.start_time,
            end_time=job.end_time,
        )
    )


@router.post("/knowledge-base/search", response_model=KnowledgeSearchResponse)
def search(
    req: KnowledgeSearchRequest,
    pool: ConnectionPool = Depends(db.get_pool),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
    _: UserPublic = Depends(get_current_user),
) -> KnowledgeSearchResponse:
    try:
        embedding = provider.embed(req.query)
    except EmbeddingError as exc:
        logger.exception("Failed to embed knowledge-base query")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to embed query: {exc}",
        ) from exc
    return KnowledgeSearchResponse(data=run_search(pool, req, embedding))


@router.delete("/knowledge-base/collection/{collection_name}", response_model=CollectionDeleteResponse)
def clear_collection(
    collection_name: str,
    pool: ConnectionPool = Depends(db.get_pool),
    _: UserPublic = Depends(require_admin),
) -> CollectionDeleteResponse:
    deleted = kb_repo.delete_by_collection(pool, collection_name)
    logger.info("Cleared collection %s (%s entries)", collection_name, deleted)
    return CollectionDeleteResponse(
        message=f"Collection '{collection_name}' cleared successfully",
        data=CollectionDeleteResult(entries_deleted=deleted),
    )


@router.get(
    "/knowledge-base/{entry_id}",
    response_model=KnowledgeBaseEntryResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_entry(
    entry_id: int,
    pool: ConnectionPool = Depends(db.get_pool),
    _: UserPublic = Depends(require_admin),
):
    entry = kb_repo.find_by_id(pool, entry_id)
    if entry is None:
        return _error(status.HTTP_404_NOT_FOUND, "Knowledge base entry not found")
    return KnowledgeBaseEntryResponse(data=entry)


@router.delete(
    "/knowledge-base/{entry_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
)
def delete_entry(
    entry_id: int,
    pool: ConnectionPool = Depends(db.get_pool),
    _: UserPublic = Depends(require_admin),
):
    if not kb_repo.delete_by_id(pool, entry_id):
        return _error(status.HTTP_404_NOT_FOUND, "Knowledge base entry not found")
    return MessageResponse(message="Knowledge base entry deleted successfully")
