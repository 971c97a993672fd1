import csv
import json
import logging
import math
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from fastapi import UploadFile
from psycopg_pool import ConnectionPool

from kb_api.application.progress_tracker import ProgressTracker, get_progress_tracker
from kb_api.core.domain.errors import (
    BatchProcessingError,
    EmbeddingError,
    EmptyInputError,
    FatalIngestionError,
)
from kb_api.core.domain.knowledge_base import IngestionResult, KnowledgeBaseEntry
from kb_api.infrastructure.db import connection as db
from kb_api.infrastructure.db import knowledge_base_repository as kb_repo
from kb_api.infrastructure.embeddings.provider import EmbeddingProvider, get_embedding_provider
from kb_api.infrastructure.ingestion.csv_source import CsvRecord, can_parse, read_csv_records

logger = logging.getLogger(__name__)

INGEST_BATCH_SIZE = int(os.environ.get("INGEST_BATCH_SIZE", "200"))
UPLOAD_ROOT = Path(os.environ.get("KB_UPLOAD_DIR", "data/uploads/knowledge-base"))
MAX_UPLOAD_MB = int(os.environ.get("KB_MAX_UPLOAD_MB", "50"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024

ALLOWED_CONTENT_TYPES = {"text/csv", "application/csv", "application/vnd.ms-excel"}

# Lowercased header -> accepted column names, first non-empty wins.
COLUMN_ALIASES: Dict[str, Sequence[str]] = {
    "source_id": ("id", "source_id"),
    "title": ("title",),
    "text": ("text", "text_content"),
    "category": ("category",),
    "status": ("status",),
    "comment": ("comment",),
    "tags": ("tags",),
    "source": ("source",),
    "last_updated": ("last_updated",),
    "metadata": ("metadata",),
}


def is_csv_upload(upload: UploadFile) -> bool:
    return upload.content_type in ALLOWED_CONTENT_TYPES or can_parse(upload.filename or "")


def save_upload(job_id: str, upload: UploadFile) -> Path:
    target_dir = UPLOAD_ROOT / job_id
    target_dir.mkdir(parents=True, exist_ok=True)
    safe_name = Path(upload.filename or "knowledge-base.csv").name
    dest_path = target_dir / safe_name

    bytes_written = 0
    upload.file.seek(0)
    with dest_path.open("wb") as buffer:
        while True:
            chunk = upload.file.read(1024 * 512)
            if not chunk:
                break
            bytes_written += len(chunk)
            if bytes_written > MAX_UPLOAD_BYTES:
                buffer.close()
                remove_upload(dest_path)
                raise ValueError(f"File exceeds the {MAX_UPLOAD_MB}MB limit.")
            buffer.write(chunk)

    return dest_path


def remove_upload(file_path: Path) -> None:
    try:
        file_path.unlink(missing_ok=True)
        parent = file_path.parent
        if parent != UPLOAD_ROOT and parent.parent == UPLOAD_ROOT and not any(parent.iterdir()):
            parent.rmdir()
    except OSError as exc:
        logger.warning("Could not remove uploaded file %s: %s", file_path, exc)


def _normalize(record: CsvRecord) -> Dict[str, str]:
    normalized: Dict[str, str] = {}
    for key, value in record.items():
        lowered = key.lower()
        if not normalized.get(lowered):
            normalized[lowered] = value
    return normalized


def _column(record: Dict[str, str], field: str) -> str:
    for alias in COLUMN_ALIASES[field]:
        value = record.get(alias)
        if value:
            return value
    return ""


def _parse_metadata(raw: str) -> Dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(f"metadata must be a JSON object, got {type(parsed).__name__}")
    return parsed


@dataclass
class _PreparedRow:
    record: Dict[str, str]
    title: str
    text: str

    @property
    def content(self) -> str:
        return f"{self.title} {self.text}".strip()


class IngestionPipeline:
    """
    CSV -> embeddings -> knowledge_base_entries, one batch at a time.

    Batch failures are recorded and skipped; only setup failures (unreadable
    file, model that will not load, failed collection reset) abort the run.
    A fresh run deletes the collection before the first batch, outside the
    per-batch transactions, so an aborted fresh run leaves a partial collection.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        embedder: EmbeddingProvider,
        tracker: ProgressTracker,
        batch_size: int = INGEST_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.pool = pool
        self.embedder = embedder
        self.tracker = tracker
        self.batch_size = batch_size

    def ingest(
        self,
        file_path: Union[str, Path],
        collection_name: str,
        fresh: bool = False,
        job_id: Optional[str] = None,
        remove_source: bool = True,
    ) -> IngestionResult:
        path = Path(file_path)
        logger.info(
            "Starting ingestion of %s into %s (fresh=%s, job=%s)", path.name, collection_name, fresh, job_id
        )
        try:
            return self._run(path, collection_name, fresh, job_id)
        except EmptyInputError as exc:
            logger.warning("Nothing to ingest from %s: %s", path.name, exc)
            self._fail_job(job_id, "CSV file is empty")
            return IngestionResult(
                success=False,
                message="CSV file is empty",
                records_processed=0,
                errors=[str(exc)],
            )
        except FatalIngestionError as exc:
            logger.exception("Ingestion of %s into %s failed", path.name, collection_name)
            self._fail_job(job_id, str(exc))
            return IngestionResult(
                success=False,
                message=f"Ingestion failed: {exc}",
                records_processed=0,
                errors=[str(exc)],
            )
        finally:
            if remove_source:
                remove_upload(path)

    def _fail_job(self, job_id: Optional[str], message: str) -> None:
        if not job_id:
            return
        # The file may have failed before the job was registered.
        if not self.tracker.exists(job_id):
            self.tracker.init(job_id, 0)
        self.tracker.fail(job_id, message)

    def _run(
        self, path: Path, collection_name: str, fresh: bool, job_id: Optional[str]
    ) -> IngestionResult:
        try:
            records = read_csv_records(path)
        except (OSError, UnicodeDecodeError, ValueError, csv.Error) as exc:
            raise FatalIngestionError(f"Could not read CSV file: {exc}") from exc
        if not records:
            raise EmptyInputError("No data found in CSV file")

        if job_id:
            self.tracker.init(job_id, len(records))
            self.tracker.update(job_id, 0, "Initializing embedding model...")

        try:
            self.embedder.initialize()
        except EmbeddingError as exc:
            raise FatalIngestionError(str(exc)) from exc

        if fresh:
            if job_id:
                self.tracker.update(job_id, 0, "Clearing existing collection...")
            try:
                deleted = kb_repo.delete_by_collection(self.pool, collection_name)
            except Exception as exc:
                raise FatalIngestionError(f"Could not clear collection {collection_name}: {exc}") from exc
            logger.info("Cleared %s entries from %s", deleted, collection_name)

        total_batches = math.ceil(len(records) / self.batch_size)
        records_processed = 0
        rows_handled = 0
        errors: List[str] = []

        for batch_number, start in enumerate(range(0, len(records), self.batch_size), start=1):
            batch = records[start : start + self.batch_size]
            if job_id:
                self.tracker.update(
                    job_id, rows_handled, f"Processing batch {batch_number}/{total_batches}..."
                )

            try:
                stored = self.process_batch(batch, collection_name)
            except Exception as exc:  # a bad batch must not stop the run
                error = BatchProcessingError(batch_number, exc)
                errors.append(str(error))
                logger.exception("Error processing batch %s/%s", batch_number, total_batches)
                status_message = f"Error in batch {batch_number}/{total_batches}, continuing..."
            else:
                records_processed += stored
                logger.info(
                    "Processed batch %s/%s (%s records stored)", batch_number, total_batches, records_processed
                )
                status_message = (
                    f"Processed batch {batch_number}/{total_batches} "
                    f"({records_processed}/{len(records)} records stored)"
                )

            rows_handled += len(batch)
            if job_id:
                self.tracker.update(job_id, rows_handled, status_message)

        if errors:
            message = f"Ingested {records_processed} records with {len(errors)} batch errors"
        else:
            message = f"Successfully ingested {records_processed} records into {collection_name}"
        if job_id:
            self.tracker.complete(job_id, message)
        logger.info("Ingestion into %s finished: %s", collection_name, message)

        return IngestionResult(
            success=not errors,
            message=message,
            records_processed=records_processed,
            errors=errors,
        )

    def process_batch(self, batch: Sequence[CsvRecord], collection_name: str) -> int:
        """
        Embed and store one batch. Rows without title and text are dropped.
        Returns the number of stored rows.
        """
        prepared: List[_PreparedRow] = []
        for record in batch:
            normalized = _normalize(record)
            row = _PreparedRow(
                record=normalized,
                title=_column(normalized, "title"),
                text=_column(normalized, "text"),
            )
            if row.content:
                prepared.append(row)

        if not prepared:
            return 0

        embeddings = self.embedder.embed_batch([row.content for row in prepared])
        if len(embeddings) != len(prepared):
            raise RuntimeError(
                f"Embedding provider returned {len(embeddings)} vectors for {len(prepared)} rows."
            )

        entries = [
            self._build_entry(row, collection_name, embedding)
            for row, embedding in zip(prepared, embeddings)
        ]
        return kb_repo.bulk_insert(self.pool, entries)

    def _build_entry(
        self, row: _PreparedRow, collection_name: str, embedding: List[float]
    ) -> KnowledgeBaseEntry:
        record = row.record
        return KnowledgeBaseEntry(
            collection_name=collection_name,
            embedding=self.embedder.format_for_storage(embedding),
            source_id=_column(record, "source_id") or None,
            title=row.title or None,
            text=row.text or None,
            category=_column(record, "category") or None,
            status=_column(record, "status") or None,
            comment=_column(record, "comment") or None,
            tags=_column(record, "tags") or None,
            source=_column(record, "source") or None,
            last_updated=_column(record, "last_updated") or None,
            entry_metadata=_parse_metadata(_column(record, "metadata")),
        )


def run_ingestion_job(
    pipeline: IngestionPipeline,
    file_path: Path,
    collection_name: str,
    fresh: bool,
    job_id: str,
) -> None:
    """
    Background entry point. Terminal state is reported only through the tracker.
    """
    try:
        result = pipeline.ingest(file_path, collection_name, fresh=fresh, job_id=job_id)
    except Exception as exc:
        logger.exception("Background ingestion job %s crashed", job_id)
        pipeline.tracker.fail(job_id, f"Ingestion failed: {exc}")
        return
    logger.info(
        "Ingestion job %s done: success=%s records=%s errors=%s",
        job_id,
        result.success,
        result.records_processed,
        len(result.errors),
    )


_pipeline: Optional[IngestionPipeline] = None
_pipeline_lock = threading.Lock()


def get_ingestion_pipeline() -> IngestionPipeline:
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = IngestionPipeline(db.get_pool(), get_embedding_provider(), get_progress_tracker())
    return _pipeline
