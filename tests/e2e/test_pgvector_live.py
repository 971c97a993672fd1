"""
Live pgvector smoke tests.

Requires:
  - Environment variable RUN_PGVECTOR_TESTS=1
  - DATABASE_URL pointing at a Postgres instance where the `vector` extension can be created.

The tests write to a throwaway collection and delete it afterwards. Embeddings come
from a stub model sized to the table's vector column, so no model download is needed.
"""

import os
import uuid

import pytest

RUN_PGVECTOR = os.environ.get("RUN_PGVECTOR_TESTS") == "1"
DATABASE_URL = os.environ.get("DATABASE_URL")

if not RUN_PGVECTOR:
    pytest.skip(
        "Set RUN_PGVECTOR_TESTS=1 to run live pgvector tests", allow_module_level=True
    )

if not DATABASE_URL:
    pytest.skip(
        "DATABASE_URL is required for live pgvector tests", allow_module_level=True
    )

from kb_api.application.ingestion_service import IngestionPipeline  # noqa: E402
from kb_api.application.progress_tracker import ProgressTracker  # noqa: E402
from kb_api.application.search_service import run_search  # noqa: E402
from kb_api.infrastructure.db import connection as db  # noqa: E402
from kb_api.infrastructure.db import knowledge_base_repository as repo  # noqa: E402
from kb_api.infrastructure.embeddings.provider import EmbeddingProvider  # noqa: E402
from kb_api.interfaces.api.schemas import KnowledgeSearchRequest  # noqa: E402

from kb_fakes import StubEncoder  # noqa: E402


def ensure_pool():
    db.DATABASE_URL = DATABASE_URL
    db.init_pool()
    pool = db.get_pool()
    repo.ensure_table(pool)
    return pool


@pytest.fixture
def collection():
    pool = ensure_pool()
    name = f"live-{uuid.uuid4().hex[:8]}"
    yield pool, name
    repo.delete_by_collection(pool, name)


def test_ingest_and_search_live(collection, tmp_path):
    pool, name = collection
    encoder = StubEncoder(dimension=repo.EMBEDDING_DIMENSION)
    provider = EmbeddingProvider(
        "stub", model_factory=lambda _name: encoder, dimension=repo.EMBEDDING_DIMENSION
    )
    csv_path = tmp_path / "live.csv"
    csv_path.write_text(
        "id,title,text,category,metadata\n"
        '1,Refunds,Full refund within 14 days,billing,"{""priority"": 1}"\n'
        "2,Schedules,Classes start at 8am,academic,\n",
        encoding="utf-8",
    )

    pipeline = IngestionPipeline(pool, provider, ProgressTracker(), batch_size=1)
    result = pipeline.ingest(csv_path, name, fresh=True, job_id="live-job", remove_source=False)

    assert result.success is True
    assert repo.get_collection_count(pool, name) == 2

    entries, pagination = repo.find_all(pool, collection_name=name)
    assert pagination["total"] == 2
    refunds = next(e for e in entries if e["title"] == "Refunds")
    assert refunds["entry_metadata"] == {"priority": 1}

    query_vector = provider.embed("Refunds Full refund within 14 days")
    results = run_search(pool, KnowledgeSearchRequest(query="refunds", collection_name=name), query_vector)
    assert results[0].title == "Refunds"
    assert results[0].distance == pytest.approx(0.0, abs=1e-5)
    distances = [r.distance for r in results]
    assert distances == sorted(distances)

    again = pipeline.ingest(csv_path, name, fresh=True, remove_source=False)
    assert again.records_processed == 2
    assert repo.get_collection_count(pool, name) == 2
