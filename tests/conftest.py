import os
import sys
from pathlib import Path

import pytest

# Ensure apps/api is on path for imports inside the API package (e.g., `kb_api.interfaces.api.schemas`).
ROOT = Path(__file__).resolve().parents[1]
API_PATH = ROOT / "apps" / "api"
TESTS_PATH = Path(__file__).resolve().parent
for path in (API_PATH, TESTS_PATH):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

# The auth module validates its secret at import time.
os.environ.setdefault("JWT_SECRET", "test-secret-" + "x" * 32)

from kb_fakes import STUB_DIMENSION, FakeStore, StubEncoder  # noqa: E402


@pytest.fixture
def stub_encoder():
    return StubEncoder()


@pytest.fixture
def provider(stub_encoder):
    from kb_api.infrastructure.embeddings.provider import EmbeddingProvider

    return EmbeddingProvider(
        "stub-model",
        model_factory=lambda _name: stub_encoder,
        dimension=STUB_DIMENSION,
        chunk_size=100,
    )


@pytest.fixture
def fake_store(monkeypatch):
    from kb_api.application import ingestion_service

    store = FakeStore()
    monkeypatch.setattr(ingestion_service.kb_repo, "bulk_insert", store.bulk_insert)
    monkeypatch.setattr(ingestion_service.kb_repo, "delete_by_collection", store.delete_by_collection)
    return store


@pytest.fixture
def write_csv(tmp_path):
    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write
