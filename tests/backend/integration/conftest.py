import importlib

import pytest

fastapi = pytest.importorskip("fastapi")
TestClient = pytest.importorskip("fastapi.testclient").TestClient

from kb_fakes import STUB_DIMENSION, StubEncoder  # noqa: E402


class DummyPool:
    """Minimal pool stub to avoid real DB connections in integration tests."""

    def connection(self):
        raise RuntimeError("Connection should not be used in mocked integration tests")


@pytest.fixture
def app_modules(monkeypatch, tmp_path, fake_store):
    """
    Load the app with a fake pool, a stub embedding model and uploads under tmp_path.
    Returns modules and collaborators for monkeypatching in tests.
    """
    app_module = importlib.import_module("kb_api.main")
    connection = importlib.import_module("kb_api.infrastructure.db.connection")
    repo = importlib.import_module("kb_api.infrastructure.db.knowledge_base_repository")
    auth_module = importlib.import_module("kb_api.interfaces.api.routers.auth")
    kb_module = importlib.import_module("kb_api.interfaces.api.routers.knowledge_base")
    ingestion_service = importlib.import_module("kb_api.application.ingestion_service")
    progress = importlib.import_module("kb_api.application.progress_tracker")
    provider_module = importlib.import_module("kb_api.infrastructure.embeddings.provider")
    schemas = importlib.import_module("kb_api.interfaces.api.schemas")

    app = app_module.app
    fake_pool = DummyPool()
    encoder = StubEncoder()
    provider = provider_module.EmbeddingProvider(
        "stub-model", model_factory=lambda _name: encoder, dimension=STUB_DIMENSION
    )
    tracker = progress.ProgressTracker()
    pipeline = ingestion_service.IngestionPipeline(fake_pool, provider, tracker)

    # Override dependencies using the original callables before the module attributes are patched.
    app.dependency_overrides[connection.get_pool] = lambda: fake_pool
    app.dependency_overrides[ingestion_service.get_ingestion_pipeline] = lambda: pipeline
    app.dependency_overrides[progress.get_progress_tracker] = lambda: tracker
    app.dependency_overrides[provider_module.get_embedding_provider] = lambda: provider

    admin = schemas.UserPublic(user_id="u1", email="admin@example.com", role="admin")
    app.dependency_overrides[auth_module.get_current_user] = lambda: admin
    app.dependency_overrides[auth_module.require_admin] = lambda: admin

    monkeypatch.setattr(connection, "init_pool", lambda: None)
    monkeypatch.setattr(connection, "close_pool", lambda: None)
    monkeypatch.setattr(connection, "pool", fake_pool)
    monkeypatch.setattr(connection, "get_pool", lambda: fake_pool)
    monkeypatch.setattr(repo, "ensure_table", lambda _pool: None)
    monkeypatch.setattr(ingestion_service, "UPLOAD_ROOT", tmp_path / "uploads")

    yield {
        "app": app,
        "auth": auth_module,
        "kb": kb_module,
        "repo": repo,
        "ingestion": ingestion_service,
        "pipeline": pipeline,
        "tracker": tracker,
        "encoder": encoder,
        "store": fake_store,
        "uploads": tmp_path / "uploads",
    }

    app.dependency_overrides.clear()


@pytest.fixture
def client(app_modules):
    return TestClient(app_modules["app"])
