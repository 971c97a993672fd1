import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kb_api.infrastructure.db import connection as db
from kb_api.infrastructure.db import knowledge_base_repository
from kb_api.interfaces.api.routers import auth, knowledge_base

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    db.init_pool()
    knowledge_base_repository.ensure_table(db.get_pool())
    try:
        yield
    finally:
        db.close_pool()


app = FastAPI(title="Knowledge Base API", version="0.1.0", lifespan=lifespan)

frontend_origin = os.environ.get("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


app.include_router(auth.router)
app.include_router(knowledge_base.router)
