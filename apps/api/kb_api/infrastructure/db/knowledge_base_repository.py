import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from kb_api.core.domain.knowledge_base import KnowledgeBaseEntry
from kb_api.infrastructure.embeddings.provider import EMBEDDING_DIMENSION

TABLE_NAME = "knowledge_base_entries"

TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS knowledge_base_entries (
    id SERIAL PRIMARY KEY,
    source_id VARCHAR(255),
    collection_name VARCHAR(100) NOT NULL,
    title VARCHAR(255),
    text TEXT,
    category VARCHAR(100),
    status VARCHAR(50),
    comment TEXT,
    tags VARCHAR(255),
    source VARCHAR(255),
    last_updated VARCHAR(100),
    entry_metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    embedding vector({EMBEDDING_DIMENSION}),
    timestamp TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_knowledge_base_collection ON knowledge_base_entries(collection_name);
CREATE INDEX IF NOT EXISTS idx_knowledge_base_category ON knowledge_base_entries(category);
CREATE INDEX IF NOT EXISTS idx_knowledge_base_timestamp ON knowledge_base_entries(timestamp);
CREATE INDEX IF NOT EXISTS idx_knowledge_base_embeddings
    ON knowledge_base_entries USING hnsw (embedding vector_cosine_ops) WITH (m = 16, ef_construction = 64);
"""

PUBLIC_COLUMNS = (
    "id, source_id, collection_name, title, text, category, status, comment, "
    "tags, source, last_updated, entry_metadata, timestamp"
)

INSERT_COLUMNS = (
    "source_id, collection_name, title, text, category, status, comment, "
    "tags, source, last_updated, entry_metadata, embedding, timestamp"
)
ROW_PLACEHOLDER = "(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::vector, now())"


def ensure_table(pool: ConnectionPool) -> None:
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(TABLE_DDL)
        conn.commit()


def _entry_values(entry: KnowledgeBaseEntry) -> List[Any]:
    return [
        entry.source_id,
        entry.collection_name,
        entry.title,
        entry.text,
        entry.category,
        entry.status,
        entry.comment,
        entry.tags,
        entry.source,
        entry.last_updated,
        Json(entry.entry_metadata),
        entry.embedding,
    ]


def build_bulk_insert(entries: Sequence[KnowledgeBaseEntry]) -> Tuple[str, List[Any]]:
    placeholders = ", ".join([ROW_PLACEHOLDER] * len(entries))
    params: List[Any] = []
    for entry in entries:
        params.extend(_entry_values(entry))
    return f"INSERT INTO {TABLE_NAME} ({INSERT_COLUMNS}) VALUES {placeholders}", params


def bulk_insert(pool: ConnectionPool, entries: Sequence[KnowledgeBaseEntry]) -> int:
    """
    Insert all entries with one multi-row statement and one commit.
    Leaving the connection block on error rolls the whole batch back.
    """
    if not entries:
        return 0
    query, params = build_bulk_insert(entries)
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(query, params)
        conn.commit()
    return len(entries)


def delete_by_collection(pool: ConnectionPool, collection_name: str) -> int:
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"DELETE FROM {TABLE_NAME} WHERE collection_name = %(collection_name)s",
            {"collection_name": collection_name},
        )
        deleted = cur.rowcount
        conn.commit()
    return max(deleted, 0)


def delete_by_id(pool: ConnectionPool, entry_id: int) -> bool:
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(f"DELETE FROM {TABLE_NAME} WHERE id = %(id)s", {"id": entry_id})
        deleted = cur.rowcount
        conn.commit()
    return deleted > 0


def find_by_id(pool: ConnectionPool, entry_id: int) -> Optional[Dict[str, Any]]:
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"SELECT {PUBLIC_COLUMNS} FROM {TABLE_NAME} WHERE id = %(id)s",
            {"id": entry_id},
        )
        row = cur.fetchone()
    return dict(row) if row else None


def _filters(
    collection_name: Optional[str], category: Optional[str], search: Optional[str]
) -> Tuple[str, Dict[str, Any]]:
    clauses: List[str] = []
    params: Dict[str, Any] = {}
    if collection_name:
        clauses.append("collection_name = %(collection_name)s")
        params["collection_name"] = collection_name
    if category:
        clauses.append("category = %(category)s")
        params["category"] = category
    if search:
        clauses.append("(title ILIKE %(search)s OR text ILIKE %(search)s OR tags ILIKE %(search)s)")
        params["search"] = f"%{search}%"
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where_sql, params


def find_all(
    pool: ConnectionPool,
    page: int = 1,
    limit: int = 20,
    collection_name: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    where_sql, params = _filters(collection_name, category, search)
    offset = (page - 1) * limit

    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(f"SELECT COUNT(*) AS count FROM {TABLE_NAME} {where_sql}", params)
        row = cur.fetchone()
        total = int(row["count"]) if row else 0

        cur.execute(
            f"""
            SELECT {PUBLIC_COLUMNS}
            FROM {TABLE_NAME}
            {where_sql}
            ORDER BY timestamp DESC
            LIMIT %(limit)s OFFSET %(offset)s
            """,
            {**params, "limit": limit, "offset": offset},
        )
        rows = cur.fetchall()

    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }
    return [dict(r) for r in rows], pagination


def get_collections(pool: ConnectionPool) -> List[Dict[str, Any]]:
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT collection_name, COUNT(*) AS entry_count
            FROM {TABLE_NAME}
            GROUP BY collection_name
            ORDER BY collection_name
            """
        )
        rows = cur.fetchall()
    return [
        {"collection_name": r["collection_name"], "entry_count": int(r["entry_count"])}
        for r in rows
    ]


def get_collection_count(pool: ConnectionPool, collection_name: str) -> int:
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"SELECT COUNT(*) AS count FROM {TABLE_NAME} WHERE collection_name = %(collection_name)s",
            {"collection_name": collection_name},
        )
        row = cur.fetchone()
    return int(row["count"]) if row else 0


def get_stats(pool: ConnectionPool) -> Dict[str, Any]:
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT COUNT(*) AS total_entries, COUNT(DISTINCT collection_name) AS total_collections
            FROM {TABLE_NAME}
            """
        )
        totals = cur.fetchone() or {}
        cur.execute(
            f"""
            SELECT category, COUNT(*) AS count
            FROM {TABLE_NAME}
            WHERE category IS NOT NULL
            GROUP BY category
            ORDER BY count DESC
            LIMIT 10
            """
        )
        categories = cur.fetchall()

    return {
        "total_entries": int(totals.get("total_entries") or 0),
        "total_collections": int(totals.get("total_collections") or 0),
        "top_categories": [
            {"category": r["category"], "count": int(r["count"])} for r in categories
        ],
    }
