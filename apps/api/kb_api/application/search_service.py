from typing import Dict, List, Sequence

from psycopg import sql
from psycopg_pool import ConnectionPool

from kb_api.infrastructure.embeddings.provider import EmbeddingProvider
from kb_api.interfaces.api.schemas import KnowledgeSearchRequest, KnowledgeSearchResult


def run_search(
    pool: ConnectionPool,
    req: KnowledgeSearchRequest,
    embedding: Sequence[float],
) -> List[KnowledgeSearchResult]:
    params: Dict[str, object] = {
        "embedding": EmbeddingProvider.format_for_storage(embedding),
        "limit": req.limit,
    }

    distance_sql = "embedding <=> %(embedding)s::vector"
    clauses: List[str] = ["embedding IS NOT NULL"]
    if req.collection_name:
        clauses.append("collection_name = %(collection_name)s")
        params["collection_name"] = req.collection_name
    if req.category:
        clauses.append("category = %(category)s")
        params["category"] = req.category
    if req.max_distance is not None:
        clauses.append(f"{distance_sql} <= %(max_distance)s")
        params["max_distance"] = req.max_distance

    query = sql.SQL(
        """
        SELECT
            id,
            source_id,
            collection_name,
            title,
            text,
            category,
            tags,
            source,
            entry_metadata,
            {distance} AS distance
        FROM knowledge_base_entries
        WHERE {where}
        ORDER BY {distance}
        LIMIT %(limit)s
        """
    ).format(where=sql.SQL(" AND ".join(clauses)), distance=sql.SQL(distance_sql))

    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(query, params)
        rows = cur.fetchall()

    return [
        KnowledgeSearchResult(
            id=row["id"],
            source_id=row["source_id"],
            collection_name=row["collection_name"],
            title=row["title"],
            text=row["text"],
            category=row["category"],
            tags=row["tags"],
            source=row["source"],
            entry_metadata=row["entry_metadata"] or {},
            distance=float(row["distance"]),
        )
        for row in rows
    ]
