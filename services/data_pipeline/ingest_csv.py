#!/usr/bin/env python3
"""
Load a knowledge-base CSV straight into Postgres, bypassing the HTTP upload.

Runs the same pipeline the API uses, but keeps the source file and prints the
summary as JSON on stdout.
"""
from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from kb_api.application.ingestion_service import INGEST_BATCH_SIZE, IngestionPipeline
from kb_api.application.progress_tracker import ProgressTracker
from kb_api.core.domain.knowledge_base import IngestionResult
from kb_api.infrastructure.db import connection as db
from kb_api.infrastructure.db import knowledge_base_repository
from kb_api.infrastructure.embeddings.provider import (
    EMBEDDING_CHUNK_SIZE,
    EMBEDDING_DIMENSION,
    EMBEDDING_MODEL,
    EmbeddingProvider,
)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Embed a CSV file and store it in a knowledge-base collection."
    )
    parser.add_argument("csv", type=Path, help="CSV file with a header row.")
    parser.add_argument(
        "--collection",
        required=True,
        help="Target collection name.",
    )
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Delete the collection before loading (replace instead of append).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Postgres DSN; defaults to DATABASE_URL.",
    )
    parser.add_argument(
        "--model",
        default=EMBEDDING_MODEL,
        help="Sentence-Transformers model name.",
    )
    parser.add_argument(
        "--dimension",
        type=int,
        default=EMBEDDING_DIMENSION,
        help="Expected embedding size; mismatches are logged.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=INGEST_BATCH_SIZE,
        help="Rows per insert batch.",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=EMBEDDING_CHUNK_SIZE,
        help="Texts per model call.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log each batch.",
    )
    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> IngestionResult:
    if not args.csv.exists():
        raise FileNotFoundError(f"CSV file not found: {args.csv}")
    if args.database_url:
        db.DATABASE_URL = args.database_url

    db.init_pool()
    try:
        pool = db.get_pool()
        knowledge_base_repository.ensure_table(pool)
        provider = EmbeddingProvider(
            args.model, dimension=args.dimension, chunk_size=args.chunk_size
        )
        pipeline = IngestionPipeline(pool, provider, ProgressTracker(), batch_size=args.batch_size)
        return pipeline.ingest(
            args.csv, args.collection, fresh=args.fresh, remove_source=False
        )
    finally:
        db.close_pool()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    result = run(args)
    print(json.dumps(dataclasses.asdict(result), ensure_ascii=False, indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
