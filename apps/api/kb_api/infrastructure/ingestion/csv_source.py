import csv
import logging
import os
from pathlib import Path
from typing import Dict, List

logger = logging.getLogger(__name__)

CsvRecord = Dict[str, str]

SUPPORTED_EXTENSIONS = {".csv"}

# One cell may be as large as the whole upload.
MAX_FIELD_SIZE = int(os.environ.get("KB_MAX_UPLOAD_MB", "50")) * 1024 * 1024


def can_parse(filename: str) -> bool:
    return Path(filename).suffix.lower() in SUPPORTED_EXTENSIONS


def read_csv_records(file_path: Path) -> List[CsvRecord]:
    """
    Read a CSV with a header row into header-keyed dicts.

    Header names and values are trimmed; blank lines are skipped. Columns
    beyond the header are dropped and missing trailing cells become "".
    """
    if csv.field_size_limit() < MAX_FIELD_SIZE:
        csv.field_size_limit(MAX_FIELD_SIZE)
    records: List[CsvRecord] = []
    # utf-8-sig strips the BOM that spreadsheet exports tend to add.
    with file_path.open("r", encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh, skipinitialspace=True)
        for row in reader:
            records.append(
                {
                    key.strip(): (value or "").strip()
                    for key, value in row.items()
                    if key is not None
                }
            )

    logger.debug("Parsed %s: %d rows", file_path.name, len(records))
    return records
