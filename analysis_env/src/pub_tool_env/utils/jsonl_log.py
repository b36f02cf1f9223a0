"""
jsonl_log.py

Simple utility for recording tool env lifecycle events to JSONL files.
"""

from __future__ import annotations
from typing import Dict, Any, Union
from pathlib import Path
import json
import logging

logger = logging.getLogger(__name__)


def append_jsonl(path: Union[str, Path], record: Dict[str, Any]) -> bool:
    """
    Append a single JSON object per line to a JSONL file.

    :param path: Path to the JSONL file.
    :param record: Dictionary representing the JSON object to append.
        Values that are not JSON serializable are written as strings.
    :return: True if the operation was successful, False otherwise.
    """
    path = Path(path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Error writing to JSONL file {path}: {e}")
        return False

    return True
