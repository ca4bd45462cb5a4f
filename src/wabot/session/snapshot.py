"""
Session snapshot model and auth-directory encoding.

A snapshot is the full set of files in the chat client's flat auth
directory, each stored as base64 text keyed by its filename.
"""

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from wabot.logger import get_logger

logger = get_logger(__name__)

# SQLite shared-memory index; rebuilt by SQLite when the database is opened
TRANSIENT_SUFFIXES = ("-shm",)


@dataclass
class SessionSnapshot:
    """One persisted credential bundle."""

    id: str
    files: Dict[str, str] = field(default_factory=dict)
    updated_at: Optional[datetime] = None


def encode_directory(local_dir: Path) -> Optional[Dict[str, str]]:
    """
    Read every regular file directly inside local_dir as base64 text.

    Subdirectories and SQLite -shm files are skipped. Returns None when the
    directory does not exist.
    """
    local_dir = Path(local_dir)
    if not local_dir.is_dir():
        return None

    payload: Dict[str, str] = {}
    for entry in sorted(local_dir.iterdir()):
        if entry.is_file() and not entry.name.endswith(TRANSIENT_SUFFIXES):
            payload[entry.name] = base64.b64encode(entry.read_bytes()).decode("ascii")
    return payload


def decode_file(filename: str, content: object) -> Tuple[Optional[str], Optional[bytes]]:
    """
    Validate and decode one snapshot entry.

    Returns (filename, raw bytes), or (None, None) when the entry can not be
    written back safely.
    """
    if not filename or filename in (".", "..") or "/" in filename or "\\" in filename:
        logger.warning(f"Skipping snapshot entry with unsafe filename: {filename!r}")
        return None, None

    if not isinstance(content, str):
        logger.warning(
            f"Skipping snapshot entry {filename}: payload is {type(content).__name__}, not base64 text"
        )
        return None, None

    try:
        return filename, base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Skipping snapshot entry {filename}: corrupt base64 ({e})")
        return None, None
