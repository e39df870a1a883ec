# utils/common.py
"""Common utilities: id validation, cache keys, text and vector helpers"""
import hashlib
import os
import re
from typing import List, Optional, Sequence

import numpy as np

# ⚠️ DO NOT import settings here - causes circular import with config.py

_UUID_PATTERN = re.compile(
    r'^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$', re.IGNORECASE
)


# ============= Path Management =============

def get_project_root() -> str:
    """Returns the absolute path to the project's root directory."""
    return os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))


def get_log_file_path() -> str:
    """Returns the log file path under <project root>/log (directory created lazily by logger setup)."""
    return os.path.join(get_project_root(), 'log', 'ekb.log')


# ============= Validation =============

def validate_document_id(doc_id: str) -> bool:
    """Validate document ID format."""
    return bool(doc_id) and bool(_UUID_PATTERN.match(doc_id))


# ============= Cache Keys =============

def make_cache_key(prefix: str, text: str, limit: int) -> str:
    """Cache key made of a prefix, a short SHA256 of the text and the limit."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}:{digest}:{limit}"


# ============= Text =============

def truncate_chars(text: str, n: int) -> str:
    """Truncate to at most n code points."""
    if n <= 0:
        return ""
    return text if len(text) <= n else text[:n]


# ============= Vectors =============

def embedding_to_bytes(vector: Optional[Sequence[float]]) -> Optional[bytes]:
    """Serialize a vector as little-endian float64 bytes."""
    if vector is None:
        return None
    return np.asarray(vector, dtype="<f8").tobytes()


def bytes_to_embedding(data: Optional[bytes]) -> Optional[List[float]]:
    """Inverse of embedding_to_bytes."""
    if not data:
        return None
    if len(data) % 8 != 0:
        raise ValueError(f"Invalid byte length for float64 vector: {len(data)}")
    return np.frombuffer(data, dtype="<f8").tolist()
