"""
Lightweight caching utilities.

- Provides a stable fingerprint helper (lru_cache) for repeated keys.
- Centralizes on-disk cache location helpers for checkpoints.
"""

import json
from functools import lru_cache
from hashlib import sha256
from pathlib import Path
from typing import Any, Union

import pandas as pd
from pandas.util import hash_pandas_object


@lru_cache(maxsize=256)
def fingerprint(key: str) -> str:
    """
    Deterministically hash a string key (cached to avoid repeated hashing).
    """
    return sha256(key.encode("utf-8")).hexdigest()


def fingerprint_object(obj: Any) -> str:
    """Hash any JSON-serialisable object through its canonical (sorted-key) form."""
    return fingerprint(json.dumps(obj, sort_keys=True, default=str))


def dataframe_version(df: pd.DataFrame) -> str:
    """
    Content hash of a DataFrame (values, index and column names).
    """
    hashed = int(hash_pandas_object(df, index=True).sum())
    return fingerprint(f"{len(df)}_{list(df.columns)}_{hashed}")


def ensure_cache_dir(base_dir: Union[str, Path], namespace: str) -> Path:
    """
    Create/return a cache directory rooted under base_dir/.cache/{namespace}.
    """
    base = Path(base_dir)
    cache_dir = base / ".cache" / namespace
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir
