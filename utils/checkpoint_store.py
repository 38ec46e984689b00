"""
Content-addressed checkpoint store.

Intermediate artifacts (partition indices, fold assignments, grid-search
progress, per-family tuning tables) are stored under a directory named by a
hash of every upstream input. A changed input produces a new key, so stale
entries are never read back.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

from utils.cache import ensure_cache_dir, fingerprint_object
from utils import constants

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Parquet checkpoint directory keyed by a content hash.

    Usage:
        store = CheckpointStore.for_inputs(cache_root, dataset=..., recipe=..., grids=...)
        idx = store.load_frame("partition")  # None on a miss
    """

    def __init__(self, root: Union[str, Path], key: str):
        self.key = key
        self.directory = Path(root) / key
        self.directory.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_inputs(cls, cache_root: Union[str, Path], **inputs: Any) -> "CheckpointStore":
        """Build a store whose key is the hash of the given named inputs."""
        key = cls.make_key(**inputs)
        root = ensure_cache_dir(cache_root, constants.CHECKPOINT_NAMESPACE)
        return cls(root, key)

    @staticmethod
    def make_key(**inputs: Any) -> str:
        return fingerprint_object(inputs)[:24]

    def path_for(self, name: str, suffix: str = ".parquet") -> Path:
        return self.directory / f"{name}{suffix}"

    def save_frame(self, name: str, df: pd.DataFrame, index: bool = True) -> Path:
        path = self.path_for(name)
        tmp_path = path.with_suffix(".parquet.tmp")
        df.to_parquet(tmp_path, index=index)
        os.replace(tmp_path, path)
        logger.debug(f"Checkpoint written: {path}")
        return path

    def load_frame(self, name: str) -> Optional[pd.DataFrame]:
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            return pd.read_parquet(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable checkpoint {path}: {e}")
            return None
