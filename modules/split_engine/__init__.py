"""
Split Engine Module
===================

Responsibility:
- Stratified train/test partitioning with a seeded per-class shuffle.
- Content-addressed caching of partition indices.
- Single-use release of the held-out test partition.
"""

from .split_engine import SplitEngine, Partition, partition_dataset

__all__ = ['SplitEngine', 'Partition', 'partition_dataset']
