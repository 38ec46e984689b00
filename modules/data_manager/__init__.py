"""
Data Manager Module
===================

Responsibility:
- Loading of raw match records (CSV, Parquet, Excel) from the data directory.
- Mapping of raw export columns onto the record schema.
- Validation of required columns, missing values and types.
- Persistence of the validated dataset for downstream stages.
"""

from .data_manager import DataManager

__all__ = ['DataManager']
