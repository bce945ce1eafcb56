"""
Data loading for the DBS meta-analysis.

    - WideLayout: declared occasion-column layout of a wide table
    - read_wide_table: read CSV / TSV / parquet
    - wide_to_long: reshape one-row-per-study into one-row-per-occasion
"""

from dbs_workflow.data.loader import (
    LONG_COLUMNS,
    WideLayout,
    read_wide_table,
    wide_to_long,
)

__all__ = [
    "LONG_COLUMNS",
    "WideLayout",
    "read_wide_table",
    "wide_to_long",
]
