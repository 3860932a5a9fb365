#!/usr/bin/env python3
"""
DuckDB utilities for loading registry extracts and persisting step outputs.
"""

import os
import re
import logging
from typing import Optional

import duckdb
import pandas as pd
import pyarrow as pa

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def create_simple_duckdb_connection(logger, database: Optional[str] = None, tmp_dir: Optional[str] = None,
                                    enable_s3: bool = False, s3_region: str = "us-east-1"):
    """Create a simple DuckDB connection (in-memory unless a database file is given)."""
    try:
        if database:
            os.makedirs(os.path.dirname(os.path.abspath(database)), exist_ok=True)
        conn = duckdb.connect(database=database or ':memory:')

        # S3 access only when the input lives in a bucket
        if enable_s3:
            conn.sql("INSTALL httpfs; LOAD httpfs;")
            conn.sql("INSTALL aws; LOAD aws;")
            conn.sql("CALL load_aws_credentials();")
            conn.sql(f"SET s3_region='{s3_region}'")
            conn.sql("SET s3_url_style='path'")

        if tmp_dir:
            os.makedirs(tmp_dir, exist_ok=True)
            conn.sql(f"SET temp_directory = '{tmp_dir}'")

        conn.sql("SET threads = 1")

        logger.info(f"✅ DuckDB connection created ({database or 'in-memory'})")
        return conn

    except Exception as e:
        logger.error(f"❌ Failed to create DuckDB connection: {e}")
        raise


def get_duckdb_connection(database: Optional[str] = None, tmp_dir: Optional[str] = None,
                          enable_s3: bool = False, s3_region: str = "us-east-1", logger=None):
    """Get a simple DuckDB connection - wrapper with a default logger"""
    if logger is None:
        logger = logging.getLogger(__name__)

    return create_simple_duckdb_connection(logger, database, tmp_dir, enable_s3, s3_region)


def close_duckdb_connection(conn, logger):
    """Close DuckDB connection safely"""
    try:
        conn.close()
        logger.info("✅ DuckDB connection closed")
    except Exception as e:
        logger.warning(f"⚠️ Could not close DuckDB connection: {e}")


def _check_table_name(table_name: str) -> str:
    if not _TABLE_NAME_RE.match(table_name):
        raise ValueError(f"Invalid table name: {table_name!r}")
    return table_name


def table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?",
        [_check_table_name(table_name)],
    ).fetchone()
    return bool(result and result[0] > 0)


def persist_frame(conn, table_name: str, df: pd.DataFrame, logger) -> int:
    """Write a step output into a DuckDB table (replacing any previous copy)."""
    _check_table_name(table_name)
    staging = f"_staging_{table_name}"
    arrow_table = pa.Table.from_pandas(df, preserve_index=False)
    conn.register(staging, arrow_table)
    try:
        conn.sql(f"CREATE OR REPLACE TABLE {table_name} AS SELECT * FROM {staging}")
    finally:
        conn.unregister(staging)
    row_count = conn.sql(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]
    logger.debug(f"→ [DUCKDB] Persisted {table_name}: {row_count:,} rows")
    return row_count


def load_frame(conn, table_name: str) -> pd.DataFrame:
    """Read a persisted step output back into pandas."""
    return conn.sql(f"SELECT * FROM {_check_table_name(table_name)}").df()


def drop_tables(conn, table_names, logger) -> int:
    """Drop step tables that exist; returns how many were dropped."""
    dropped = 0
    for table_name in table_names:
        try:
            if table_exists(conn, table_name):
                conn.execute(f"DROP TABLE IF EXISTS {_check_table_name(table_name)}")
                dropped += 1
                logger.debug(f"→ [CLEANUP] Dropped table: {table_name}")
        except duckdb.Error as e:
            logger.warning(f"→ [CLEANUP] Could not drop table {table_name}: {e}")
    return dropped
