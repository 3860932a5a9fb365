"""
Registration loading and population filtering.

The registry extract (parquet or CSV, local or s3://) is read through DuckDB,
source columns are renamed to the canonical registration schema and the
population filter (listing date range, organ, minimum age) is applied.
"""

import os
import sys
import logging
from typing import Any, Dict, List, Optional

import duckdb
import pandas as pd

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist import constants
from helpers_waitlist.constants import (
    SRTR_COLUMN_MAP,
    REQUIRED_REGISTRATION_COLUMNS,
    FILTER_COLUMNS,
    PATIENT_ID,
    LIST_DATE,
    ORGAN,
    AGE_AT_LISTING,
    REMOVAL_CODE,
    DONOR_TYPE,
    DONOR_ID,
)
from helpers_waitlist.data_utils import normalize_blank_strings, ensure_date_columns
from helpers_waitlist.errors import RegistrationInputError


def default_population_filter() -> Dict[str, Any]:
    """Population filter taken from the WAITLIST_* environment defaults."""
    min_age = constants.WAITLIST_MIN_AGE
    return {
        "list_start": constants.WAITLIST_LIST_START,
        "list_end": constants.WAITLIST_LIST_END,
        "organ": constants.WAITLIST_ORGAN,
        "min_age": float(min_age) if min_age else None,
    }


def build_source_reader(source_path: str) -> str:
    """DuckDB table function for the extract, chosen by file extension."""
    if not source_path:
        raise RegistrationInputError("No registration source path configured")
    quoted = source_path.replace("'", "''")
    lowered = source_path.lower()
    if lowered.endswith(".parquet") or lowered.endswith("*.parquet"):
        return f"read_parquet('{quoted}')"
    if lowered.endswith(".csv") or lowered.endswith(".txt") or lowered.endswith(".csv.gz"):
        return f"read_csv_auto('{quoted}', header=true)"
    raise RegistrationInputError(f"Unsupported registration source format: {source_path}")


def describe_source_columns(conn, reader: str) -> List[str]:
    try:
        return [row[0] for row in conn.sql(f"DESCRIBE SELECT * FROM {reader}").fetchall()]
    except duckdb.Error as e:
        raise RegistrationInputError(f"Could not read registration source: {e}") from e


def resolve_column_mapping(source_columns: List[str], column_map: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Map canonical column -> source column.

    Source columns already carrying a canonical name are used as is; otherwise
    the column map (SRTR names by default) is consulted.
    """
    column_map = SRTR_COLUMN_MAP if column_map is None else column_map
    available = set(source_columns)
    mapping = {}
    for source, canonical in column_map.items():
        if source in available and canonical not in mapping:
            mapping[canonical] = source
    for canonical in REQUIRED_REGISTRATION_COLUMNS + FILTER_COLUMNS:
        if canonical in available:
            mapping[canonical] = canonical
    return mapping


def build_registration_query(reader: str, mapping: Dict[str, str], filters: Dict[str, Any]):
    """SELECT statement and parameters for the filtered registration population."""
    select_cols = [f'"{mapping[c]}" AS {c}' for c in REQUIRED_REGISTRATION_COLUMNS]
    select_cols += [f'"{mapping[c]}" AS {c}' for c in FILTER_COLUMNS if c in mapping]

    clauses = []
    params = []
    list_col = f'TRY_CAST("{mapping[LIST_DATE]}" AS DATE)'
    if filters.get("list_start"):
        clauses.append(f"{list_col} >= CAST(? AS DATE)")
        params.append(str(filters["list_start"]))
    if filters.get("list_end"):
        clauses.append(f"{list_col} <= CAST(? AS DATE)")
        params.append(str(filters["list_end"]))
    if filters.get("organ"):
        if ORGAN not in mapping:
            raise RegistrationInputError("Organ filter configured but the source has no organ column")
        clauses.append(f'"{mapping[ORGAN]}" = ?')
        params.append(str(filters["organ"]))
    if filters.get("min_age") is not None:
        if AGE_AT_LISTING not in mapping:
            raise RegistrationInputError("Minimum age filter configured but the source has no age column")
        clauses.append(f'TRY_CAST("{mapping[AGE_AT_LISTING]}" AS DOUBLE) >= ?')
        params.append(float(filters["min_age"]))

    sql = f"SELECT {', '.join(select_cols)} FROM {reader}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    return sql, params


def load_registrations(source_path: str, conn, logger: Optional[logging.Logger] = None,
                       filters: Optional[Dict[str, Any]] = None,
                       column_map: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    """Load the filtered registration collection as a canonical DataFrame."""
    logger = logger or logging.getLogger(__name__)
    filters = default_population_filter() if filters is None else filters

    reader = build_source_reader(source_path)
    source_columns = describe_source_columns(conn, reader)
    mapping = resolve_column_mapping(source_columns, column_map)

    missing = [c for c in REQUIRED_REGISTRATION_COLUMNS if c not in mapping]
    if missing:
        raise RegistrationInputError(f"Registration source is missing required columns: {missing}")

    sql, params = build_registration_query(reader, mapping, filters)
    logger.info(f"→ [LOADER] Reading registrations from {source_path}")
    logger.debug(f"→ [LOADER] SQL: {sql} params={params}")
    try:
        registrations = conn.execute(sql, params).df()
    except duckdb.Error as e:
        raise RegistrationInputError(f"Could not load registrations: {e}") from e

    registrations = normalize_blank_strings(registrations, [REMOVAL_CODE, DONOR_TYPE, DONOR_ID])
    registrations = ensure_date_columns(registrations)

    logger.info(f"→ [LOADER] Loaded {len(registrations):,} registrations "
                f"for {registrations[PATIENT_ID].nunique():,} patients")
    return registrations
