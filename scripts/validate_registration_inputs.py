#!/usr/bin/env python3
"""
Validate a registry extract before running the reconciliation pipeline.

Usage examples:
  python scripts/validate_registration_inputs.py --input data/cand_kipa.parquet
  python scripts/validate_registration_inputs.py --input s3://waitlist-data/srtr/cand_kipa.parquet --organ KI

Outputs on success (exit 0): prints a JSON summary to stdout, e.g.:
  {"input": "data/cand_kipa.parquet", "registrations": 1200, "patients": 950, "missing_columns": []}

Exit code non-zero if required columns are missing or the extract cannot be read.
"""
import argparse
import json
import os
import sys

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist.constants import REQUIRED_REGISTRATION_COLUMNS, FILTER_COLUMNS
from helpers_waitlist.cohort_utils import (
    build_source_reader,
    describe_source_columns,
    resolve_column_mapping,
)
from helpers_waitlist.duckdb_utils import get_duckdb_connection
from helpers_waitlist.errors import RegistrationInputError


def summarize_extract(conn, input_path):
    """Column coverage and row/patient counts of an extract."""
    reader = build_source_reader(input_path)
    columns = describe_source_columns(conn, reader)
    mapping = resolve_column_mapping(columns)

    summary = {
        "input": input_path,
        "source_columns": len(columns),
        "missing_columns": [c for c in REQUIRED_REGISTRATION_COLUMNS if c not in mapping],
        "filter_columns": [c for c in FILTER_COLUMNS if c in mapping],
        "registrations": None,
        "patients": None,
    }
    if not summary["missing_columns"]:
        patient_col = mapping["patient_id"]
        row = conn.sql(f'SELECT COUNT(*), COUNT(DISTINCT "{patient_col}") FROM {reader}').fetchone()
        summary["registrations"], summary["patients"] = int(row[0]), int(row[1])
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Validate a waitlist registration extract")
    parser.add_argument("--input", required=True, help="Registry extract (parquet or CSV, local path or s3://)")
    parser.add_argument("--organ", default=None, help="Require an organ column for this organ filter")
    args = parser.parse_args(argv)

    conn = get_duckdb_connection(enable_s3=args.input.startswith("s3://"))
    try:
        summary = summarize_extract(conn, args.input)
    except RegistrationInputError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)
    finally:
        conn.close()

    if args.organ and "organ" not in summary["filter_columns"]:
        summary["missing_columns"].append("organ")

    print(json.dumps(summary))

    if summary["missing_columns"]:
        print(f"ERROR: Missing columns: {', '.join(summary['missing_columns'])}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
