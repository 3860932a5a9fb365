import os
import sys
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist.constants import (
    PATIENT_ID,
    LIST_TYPE,
    LIST_TYPES,
    OUTCOME,
    OUTCOMES,
    LIST_TYPE_CONCURRENT,
    REGISTRATION_DATE_COLUMNS,
)


def validate_and_clean_strings(value):
    """
    Validate and clean string values so blank strings become missing values.
    Returns cleaned value or None if invalid.
    """
    if value is None:
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned if cleaned else None
    return value


def normalize_blank_strings(df: pd.DataFrame, columns: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """Return a copy of df where blank strings in object columns are null."""
    out = df.copy()
    targets = columns if columns is not None else out.select_dtypes(include=["object", "string"]).columns
    for col in targets:
        if col in out.columns:
            out[col] = out[col].map(validate_and_clean_strings)
    return out


def ensure_date_columns(df: pd.DataFrame, columns: Iterable[str] = REGISTRATION_DATE_COLUMNS) -> pd.DataFrame:
    """Return a copy of df with the given columns cast to datetime64 (NaT for missing)."""
    out = df.copy()
    for col in columns:
        if col in out.columns:
            out[col] = pd.to_datetime(out[col], errors="coerce")
    return out


def convert_json_serializable(obj: Any) -> Any:
    """Convert objects to JSON serializable format.

    Args:
        obj: Object to convert

    Returns:
        JSON serializable object
    """
    if obj is None:
        return None
    if isinstance(obj, (np.integer,)):
        return int(obj)
    elif isinstance(obj, (np.floating,)):
        return None if np.isnan(obj) else float(obj)
    elif isinstance(obj, (np.bool_,)):
        return bool(obj)
    elif isinstance(obj, (np.ndarray,)):
        return [convert_json_serializable(item) for item in obj.tolist()]
    elif isinstance(obj, (pd.Timestamp, datetime, date)):
        return None if pd.isna(obj) else obj.isoformat()
    elif isinstance(obj, (set,)):
        return sorted(convert_json_serializable(item) for item in obj)
    elif isinstance(obj, (dict,)):
        return {str(k): convert_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [convert_json_serializable(item) for item in obj]
    elif obj is pd.NaT:
        return None
    return obj


def count_patients_by_list_type(classified: pd.DataFrame) -> Dict[str, int]:
    """Distinct patients per list type; a patient counts toward every type it has."""
    counts = {list_type: 0 for list_type in LIST_TYPES}
    if classified.empty:
        return counts
    per_type = classified.groupby(LIST_TYPE)[PATIENT_ID].nunique()
    for list_type, n in per_type.items():
        counts[str(list_type)] = int(n)
    return counts


def generate_reconciliation_report(classified: pd.DataFrame,
                                   records: pd.DataFrame,
                                   errors: List[Dict[str, Any]],
                                   warnings: List[Dict[str, Any]],
                                   logger: logging.Logger,
                                   input_registrations: Optional[int] = None,
                                   run_metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Generate the compact end-of-run report for the reporting collaborator."""
    logger.info("→ Generating reconciliation report...")

    registration_counts = {list_type: 0 for list_type in LIST_TYPES}
    if not classified.empty:
        for list_type, n in classified[LIST_TYPE].value_counts().items():
            registration_counts[str(list_type)] = int(n)

    episodes_collapsed = 0
    if not records.empty:
        episodes_collapsed = int((records[LIST_TYPE] == LIST_TYPE_CONCURRENT).sum())

    outcome_distribution = {outcome: 0 for outcome in OUTCOMES}
    if not records.empty:
        for outcome, n in records[OUTCOME].value_counts().items():
            outcome_distribution[str(outcome)] = int(n)

    failed_patients = sorted({str(e.get("patient_id")) for e in errors if e.get("patient_id") is not None})

    report = {
        "timestamp": datetime.now().isoformat(),
        "input_registrations": input_registrations,
        "classified_registrations": int(len(classified)),
        "registrations_by_list_type": registration_counts,
        "patients_by_list_type": count_patients_by_list_type(classified),
        "episodes_collapsed": episodes_collapsed,
        "canonical_records": int(len(records)),
        "distinct_patients": int(records[PATIENT_ID].nunique()) if not records.empty else 0,
        "outcome_distribution": outcome_distribution,
        "failed_patient_count": len(failed_patients),
        "errors": errors,
        "warnings": warnings,
        "metadata": run_metadata or {},
    }
    report = convert_json_serializable(report)

    logger.info("→ Reconciliation summary:")
    for list_type in LIST_TYPES:
        logger.info(f"  - Patients with {list_type} registrations: {report['patients_by_list_type'][list_type]:,}")
    logger.info(f"  - Episodes collapsed: {report['episodes_collapsed']:,}")
    logger.info(f"  - Canonical records: {report['canonical_records']:,}")
    if errors:
        logger.warning(f"  - Patients failing reconciliation: {len(failed_patients):,}")
        for error in errors:
            logger.warning(f"    {error.get('patient_id')}: {error.get('kind')} - {error.get('message')}")
    if warnings:
        logger.warning(f"  - Warnings: {len(warnings):,}")

    return report


def write_json_report(report: Dict[str, Any], path: str, logger: Optional[logging.Logger] = None) -> str:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(convert_json_serializable(report), f, indent=2)
    if logger:
        logger.info(f"→ ✓ Report saved to {path}")
    return path
