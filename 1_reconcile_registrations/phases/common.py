"""
Common imports and utilities for all pipeline phases.

Step outputs are handed between phases through context["frames"]; when the
run has a DuckDB database file they are also persisted as tables so a later
run can resume from any step.
"""

import os
import sys
import platform
from datetime import datetime

# Windows emoji compatibility
IS_WINDOWS = platform.system() == 'Windows'
SYMBOLS = {
    'arrow': '->' if IS_WINDOWS else '→',
    'success': '[PASS]' if IS_WINDOWS else '✅',
    'fail': '[FAIL]' if IS_WINDOWS else '❌',
    'warn': '[WARN]' if IS_WINDOWS else '⚠️',
    'info': '[INFO]' if IS_WINDOWS else '📊',
    'check': '[CHECK]' if IS_WINDOWS else '🔍'
}

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist.constants import (
    PATIENT_ID,
    REGISTRATION_DATE_COLUMNS,
    WAITLIST_END_DATE,
    MIN_LIST_DATE,
    LAST_WAIT_DATE,
)
from helpers_waitlist.data_utils import ensure_date_columns
from helpers_waitlist.duckdb_utils import table_exists, persist_frame, load_frame

# Step output tables
REGISTRATIONS_TABLE = "registrations"
RESOLVED_TABLE = "resolved_registrations"
CLASSIFIED_TABLE = "classified_registrations"
GROUPED_TABLE = "grouped_registrations"
COLLAPSED_TABLE = "collapsed_records"
CANONICAL_TABLE = "canonical_records"

ALL_STEP_TABLES = [
    REGISTRATIONS_TABLE,
    RESOLVED_TABLE,
    CLASSIFIED_TABLE,
    GROUPED_TABLE,
    COLLAPSED_TABLE,
    CANONICAL_TABLE,
]

_DATE_COLUMNS = REGISTRATION_DATE_COLUMNS + [WAITLIST_END_DATE, MIN_LIST_DATE, LAST_WAIT_DATE]


def _frames(context):
    return context.setdefault("frames", {})


def frame_available(context, table_name: str) -> bool:
    if table_name in _frames(context):
        return True
    conn = context.get("conn")
    return bool(context.get("persist_tables") and conn is not None and table_exists(conn, table_name))


def get_frame(context, table_name: str):
    """Output of an earlier step, from memory or restored from DuckDB."""
    frames = _frames(context)
    if table_name in frames:
        return frames[table_name]

    conn = context.get("conn")
    if context.get("persist_tables") and conn is not None and table_exists(conn, table_name):
        df = ensure_date_columns(load_frame(conn, table_name), _DATE_COLUMNS)
        context["logger"].info(f"{SYMBOLS['arrow']} Restored {table_name} from DuckDB ({len(df):,} rows)")
        frames[table_name] = df
        return df

    raise RuntimeError(f"Step output '{table_name}' is not available; run the step that produces it first")


def store_frame(context, table_name: str, df) -> None:
    _frames(context)[table_name] = df
    conn = context.get("conn")
    if context.get("persist_tables") and conn is not None:
        persist_frame(conn, table_name, df, context["logger"])


def record_issues(context, errors=None, warnings=None) -> None:
    context.setdefault("errors", []).extend(errors or [])
    context.setdefault("warnings", []).extend(warnings or [])


def failed_patient_ids(context) -> set:
    return {e.get("patient_id") for e in context.get("errors", []) if e.get("patient_id") is not None}


def step_already_done(context, step_name: str, tables) -> bool:
    """True when the pipeline state marks the step completed and its outputs can be restored.

    The errors and warnings recorded with the step are re-added to the run.
    """
    pipeline_state = context.get("pipeline_state")
    if not pipeline_state or not pipeline_state.is_step_completed(step_name):
        return False
    if not all(frame_available(context, table) for table in tables):
        context["logger"].info(f"{SYMBOLS['arrow']} Outputs of '{step_name}' cannot be restored - re-running")
        return False
    metadata = pipeline_state.get_step_metadata(step_name)
    record_issues(context, metadata.get("errors"), metadata.get("warnings"))
    return True


def patient_count(df) -> int:
    return int(df[PATIENT_ID].nunique()) if len(df) else 0


def now_iso() -> str:
    return datetime.now().isoformat()
