"""
Waitlist registration reconciliation pipeline.

Turns a registry extract of waitlist registrations into one canonical record
per waiting period: end dates are resolved, registrations classified as
single, sequential or concurrent, concurrent registrations grouped into
retransplant episodes and collapsed, and everything merged into the
reconciled dataset.

Steps (resumable through PipelineState and DuckDB step tables):
- phase1_load_registrations
- phase1_resolve_end_dates
- phase2_classify_registrations
- phase3_group_episodes
- phase3_collapse_episodes
- phase4_merge_and_finalize
"""

import os
import sys
import traceback
import logging
import platform

# Windows emoji compatibility
IS_WINDOWS = platform.system() == 'Windows'
SYMBOLS = {
    'rocket': '[START]' if IS_WINDOWS else '🚀',
    'info': '[INFO]' if IS_WINDOWS else '📊',
    'config': '[CONFIG]' if IS_WINDOWS else '🔧',
    'success': '[PASS]' if IS_WINDOWS else '✅',
    'fail': '[FAIL]' if IS_WINDOWS else '❌',
    'clean': '[CLEAN]' if IS_WINDOWS else '🧹',
    'trophy': '[SUCCESS]' if IS_WINDOWS else '🎉'
}

# Set root of project (e.g., /home/analyst/waitlist-reconciliation)
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist import constants
from helpers_waitlist.cohort_utils import default_population_filter
from helpers_waitlist.logging_utils import (
    setup_logging,
    close_logging,
    save_logs_to_s3,
    save_logs_immediate,
)
from helpers_waitlist.duckdb_utils import (
    get_duckdb_connection,
    close_duckdb_connection,
    drop_tables,
)
from helpers_waitlist.pipeline_utils import PipelineState, get_max_workers

# Import modular phase functions
from phases import (
    run_phase1_load_registrations,
    run_phase1_resolve_end_dates,
    run_phase2_classify_registrations,
    run_phase3_group_episodes,
    run_phase3_collapse_episodes,
    run_phase4_merge_and_finalize,
)
from phases.common import ALL_STEP_TABLES, CANONICAL_TABLE, record_issues

PIPELINE_NAME = "reconcile_registrations"


def cleanup_persistent_tables(context):
    """Drop intermediate step tables once the run has completed; canonical_records is kept."""
    logger = context["logger"]
    conn = context.get("conn")
    if not context.get("persist_tables") or conn is None:
        return
    logger.info(f"{SYMBOLS['clean']} [CLEANUP] Dropping intermediate step tables...")
    dropped = drop_tables(conn, [t for t in ALL_STEP_TABLES if t != CANONICAL_TABLE], logger)
    logger.info(f"→ [CLEANUP] Dropped {dropped} tables")


# Define the step execution order
STEP_EXECUTION_ORDER = [
    "phase1_load_registrations",      # Load and filter the registry extract
    "phase1_resolve_end_dates",       # Waitlist end date per registration, quarantine unresolved
    "phase2_classify_registrations",  # single / sequential / concurrent
    "phase3_group_episodes",          # Episode numbers for concurrent registrations
    "phase3_collapse_episodes",       # One record per episode
    "phase4_merge_and_finalize"       # Merge, report, export
]

# Map step names to their corresponding functions
step_functions = {
    "phase1_load_registrations": run_phase1_load_registrations,
    "phase1_resolve_end_dates": run_phase1_resolve_end_dates,
    "phase2_classify_registrations": run_phase2_classify_registrations,
    "phase3_group_episodes": run_phase3_group_episodes,
    "phase3_collapse_episodes": run_phase3_collapse_episodes,
    "phase4_merge_and_finalize": run_phase4_merge_and_finalize,
}


def step_execution_dispatcher(starting_step, context):
    """
    Execute pipeline steps starting from the specified step.

    Errors and warnings recorded by the steps before starting_step are taken
    from the pipeline state so the final report stays complete.

    Args:
        starting_step (str): The step to start execution from
        context (dict): Pipeline context containing all necessary data
    """
    logger = context["logger"]

    # Find the starting index
    try:
        start_index = STEP_EXECUTION_ORDER.index(starting_step)
    except ValueError:
        logger.error(f"→ [DISPATCHER] Invalid starting step: {starting_step}")
        logger.error(f"→ [DISPATCHER] Available steps: {STEP_EXECUTION_ORDER}")
        raise ValueError(f"Invalid starting step: {starting_step}")

    pipeline_state = context.get("pipeline_state")
    if pipeline_state:
        for step_name in STEP_EXECUTION_ORDER[:start_index]:
            metadata = pipeline_state.get_step_metadata(step_name)
            record_issues(context, metadata.get("errors"), metadata.get("warnings"))

    # Execute steps from starting point
    steps_to_execute = STEP_EXECUTION_ORDER[start_index:]
    logger.info(f"→ [DISPATCHER] Executing steps: {steps_to_execute}")

    for step_name in steps_to_execute:
        try:
            logger.info(f"→ [DISPATCHER] Executing {step_name}...")
            step_functions[step_name](context)
            logger.info(f"→ [DISPATCHER] Completed {step_name}")

        except Exception as e:
            logger.error(f"→ [DISPATCHER] Error in {step_name}: {str(e)}")
            logger.error(f"→ [DISPATCHER] Traceback: {traceback.format_exc()}")
            raise


def execute_pipeline(context):
    """Execute the complete pipeline by running all phases in order."""
    logger = context["logger"]

    logger.info("→ [PIPELINE] Starting 4-phase reconciliation pipeline (6 steps total)")

    try:
        # Phase 1: Data Preparation
        logger.info("→ [PIPELINE] Executing Phase 1 Step 1: Load Registrations")
        run_phase1_load_registrations(context)

        logger.info("→ [PIPELINE] Executing Phase 1 Step 2: Resolve End Dates")
        run_phase1_resolve_end_dates(context)

        # Phase 2: Classification
        logger.info("→ [PIPELINE] Executing Phase 2: Classify Registrations")
        run_phase2_classify_registrations(context)

        # Phase 3: Episodes
        logger.info("→ [PIPELINE] Executing Phase 3 Step 1: Group Episodes")
        run_phase3_group_episodes(context)

        logger.info("→ [PIPELINE] Executing Phase 3 Step 2: Collapse Episodes")
        run_phase3_collapse_episodes(context)

        # Phase 4: Merge and finalize
        logger.info("→ [PIPELINE] Executing Phase 4: Merge and Finalize")
        run_phase4_merge_and_finalize(context)

        logger.info("→ [PIPELINE] Reconciliation pipeline execution completed successfully!")

    except Exception as e:
        logger.error(f"→ [PIPELINE] Pipeline execution failed: {str(e)}")
        logger.error(f"→ [PIPELINE] Traceback: {traceback.format_exc()}")
        raise


def build_run_id(input_path, filters):
    base = os.path.basename(input_path.rstrip('/')).split('.')[0] or "registrations"
    organ = filters.get("organ") or "all"
    return f"{base}_{organ}".replace('/', '_').replace('*', 'all')


def build_filters(args):
    """Population filter: environment defaults overridden by CLI flags."""
    filters = default_population_filter()
    if args.list_start:
        filters["list_start"] = args.list_start
    if args.list_end:
        filters["list_end"] = args.list_end
    if args.organ is not None:
        filters["organ"] = args.organ or None
    if args.min_age is not None:
        filters["min_age"] = args.min_age if args.min_age >= 0 else None
    return filters


def parse_args(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Waitlist Registration Reconciliation Pipeline")
    parser.add_argument("--input", required=True, help="Registry extract (parquet or CSV, local path or s3://)")
    parser.add_argument("--output-dir", default=constants.DEFAULT_OUTPUTS_DIR,
                        help="Directory for canonical records, report and pipeline state")
    parser.add_argument("--list-start", default=None, help="Earliest listing date (YYYY-MM-DD)")
    parser.add_argument("--list-end", default=None, help="Latest listing date (YYYY-MM-DD)")
    parser.add_argument("--organ", default=None, help="Organ code filter (default from WAITLIST_ORGAN; '' for all)")
    parser.add_argument("--min-age", type=float, default=None,
                        help="Minimum age at listing (default from WAITLIST_MIN_AGE; negative disables)")
    parser.add_argument("--starting-step", default=STEP_EXECUTION_ORDER[0], choices=STEP_EXECUTION_ORDER,
                        help="Phase/Step to start execution from")
    parser.add_argument("--duckdb-path", default=None,
                        help="DuckDB database file; step outputs are persisted there for resume")
    parser.add_argument("--max-workers", type=int, default=None,
                        help="Worker processes for the per-patient steps (default from WAITLIST_MAX_WORKERS)")
    parser.add_argument("--strict", action="store_true",
                        help="Abort on registrations without a resolvable end date instead of quarantining")
    parser.add_argument("--pseudonymize-seed", type=int, default=None,
                        help="Replace identifiers in the exported records using this seed")
    parser.add_argument("--s3-bucket", default=None, help="Bucket for outputs, logs and state (default WAITLIST_S3_BUCKET)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--reset-state", action="store_true", help="Ignore recorded pipeline state and start fresh")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for the reconciliation pipeline."""
    args = parse_args(argv)

    filters = build_filters(args)
    run_id = build_run_id(args.input, filters)
    bucket = args.s3_bucket if args.s3_bucket is not None else constants.S3_BUCKET
    max_workers = args.max_workers if args.max_workers is not None else get_max_workers()

    logger, log_buffer = setup_logging(PIPELINE_NAME, run_id, logs_dir=os.path.join(args.output_dir, "logs"))
    logger.setLevel(getattr(logging, args.log_level.upper(), logging.INFO))

    logger.info("=" * 80)
    logger.info(f"{SYMBOLS['rocket']} WAITLIST REGISTRATION RECONCILIATION PIPELINE")
    logger.info("=" * 80)
    logger.info(f"{SYMBOLS['info']} Input: {args.input}")
    logger.info(f"{SYMBOLS['info']} Output directory: {args.output_dir}")
    logger.info(f"{SYMBOLS['info']} Population filter: {filters}")
    logger.info(f"{SYMBOLS['info']} Starting Step: {args.starting_step}")
    logger.info(f"{SYMBOLS['config']} Workers: {max_workers}")
    logger.info(f"{SYMBOLS['config']} Strict end dates: {'Enabled' if args.strict else 'Disabled'}")
    logger.info(f"{SYMBOLS['config']} DuckDB: {args.duckdb_path or 'in-memory'}")
    logger.info(f"{SYMBOLS['config']} S3 bucket: {bucket or 'none'}")
    logger.info("=" * 80)

    conn = None
    pipeline_state = None
    try:
        pipeline_state = PipelineState(PIPELINE_NAME, run_id, logger,
                                       state_dir=os.path.join(args.output_dir, "pipeline_state"),
                                       bucket=bucket)
        if args.reset_state:
            pipeline_state.reset()

        conn = get_duckdb_connection(
            database=args.duckdb_path,
            tmp_dir=os.path.join(args.output_dir, "duckdb_tmp"),
            enable_s3=args.input.startswith("s3://"),
            logger=logger,
        )

        context = {
            "input_path": args.input,
            "output_dir": args.output_dir,
            "filters": filters,
            "run_id": run_id,
            "conn": conn,
            "persist_tables": bool(args.duckdb_path),
            "logger": logger,
            "max_workers": max_workers,
            "strict": args.strict,
            "pseudonymize_seed": args.pseudonymize_seed,
            "s3_bucket": bucket,
            "pipeline_state": pipeline_state,
            "frames": {},
            "errors": [],
            "warnings": [],
        }

        if args.starting_step == STEP_EXECUTION_ORDER[0]:
            execute_pipeline(context)
        else:
            step_execution_dispatcher(args.starting_step, context)

        try:
            cleanup_persistent_tables(context)
        except Exception as e:
            logger.warning(f"Cleanup encountered an issue: {e}")

        close_duckdb_connection(conn, logger)
        conn = None

        report = context.get("report", {})
        pipeline_state.mark_pipeline_completed({
            'run_id': run_id,
            'canonical_records': report.get('canonical_records'),
            'failed_patients': report.get('failed_patient_count'),
            'outputs': context.get("outputs"),
        })

        logger.info("=" * 80)
        logger.info(f"{SYMBOLS['trophy']} RECONCILIATION PIPELINE COMPLETED SUCCESSFULLY!")
        for list_type, n in report.get('patients_by_list_type', {}).items():
            logger.info(f"{SYMBOLS['info']} Patients with {list_type} registrations: {n:,}")
        logger.info(f"{SYMBOLS['info']} Episodes collapsed: {report.get('episodes_collapsed', 0):,}")
        logger.info(f"{SYMBOLS['info']} Canonical records: {report.get('canonical_records', 0):,}")
        for error in context["errors"]:
            logger.info(f"{SYMBOLS['info']} Failed patient {error.get('patient_id')}: {error.get('kind')}")
        logger.info("=" * 80)

        if bucket:
            save_logs_to_s3(log_buffer, bucket, PIPELINE_NAME, run_id, logger=logger)
        return context

    except Exception as e:
        logger.error(f"{SYMBOLS['fail']} Pipeline failed: {str(e)}")
        logger.error(f"{SYMBOLS['fail']} Traceback: {traceback.format_exc()}")

        if pipeline_state is not None:
            try:
                pipeline_state.mark_pipeline_failed(str(e))
            except Exception as ps_e:
                logger.warning(f"Could not record pipeline failure state: {ps_e}")

        if conn is not None:
            close_duckdb_connection(conn, logger)

        if bucket:
            save_logs_immediate(log_buffer, bucket, PIPELINE_NAME, run_id, logger=logger, reason="error")

        close_logging(logger)
        sys.exit(1)

    finally:
        if logger.handlers:
            close_logging(logger)


if __name__ == "__main__":
    main()
