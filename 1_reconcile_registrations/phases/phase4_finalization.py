"""
Phase 4: Merge and Finalization.

Merges single-listing, sequential and collapsed records into the reconciled
dataset, writes the canonical records parquet and the run report, and
uploads both to S3 when a bucket is configured.
"""

import os

from .common import (
    SYMBOLS,
    CLASSIFIED_TABLE,
    GROUPED_TABLE,
    COLLAPSED_TABLE,
    CANONICAL_TABLE,
    get_frame,
    store_frame,
    failed_patient_ids,
    patient_count,
    now_iso,
)

from helpers_waitlist.constants import (
    PATIENT_ID,
    LIST_TYPE,
    LIST_TYPE_SINGLE,
    LIST_TYPE_SEQUENTIAL,
    IDENTIFIER_COLUMNS,
)
from helpers_waitlist.anonymization_utils import pseudonymize_identifiers
from helpers_waitlist.data_utils import generate_reconciliation_report, write_json_report
from helpers_waitlist.outcome_utils import merge_datasets
from helpers_waitlist import s3_utils

RECORDS_FILENAME = s3_utils.RECORDS_OBJECT
REPORT_FILENAME = s3_utils.REPORT_OBJECT


def run_phase4_merge_and_finalize(context):
    """Phase 4: merge record sources, export records and report."""
    logger = context["logger"]
    pipeline_state = context.get("pipeline_state")

    step_name = "phase4_merge_and_finalize"

    # Always runs: the report depends on the errors of the whole run
    logger.info(f"{SYMBOLS['arrow']} [PHASE 4] Merging datasets and finalizing...")

    try:
        classified = get_frame(context, CLASSIFIED_TABLE)
        grouped = get_frame(context, GROUPED_TABLE)
        collapsed = get_frame(context, COLLAPSED_TABLE)

        failed = failed_patient_ids(context)
        single = classified.loc[classified[LIST_TYPE] == LIST_TYPE_SINGLE]
        sequential = grouped.loc[(grouped[LIST_TYPE] == LIST_TYPE_SEQUENTIAL) & ~grouped[PATIENT_ID].isin(failed)]
        if len(collapsed):
            collapsed = collapsed.loc[~collapsed[PATIENT_ID].isin(failed)]

        records = merge_datasets(single, sequential, collapsed)
        store_frame(context, CANONICAL_TABLE, records)
        context["records"] = records

        logger.info(f"→ [PHASE 4] QA: Canonical records: {len(records):,} for {patient_count(records):,} patients")

        report = generate_reconciliation_report(
            classified,
            records,
            context.get("errors", []),
            context.get("warnings", []),
            logger,
            input_registrations=context.get("input_registrations"),
            run_metadata={
                'run_id': context.get("run_id"),
                'input': context.get("input_path"),
                'filters': context.get("filters"),
                'strict': bool(context.get("strict")),
                'pseudonymized': context.get("pseudonymize_seed") is not None,
            },
        )
        context["report"] = report

        export = records
        if context.get("pseudonymize_seed") is not None:
            export = pseudonymize_identifiers(records, IDENTIFIER_COLUMNS, context["pseudonymize_seed"], logger=logger)

        output_dir = context["output_dir"]
        os.makedirs(output_dir, exist_ok=True)
        records_path = os.path.join(output_dir, RECORDS_FILENAME)
        export.to_parquet(records_path, index=False, engine="pyarrow")
        logger.info(f"→ ✓ Canonical records saved to {records_path}")
        report_path = write_json_report(report, os.path.join(output_dir, REPORT_FILENAME), logger)

        outputs = {'records_parquet': records_path, 'report_json': report_path}

        bucket = context.get("s3_bucket")
        if bucket:
            s3_paths = s3_utils.upload_reconciliation_outputs(export, report, bucket, context["run_id"], logger)
            outputs.update({f"s3_{k}": v for k, v in s3_paths.items()})

        context["outputs"] = outputs

        if pipeline_state:
            pipeline_state.mark_step_completed(step_name, {
                'canonical_records': len(records),
                'failed_patients': report['failed_patient_count'],
                'outputs': outputs,
                'timestamp': now_iso()
            })

        logger.info(f"{SYMBOLS['success']} [PHASE 4] Finalization completed")

    except Exception as e:
        logger.error(f"{SYMBOLS['fail']} [PHASE 4] Finalization failed: {str(e)}")
        if pipeline_state:
            pipeline_state.mark_step_failed(step_name, str(e))
        raise
