"""
Phase 3: Episode Processing.

Groups concurrent registrations into retransplant episodes and collapses each
episode into one canonical record. Both steps work per patient; a failing
patient is reported and excluded while the others continue.
"""

from .common import (
    SYMBOLS,
    CLASSIFIED_TABLE,
    GROUPED_TABLE,
    COLLAPSED_TABLE,
    get_frame,
    store_frame,
    record_issues,
    step_already_done,
    patient_count,
    now_iso,
)

from helpers_waitlist.constants import LIST_TYPE, LIST_TYPE_SINGLE
from helpers_waitlist.data_utils import convert_json_serializable
from helpers_waitlist.episode_utils import group_episodes
from helpers_waitlist.outcome_utils import collapse_episodes


def run_phase3_group_episodes(context):
    """Phase 3 Step 1: episode numbers for multi-listing patients."""
    logger = context["logger"]
    pipeline_state = context.get("pipeline_state")

    step_name = "phase3_group_episodes"

    if step_already_done(context, step_name, [GROUPED_TABLE]):
        logger.info(f"{SYMBOLS['success']} [PHASE 3] Episodes already grouped - skipping")
        return

    logger.info(f"{SYMBOLS['arrow']} [PHASE 3] Grouping episodes...")

    try:
        classified = get_frame(context, CLASSIFIED_TABLE)
        multi_listing = classified.loc[classified[LIST_TYPE] != LIST_TYPE_SINGLE]

        grouped, errors = group_episodes(multi_listing, logger=logger, max_workers=context.get("max_workers", 1))
        errors = convert_json_serializable(errors)
        record_issues(context, errors)
        store_frame(context, GROUPED_TABLE, grouped)

        logger.info(f"→ [PHASE 3] QA: Grouped registrations: {len(grouped):,} "
                    f"({patient_count(grouped):,} patients, {len(errors):,} failed)")

        if pipeline_state:
            pipeline_state.mark_step_completed(step_name, {
                'grouped_registrations': len(grouped),
                'errors': errors,
                'timestamp': now_iso()
            })

        logger.info(f"{SYMBOLS['success']} [PHASE 3] Episode grouping completed")

    except Exception as e:
        logger.error(f"{SYMBOLS['fail']} [PHASE 3] Episode grouping failed: {str(e)}")
        if pipeline_state:
            pipeline_state.mark_step_failed(step_name, str(e))
        raise


def run_phase3_collapse_episodes(context):
    """Phase 3 Step 2: one canonical record per episode."""
    logger = context["logger"]
    pipeline_state = context.get("pipeline_state")

    step_name = "phase3_collapse_episodes"

    if step_already_done(context, step_name, [COLLAPSED_TABLE]):
        logger.info(f"{SYMBOLS['success']} [PHASE 3] Episodes already collapsed - skipping")
        return

    logger.info(f"{SYMBOLS['arrow']} [PHASE 3] Collapsing episodes...")

    try:
        grouped = get_frame(context, GROUPED_TABLE)

        collapsed, errors, warnings = collapse_episodes(grouped, logger=logger,
                                                        max_workers=context.get("max_workers", 1))
        errors = convert_json_serializable(errors)
        warnings = convert_json_serializable(warnings)
        record_issues(context, errors, warnings)
        store_frame(context, COLLAPSED_TABLE, collapsed)

        logger.info(f"→ [PHASE 3] QA: Collapsed records: {len(collapsed):,} "
                    f"({len(errors):,} failed patients, {len(warnings):,} warnings)")

        if pipeline_state:
            pipeline_state.mark_step_completed(step_name, {
                'collapsed_records': len(collapsed),
                'errors': errors,
                'warnings': warnings,
                'timestamp': now_iso()
            })

        logger.info(f"{SYMBOLS['success']} [PHASE 3] Episode collapsing completed")

    except Exception as e:
        logger.error(f"{SYMBOLS['fail']} [PHASE 3] Episode collapsing failed: {str(e)}")
        if pipeline_state:
            pipeline_state.mark_step_failed(step_name, str(e))
        raise
