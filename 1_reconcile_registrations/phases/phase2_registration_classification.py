"""
Phase 2: Registration Classification.

Labels every resolved registration single, sequential or concurrent.
"""

from .common import (
    SYMBOLS,
    RESOLVED_TABLE,
    CLASSIFIED_TABLE,
    get_frame,
    store_frame,
    step_already_done,
    now_iso,
)

from helpers_waitlist.data_utils import count_patients_by_list_type
from helpers_waitlist.registration_utils import classify_registrations, log_classification_summary


def run_phase2_classify_registrations(context):
    """Phase 2: classify registrations by overlap with their neighbours."""
    logger = context["logger"]
    pipeline_state = context.get("pipeline_state")

    step_name = "phase2_classify_registrations"

    if step_already_done(context, step_name, [CLASSIFIED_TABLE]):
        logger.info(f"{SYMBOLS['success']} [PHASE 2] Registrations already classified - skipping")
        return

    logger.info(f"{SYMBOLS['arrow']} [PHASE 2] Classifying registrations...")

    try:
        resolved = get_frame(context, RESOLVED_TABLE)
        classified = classify_registrations(resolved)
        store_frame(context, CLASSIFIED_TABLE, classified)

        log_classification_summary(classified, logger)

        if pipeline_state:
            pipeline_state.mark_step_completed(step_name, {
                'classified_registrations': len(classified),
                'patients_by_list_type': count_patients_by_list_type(classified),
                'timestamp': now_iso()
            })

        logger.info(f"{SYMBOLS['success']} [PHASE 2] Classification completed")

    except Exception as e:
        logger.error(f"{SYMBOLS['fail']} [PHASE 2] Classification failed: {str(e)}")
        if pipeline_state:
            pipeline_state.mark_step_failed(step_name, str(e))
        raise
