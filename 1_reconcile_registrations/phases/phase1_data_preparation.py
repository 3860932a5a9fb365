"""
Phase 1: Data Preparation.

Loads the filtered registration population through DuckDB and resolves the
waitlist end date of every registration. Patients with an unresolvable end
date are quarantined (or abort the run in strict mode).
"""

from .common import (
    SYMBOLS,
    REGISTRATIONS_TABLE,
    RESOLVED_TABLE,
    get_frame,
    store_frame,
    record_issues,
    step_already_done,
    patient_count,
    now_iso,
)

from helpers_waitlist.cohort_utils import load_registrations
from helpers_waitlist.data_utils import convert_json_serializable
from helpers_waitlist.errors import MissingDateError
from helpers_waitlist.registration_utils import resolve_end_dates, split_unresolved_patients


def run_phase1_load_registrations(context):
    """Phase 1 Step 1: load registrations from the registry extract."""
    logger = context["logger"]
    pipeline_state = context.get("pipeline_state")

    step_name = "phase1_load_registrations"

    if step_already_done(context, step_name, [REGISTRATIONS_TABLE]):
        registrations = get_frame(context, REGISTRATIONS_TABLE)
        context["input_registrations"] = len(registrations)
        logger.info(f"{SYMBOLS['success']} [PHASE 1] Registrations already loaded - skipping")
        return

    logger.info(f"{SYMBOLS['arrow']} [PHASE 1] Loading registrations...")

    try:
        registrations = load_registrations(
            context["input_path"],
            context["conn"],
            logger=logger,
            filters=context.get("filters"),
        )
        store_frame(context, REGISTRATIONS_TABLE, registrations)
        context["input_registrations"] = len(registrations)

        logger.info(f"→ [PHASE 1] QA: Registrations: {len(registrations):,}")
        logger.info(f"→ [PHASE 1] QA: Patients: {patient_count(registrations):,}")

        if pipeline_state:
            pipeline_state.mark_step_completed(step_name, {
                'registrations': len(registrations),
                'patients': patient_count(registrations),
                'timestamp': now_iso()
            })

        logger.info(f"{SYMBOLS['success']} [PHASE 1] Registration loading completed")

    except Exception as e:
        logger.error(f"{SYMBOLS['fail']} [PHASE 1] Registration loading failed: {str(e)}")
        if pipeline_state:
            pipeline_state.mark_step_failed(step_name, str(e))
        raise


def run_phase1_resolve_end_dates(context):
    """Phase 1 Step 2: resolve waitlist end dates and quarantine unresolved patients."""
    logger = context["logger"]
    pipeline_state = context.get("pipeline_state")

    step_name = "phase1_resolve_end_dates"

    if step_already_done(context, step_name, [RESOLVED_TABLE]):
        logger.info(f"{SYMBOLS['success']} [PHASE 1] End dates already resolved - skipping")
        return

    logger.info(f"{SYMBOLS['arrow']} [PHASE 1] Resolving waitlist end dates...")

    try:
        registrations = get_frame(context, REGISTRATIONS_TABLE)
        resolved = resolve_end_dates(registrations)
        kept, missing = split_unresolved_patients(resolved)

        if missing:
            if context.get("strict"):
                raise MissingDateError(
                    f"{len(missing):,} patients have registrations without a resolvable end date "
                    f"(first: patient {missing[0].patient_id})",
                    patient_id=missing[0].patient_id,
                    registration_ids=missing[0].registration_ids,
                )
            logger.warning(f"{SYMBOLS['warn']} [PHASE 1] Quarantined {len(missing):,} patients "
                           f"without a resolvable end date")
            for error in missing:
                logger.warning(f"  - patient {error.patient_id}: {error}")

        errors = convert_json_serializable([error.to_dict() for error in missing])
        record_issues(context, errors)
        store_frame(context, RESOLVED_TABLE, kept)

        logger.info(f"→ [PHASE 1] QA: Resolved registrations: {len(kept):,} of {len(resolved):,}")

        if pipeline_state:
            pipeline_state.mark_step_completed(step_name, {
                'resolved_registrations': len(kept),
                'quarantined_patients': len(missing),
                'errors': errors,
                'timestamp': now_iso()
            })

        logger.info(f"{SYMBOLS['success']} [PHASE 1] End-date resolution completed")

    except Exception as e:
        logger.error(f"{SYMBOLS['fail']} [PHASE 1] End-date resolution failed: {str(e)}")
        if pipeline_state:
            pipeline_state.mark_step_failed(step_name, str(e))
        raise
