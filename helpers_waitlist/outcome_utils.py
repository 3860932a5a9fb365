"""
Episode collapsing and dataset merging.

collapse_episode turns the registrations of one retransplant episode into a
single canonical record; merge_datasets combines those records with the
single-listing and sequential registrations into the reconciled dataset.
"""

import os
import sys
import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist import constants
from helpers_waitlist.constants import (
    PATIENT_ID,
    REGISTRATION_ID,
    LIST_DATE,
    REMOVAL_CODE,
    TRANSPLANT_DATE,
    DONOR_TYPE,
    DONOR_ID,
    WAITLIST_END_DATE,
    EPISODE_NUMBER,
    MIN_LIST_DATE,
    LAST_WAIT_DATE,
    WAIT_TIME,
    OUTCOME,
    CONTRIBUTING_IDS,
    CANONICAL_RECORD_COLUMNS,
    OUTCOME_DDKT,
    OUTCOME_LDKT,
    OUTCOME_REMOVED,
    OUTCOME_CENSORED,
)
from helpers_waitlist.data_utils import validate_and_clean_strings
from helpers_waitlist.errors import EmptyEpisodeError, InconsistentOutcomeError, ReconciliationError
from helpers_waitlist.pipeline_utils import map_patient_partitions

# Columns filled from the bottom of an episode upward before collapsing
EPISODE_FILL_COLUMNS = [TRANSPLANT_DATE, DONOR_TYPE, DONOR_ID, REMOVAL_CODE]


def _missing(value) -> bool:
    return value is None or (not isinstance(value, (list, tuple, np.ndarray)) and pd.isna(value))


def derive_wait_time(transplant_date, episode_number, last_wait_date, min_list_date) -> Optional[int]:
    """Waiting time in days.

    Up to the transplant for a grouped episode with a transplant date,
    otherwise up to the last waitlist date.
    """
    if not _missing(transplant_date) and episode_number != 0:
        end = transplant_date
    else:
        end = last_wait_date
    if _missing(end) or _missing(min_list_date):
        return None
    return int((pd.Timestamp(end) - pd.Timestamp(min_list_date)).days)


def derive_outcome(donor_type, removal_code, deceased_code: Optional[str] = None,
                   living_code: Optional[str] = None) -> str:
    deceased_code = constants.DECEASED_DONOR_CODE if deceased_code is None else deceased_code
    living_code = constants.LIVING_DONOR_CODE if living_code is None else living_code
    donor_type = None if _missing(donor_type) else donor_type
    if donor_type == deceased_code:
        return OUTCOME_DDKT
    if donor_type == living_code:
        return OUTCOME_LDKT
    if not _missing(validate_and_clean_strings(removal_code)):
        return OUTCOME_REMOVED
    return OUTCOME_CENSORED


def derive_outcomes(df: pd.DataFrame, deceased_code: Optional[str] = None,
                    living_code: Optional[str] = None) -> pd.Series:
    """Vectorized derive_outcome over donor_type and removal_code."""
    deceased_code = constants.DECEASED_DONOR_CODE if deceased_code is None else deceased_code
    living_code = constants.LIVING_DONOR_CODE if living_code is None else living_code
    donor_type = df[DONOR_TYPE]
    removal_code = df[REMOVAL_CODE].map(validate_and_clean_strings)
    outcome = np.select(
        [
            (donor_type == deceased_code).fillna(False).to_numpy(dtype=bool),
            (donor_type == living_code).fillna(False).to_numpy(dtype=bool),
            removal_code.notna().to_numpy(dtype=bool),
        ],
        [OUTCOME_DDKT, OUTCOME_LDKT, OUTCOME_REMOVED],
        default=OUTCOME_CENSORED,
    )
    return pd.Series(outcome, index=df.index, dtype="object")


def collapse_episode(episode: pd.DataFrame, deceased_code: Optional[str] = None,
                     living_code: Optional[str] = None) -> Dict[str, Any]:
    """Collapse the registrations of one episode into one canonical record.

    The first registration by list date is the basis of the record. Raises
    EmptyEpisodeError for an empty episode or one without any end date.
    """
    if episode is None or episode.empty:
        raise EmptyEpisodeError("Episode has no registrations")

    rows = episode.sort_values([LIST_DATE, REGISTRATION_ID], kind="mergesort").reset_index(drop=True)
    patient_id = rows[PATIENT_ID].iloc[0]
    registration_ids = rows[REGISTRATION_ID].tolist()

    rows[DONOR_TYPE] = rows[DONOR_TYPE].map(validate_and_clean_strings)

    last_wait_date = rows[WAITLIST_END_DATE].max()
    if pd.isna(last_wait_date):
        raise EmptyEpisodeError("Episode has no waitlist end date",
                                patient_id=patient_id, registration_ids=registration_ids)

    for col in EPISODE_FILL_COLUMNS:
        rows[col] = rows[col].bfill()

    min_list_date = rows[LIST_DATE].min()
    record = rows.iloc[0].to_dict()
    transplant_date = record.get(TRANSPLANT_DATE)

    record[MIN_LIST_DATE] = min_list_date
    record[WAIT_TIME] = derive_wait_time(transplant_date, record.get(EPISODE_NUMBER), last_wait_date, min_list_date)
    record[OUTCOME] = derive_outcome(record.get(DONOR_TYPE), record.get(REMOVAL_CODE), deceased_code, living_code)

    if not _missing(transplant_date) and transplant_date < last_wait_date:
        last_wait_date = transplant_date
    record[LAST_WAIT_DATE] = last_wait_date
    record[CONTRIBUTING_IDS] = registration_ids
    return record


def check_outcome_consistency(record: Dict[str, Any]) -> Optional[InconsistentOutcomeError]:
    """A transplant outcome with a negative wait time, as a warning; None when consistent."""
    wait_time = record.get(WAIT_TIME)
    if _missing(record.get(DONOR_TYPE)) or _missing(wait_time) or wait_time >= 0:
        return None
    return InconsistentOutcomeError(
        f"Donor type {record.get(DONOR_TYPE)!r} with negative wait time {wait_time}",
        patient_id=record.get(PATIENT_ID),
        registration_ids=record.get(CONTRIBUTING_IDS),
    )


def collapse_patient_episodes(registrations: pd.DataFrame) -> List[Dict[str, Any]]:
    """Canonical records for every episode of one patient, in episode order."""
    return [
        collapse_episode(episode)
        for _, episode in registrations.groupby(EPISODE_NUMBER, sort=True)
    ]


def _collapse_partition(item):
    """Process-pool worker: (patient_id, rows) -> (patient_id, records, error)."""
    patient_id, rows = item
    try:
        return patient_id, collapse_patient_episodes(rows), None
    except ReconciliationError as e:
        if e.patient_id is None:
            e.patient_id = patient_id
        return patient_id, None, e.to_dict()
    except Exception as e:
        return patient_id, None, {
            "patient_id": patient_id,
            "kind": type(e).__name__,
            "message": str(e),
            "registration_ids": rows[REGISTRATION_ID].tolist(),
        }


def collapse_episodes(grouped: pd.DataFrame, logger: Optional[logging.Logger] = None,
                      max_workers: int = 1) -> Tuple[pd.DataFrame, List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Collapse every episode (episode_number >= 1) into one record.

    Returns (records, errors, warnings). A patient with a failing episode
    contributes no records; the failure is in errors.
    """
    logger = logger or logging.getLogger(__name__)
    episodes = grouped.loc[grouped[EPISODE_NUMBER] > 0]

    partitions = list(episodes.groupby(PATIENT_ID, sort=True))
    logger.info(f"→ [COLLAPSER] Collapsing episodes of {len(partitions):,} patients")
    results = map_patient_partitions(_collapse_partition, partitions, max_workers, logger)

    records = []
    errors = []
    warnings = []
    for patient_id, patient_records, error in results:
        if error is not None:
            logger.warning(f"⚠️ [COLLAPSER] Patient {patient_id} excluded: {error['kind']} - {error['message']}")
            errors.append(error)
            continue
        for record in patient_records:
            inconsistency = check_outcome_consistency(record)
            if inconsistency is not None:
                logger.warning(f"⚠️ [COLLAPSER] {inconsistency.kind} for patient {patient_id}: {inconsistency}")
                warnings.append(inconsistency.to_dict())
            records.append(record)

    if records:
        collapsed = pd.DataFrame.from_records(records)
    else:
        collapsed = pd.DataFrame(columns=list(episodes.columns) + [MIN_LIST_DATE, LAST_WAIT_DATE, WAIT_TIME,
                                                                    OUTCOME, CONTRIBUTING_IDS])
    logger.info(f"→ [COLLAPSER] {len(collapsed):,} canonical records from {len(episodes):,} registrations")
    return collapsed, errors, warnings


def merge_datasets(single: pd.DataFrame, sequential: pd.DataFrame, collapsed: pd.DataFrame) -> pd.DataFrame:
    """Combine the three record sources into the reconciled dataset.

    Single and sequential registrations become records of their own:
    min_list_date is the list date, last_wait_date is back-filled from the
    waitlist end date, and wait_time and outcome follow the collapse rules.
    Sorted by (patient_id, min_list_date).
    """
    parts = [part for part in (single, sequential, collapsed) if part is not None and not part.empty]
    if not parts:
        return pd.DataFrame(columns=CANONICAL_RECORD_COLUMNS)

    merged = pd.concat(parts, ignore_index=True)
    for col in (MIN_LIST_DATE, LAST_WAIT_DATE, WAIT_TIME, OUTCOME, CONTRIBUTING_IDS):
        if col not in merged.columns:
            merged[col] = None

    merged[DONOR_TYPE] = merged[DONOR_TYPE].map(validate_and_clean_strings)
    merged[MIN_LIST_DATE] = pd.to_datetime(merged[MIN_LIST_DATE]).fillna(merged[LIST_DATE])
    merged[LAST_WAIT_DATE] = pd.to_datetime(merged[LAST_WAIT_DATE]).fillna(merged[WAITLIST_END_DATE])

    missing_wait = merged[WAIT_TIME].isna()
    if missing_wait.any():
        fallback = merged.loc[missing_wait]
        merged.loc[missing_wait, WAIT_TIME] = [
            derive_wait_time(tx, ep, last_wait, min_list)
            for tx, ep, last_wait, min_list in zip(fallback[TRANSPLANT_DATE], fallback[EPISODE_NUMBER],
                                                   fallback[LAST_WAIT_DATE], fallback[MIN_LIST_DATE])
        ]
    merged[WAIT_TIME] = merged[WAIT_TIME].astype("Int64")

    missing_outcome = merged[OUTCOME].isna()
    if missing_outcome.any():
        merged.loc[missing_outcome, OUTCOME] = derive_outcomes(merged.loc[missing_outcome])

    merged[CONTRIBUTING_IDS] = [
        [registration_id] if _missing(ids) else list(ids)
        for ids, registration_id in zip(merged[CONTRIBUTING_IDS], merged[REGISTRATION_ID])
    ]
    merged[EPISODE_NUMBER] = merged[EPISODE_NUMBER].astype("int64")

    merged = merged.sort_values([PATIENT_ID, MIN_LIST_DATE, REGISTRATION_ID], kind="mergesort").reset_index(drop=True)
    return merged[CANONICAL_RECORD_COLUMNS]
