"""
End-date resolution and registration classification.

Every function returns a new DataFrame; inputs are never modified.
"""

import os
import sys
import logging
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist.constants import (
    PATIENT_ID,
    REGISTRATION_ID,
    LIST_DATE,
    REMOVAL_DATE,
    LAST_ACTIVE_DATE,
    LAST_INACTIVE_DATE,
    TRANSPLANT_DATE,
    WAITLIST_END_DATE,
    NUM_LISTINGS,
    NUM_TRANSPLANT_DATES,
    LIST_TYPE,
    EPISODE_NUMBER,
    LIST_TYPE_SINGLE,
    LIST_TYPE_CONCURRENT,
    LIST_TYPE_SEQUENTIAL,
)
from helpers_waitlist.data_utils import ensure_date_columns
from helpers_waitlist.errors import MissingDateError


def _value(registration: Mapping[str, Any], field: str):
    value = registration.get(field)
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value)


def resolve_end_date(registration: Mapping[str, Any]) -> Optional[pd.Timestamp]:
    """Waitlist exit date of one registration.

    First non-null wins: transplant date, removal date, last inactive status
    date when strictly later than the last active status date, last active
    status date, last inactive status date. Returns None when nothing is
    recorded; absence is a data-quality signal, not a failure.
    """
    transplant = _value(registration, TRANSPLANT_DATE)
    if transplant is not None:
        return transplant
    removal = _value(registration, REMOVAL_DATE)
    if removal is not None:
        return removal
    active = _value(registration, LAST_ACTIVE_DATE)
    inactive = _value(registration, LAST_INACTIVE_DATE)
    if active is not None and inactive is not None and inactive > active:
        return inactive
    if active is not None:
        return active
    if inactive is not None:
        return inactive
    return None


def resolve_end_dates(registrations: pd.DataFrame) -> pd.DataFrame:
    """Vectorized resolve_end_date; also adds num_listings per patient."""
    df = ensure_date_columns(registrations)

    transplant = df[TRANSPLANT_DATE]
    removal = df[REMOVAL_DATE]
    active = df[LAST_ACTIVE_DATE]
    inactive = df[LAST_INACTIVE_DATE]

    conditions = [
        transplant.notna(),
        removal.notna(),
        active.notna() & inactive.notna() & (inactive > active),
        active.notna(),
        inactive.notna(),
    ]
    choices = [transplant, removal, inactive, active, inactive]
    end_dates = np.select(
        [c.to_numpy() for c in conditions],
        [c.to_numpy(dtype="datetime64[ns]") for c in choices],
        default=np.datetime64("NaT", "ns"),
    )

    df[WAITLIST_END_DATE] = pd.to_datetime(end_dates)
    df[NUM_LISTINGS] = df.groupby(PATIENT_ID)[REGISTRATION_ID].transform("size").astype(int)
    return df


def split_unresolved_patients(resolved: pd.DataFrame) -> Tuple[pd.DataFrame, List[MissingDateError]]:
    """Separate patients having any registration without an end date.

    Returns the rows of fully resolved patients and one MissingDateError per
    quarantined patient.
    """
    missing_mask = resolved[WAITLIST_END_DATE].isna()
    if not missing_mask.any():
        return resolved.copy(), []

    errors = []
    missing_rows = resolved.loc[missing_mask]
    for patient_id, rows in missing_rows.groupby(PATIENT_ID, sort=True):
        registration_ids = rows[REGISTRATION_ID].tolist()
        errors.append(MissingDateError(
            f"No resolvable waitlist end date for registrations {registration_ids}",
            patient_id=patient_id,
            registration_ids=registration_ids,
        ))

    quarantined = set(missing_rows[PATIENT_ID])
    kept = resolved.loc[~resolved[PATIENT_ID].isin(quarantined)].copy()
    return kept, errors


def sort_by_listing(df: pd.DataFrame) -> pd.DataFrame:
    """Order registrations by patient, list date and registration id."""
    return df.sort_values([PATIENT_ID, LIST_DATE, REGISTRATION_ID], kind="mergesort").reset_index(drop=True)


def classify_registrations(resolved: pd.DataFrame) -> pd.DataFrame:
    """Label each registration single, concurrent or sequential.

    Within a patient ordered by list date, a registration is concurrent when
    it was listed before the previous registration ended or it ended after
    the next registration was listed. The first row has no previous and the
    last no next; missing neighbours compare as False.
    """
    df = sort_by_listing(resolved)
    by_patient = df.groupby(PATIENT_ID, sort=False)

    prev_end = by_patient[WAITLIST_END_DATE].shift(1)
    next_list = by_patient[LIST_DATE].shift(-1)

    # NaT comparisons are False, which covers both group edges
    overlaps_previous = (df[LIST_DATE] < prev_end).fillna(False)
    overlaps_next = (df[WAITLIST_END_DATE] > next_list).fillna(False)

    list_type = np.where(overlaps_previous | overlaps_next, LIST_TYPE_CONCURRENT, LIST_TYPE_SEQUENTIAL)
    list_type = np.where(df[NUM_LISTINGS] == 1, LIST_TYPE_SINGLE, list_type)

    df[LIST_TYPE] = list_type
    df[EPISODE_NUMBER] = 0
    df[NUM_TRANSPLANT_DATES] = by_patient[TRANSPLANT_DATE].transform("nunique").astype(int)
    return df


def split_by_list_type(classified: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """(single, sequential, concurrent) partitions, each a new frame."""
    single = classified.loc[classified[LIST_TYPE] == LIST_TYPE_SINGLE].copy()
    sequential = classified.loc[classified[LIST_TYPE] == LIST_TYPE_SEQUENTIAL].copy()
    concurrent = classified.loc[classified[LIST_TYPE] == LIST_TYPE_CONCURRENT].copy()
    return single, sequential, concurrent


def log_classification_summary(classified: pd.DataFrame, logger: logging.Logger) -> None:
    counts = classified[LIST_TYPE].value_counts()
    multi_tx = int((classified.drop_duplicates(PATIENT_ID)[NUM_TRANSPLANT_DATES] > 1).sum())
    for list_type in (LIST_TYPE_SINGLE, LIST_TYPE_SEQUENTIAL, LIST_TYPE_CONCURRENT):
        logger.info(f"→ [CLASSIFIER] {list_type}: {int(counts.get(list_type, 0)):,} registrations")
    logger.info(f"→ [CLASSIFIER] Patients with more than one transplant date: {multi_tx:,}")
