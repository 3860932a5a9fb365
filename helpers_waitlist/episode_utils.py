"""
Episode grouping for concurrent registrations.

A patient's concurrent registrations are grouped into retransplant episodes:
every registration listed for the same transplant (or the same open waiting
period) shares one episode number, starting at 1. Numbering is computed per
patient by two explicit folds over the registrations ordered by waitlist end
date:

  1. advance_episode: raw numbering from the transplant-date scan key
  2. repair_episode: merges increments caused by carried-forward transplant
     dates back into the previous episode

Sequential registrations are never grouped and keep episode number 0.
"""

import os
import sys
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import pandas as pd

# Set root of project
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if project_root not in sys.path:
    sys.path.append(project_root)

from helpers_waitlist.constants import (
    PATIENT_ID,
    REGISTRATION_ID,
    LIST_DATE,
    TRANSPLANT_DATE,
    WAITLIST_END_DATE,
    LIST_TYPE,
    EPISODE_NUMBER,
    LIST_TYPE_CONCURRENT,
    LIST_TYPE_SEQUENTIAL,
)
from helpers_waitlist.errors import ReconciliationError
from helpers_waitlist.pipeline_utils import map_patient_partitions


class EpisodeScanState(NamedTuple):
    episode_number: int
    scan_key: Optional[pd.Timestamp]
    # latest end date among the rows of the current episode
    episode_end: Optional[pd.Timestamp]


class EpisodeRepairState(NamedTuple):
    raw_episode: int
    episode_number: int
    latest_transplant: Optional[pd.Timestamp]


def _ts(value) -> Optional[pd.Timestamp]:
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value)


def _on_or_after(left: Optional[pd.Timestamp], right: Optional[pd.Timestamp]) -> bool:
    return left is not None and right is not None and left >= right


def _before(left: Optional[pd.Timestamp], right: Optional[pd.Timestamp]) -> bool:
    return left is not None and right is not None and left < right


def _latest(left: Optional[pd.Timestamp], right: Optional[pd.Timestamp]) -> Optional[pd.Timestamp]:
    if left is None:
        return right
    if right is None:
        return left
    return max(left, right)


def order_for_scan(registrations: pd.DataFrame) -> pd.DataFrame:
    return registrations.sort_values(
        [WAITLIST_END_DATE, LIST_DATE, REGISTRATION_ID], kind="mergesort", na_position="last"
    ).reset_index(drop=True)


def resolve_conflicting_transplant_dates(rows: List[Dict[str, Any]]) -> List[Optional[pd.Timestamp]]:
    """Transplant dates with same-event conflicts resolved toward the later record.

    Walks the recorded (non-null) dates from the last row backward. When two
    consecutive recorded dates differ but the later row was listed before the
    earlier row's transplant, both rows describe one transplant and the
    later-recorded date replaces the earlier one.
    """
    dates = [_ts(row.get(TRANSPLANT_DATE)) for row in rows]
    later = None
    for i in range(len(rows) - 1, -1, -1):
        if dates[i] is None:
            continue
        if later is not None and dates[later] != dates[i] and _before(_ts(rows[later].get(LIST_DATE)), dates[i]):
            dates[i] = dates[later]
        later = i
    return dates


def build_scan_keys(rows: List[Dict[str, Any]],
                    transplant_dates: List[Optional[pd.Timestamp]]) -> List[Optional[pd.Timestamp]]:
    """Transient per-row transplant key used only by the episode scan.

    Forward fill first: a recorded date T is carried into later rows listed
    before T, so a registration still open after a transplant stays with
    that transplant. Backward fill second, only into rows still without a
    key: a row takes the next recorded date if it was still waiting when
    that row was listed.
    """
    keys = list(transplant_dates)

    carried = None
    for i, row in enumerate(rows):
        if transplant_dates[i] is not None:
            carried = transplant_dates[i]
        elif carried is not None and _before(_ts(row.get(LIST_DATE)), carried):
            keys[i] = carried

    source_date, source_list = None, None
    for i in range(len(rows) - 1, -1, -1):
        if transplant_dates[i] is not None:
            source_date, source_list = transplant_dates[i], _ts(rows[i].get(LIST_DATE))
        elif keys[i] is None and source_date is not None and _before(source_list, _ts(rows[i].get(WAITLIST_END_DATE))):
            keys[i] = source_date

    return keys


def advance_episode(state: Optional[EpisodeScanState], list_date, end_date, scan_key) -> EpisodeScanState:
    """One step of the episode scan.

    A row opens a new episode when its key is a different transplant date,
    when it has no key but was listed on or after the previous transplant
    (relisting), or when it was listed on or after every end date of the
    current episode.

    The last rule (a disjoint block) extends the transplant-change rule on
    purpose: cycles that end without a transplant still split apart.
    """
    list_date, end_date, scan_key = _ts(list_date), _ts(end_date), _ts(scan_key)
    if state is None:
        return EpisodeScanState(1, scan_key, end_date)

    if scan_key is not None:
        new_episode = scan_key != state.scan_key
    else:
        new_episode = _on_or_after(list_date, state.scan_key)
    if not new_episode:
        new_episode = _on_or_after(list_date, state.episode_end)

    if new_episode:
        return EpisodeScanState(state.episode_number + 1, scan_key, end_date)
    return EpisodeScanState(state.episode_number, scan_key, _latest(state.episode_end, end_date))


def repair_episode(state: Optional[EpisodeRepairState], raw_episode: int, scan_key) -> EpisodeRepairState:
    """One step of the repair pass over raw episode numbers.

    An increment whose key is a transplant date not later than one already
    seen is a carry-forward artifact and stays in the previous episode. The
    check only applies when the previous episode is not the first one.
    Numbers are re-derived incrementally so they stay contiguous.
    """
    scan_key = _ts(scan_key)
    if state is None:
        return EpisodeRepairState(raw_episode, 1, scan_key)

    number = state.episode_number
    if raw_episode != state.raw_episode:
        artifact = (
            state.episode_number != 1
            and scan_key is not None
            and state.latest_transplant is not None
            and scan_key <= state.latest_transplant
        )
        if not artifact:
            number += 1
    return EpisodeRepairState(raw_episode, number, _latest(state.latest_transplant, scan_key))


def assign_patient_episodes(registrations: pd.DataFrame) -> pd.DataFrame:
    """Episode numbers for one patient's concurrent registrations.

    Returns a new frame ordered for the scan, with transplant_date carrying
    the conflict-resolved values and episode_number filled in.
    """
    ordered = order_for_scan(registrations)
    rows = ordered.to_dict("records")

    transplant_dates = resolve_conflicting_transplant_dates(rows)
    scan_keys = build_scan_keys(rows, transplant_dates)

    scan_state = None
    raw_numbers = []
    for row, key in zip(rows, scan_keys):
        scan_state = advance_episode(scan_state, row.get(LIST_DATE), row.get(WAITLIST_END_DATE), key)
        raw_numbers.append(scan_state.episode_number)

    repair_state = None
    numbers = []
    for raw_number, key in zip(raw_numbers, scan_keys):
        repair_state = repair_episode(repair_state, raw_number, key)
        numbers.append(repair_state.episode_number)

    ordered[TRANSPLANT_DATE] = pd.to_datetime(pd.Series(transplant_dates, index=ordered.index, dtype="object"))
    ordered[EPISODE_NUMBER] = pd.Series(numbers, index=ordered.index, dtype="int64")
    return ordered


def _group_partition(item: Tuple[Any, pd.DataFrame]):
    """Process-pool worker: (patient_id, rows) -> (patient_id, frame, error)."""
    patient_id, rows = item
    try:
        return patient_id, assign_patient_episodes(rows), None
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


def group_episodes(multi_listing: pd.DataFrame, logger: Optional[logging.Logger] = None,
                   max_workers: int = 1) -> Tuple[pd.DataFrame, List[Dict[str, Any]]]:
    """Assign episode numbers to every registration of multi-listing patients.

    Concurrent registrations are numbered per patient from 1; sequential ones
    get 0. A patient whose grouping fails is dropped from the output entirely
    and reported in the returned error list.
    """
    logger = logger or logging.getLogger(__name__)

    concurrent = multi_listing.loc[multi_listing[LIST_TYPE] == LIST_TYPE_CONCURRENT]
    sequential = multi_listing.loc[multi_listing[LIST_TYPE] == LIST_TYPE_SEQUENTIAL].copy()
    sequential[EPISODE_NUMBER] = 0

    partitions = list(concurrent.groupby(PATIENT_ID, sort=True))
    logger.info(f"→ [GROUPER] Grouping {len(concurrent):,} concurrent registrations "
                f"for {len(partitions):,} patients")
    results = map_patient_partitions(_group_partition, partitions, max_workers, logger)

    frames = []
    errors = []
    for patient_id, frame, error in results:
        if error is not None:
            logger.warning(f"⚠️ [GROUPER] Patient {patient_id} excluded: {error['kind']} - {error['message']}")
            errors.append(error)
        else:
            frames.append(frame)

    failed = {e["patient_id"] for e in errors}
    if failed:
        sequential = sequential.loc[~sequential[PATIENT_ID].isin(failed)]

    grouped_concurrent = pd.concat(frames, ignore_index=True) if frames else concurrent.iloc[0:0].copy()
    parts = [part for part in (grouped_concurrent, sequential) if not part.empty]
    if parts:
        grouped = pd.concat(parts, ignore_index=True)
    else:
        grouped = multi_listing.iloc[0:0].copy()
    grouped[EPISODE_NUMBER] = grouped[EPISODE_NUMBER].astype("int64")
    grouped = grouped.sort_values(
        [PATIENT_ID, WAITLIST_END_DATE, LIST_DATE, REGISTRATION_ID], kind="mergesort"
    ).reset_index(drop=True)

    if not grouped_concurrent.empty:
        episodes = grouped_concurrent[[PATIENT_ID, EPISODE_NUMBER]].drop_duplicates()
        logger.info(f"→ [GROUPER] {len(episodes):,} episodes across {episodes[PATIENT_ID].nunique():,} patients")
    return grouped, errors
