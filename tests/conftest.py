"""Shared pytest configuration and fixtures for the test suite."""

import logging
import os
import sys

import numpy as np
import pandas as pd
import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
for path in (ROOT, os.path.join(ROOT, "1_reconcile_registrations")):
    if path not in sys.path:
        sys.path.insert(0, path)

from helpers_waitlist.constants import (  # noqa: E402
    PATIENT_ID,
    REGISTRATION_ID,
    LIST_DATE,
    REMOVAL_DATE,
    REMOVAL_CODE,
    LAST_ACTIVE_DATE,
    LAST_INACTIVE_DATE,
    TRANSPLANT_DATE,
    DONOR_TYPE,
    DONOR_ID,
    ORGAN,
    AGE_AT_LISTING,
    OUTCOME_DDKT,
    OUTCOME_LDKT,
    OUTCOME_REMOVED,
    OUTCOME_CENSORED,
)
from helpers_waitlist.data_utils import ensure_date_columns  # noqa: E402


def mk_reg(patient_id, registration_id, list_date, removal_date=None, removal_code=None,
           active=None, inactive=None, transplant_date=None, donor_type=None, donor_id=None):
    return {
        PATIENT_ID: patient_id,
        REGISTRATION_ID: registration_id,
        LIST_DATE: list_date,
        REMOVAL_DATE: removal_date,
        REMOVAL_CODE: removal_code,
        LAST_ACTIVE_DATE: active,
        LAST_INACTIVE_DATE: inactive,
        TRANSPLANT_DATE: transplant_date,
        DONOR_TYPE: donor_type,
        DONOR_ID: donor_id,
    }


def mk_frame(rows):
    return ensure_date_columns(pd.DataFrame(rows, columns=list(mk_reg(0, 0, None).keys())))


def generate_population(seed, n_patients=40, start_patient=1):
    """Random but well-formed waitlist histories.

    Each patient has 1-3 waiting cycles separated by gaps; a cycle has 1-3
    registrations listed within two months of each other and ends with a
    transplant (one registration carries it, the others are removed shortly
    after), a removal, or for the last cycle possibly no exit at all. After a
    transplant the patient is sometimes relisted within days, before the
    other registrations of that cycle were removed.
    Returns (frame, expected) where expected maps patient_id to the list of
    cycle outcomes in order.
    """
    rng = np.random.default_rng(seed)
    rows = []
    expected = {}
    registration_id = start_patient * 1000
    for patient_id in range(start_patient, start_patient + n_patients):
        cursor = pd.Timestamp("2005-01-01") + pd.Timedelta(days=int(rng.integers(0, 2000)))
        n_cycles = int(rng.integers(1, 4))
        outcomes = []
        for cycle in range(n_cycles):
            k = int(rng.integers(1, 4))
            list_dates = sorted(cursor + pd.Timedelta(days=int(rng.integers(0, 60))) for _ in range(k))
            cycle_end = cursor + pd.Timedelta(days=int(rng.integers(200, 1500)))
            last_cycle = cycle == n_cycles - 1
            kind = rng.choice(["tx", "removed", "censored"] if last_cycle else ["tx", "removed"])
            tx_index = int(rng.integers(0, k))
            ends = []
            for i, list_date in enumerate(list_dates):
                registration_id += 1
                if kind == "tx" and i == tx_index:
                    donor = str(rng.choice(["C", "L"]))
                    rows.append(mk_reg(patient_id, registration_id, list_date, transplant_date=cycle_end,
                                       donor_type=donor, donor_id=f"D{registration_id}",
                                       active=cycle_end - pd.Timedelta(days=10)))
                    ends.append(cycle_end)
                elif kind == "censored":
                    active = cycle_end - pd.Timedelta(days=int(rng.integers(0, 30)))
                    rows.append(mk_reg(patient_id, registration_id, list_date, active=active,
                                       inactive=active - pd.Timedelta(days=40), donor_type=""))
                    ends.append(active)
                else:
                    removal = cycle_end + pd.Timedelta(days=int(rng.integers(0, 30)))
                    rows.append(mk_reg(patient_id, registration_id, list_date, removal_date=removal,
                                       removal_code="4" if kind == "tx" else "8", donor_type=""))
                    ends.append(removal)
            if kind == "tx":
                donor = rows[-k + tx_index][DONOR_TYPE]
                outcomes.append(OUTCOME_DDKT if donor == "C" else OUTCOME_LDKT)
            elif kind == "removed":
                outcomes.append(OUTCOME_REMOVED)
            else:
                outcomes.append(OUTCOME_CENSORED)
            if kind == "tx" and k > 1 and not last_cycle and rng.random() < 0.35:
                # relisted before the stale removals of this cycle were recorded
                cursor = cycle_end + pd.Timedelta(days=int(rng.integers(1, 20)))
            else:
                cursor = max(ends) + pd.Timedelta(days=int(rng.integers(60, 400)))
        expected[patient_id] = outcomes
    frame = mk_frame(rows)
    frame[ORGAN] = "KI"
    frame[AGE_AT_LISTING] = 45.0
    return frame, expected


@pytest.fixture
def logger():
    test_logger = logging.getLogger("waitlist-tests")
    test_logger.setLevel(logging.DEBUG)
    return test_logger


@pytest.fixture
def population():
    return generate_population
