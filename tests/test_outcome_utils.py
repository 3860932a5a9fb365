import pandas as pd
import pytest

from conftest import mk_reg, mk_frame
from helpers_waitlist.constants import (
    PATIENT_ID,
    REGISTRATION_ID,
    LIST_DATE,
    LIST_TYPE,
    EPISODE_NUMBER,
    WAITLIST_END_DATE,
    TRANSPLANT_DATE,
    MIN_LIST_DATE,
    LAST_WAIT_DATE,
    WAIT_TIME,
    OUTCOME,
    CONTRIBUTING_IDS,
    CANONICAL_RECORD_COLUMNS,
    LIST_TYPE_SINGLE,
    LIST_TYPE_SEQUENTIAL,
    OUTCOME_DDKT,
    OUTCOME_LDKT,
    OUTCOME_REMOVED,
    OUTCOME_CENSORED,
)
from helpers_waitlist.errors import EmptyEpisodeError
from helpers_waitlist.episode_utils import group_episodes
from helpers_waitlist.outcome_utils import (
    derive_wait_time,
    derive_outcome,
    derive_outcomes,
    collapse_episode,
    collapse_episodes,
    merge_datasets,
)
from helpers_waitlist.registration_utils import resolve_end_dates, classify_registrations


def ts(value):
    return pd.Timestamp(value)


def episode(rows, number=1):
    frame = resolve_end_dates(mk_frame(rows))
    frame[EPISODE_NUMBER] = number
    frame[LIST_TYPE] = "concurrent"
    return frame


def reconcile(frame):
    """Classify, group, collapse and merge a registration frame."""
    classified = classify_registrations(resolve_end_dates(frame))
    grouped, group_errors = group_episodes(classified.loc[classified[LIST_TYPE] != LIST_TYPE_SINGLE])
    collapsed, collapse_errors, warnings = collapse_episodes(grouped)
    single = classified.loc[classified[LIST_TYPE] == LIST_TYPE_SINGLE]
    sequential = grouped.loc[grouped[LIST_TYPE] == LIST_TYPE_SEQUENTIAL]
    return merge_datasets(single, sequential, collapsed), group_errors + collapse_errors, warnings


def test_wait_time_uses_transplant_only_for_episodes():
    assert derive_wait_time(ts("2012-01-11"), 1, ts("2012-03-01"), ts("2012-01-01")) == 10
    assert derive_wait_time(ts("2012-01-11"), 0, ts("2012-03-01"), ts("2012-01-01")) == 60
    assert derive_wait_time(pd.NaT, 2, ts("2012-01-31"), ts("2012-01-01")) == 30


def test_outcome_precedence_donor_type_over_removal_code():
    assert derive_outcome("C", "4") == OUTCOME_DDKT
    assert derive_outcome("L", "4") == OUTCOME_LDKT
    assert derive_outcome(None, "8") == OUTCOME_REMOVED
    assert derive_outcome(None, None) == OUTCOME_CENSORED
    assert derive_outcome("", "") == OUTCOME_CENSORED


def test_vectorized_outcomes_match_scalar():
    df = pd.DataFrame({
        "donor_type": ["C", "L", None, None, "C", ""],
        "removal_code": ["4", None, "8", None, None, " "],
    })
    expected = [derive_outcome(d, r) for d, r in zip(df["donor_type"], df["removal_code"])]
    assert derive_outcomes(df).tolist() == expected


def test_scenario_p_transplant_on_last_listing_propagates():
    record = collapse_episode(episode([
        mk_reg(1, 10, ts("2010-01-01"), removal_date=ts("2012-03-05"), removal_code="4", donor_type=""),
        mk_reg(1, 11, ts("2010-02-01"), active=ts("2012-03-01"), donor_type=""),
        mk_reg(1, 12, ts("2010-03-01"), transplant_date=ts("2012-03-01"), donor_type="L", donor_id="D9"),
    ]))
    assert record[REGISTRATION_ID] == 10
    assert record[MIN_LIST_DATE] == ts("2010-01-01")
    assert record["transplant_date"] == ts("2012-03-01")
    assert record["donor_id"] == "D9"
    assert record[OUTCOME] == OUTCOME_LDKT
    assert record[LAST_WAIT_DATE] == ts("2012-03-01")
    assert record[WAIT_TIME] == (ts("2012-03-01") - ts("2010-01-01")).days
    assert record[CONTRIBUTING_IDS] == [10, 11, 12]


def test_last_wait_date_not_clamped_without_transplant():
    record = collapse_episode(episode([
        mk_reg(1, 10, ts("2010-01-01"), removal_date=ts("2011-01-01"), removal_code="8"),
        mk_reg(1, 11, ts("2010-02-01"), removal_date=ts("2011-06-01"), removal_code="8"),
    ]))
    assert record[LAST_WAIT_DATE] == ts("2011-06-01")
    assert record[OUTCOME] == OUTCOME_REMOVED
    assert record[WAIT_TIME] == (ts("2011-06-01") - ts("2010-01-01")).days


def test_collapse_does_not_modify_input():
    frame = episode([
        mk_reg(1, 10, ts("2010-01-01"), removal_date=ts("2012-03-05"), donor_type=""),
        mk_reg(1, 11, ts("2010-03-01"), transplant_date=ts("2012-03-01"), donor_type="C"),
    ])
    before = frame.copy()
    collapse_episode(frame)
    pd.testing.assert_frame_equal(frame, before)


def test_empty_episode_raises():
    with pytest.raises(EmptyEpisodeError):
        collapse_episode(episode([]))


def test_episode_without_end_dates_raises():
    frame = episode([mk_reg(1, 10, ts("2010-01-01")), mk_reg(1, 11, ts("2010-02-01"))])
    with pytest.raises(EmptyEpisodeError) as excinfo:
        collapse_episode(frame)
    assert excinfo.value.patient_id == 1
    assert excinfo.value.registration_ids == [10, 11]


def test_negative_wait_is_reported_as_warning_and_kept():
    frame = episode([
        mk_reg(1, 10, ts("2015-01-01"), transplant_date=ts("2014-01-01"), donor_type="C"),
        mk_reg(1, 11, ts("2015-02-01"), removal_date=ts("2015-06-01"), removal_code="4"),
    ])
    records, errors, warnings = collapse_episodes(frame)
    assert errors == []
    assert len(records) == 1
    assert records[WAIT_TIME].iloc[0] < 0
    assert [w["kind"] for w in warnings] == ["InconsistentOutcomeError"]
    assert warnings[0]["patient_id"] == 1


def test_collapse_failure_excludes_only_that_patient():
    frame = pd.concat([
        episode([mk_reg(1, 10, ts("2010-01-01")), mk_reg(1, 11, ts("2010-02-01"))]),
        episode([
            mk_reg(2, 20, ts("2010-01-01"), removal_date=ts("2011-01-01"), removal_code="8"),
            mk_reg(2, 21, ts("2010-02-01"), removal_date=ts("2011-02-01"), removal_code="8"),
        ]),
    ], ignore_index=True)
    records, errors, _ = collapse_episodes(frame)
    assert records[PATIENT_ID].tolist() == [2]
    assert [(e["patient_id"], e["kind"]) for e in errors] == [(1, "EmptyEpisodeError")]


def test_single_listing_identity():
    frame = mk_frame([mk_reg(1, 10, ts("2010-01-01"), removal_date=ts("2011-01-01"), removal_code="8")])
    records, errors, _ = reconcile(frame)
    assert errors == []
    assert len(records) == 1
    record = records.iloc[0]
    assert record[MIN_LIST_DATE] == ts("2010-01-01")
    assert record[LAST_WAIT_DATE] == ts("2011-01-01")
    assert record[WAIT_TIME] == 365
    assert record[OUTCOME] == OUTCOME_REMOVED
    assert record[CONTRIBUTING_IDS] == [10]


def test_scenario_q_sequential_registrations_stay_separate():
    frame = mk_frame([
        mk_reg(1, 10, ts("2016-01-01"), removal_date=ts("2016-06-01"), removal_code="8"),
        mk_reg(1, 11, ts("2016-07-01"), transplant_date=ts("2017-01-01"), donor_type="C"),
    ])
    records, _, _ = reconcile(frame)
    assert records[REGISTRATION_ID].tolist() == [10, 11]
    assert records[OUTCOME].tolist() == [OUTCOME_REMOVED, OUTCOME_DDKT]
    assert records[WAIT_TIME].tolist() == [152, 184]
    assert records[EPISODE_NUMBER].tolist() == [0, 0]


def test_scenario_s_two_records_for_two_cycles():
    frame = mk_frame([
        mk_reg(1, 10, ts("2008-01-01"), transplant_date=ts("2011-03-01"), donor_type="C"),
        mk_reg(1, 11, ts("2008-02-01"), removal_date=ts("2011-03-05"), removal_code="4"),
        mk_reg(1, 12, ts("2008-03-01"), removal_date=ts("2011-03-10"), removal_code="4"),
        mk_reg(1, 13, ts("2013-01-01"), active=ts("2016-01-01")),
        mk_reg(1, 14, ts("2013-02-01"), active=ts("2016-01-01")),
    ])
    records, _, _ = reconcile(frame)
    assert len(records) == 2
    assert records[OUTCOME].tolist() == [OUTCOME_DDKT, OUTCOME_CENSORED]
    assert records[CONTRIBUTING_IDS].tolist() == [[10, 11, 12], [13, 14]]
    assert records[LAST_WAIT_DATE].tolist() == [ts("2011-03-01"), ts("2016-01-01")]


def test_relisting_before_stale_removal_gives_disjoint_records():
    frame = mk_frame([
        mk_reg(1, 1, ts("2015-01-01"), transplant_date=ts("2016-01-01"), donor_type="C"),
        mk_reg(1, 2, ts("2015-02-01"), removal_date=ts("2016-03-01"), removal_code="4"),
        mk_reg(1, 3, ts("2016-02-01"), transplant_date=ts("2018-01-01"), donor_type="L"),
    ])
    records, errors, warnings = reconcile(frame)
    assert errors == []
    assert warnings == []
    records = records.sort_values(MIN_LIST_DATE)
    assert records[CONTRIBUTING_IDS].tolist() == [[1, 2], [3]]
    assert records[OUTCOME].tolist() == [OUTCOME_DDKT, OUTCOME_LDKT]
    assert records[LAST_WAIT_DATE].tolist() == [ts("2016-01-01"), ts("2018-01-01")]
    assert records[LAST_WAIT_DATE].iloc[0] < records[MIN_LIST_DATE].iloc[1]
    assert records[WAIT_TIME].tolist() == [365, (ts("2018-01-01") - ts("2016-02-01")).days]


def test_merge_layout_and_order():
    frame = mk_frame([
        mk_reg(2, 20, ts("2011-01-01"), removal_date=ts("2012-01-01"), removal_code="8"),
        mk_reg(1, 10, ts("2010-01-01"), transplant_date=ts("2011-01-01"), donor_type="L"),
    ])
    records, _, _ = reconcile(frame)
    assert list(records.columns) == CANONICAL_RECORD_COLUMNS
    assert records[PATIENT_ID].tolist() == [1, 2]


def test_merge_of_nothing_is_empty():
    records = merge_datasets(pd.DataFrame(), pd.DataFrame(), pd.DataFrame())
    assert records.empty
    assert list(records.columns) == CANONICAL_RECORD_COLUMNS


@pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
def test_reconciled_population_properties(population, seed):
    frame, expected = population(seed, n_patients=40)
    records, errors, warnings = reconcile(frame)
    assert errors == []
    assert warnings == []

    # coverage: every registration in exactly one record
    contributed = [i for ids in records[CONTRIBUTING_IDS] for i in ids]
    assert sorted(contributed) == sorted(frame[REGISTRATION_ID].tolist())

    assert (records[WAIT_TIME] >= 0).all()

    for patient_id, patient_records in records.groupby(PATIENT_ID):
        patient_records = patient_records.sort_values(MIN_LIST_DATE)
        assert patient_records[OUTCOME].tolist() == expected[patient_id]
        # non-overlap of waiting periods
        starts = patient_records[MIN_LIST_DATE].tolist()
        ends = patient_records[LAST_WAIT_DATE].tolist()
        assert all(end < next_start for end, next_start in zip(ends, starts[1:]))


def relisted_before_stale_removal(patient):
    """True when a registration listed after a transplant predates the removal of an older one."""
    for transplant in patient[TRANSPLANT_DATE].dropna():
        older = patient.loc[patient[LIST_DATE] < transplant]
        relisted = patient.loc[patient[LIST_DATE] > transplant, LIST_DATE]
        if len(relisted) and (older[WAITLIST_END_DATE] > relisted.min()).any():
            return True
    return False


def test_population_with_early_relisting_keeps_one_record_per_cycle(population):
    frame, expected = population(7, n_patients=200)
    resolved = resolve_end_dates(frame)
    early = [pid for pid, patient in resolved.groupby(PATIENT_ID) if relisted_before_stale_removal(patient)]
    assert early

    records, errors, _ = reconcile(frame)
    assert errors == []
    for patient_id in early:
        patient_records = records.loc[records[PATIENT_ID] == patient_id].sort_values(MIN_LIST_DATE)
        assert patient_records[OUTCOME].tolist() == expected[patient_id]
        starts = patient_records[MIN_LIST_DATE].tolist()
        ends = patient_records[LAST_WAIT_DATE].tolist()
        assert all(end < next_start for end, next_start in zip(ends, starts[1:]))


def test_single_listing_identity_over_population(population):
    frame, _ = population(99, n_patients=120)
    records, _, _ = reconcile(frame)
    resolved = resolve_end_dates(frame).set_index(REGISTRATION_ID)
    singles = records.loc[records[LIST_TYPE] == LIST_TYPE_SINGLE]
    assert not singles.empty
    for _, record in singles.iterrows():
        source = resolved.loc[record[REGISTRATION_ID]]
        assert record[MIN_LIST_DATE] == source[LIST_DATE]
        assert record[WAIT_TIME] == (source[WAITLIST_END_DATE] - source[LIST_DATE]).days
