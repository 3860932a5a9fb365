import importlib.util
import json
import os

import pandas as pd
import pytest

from conftest import ROOT, mk_reg, mk_frame
from helpers_waitlist.constants import (
    PATIENT_ID,
    REGISTRATION_ID,
    CONTRIBUTING_IDS,
    CANONICAL_RECORD_COLUMNS,
    ORGAN,
    AGE_AT_LISTING,
)


def load_orchestrator():
    path = os.path.join(ROOT, "1_reconcile_registrations", "0_reconcile_registrations.py")
    spec = importlib.util.spec_from_file_location("reconcile_registrations_main", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture(scope="module")
def orchestrator():
    return load_orchestrator()


def write_extract(tmp_path, frame):
    path = tmp_path / "cand_kipa.parquet"
    frame.to_parquet(path, index=False)
    return str(path)


def with_unresolved_patient(frame):
    extra = mk_frame([mk_reg(999, 999001, pd.Timestamp("2012-01-01"))])
    extra[ORGAN] = "KI"
    extra[AGE_AT_LISTING] = 50.0
    return pd.concat([frame, extra], ignore_index=True)


def base_args(input_path, output_dir, *extra):
    return ["--input", input_path, "--output-dir", str(output_dir), "--organ", "KI", "--min-age", "18",
            "--max-workers", "1", "--s3-bucket", ""] + list(extra)


def read_report(output_dir):
    with open(os.path.join(output_dir, "reconciliation_report.json"), encoding="utf-8") as f:
        return json.load(f)


def test_end_to_end_run(orchestrator, population, tmp_path):
    frame, expected = population(21, n_patients=25)
    input_path = write_extract(tmp_path, frame)
    output_dir = tmp_path / "out"

    context = orchestrator.main(base_args(input_path, output_dir))

    records = pd.read_parquet(output_dir / "canonical_records.parquet")
    assert list(records.columns) == CANONICAL_RECORD_COLUMNS
    assert len(records) == sum(len(outcomes) for outcomes in expected.values())
    contributed = sorted(i for ids in records[CONTRIBUTING_IDS] for i in ids)
    assert contributed == sorted(frame[REGISTRATION_ID].tolist())

    report = read_report(output_dir)
    assert report["canonical_records"] == len(records)
    assert report["input_registrations"] == len(frame)
    assert report["failed_patient_count"] == 0
    assert sum(report["outcome_distribution"].values()) == len(records)
    assert context["pipeline_state"].state["status"] == "completed"


def test_missing_end_date_is_quarantined_and_reported(orchestrator, population, tmp_path):
    frame, _ = population(22, n_patients=10)
    input_path = write_extract(tmp_path, with_unresolved_patient(frame))
    output_dir = tmp_path / "out"

    context = orchestrator.main(base_args(input_path, output_dir))

    assert 999 not in context["records"][PATIENT_ID].tolist()
    report = read_report(output_dir)
    assert report["failed_patient_count"] == 1
    assert [(e["patient_id"], e["kind"]) for e in report["errors"]] == [(999, "MissingDateError")]


def test_strict_mode_aborts_on_missing_end_date(orchestrator, population, tmp_path):
    frame, _ = population(23, n_patients=5)
    input_path = write_extract(tmp_path, with_unresolved_patient(frame))
    output_dir = tmp_path / "out"

    with pytest.raises(SystemExit) as excinfo:
        orchestrator.main(base_args(input_path, output_dir, "--strict"))
    assert excinfo.value.code == 1
    assert not (output_dir / "canonical_records.parquet").exists()


def test_population_filter_excludes_other_organs(orchestrator, population, tmp_path):
    frame, _ = population(24, n_patients=6)
    frame.loc[frame[PATIENT_ID] == frame[PATIENT_ID].min(), ORGAN] = "LI"
    input_path = write_extract(tmp_path, frame)

    context = orchestrator.main(base_args(input_path, tmp_path / "out"))
    assert frame[PATIENT_ID].min() not in context["records"][PATIENT_ID].tolist()


def test_resume_from_finalization_step(orchestrator, population, tmp_path, monkeypatch):
    frame, _ = population(25, n_patients=12)
    input_path = write_extract(tmp_path, with_unresolved_patient(frame))
    output_dir = tmp_path / "out"
    duckdb_path = str(tmp_path / "state" / "waitlist.duckdb")

    def fail_finalization(context):
        raise RuntimeError("disk full")

    monkeypatch.setattr(orchestrator, "run_phase4_merge_and_finalize", fail_finalization)
    with pytest.raises(SystemExit):
        orchestrator.main(base_args(input_path, output_dir, "--duckdb-path", duckdb_path))
    monkeypatch.undo()

    context = orchestrator.main(base_args(input_path, output_dir, "--duckdb-path", duckdb_path,
                                          "--starting-step", "phase4_merge_and_finalize"))
    records = pd.read_parquet(output_dir / "canonical_records.parquet")
    assert len(records) == len(context["records"]) > 0
    # errors recorded by the earlier run are still reported
    assert [e["patient_id"] for e in read_report(output_dir)["errors"]] == [999]


def test_rerun_after_completed_run_is_reproducible(orchestrator, population, tmp_path):
    frame, _ = population(26, n_patients=8)
    input_path = write_extract(tmp_path, frame)
    output_dir = tmp_path / "out"
    args = base_args(input_path, output_dir, "--duckdb-path", str(tmp_path / "waitlist.duckdb"))

    first = orchestrator.main(args)
    second = orchestrator.main(args)
    # intermediate tables are dropped after a completed run, so the steps run again
    pd.testing.assert_frame_equal(first["records"].reset_index(drop=True),
                                  second["records"].reset_index(drop=True))


def test_pseudonymized_export(orchestrator, population, tmp_path):
    frame, _ = population(27, n_patients=10)
    input_path = write_extract(tmp_path, frame)
    output_dir = tmp_path / "out"

    context = orchestrator.main(base_args(input_path, output_dir, "--pseudonymize-seed", "7"))

    exported = pd.read_parquet(output_dir / "canonical_records.parquet")
    n_patients = context["records"][PATIENT_ID].nunique()
    assert sorted(exported[PATIENT_ID].unique().tolist()) == list(range(1, n_patients + 1))
    assert read_report(output_dir)["metadata"]["pseudonymized"] is True


def test_invalid_starting_step_is_rejected(orchestrator, logger):
    with pytest.raises(ValueError):
        orchestrator.step_execution_dispatcher("phase9_unknown", {"logger": logger})
