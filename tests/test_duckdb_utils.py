import pandas as pd
import pytest

from helpers_waitlist.duckdb_utils import (
    get_duckdb_connection,
    close_duckdb_connection,
    persist_frame,
    load_frame,
    table_exists,
    drop_tables,
)


@pytest.fixture
def conn(tmp_path, logger):
    connection = get_duckdb_connection(database=str(tmp_path / "db" / "waitlist.duckdb"),
                                       tmp_dir=str(tmp_path / "tmp"), logger=logger)
    yield connection
    close_duckdb_connection(connection, logger)


def test_persist_and_load_step_output(conn, logger):
    frame = pd.DataFrame({
        "patient_id": [1, 2],
        "min_list_date": pd.to_datetime(["2010-01-01", "2011-05-01"]),
        "outcome": ["DDKT", "censored"],
        "contributing_registration_ids": [[10, 11], [20]],
    })
    assert persist_frame(conn, "collapsed_records", frame, logger) == 2
    assert table_exists(conn, "collapsed_records")
    loaded = load_frame(conn, "collapsed_records")
    assert loaded["outcome"].tolist() == ["DDKT", "censored"]
    assert [list(ids) for ids in loaded["contributing_registration_ids"]] == [[10, 11], [20]]
    assert loaded["min_list_date"].iloc[1] == pd.Timestamp("2011-05-01")


def test_persist_replaces_previous_copy(conn, logger):
    persist_frame(conn, "registrations", pd.DataFrame({"a": [1, 2, 3]}), logger)
    assert persist_frame(conn, "registrations", pd.DataFrame({"a": [4]}), logger) == 1


def test_invalid_table_name_rejected(conn, logger):
    with pytest.raises(ValueError):
        persist_frame(conn, "records; DROP TABLE x", pd.DataFrame({"a": [1]}), logger)
    with pytest.raises(ValueError):
        load_frame(conn, "1records")


def test_drop_tables_counts_existing_only(conn, logger):
    persist_frame(conn, "single_registrations", pd.DataFrame({"a": [1]}), logger)
    assert drop_tables(conn, ["single_registrations", "never_created"], logger) == 1
    assert not table_exists(conn, "single_registrations")
