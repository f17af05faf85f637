import io
import json
import sqlite3
from unittest.mock import Mock

import pytest
from marshmallow import ValidationError

from cpedict.config import FetchConfig
from cpedict.db import IncompatibleSchemaError, InsertError, LockedError, StoreOption, new_db
from cpedict.jobs import FetchJob, FetchScheduler, RunState
from cpedict.jobs.fetch_job import should_retry
from cpedict.models import EPOCH, FetchMeta, FetchType

SUCCESS_HISTORY = [
    RunState.IDLE,
    RunState.OPENING,
    RunState.VERSION_CHECKING,
    RunState.MIGRATING,
    RunState.INGESTING,
    RunState.META_UPDATING,
    RunState.DONE,
]


def _config(sqlite_path, **overrides):
    values = dict(db_type='sqlite3', db_path=sqlite_path, threads=2, batch_size=40)
    values.update(overrides)
    return FetchConfig(**values)


def test_successful_run_walks_every_state(sqlite_path, cpe_factory):
    cpes = cpe_factory(100)
    job = FetchJob(_config(sqlite_path), source=lambda: cpes)

    stats = job.run()

    assert job.history == SUCCESS_HISTORY
    assert job.state is RunState.DONE
    assert stats.inserted_chunks == 3

    driver = new_db('sqlite3', sqlite_path, False, StoreOption())
    try:
        assert driver.get_fetch_meta().last_fetched_at > EPOCH
        assert len(driver.get_vendor_products()) == 35
    finally:
        driver.close_db()


def test_stdout_mode_prints_json_lines_without_opening_store(cpe_factory):
    cpes = cpe_factory(5)
    out = io.StringIO()
    factory = Mock()
    job = FetchJob(FetchConfig(stdout=True), source=lambda: cpes, driver_factory=factory, out=out)

    assert job.run() is None

    factory.assert_not_called()
    lines = out.getvalue().splitlines()
    assert len(lines) == 5
    first = json.loads(lines[0])
    assert first['cpe_uri'] == cpes[0].cpe_uri
    assert first['fetch_type'] == FetchType.NVD.value
    assert job.history == [RunState.IDLE, RunState.DONE]


def test_legacy_store_fails_without_retry(sqlite_path, cpe_factory):
    conn = sqlite3.connect(sqlite_path)
    conn.execute("CREATE TABLE categorized_cpes (id INTEGER PRIMARY KEY, cpe_uri TEXT)")
    conn.commit()
    conn.close()
    job = FetchJob(_config(sqlite_path), source=lambda: cpe_factory(3))

    with pytest.raises(IncompatibleSchemaError):
        job.run()

    assert job.history[-2:] == [RunState.VERSION_CHECKING, RunState.FAILED]
    assert RunState.MIGRATING not in job.history
    assert job.recoverable is False


def test_outdated_fetch_meta_blocks_ingestion(sqlite_path, cpe_factory):
    driver = new_db('sqlite3', sqlite_path, False, StoreOption())
    driver.upsert_fetch_meta(FetchMeta(revision='old', schema_version=1))
    driver.close_db()

    job = FetchJob(_config(sqlite_path), source=lambda: cpe_factory(10))
    with pytest.raises(IncompatibleSchemaError, match='SchemaVersion is old'):
        job.run()

    assert RunState.INGESTING not in job.history
    assert job.recoverable is False

    driver = new_db('sqlite3', sqlite_path, False, StoreOption())
    try:
        assert driver.get_vendor_products() == []
    finally:
        driver.close_db()


def test_driver_is_closed_after_insert_failure(cpe_factory):
    driver = Mock()
    driver.get_fetch_meta.return_value = FetchMeta()
    driver.insert_cpes.side_effect = RuntimeError("disk full")
    job = FetchJob(FetchConfig(threads=1), source=lambda: cpe_factory(5), driver_factory=Mock(return_value=driver))

    with pytest.raises(InsertError):
        job.run()

    driver.close_db.assert_called_once_with()
    assert job.history[-2:] == [RunState.INGESTING, RunState.FAILED]
    assert job.recoverable is True


@pytest.mark.parametrize('error,expected', [
    (InsertError("x"), True),
    (LockedError("locked"), True),
    (IncompatibleSchemaError("v1"), False),
    (ValueError("bad"), False),
])
def test_should_retry(error, expected):
    assert should_retry(error) is expected


def test_scheduler_without_wait_runs_once():
    job = Mock()
    FetchScheduler(job, wait=0).start()
    job.run.assert_called_once_with()


def test_scheduler_keeps_running_on_recoverable_error():
    job = Mock(recoverable=True)
    scheduler = Mock()
    fetch_scheduler = FetchScheduler(job, wait=60, scheduler=scheduler)

    fetch_scheduler.job_listener(Mock(exception=LockedError("locked"), job_id='cpe_fetch'))
    fetch_scheduler.job_listener(Mock(exception=None, job_id='cpe_fetch'))

    scheduler.shutdown.assert_not_called()
    assert fetch_scheduler.last_error is None


def test_scheduler_stops_on_non_recoverable_error():
    job = Mock(recoverable=False)
    scheduler = Mock()
    fetch_scheduler = FetchScheduler(job, wait=60, scheduler=scheduler)
    error = IncompatibleSchemaError("v1")

    fetch_scheduler.job_listener(Mock(exception=error, job_id='cpe_fetch'))

    scheduler.shutdown.assert_called_once_with(wait=False)
    assert fetch_scheduler.last_error is error


def test_scheduler_reraises_last_error_after_shutdown():
    job = Mock(recoverable=False)
    scheduler = Mock()
    fetch_scheduler = FetchScheduler(job, wait=60, scheduler=scheduler)
    error = IncompatibleSchemaError("v1")
    scheduler.start.side_effect = lambda: fetch_scheduler.job_listener(Mock(exception=error, job_id='cpe_fetch'))

    with pytest.raises(IncompatibleSchemaError):
        fetch_scheduler.start()

    assert scheduler.add_job.call_args.kwargs['max_instances'] == 1
    scheduler.add_listener.assert_called_once()


def test_entries_from_another_fetch_type_are_rejected(cpe_factory):
    cpes = cpe_factory(3)
    factory = Mock()
    job = FetchJob(FetchConfig(fetch_type=FetchType.JVN), source=lambda: cpes, driver_factory=factory)

    with pytest.raises(ValidationError) as exc_info:
        job.run()

    assert set(exc_info.value.messages) == {0, 1, 2}
    factory.assert_not_called()
    assert job.history == [RunState.IDLE, RunState.FAILED]
