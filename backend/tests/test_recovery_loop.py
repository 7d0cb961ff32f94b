import pytest
from sqlalchemy.orm import sessionmaker

from app.models_sqlalchemy.models import BackgroundWorker
from app.workers import recovery_loop


@pytest.fixture
def loop_db(engine, monkeypatch):
    monkeypatch.setattr(recovery_loop, "SessionLocal", sessionmaker(bind=engine, autocommit=False, autoflush=False))
    return sessionmaker(bind=engine)()


def _worker(session):
    session.expire_all()
    return session.query(BackgroundWorker).filter(BackgroundWorker.worker_name == recovery_loop.WORKER_NAME).one()


def test_successful_pass_updates_heartbeat(loop_db, monkeypatch):
    monkeypatch.setattr(
        recovery_loop,
        "run_recovery_cycle",
        lambda db, *, triggered_by: {"ok": True, "halted": None, "failed_steps": [], "triggered_by": triggered_by},
    )

    report = recovery_loop.run_recovery_once(60)
    recovery_loop.run_recovery_once(60)

    assert report["triggered_by"] == "loop"
    worker = _worker(loop_db)
    assert worker.last_status == "ok"
    assert worker.interval_seconds == 60
    assert worker.runs_ok_in_row == 2
    assert worker.runs_error_in_row == 0
    assert worker.last_finished_at is not None


def test_halted_pass_is_visible_on_the_heartbeat(loop_db, monkeypatch):
    monkeypatch.setattr(recovery_loop, "run_recovery_cycle", lambda db, *, triggered_by: {"halted": "spending_cap"})

    recovery_loop.run_recovery_once()

    assert _worker(loop_db).last_status == "halted"


def test_crashed_pass_records_error_and_reraises(loop_db, monkeypatch):
    def boom(db, *, triggered_by):
        raise RuntimeError("db down")

    monkeypatch.setattr(recovery_loop, "run_recovery_cycle", boom)

    with pytest.raises(RuntimeError):
        recovery_loop.run_recovery_once()

    worker = _worker(loop_db)
    assert worker.last_status == "error"
    assert worker.last_error_message == "db down"
    assert worker.runs_error_in_row == 1
    assert worker.runs_ok_in_row == 0


def test_skipped_pass_is_visible_on_the_heartbeat(loop_db, monkeypatch):
    monkeypatch.setattr(
        recovery_loop,
        "run_recovery_cycle",
        lambda db, *, triggered_by: {"ok": True, "skipped": "another recovery run is still in progress"},
    )

    recovery_loop.run_recovery_once()

    assert _worker(loop_db).last_status == "skipped"
