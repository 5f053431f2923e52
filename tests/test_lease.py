import pytest
from sqlalchemy import func, select

from birdcatalog.core.errors import AnalysisAlreadyRunning
from birdcatalog.db.models.analysis_lease import AnalysisLeaseRow
from birdcatalog.db.models.run import AnalysisRun
from birdcatalog.schemas.analysis import AnalysisRequest
from birdcatalog.services.catalog.lease import (
    catalog_lease,
    claim_catalog_lease,
    current_process,
    holder_alive,
    recover_if_idle,
    release_catalog_lease,
)
from birdcatalog.services.catalog.runs import STALE_RUN_MESSAGE, create_run, mark_running
from conftest import envelope


def _status(db, run_id):
    # 다른 연결이 쓴 내용을 보려면 새 스냅샷에서 읽어야 한다
    db.commit()
    return db.execute(select(AnalysisRun.status).where(AnalysisRun.id == run_id)).scalar_one()


def _holder_pid(db):
    db.commit()
    return db.execute(select(AnalysisLeaseRow.holder_pid)).scalar_one()


def test_claim_and_release(db):
    assert claim_catalog_lease(db, "a") is True
    assert _holder_pid(db) == current_process().pid
    # 같은 프로세스의 다른 스레드가 쥐고 있어도 거절
    assert claim_catalog_lease(db, "b") is False

    assert release_catalog_lease(db) is True
    assert _holder_pid(db) is None
    assert release_catalog_lease(db) is False
    assert claim_catalog_lease(db, "b") is True


def test_holder_alive():
    me = current_process()
    assert holder_alive(None, None, None) is False
    assert holder_alive(me.pid, me.started, me.host) is True
    # pid 가 재사용된 경우 (시작 시각 불일치)
    assert holder_alive(me.pid, me.started - 3600, me.host) is False
    assert holder_alive(me.pid, me.started, "some-other-host") is True


def test_live_holder_blocks_and_dead_holder_is_taken_over(manager, db, foreign_holder):
    other = foreign_holder(manager.session_factory)
    assert claim_catalog_lease(db, "me") is False

    other.kill()
    other.wait()
    assert claim_catalog_lease(db, "me") is True
    assert _holder_pid(db) == current_process().pid


def test_recover_if_idle_leaves_live_holders_runs_alone(manager, db, foreign_holder):
    run = create_run(db, "/rec/a.wav", "m", 0.1)
    mark_running(db, run.id)
    other = foreign_holder(manager.session_factory)

    assert recover_if_idle(manager.session_factory) is None
    assert _status(db, run.id) == "running"

    other.kill()
    other.wait()
    assert recover_if_idle(manager.session_factory) == 1
    assert _status(db, run.id) == "failed"
    # 복구 후 lease 는 비어 있다
    assert _holder_pid(db) is None


def test_catalog_lease_released_on_error(manager, db):
    with pytest.raises(RuntimeError):
        with catalog_lease(manager.session_factory, "boom"):
            raise RuntimeError("boom")
    assert _holder_pid(db) is None


def test_analysis_refused_while_other_process_analyzes(runner, manager, db, fake_birda, tmp_path, foreign_holder):
    rec = tmp_path / "a.wav"
    rec.write_bytes(b"")
    theirs = create_run(db, str(rec), "birdnet-v24", 0.1)
    mark_running(db, theirs.id)
    other = foreign_holder(manager.session_factory)

    with pytest.raises(AnalysisAlreadyRunning):
        runner.analyze(AnalysisRequest(source_path=str(rec)))
    assert db.execute(select(func.count()).select_from(AnalysisRun)).scalar_one() == 1
    assert _status(db, theirs.id) == "running"
    assert runner.running is False

    # holder 가 죽으면 다음 분석이 lease 를 넘겨받고 남은 run 을 닫는다
    other.kill()
    other.wait()
    fake_birda.script(stdout=[envelope("file_completed", {"file": str(rec), "status": "processed"})])
    out = runner.analyze(AnalysisRequest(source_path=str(rec)))
    assert out.status == "completed"
    assert _status(db, theirs.id) == "failed"
    assert db.execute(select(AnalysisRun.error_log).where(AnalysisRun.id == theirs.id)).scalar_one() == STALE_RUN_MESSAGE
    assert _holder_pid(db) is None
