import os

import pytest
from sqlalchemy import func, select

from birdcatalog.core.errors import AnalysisAlreadyRunning, EngineNotFound
from birdcatalog.db.models.audio_file import AudioFile
from birdcatalog.db.models.detection import Detection
from birdcatalog.db.models.run import AnalysisRun
from birdcatalog.schemas.analysis import AnalysisRequest
from birdcatalog.services.catalog.runs import STALE_RUN_MESSAGE, recover_stale_runs
from birdcatalog.services.engine.protocol import TransportMode
from birdcatalog.services.engine.supervisor import AnalysisLease, ProcessSupervisor
from birdcatalog.services.tasks.jobs import AnalysisRunner
from conftest import detection, envelope


def _count(db, model, **where):
    stmt = select(func.count()).select_from(model)
    for k, v in where.items():
        stmt = stmt.where(getattr(model, k) == v)
    return db.execute(stmt).scalar_one()


@pytest.fixture
def recording(tmp_path):
    p = tmp_path / "20240315_063000.wav"
    p.write_bytes(b"")
    return str(p)


@pytest.fixture
def folder(tmp_path):
    d = tmp_path / "site"
    d.mkdir()
    for name in ("a.wav", "b.wav", "c.wav"):
        (d / name).write_bytes(b"")
    return d


def _result(path, *dets):
    return {"source_file": str(path), "model": "birdnet-v24", "detections": list(dets)}


def test_inline_run_stores_detections(runner, fake_birda, db, recording):
    fake_birda.script(
        stdout=[
            envelope("pipeline_started", {"total_files": 1, "model": "birdnet-v24"}),
            envelope("file_started", {"file": recording, "index": 0}),
            envelope(
                "progress",
                {"file": {"path": recording, "segments_done": 1, "segments_total": 2, "percent": 50.0}},
            ),
            envelope(
                "detections",
                {
                    "file": recording,
                    "detections": [
                        detection(start=0, end=3),
                        detection(name="Parus major", confidence=0.6, start=3, end=6),
                        detection(name="Erithacus rubecula", confidence=0.9, start=6, end=9),
                    ],
                },
            ),
            envelope("file_completed", {"file": recording, "status": "processed", "detections": 3}),
            envelope("pipeline_completed", {"status": "completed", "files_processed": 1, "total_detections": 3}),
        ]
    )

    out = runner.analyze(AnalysisRequest(source_path=recording, latitude=60.17, longitude=24.94))

    assert out.status == "completed"
    assert out.mode == TransportMode.inline
    assert out.detections == 3
    assert out.files_total == 1
    assert out.files_processed == 1
    assert _count(db, Detection, run_id=out.run_id) == 3
    assert _count(db, AudioFile, run_id=out.run_id) == 1

    run = db.get(AnalysisRun, out.run_id)
    assert run.status == "completed"
    assert run.completed_at is not None
    assert run.location_id is not None
    af = db.execute(select(AudioFile).where(AudioFile.run_id == out.run_id)).scalar_one()
    assert af.recording_start.startswith("2024-03-15T06:30:00")

    argv = fake_birda.argv
    assert "--stdout" in argv
    assert argv[argv.index("--month") + 1] == "3"
    assert argv[argv.index("--day") + 1] == "15"
    assert argv[argv.index("--day-of-year") + 1] == "75"
    assert argv[-1] == recording
    assert not runner.running


def test_directory_run_with_failed_file(runner, fake_birda, db, folder):
    a, b, c = (str(folder / n) for n in ("a.wav", "b.wav", "c.wav"))
    fake_birda.script(
        results={
            "a.BirdNET.json": _result(a, detection(start=0, end=3), detection(name="Parus major", start=3, end=6)),
            "b.BirdNET.json": _result(b, detection(start=0, end=3)),
        },
        stdout=[
            envelope("pipeline_started", {"total_files": 3}),
            envelope("file_completed", {"file": a, "status": "processed", "detections": 2}),
            envelope("file_completed", {"file": b, "status": "processed", "detections": 1}),
            envelope("file_completed", {"file": c, "status": "failed"}),
            envelope("pipeline_completed", {"status": "completed", "files_processed": 2, "files_failed": 1}),
        ],
    )

    out = runner.analyze(AnalysisRequest(source_path=str(folder)))

    assert out.mode == TransportMode.directory
    assert out.status == "completed_with_errors"
    assert out.files_processed == 2
    assert out.files_failed == 1
    assert out.failed_files == [c]
    assert out.detections == 3
    assert out.output_dir is None
    assert _count(db, Detection, run_id=out.run_id) == 3
    paths = db.execute(select(AudioFile.file_path).where(AudioFile.run_id == out.run_id)).scalars().all()
    assert sorted(paths) == [a, b]

    argv = fake_birda.argv
    out_dir = argv[argv.index("--output-dir") + 1]
    assert argv[argv.index("--output-mode") + 1] == "ndjson"
    assert not os.path.exists(out_dir)


def test_result_without_detections_marks_file_failed(runner, fake_birda, db, folder):
    a, b = str(folder / "a.wav"), str(folder / "b.wav")
    fake_birda.script(
        results={
            "a.BirdNET.json": _result(a, detection()),
            "b.BirdNET.json": {"source_file": b},
        },
        stdout=[
            envelope("pipeline_started", {"total_files": 2}),
            envelope("file_completed", {"file": a, "status": "processed"}),
            envelope("file_completed", {"file": b, "status": "processed"}),
        ],
    )

    out = runner.analyze(AnalysisRequest(source_path=str(folder)))

    assert out.status == "completed_with_errors"
    assert out.failed_files == [b]
    assert _count(db, AudioFile, run_id=out.run_id) == 1


def test_missing_result_file_fails_only_that_file(runner, fake_birda, db, folder):
    a = str(folder / "a.wav")
    fake_birda.script(stdout=[envelope("file_completed", {"file": a, "status": "processed"})])

    out = runner.analyze(AnalysisRequest(source_path=str(folder)))

    # 실패 파일만 있으면 run 도 실패
    assert out.status == "failed"
    assert out.files_failed == 1
    assert out.error is None
    assert db.get(AnalysisRun, out.run_id).status == "failed"


def test_skipped_files_do_not_degrade_status(runner, fake_birda, folder):
    fake_birda.script(
        stdout=[envelope("file_completed", {"file": str(folder / "a.wav"), "status": "skipped"})]
    )
    out = runner.analyze(AnalysisRequest(source_path=str(folder)))
    assert out.status == "completed"
    assert out.files_skipped == 1
    assert out.skipped_files == [str(folder / "a.wav")]


def test_noise_lines_are_tolerated(runner, fake_birda, db, recording):
    fake_birda.script(
        stdout=[
            "Loading model...",
            "{not json",
            '{"event": "mystery", "payload": {}}',
            envelope("detections", {"file": recording, "detections": [detection()]}),
            envelope("file_completed", {"file": recording, "status": "processed"}),
        ]
    )
    out = runner.analyze(AnalysisRequest(source_path=recording))

    assert out.status == "completed"
    assert out.detections == 1
    assert "Loading model..." in runner.stderr_log()


def test_malformed_detections_payload_fails_file(runner, fake_birda, db, recording):
    fake_birda.script(
        stdout=[
            envelope("detections", {"file": recording, "detections": [detection(confidence=2.0)]}),
            envelope("file_completed", {"file": recording, "status": "processed"}),
        ]
    )
    out = runner.analyze(AnalysisRequest(source_path=recording))

    assert out.status == "failed"
    assert out.failed_files == [recording]
    assert _count(db, Detection, run_id=out.run_id) == 0


def test_nonzero_exit_fails_run_and_keeps_output_dir(runner, fake_birda, db, folder):
    fake_birda.script(
        stderr=["error: model file missing"],
        stdout=[envelope("pipeline_started", {"total_files": 3})],
        exit_code=2,
    )
    out = runner.analyze(AnalysisRequest(source_path=str(folder)))

    assert out.status == "failed"
    assert "code 2" in out.error
    assert out.output_dir is not None and os.path.isdir(out.output_dir)
    run = db.get(AnalysisRun, out.run_id)
    assert run.status == "failed"
    assert "error: model file missing" in run.error_log


def test_cancel_mid_run(runner, fake_birda, db, recording):
    fake_birda.script(stdout=[envelope("pipeline_started", {"total_files": 1})], sleep=30)

    def on_event(env):
        if env.event.value == "pipeline_started":
            assert runner.cancel() is True

    out = runner.analyze(AnalysisRequest(source_path=recording), on_event=on_event)

    assert out.status == "failed"
    assert "cancelled" in out.error
    run = db.get(AnalysisRun, out.run_id)
    assert run.status == "failed"
    assert run.error_log
    assert not runner.running
    assert runner.supervisor.active() == []


def test_run_closed_elsewhere_reports_stored_status(runner, manager, fake_birda, db, recording):
    fake_birda.script(
        stdout=[
            envelope("pipeline_started", {"total_files": 1}),
            envelope("file_completed", {"file": recording, "status": "processed"}),
        ]
    )

    def on_event(env):
        # 분석 도중 다른 연결이 run 을 stale 로 닫아버린 경우
        if env.event.value == "pipeline_started":
            with manager.session_factory() as other:
                assert recover_stale_runs(other) == 1

    out = runner.analyze(AnalysisRequest(source_path=recording), on_event=on_event)

    assert out.status == "failed"
    assert out.error == STALE_RUN_MESSAGE
    stored = db.execute(select(AnalysisRun.status).where(AnalysisRun.id == out.run_id)).scalar_one()
    assert stored == out.status


def test_listener_errors_do_not_abort_run(runner, fake_birda, recording):
    fake_birda.script(stdout=[envelope("file_completed", {"file": recording, "status": "processed"})])

    def on_event(env):
        raise RuntimeError("ui went away")

    out = runner.analyze(AnalysisRequest(source_path=recording), on_event=on_event)
    assert out.status == "completed"


def test_engine_missing_creates_no_run(manager, db, recording, tmp_path, monkeypatch, scratch):
    empty = tmp_path / "empty-bin"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    supervisor = ProcessSupervisor(str(tmp_path / "nowhere" / "birda"))
    runner = AnalysisRunner(supervisor, AnalysisLease(), manager.session_factory)

    with pytest.raises(EngineNotFound):
        runner.analyze(AnalysisRequest(source_path=recording))
    assert _count(db, AnalysisRun) == 0
    assert not runner.running


def test_missing_source_creates_no_run(runner, db, tmp_path):
    with pytest.raises(FileNotFoundError):
        runner.analyze(AnalysisRequest(source_path=str(tmp_path / "nope.wav")))
    assert _count(db, AnalysisRun) == 0


def test_second_analysis_is_rejected(runner, db, recording):
    runner.lease.acquire(owner="someone else")
    try:
        with pytest.raises(AnalysisAlreadyRunning):
            runner.analyze(AnalysisRequest(source_path=recording))
    finally:
        runner.lease.release()
    assert _count(db, AnalysisRun) == 0


def test_rerun_replaces_completed_run(runner, fake_birda, db, recording):
    fake_birda.script(
        stdout=[
            envelope("detections", {"file": recording, "detections": [detection()]}),
            envelope("file_completed", {"file": recording, "status": "processed"}),
        ]
    )
    first = runner.analyze(AnalysisRequest(source_path=recording))
    second = runner.analyze(AnalysisRequest(source_path=recording))

    assert db.get(AnalysisRun, first.run_id) is None
    assert _count(db, AnalysisRun) == 1
    assert _count(db, Detection) == 1
    assert second.run_id != first.run_id
