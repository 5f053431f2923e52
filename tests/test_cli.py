import json
import signal

import pytest

from birdcatalog import cli
from birdcatalog.db.session import close_db, init_db
from birdcatalog.services.engine.protocol import EngineOptions
from birdcatalog.services.tasks import runtime
from conftest import detection, envelope


@pytest.fixture
def cli_env(tmp_path, monkeypatch, fake_birda, scratch):
    monkeypatch.setattr(runtime.supervisor, "configured_path", fake_birda.path)
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda: None)
    return str(tmp_path / "cli.db")


def test_migrate_and_empty_runs(cli_env, capsys):
    assert cli.main(["--db", cli_env, "migrate"]) == 0
    assert cli.main(["--db", cli_env, "runs"]) == 0
    assert capsys.readouterr().out == ""


def test_analyze_prints_outcome(cli_env, fake_birda, tmp_path, capsys):
    rec = tmp_path / "20240315_063000.wav"
    rec.write_bytes(b"")
    fake_birda.script(
        stdout=[
            envelope("detections", {"file": str(rec), "detections": [detection()]}),
            envelope("file_completed", {"file": str(rec), "status": "processed"}),
        ]
    )

    assert cli.main(["--db", cli_env, "analyze", str(rec), "--provider", "cpu"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["status"] == "completed"
    assert out["detections"] == 1
    assert "--cpu" in fake_birda.argv

    assert cli.main(["--db", cli_env, "runs"]) == 0
    assert "completed" in capsys.readouterr().out


def test_analyze_rejects_half_coordinates(cli_env, tmp_path):
    rec = tmp_path / "a.wav"
    rec.write_bytes(b"")
    assert cli.main(["--db", cli_env, "analyze", str(rec), "--lat", "60.1"]) == 2


def test_analyze_missing_source(cli_env, tmp_path):
    assert cli.main(["--db", cli_env, "analyze", str(tmp_path / "missing.wav")]) == 1


def test_recover_refused_while_other_process_analyzes(cli_env, foreign_holder):
    assert cli.main(["--db", cli_env, "migrate"]) == 0
    other = foreign_holder(init_db(cli_env).session_factory)
    close_db()
    assert cli.main(["--db", cli_env, "recover"]) == 1

    other.kill()
    other.wait()
    assert cli.main(["--db", cli_env, "recover"]) == 0


def test_signal_handler_runs_while_main_thread_holds_locks(monkeypatch, fake_birda, tmp_path):
    monkeypatch.setattr(cli, "_SIGNALS_SEEN", 0)
    fake_birda.script(sleep=30)
    handle = runtime.supervisor.start(
        str(tmp_path / "a.wav"), EngineOptions(model="m", min_confidence=0.1), executable=fake_birda.path
    )
    runtime.lease.acquire(owner="test")
    runtime.lease.attach(handle)
    try:
        # 신호는 메인 스레드가 락을 쥔 채로 끼어들 수 있다
        with runtime.lease._state, runtime.supervisor._lock:
            cli._signal_handler(signal.SIGINT, None)
            assert handle.cancelled
            with pytest.raises(SystemExit):
                cli._signal_handler(signal.SIGINT, None)
    finally:
        runtime.lease.release()
        runtime.supervisor.release(handle)
    assert handle.wait(timeout=10) != 0
