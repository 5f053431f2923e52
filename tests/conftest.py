import json
import os
import socket
import stat
import subprocess
import sys
import textwrap

import psutil
import pytest

from birdcatalog.core.config import settings
from birdcatalog.db.session import close_db, init_db, session_scope
from birdcatalog.services.catalog.lease import ProcessIdentity, claim_catalog_lease
from birdcatalog.services.engine.supervisor import AnalysisLease, ProcessSupervisor
from birdcatalog.services.tasks.jobs import AnalysisRunner

FAKE_BIRDA = textwrap.dedent(
    """
    import json, os, sys, time

    here = os.path.dirname(os.path.abspath(__file__))
    with open(os.path.join(here, "scenario.json")) as f:
        sc = json.load(f)
    argv = sys.argv[1:]
    with open(os.path.join(here, "argv.json"), "w") as f:
        json.dump(argv, f)

    if argv and argv[0] in ("-V", "--version"):
        print(sc.get("version", "birda 1.6.0"))
        sys.exit(0)

    if argv and argv[0] == "clip":
        out = argv[argv.index("--output") + 1]
        os.makedirs(out, exist_ok=True)
        path = os.path.join(out, "clip_%s_%s.wav" % (argv[argv.index("--start") + 1], argv[argv.index("--end") + 1]))
        open(path, "wb").close()
        print(path)
        sys.exit(sc.get("clip_exit_code", 0))

    out_dir = argv[argv.index("--output-dir") + 1] if "--output-dir" in argv else None
    if out_dir:
        for name, content in sc.get("results", {}).items():
            with open(os.path.join(out_dir, name), "w") as f:
                f.write(content if isinstance(content, str) else json.dumps(content))

    for line in sc.get("stderr", []):
        print(line, file=sys.stderr, flush=True)
    for line in sc.get("stdout", []):
        print(line if isinstance(line, str) else json.dumps(line), flush=True)
    if sc.get("sleep"):
        time.sleep(sc["sleep"])
    sys.exit(sc.get("exit_code", 0))
    """
)


def envelope(event, payload):
    return {"spec_version": "1.0", "timestamp": "2024-03-15T06:00:00Z", "event": event, "payload": payload}


def detection(name="Turdus merula", confidence=0.8, start=0.0, end=3.0):
    return {
        "species": name,
        "scientific_name": name,
        "common_name": name,
        "confidence": confidence,
        "start_time": start,
        "end_time": end,
    }


class FakeBirda:
    def __init__(self, bin_dir):
        self.bin_dir = bin_dir
        self.path = str(bin_dir / "birda")
        with open(self.path, "w") as f:
            f.write(f"#!{sys.executable}\n")
            f.write(FAKE_BIRDA)
        os.chmod(self.path, os.stat(self.path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        self.script(stdout=[])

    def script(self, **scenario):
        with open(self.bin_dir / "scenario.json", "w") as f:
            json.dump(scenario, f)

    @property
    def argv(self):
        with open(self.bin_dir / "argv.json") as f:
            return json.load(f)


@pytest.fixture
def manager(tmp_path):
    m = init_db(tmp_path / "catalog.db")
    yield m
    close_db()


@pytest.fixture
def db(manager):
    s = manager.session_factory()
    yield s
    s.close()


@pytest.fixture
def fake_birda(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return FakeBirda(bin_dir)


@pytest.fixture
def scratch(tmp_path, monkeypatch):
    d = tmp_path / "scratch"
    d.mkdir()
    monkeypatch.setattr(settings, "SCRATCH_DIR", str(d))
    monkeypatch.setattr(settings, "RESULT_READ_BASE_DELAY_MS", 1)
    return d


@pytest.fixture
def runner(manager, fake_birda, scratch):
    return AnalysisRunner(ProcessSupervisor(fake_birda.path), AnalysisLease(), manager.session_factory)


@pytest.fixture
def foreign_holder():
    """같은 카탈로그를 다른 프로세스가 분석 중인 상태를 만든다. 반환된 프로세스를 죽이면 lease 는 stale 이 된다."""
    procs = []

    def hold(session_factory):
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        procs.append(proc)
        other = ProcessIdentity(pid=proc.pid, started=psutil.Process(proc.pid).create_time(), host=socket.gethostname())
        with session_scope(session_factory) as s:
            assert claim_catalog_lease(s, "other process", me=other)
        return proc

    yield hold
    for p in procs:
        p.kill()
        p.wait()
