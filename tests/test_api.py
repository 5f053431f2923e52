import pytest
from fastapi.testclient import TestClient

from birdcatalog.core.config import settings
from birdcatalog.db.session import get_manager
from birdcatalog.main import app
from birdcatalog.services.engine.supervisor import AnalysisLease, ProcessSupervisor
from birdcatalog.services.tasks.jobs import AnalysisRunner
from birdcatalog.services.tasks.runtime import get_runner
from conftest import detection, envelope


@pytest.fixture
def api_runner(fake_birda, scratch):
    return AnalysisRunner(ProcessSupervisor(fake_birda.path), AnalysisLease())


@pytest.fixture
def client(tmp_path, monkeypatch, api_runner):
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "api.db"))
    monkeypatch.setattr(settings, "CLIP_OUTPUT_DIR", str(tmp_path / "clips"))
    app.dependency_overrides[get_runner] = lambda: api_runner
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def recording(tmp_path):
    p = tmp_path / "20240315_063000.wav"
    p.write_bytes(b"")
    return str(p)


def _analyze(client, fake_birda, recording, **extra):
    fake_birda.script(
        stdout=[
            envelope("pipeline_started", {"total_files": 1}),
            envelope(
                "detections",
                {
                    "file": recording,
                    "detections": [
                        detection(start=0, end=3),
                        detection(confidence=0.95, start=3, end=6),
                        detection(name="Parus major", confidence=0.4, start=6, end=9),
                    ],
                },
            ),
            envelope("file_completed", {"file": recording, "status": "processed"}),
        ]
    )
    body = {"source_path": recording, "latitude": 60.17, "longitude": 24.94, "location_name": "Garden", **extra}
    r = client.post("/analysis/start", json=body)
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == "SUCCESS"


def test_analysis_and_catalog_queries(client, fake_birda, recording):
    out = _analyze(client, fake_birda, recording)
    assert out["status"] == "completed"
    assert out["detections"] == 3

    runs = client.get("/catalog/runs").json()
    assert len(runs) == 1
    assert runs[0]["detection_count"] == 3
    assert runs[0]["location_name"] == "Garden"

    page = client.get("/catalog/detections", params={"run_id": out["run_id"], "sort_column": "confidence"}).json()
    assert page["total"] == 3
    assert [d["confidence"] for d in page["detections"]] == [0.95, 0.8, 0.4]
    assert page["detections"][0]["audio_file"]["file_name"] == "20240315_063000.wav"

    filtered = client.get("/catalog/detections", params={"min_confidence": 0.5, "species": "turdus"}).json()
    assert filtered["total"] == 2

    species = client.get("/catalog/species").json()
    assert [s["scientific_name"] for s in species] == ["Turdus merula", "Parus major"]
    assert species[0]["detection_count"] == 2

    assert [s["scientific_name"] for s in client.get("/catalog/species/search", params={"q": "par"}).json()] == [
        "Parus major"
    ]
    assert client.get("/catalog/species/search", params={"q": "%"}).json() == []

    where = client.get("/catalog/species/Turdus merula/locations").json()
    assert len(where) == 1
    assert where[0]["detection_count"] == 2

    locations = client.get("/catalog/locations").json()
    assert locations[0]["name"] == "Garden"
    assert locations[0]["detection_count"] == 3
    assert locations[0]["species_count"] == 2

    plain = client.get("/catalog/locations", params={"with_counts": False}).json()
    assert plain[0]["name"] == "Garden"
    assert plain[0]["detection_count"] is None
    assert plain[0]["species_count"] is None

    at_garden = client.get(f"/catalog/locations/{locations[0]['id']}/species").json()
    assert {s["scientific_name"] for s in at_garden} == {"Turdus merula", "Parus major"}

    stats = client.get("/catalog/stats").json()
    assert stats == {"total_detections": 3, "total_species": 2, "total_locations": 1}


def test_delete_run_and_clear(client, fake_birda, recording):
    out = _analyze(client, fake_birda, recording)

    assert client.delete("/catalog/runs/9999").status_code == 404
    assert client.delete(f"/catalog/runs/{out['run_id']}").json() == {"deleted": out["run_id"]}
    assert client.get("/catalog/stats").json()["total_detections"] == 0

    _analyze(client, fake_birda, recording)
    cleared = client.post("/catalog/clear").json()
    assert cleared == {"detections": 3, "runs": 1, "locations": 1}
    assert client.get("/catalog/runs").json() == []


def test_clear_refused_while_running(client, api_runner):
    api_runner.lease.acquire(owner="test")
    try:
        assert client.post("/catalog/clear").status_code == 409
        r = client.post("/analysis/start", json={"source_path": "/anything"})
        assert r.status_code == 409
        assert client.get("/analysis/log").json()["running"] is True
    finally:
        api_runner.lease.release()
    assert client.post("/analysis/cancel").json() == {"cancelled": False}


def test_other_process_analysis_blocks_clear_and_start(client, fake_birda, recording, foreign_holder):
    _analyze(client, fake_birda, recording)
    foreign_holder(get_manager().session_factory)

    assert client.post("/catalog/clear").status_code == 409
    assert client.post("/analysis/start", json={"source_path": recording}).status_code == 409
    assert client.get("/catalog/stats").json()["total_detections"] == 3


def test_request_validation(client, recording, tmp_path):
    assert client.post("/analysis/start", json={"source_path": recording, "latitude": 60.0}).status_code == 422
    assert client.post("/analysis/start", json={"source_path": recording, "min_confidence": 1.5}).status_code == 422
    assert (
        client.post("/analysis/start", json={"source_path": recording, "execution_provider": "quantum"}).status_code
        == 422
    )
    assert client.post("/analysis/start", json={"source_path": str(tmp_path / "missing.wav")}).status_code == 404
    assert client.get("/catalog/detections", params={"sort_dir": "sideways"}).status_code == 422


def test_engine_unavailable(client, api_runner, tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path))
    api_runner.supervisor.configured_path = str(tmp_path / "missing" / "birda")
    assert client.get("/analysis/engine").status_code == 503


def test_engine_info(client, fake_birda):
    fake_birda.script(version="birda 1.7.2")
    info = client.get("/analysis/engine").json()
    assert info["version"] == "1.7.2"
    assert info["meets_minimum"] is True
    assert info["path"] == fake_birda.path


def test_clip_extraction_updates_detection(client, fake_birda, recording, tmp_path):
    _analyze(client, fake_birda, recording)
    det = client.get("/catalog/detections").json()["detections"][0]

    body = {"detection_id": det["id"], "audio_path": recording, "start_time": 0.0, "end_time": 3.0}
    r = client.post("/analysis/clips", json=body)
    assert r.status_code == 200, r.text
    clip = r.json()["clip_path"]
    assert clip.startswith(str(tmp_path / "clips"))

    again = client.get("/catalog/detections").json()["detections"]
    assert any(d["clip_path"] == clip for d in again)

    missing = dict(body, detection_id=9999)
    assert client.post("/analysis/clips", json=missing).status_code == 404
    backwards = dict(body, start_time=5.0)
    assert client.post("/analysis/clips", json=backwards).status_code == 422
