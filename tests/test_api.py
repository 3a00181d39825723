import pytest
from fastapi.testclient import TestClient

from convertix.main import app
from convertix.runtime.workspace import Workspace, get_workspace


@pytest.fixture
def client():
    ws = Workspace.create()
    app.dependency_overrides[get_workspace] = lambda: ws
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _upload(client: TestClient, *files: tuple[str, bytes, str]) -> dict:
    res = client.post("/v1/tracks", files=[("files", f) for f in files])
    assert res.status_code == 200
    return res.json()


def test_upload_accepts_media_and_reports_rejections(client, wav_bytes) -> None:
    body = _upload(
        client,
        ("tone.wav", wav_bytes(), "audio/wav"),
        ("readme.txt", b"hello", "text/plain"),
    )
    assert [t["display_name"] for t in body["tracks"]] == ["tone.wav"]
    assert body["tracks"][0]["status"] == "waiting"
    assert len(body["rejected"]) == 1 and "readme.txt" in body["rejected"][0]

    listed = client.get("/v1/tracks").json()
    assert [t["id"] for t in listed] == [body["tracks"][0]["id"]]


def test_patch_validates_trim_pair(client, wav_bytes) -> None:
    tid = _upload(client, ("tone.wav", wav_bytes(), "audio/wav"))["tracks"][0]["id"]

    assert client.patch(f"/v1/tracks/{tid}", json={"trim_start": 0.1}).status_code == 400
    assert client.patch(f"/v1/tracks/{tid}", json={"trim_start": -1, "trim_end": 1}).status_code == 422
    res = client.patch(
        f"/v1/tracks/{tid}",
        content=b'{"display_name": "renamed.wav", "trim_start": 0, "trim_end": Infinity}',
        headers={"content-type": "application/json"},
    )
    assert res.status_code == 422
    assert client.get(f"/v1/tracks/{tid}").json()["display_name"] == "tone.wav"

    res = client.patch(f"/v1/tracks/{tid}", json={"display_name": "intro.mp3", "trim_start": 0.25, "trim_end": 0.75})
    assert res.status_code == 200
    assert res.json()["display_name"] == "intro.mp3"
    assert (res.json()["trim_start"], res.json()["trim_end"]) == (0.25, 0.75)

    assert client.get("/v1/tracks/missing").status_code == 404


def test_batch_converts_and_serves_result(client, wav_bytes) -> None:
    good = _upload(client, ("tone.wav", wav_bytes(seconds=1.0), "audio/wav"))["tracks"][0]["id"]
    bad = _upload(client, ("broken.wav", b"not audio" * 40, "audio/wav"))["tracks"][0]["id"]
    client.patch(f"/v1/tracks/{good}", json={"display_name": "intro.mp3", "trim_start": 0.25, "trim_end": 0.75})

    res = client.post("/v1/batch?wait=true", json={"sample_rate": 48000, "bit_depth": 24, "channel_mode": "mono"})
    assert res.status_code == 202
    state = res.json()
    assert state["state"] == "finished"
    assert state["running"] is False
    assert state["completed"] == [good]
    assert state["failed"] == [bad]

    track = client.get(f"/v1/tracks/{good}").json()
    assert track["status"] == "done"
    assert track["progress"] == 100
    assert track["result"]["format"] == "WAV (48kHz 24bit mono)"
    assert track["result"]["duration_s"] == pytest.approx(0.5, abs=1e-3)
    assert track["result"]["trim_start"] == 0.25

    assert client.get(f"/v1/tracks/{bad}").json()["status"] == "error"

    download = client.get(f"/v1/tracks/{good}/result")
    assert download.status_code == 200
    assert download.headers["content-type"] == "audio/wav"
    assert 'filename="intro.wav"' in download.headers["content-disposition"]
    assert download.content[:4] == b"RIFF"
    assert len(download.content) == 44 + 24000 * 3
    assert download.headers["content-length"] == str(44 + 24000 * 3)

    assert client.get(f"/v1/tracks/{bad}/result").status_code == 404
    # done tracks are no longer editable
    assert client.patch(f"/v1/tracks/{good}", json={"display_name": "x.wav"}).status_code == 409


def test_batch_state_and_cancel_without_run(client) -> None:
    assert client.get("/v1/batch").json() == {
        "running": False,
        "state": "idle",
        "run_id": None,
        "settings": None,
        "completed": [],
        "failed": [],
        "started_at": None,
        "finished_at": None,
    }
    assert client.post("/v1/batch/cancel").status_code == 409
    assert client.post("/v1/batch", json={"sample_rate": 22050}).status_code == 422


def test_remove_and_clear(client, wav_bytes) -> None:
    ids = [
        t["id"]
        for t in _upload(
            client,
            ("a.wav", wav_bytes(), "audio/wav"),
            ("b.wav", wav_bytes(), "audio/wav"),
        )["tracks"]
    ]
    assert client.delete(f"/v1/tracks/{ids[0]}").status_code == 200
    assert client.delete(f"/v1/tracks/{ids[0]}").status_code == 404
    assert client.delete("/v1/tracks").json() == {"removed": 1}
    assert client.get("/v1/tracks").json() == []


def test_waveform(client, wav_bytes) -> None:
    tid = _upload(client, ("tone.wav", wav_bytes(), "audio/wav"))["tracks"][0]["id"]
    body = client.get(f"/v1/tracks/{tid}/waveform").json()
    assert body["track_id"] == tid
    assert len(body["peaks"]) == body["buckets"]
