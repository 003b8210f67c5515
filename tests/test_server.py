import json

import pytest

import server
from conftest import DummyGAIC, chunk, image_part, make_png, script_json, text_part
from panels import CredentialError


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "OUTPUT_DIR", tmp_path)
    monkeypatch.setattr(server, "state", server.RunState())
    server.app.config["TESTING"] = True
    return server.app.test_client()


def use_fake(monkeypatch, fake):
    monkeypatch.setattr(server, "GAIC", lambda key: fake)


def read_events(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines()
            if line.startswith("data: ") and line != "data: {}"]


def test_config_lists_examples(client):
    data = client.get("/api/config").get_json()
    assert data["examples"]
    assert "serverKey" in data


def test_missing_key_is_rejected(client):
    res = client.post("/api/key", json={"apiKey": ""})
    assert res.status_code == 401
    assert "API key" in res.get_json()["error"]


def test_refused_key_is_reported(client, monkeypatch):
    fake = DummyGAIC()
    fake.verify_error = CredentialError("Initialization failed. Please check your API key.", "401")
    use_fake(monkeypatch, fake)
    res = client.post("/api/key", json={"apiKey": "bad"})
    assert res.status_code == 401


def test_blank_story_never_starts_a_run(client, monkeypatch):
    fake = DummyGAIC(script_json(1))
    use_fake(monkeypatch, fake)
    res = client.post("/api/start", json={"story": "   ", "apiKey": "k"})
    assert res.status_code == 400
    assert fake.script_prompts == []


def test_second_start_is_refused_while_busy(client, monkeypatch):
    use_fake(monkeypatch, DummyGAIC(script_json(1)))
    server.state.busy.acquire()
    try:
        res = client.post("/api/start", json={"story": "A story.", "apiKey": "k"})
        assert res.status_code == 409
    finally:
        server.state.busy.release()


def test_full_run_streams_slides_then_done(client, monkeypatch, tmp_path):
    streams = [[chunk(text_part("ok"), image_part(make_png()))] for _ in range(2)]
    use_fake(monkeypatch, DummyGAIC(script_json(2), streams))

    res = client.post("/api/start", json={"story": "A story.", "apiKey": "k"})
    assert res.status_code == 200
    run_id = res.get_json()["run"]
    server.state.thread.join(timeout=5)

    events = read_events(client.get("/api/stream").get_data(as_text=True))
    types_seen = [e["type"] for e in events]
    assert types_seen[0] == "start"
    assert types_seen[-1] == "done"
    slides = [e for e in events if e["type"] == "slide"]
    assert [s["text"] for s in slides] == ["Moment 1.", "Moment 2."]
    assert slides[0]["image"].startswith("data:image/png;base64,")
    assert events[-1]["phase"] == "done"

    # lock is free again and artifacts are served
    assert server.state.busy.acquire(blocking=False)
    server.state.busy.release()
    res = client.get("/api/file", query_string={"run": run_id, "path": "panel-01.png"})
    assert res.status_code == 200
    assert client.get("/api/file", query_string={"run": run_id, "path": "../../etc/passwd"}).status_code == 404


def test_failed_run_reports_error_and_releases(client, monkeypatch):
    use_fake(monkeypatch, DummyGAIC("not json"))
    client.post("/api/start", json={"story": "A story.", "apiKey": "k"})
    server.state.thread.join(timeout=5)

    events = read_events(client.get("/api/stream").get_data(as_text=True))
    assert any(e["type"] == "error" and "Scriptwriting Failed" in e["message"] for e in events)
    assert events[-1] == {"type": "done", "phase": "failed"}
    assert server.state.last_run.slides == []


def test_page_always_reenables_input(client):
    html = client.get("/").get_data(as_text=True)
    start = html.index("async function generate(")
    body = html[start:html.index("$(\"#save-api-key-button\")", start)]
    # failed start request and dropped stream both hand the input back
    assert "catch (e)" in body
    assert "stream.onerror" in body
    assert body.count("release(") >= 4
    assert "input.disabled = false" in body
