import json
import time
import queue
import threading
from pathlib import Path
from typing import Optional, Dict, Any, Generator

from flask import Flask, request, Response, send_file, jsonify
from dotenv import load_dotenv

from panels import (API_KEY, EXAMPLE_STORIES, GAIC, CredentialError, GenerationRun,
                    PromptLogger, RunPhase, ensure_dir, run_generation, save_run, slugify)

# Load environment variables
load_dotenv()


app = Flask(__name__, static_folder=None)


ROOT = Path(__file__).parent
OUTPUT_DIR = ROOT / "output"


class RunState:
    def __init__(self):
        self.events: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self.thread: Optional[threading.Thread] = None
        # Held for the whole run; a second start is refused, never queued
        self.busy = threading.Lock()
        self.last_run: Optional[GenerationRun] = None


state = RunState()


def resolve_api_key(data: Dict[str, Any]) -> Optional[str]:
    key = (data.get("apiKey") or "").strip()
    return key or API_KEY


def pipeline_worker(g: GAIC, story: str, run_dir: Path, events: "queue.Queue[Dict[str, Any]]"):
    try:
        events.put({"type": "start", "run": str(run_dir.name)})
        logger = PromptLogger(run_dir / "prompts_used.txt")
        run = run_generation(g, story, emit=events.put, log=logger)
        state.last_run = run
        save_run(run, run_dir)
        events.put({"type": "done", "phase": run.phase.value})
    except Exception as e:
        print(f"[ERROR] Worker crashed: {e}")
        events.put({"type": "error", "message": str(e)})
        events.put({"type": "done", "phase": RunPhase.FAILED.value})
    finally:
        state.busy.release()


@app.route("/")
def index() -> Response:
    html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
    return Response(html, mimetype="text/html")


@app.route("/api/config")
def api_config():
    return jsonify({"serverKey": bool(API_KEY), "examples": EXAMPLE_STORIES})


@app.route("/api/key", methods=["POST"])
def api_key():
    data = request.get_json(force=True, silent=True) or {}
    key = (data.get("apiKey") or "").strip()
    try:
        GAIC(key).verify()
    except CredentialError as e:
        return jsonify({"error": e.user_message()}), 401
    return jsonify({"ok": True})


@app.route("/api/start", methods=["POST"])
def api_start():
    data = request.get_json(force=True, silent=True) or {}
    story = (data.get("story") or "").strip()
    if not story:
        return jsonify({"error": "Story text required"}), 400

    try:
        g = GAIC(resolve_api_key(data))
    except CredentialError as e:
        return jsonify({"error": e.user_message()}), 401

    if not state.busy.acquire(blocking=False):
        return jsonify({"error": "A comic is already being generated"}), 409

    try:
        slug = slugify(story.splitlines()[0], "story")
        run_id = f"{slug}-{int(time.time())}"
        run_dir = OUTPUT_DIR / run_id
        ensure_dir(run_dir)
        state.events = queue.Queue()
        state.last_run = None

        t = threading.Thread(target=pipeline_worker, args=(
            g, story, run_dir, state.events), daemon=True)
        t.start()
        state.thread = t
    except Exception:
        state.busy.release()
        raise
    return jsonify({"run": run_id})


@app.route("/api/stream")
def api_stream() -> Response:
    events = state.events

    def gen() -> Generator[str, None, None]:
        yield "event: ping\n" "data: {}\n\n"
        while True:
            try:
                evt = events.get(timeout=60)
            except queue.Empty:
                yield "event: ping\n" "data: {}\n\n"
                continue
            yield f"data: {json.dumps(evt)}\n\n"
            if evt.get("type") == "done":
                break
    return Response(gen(), mimetype="text/event-stream")


def safe_path(root: Path, rel: str) -> Optional[Path]:
    p = (root / rel).resolve()
    if root.resolve() in p.parents or p == root.resolve():
        return p if p.exists() else None
    return None


@app.route("/api/file")
def api_file():
    run = request.args.get("run")
    rel = request.args.get("path")
    if not run or not rel:
        return "Missing run or path", 400
    run_dir = safe_path(OUTPUT_DIR, run)
    if not run_dir:
        return "Not found", 404
    p = safe_path(run_dir, rel)
    if not p or p.is_dir():
        return "Not found", 404
    if p.suffix.lower() in {".png", ".jpg", ".jpeg", ".webp"}:
        return send_file(str(p))
    return Response(p.read_text(encoding="utf-8"), mimetype="text/plain")


if __name__ == "__main__":
    app.run(host="127.0.0.1", port=5001, debug=True, threaded=True)
