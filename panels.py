# panels.py
import os
import io
import re
import sys
import json
import base64
import random
import string
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from PIL import Image, UnidentifiedImageError

# Google AI SDK (script text + panel images)
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

# ------------------ ENV & CONFIG ------------------
load_dotenv()
# Optional: the browser may supply its own key instead
API_KEY = os.getenv("GEMINI_API_KEY")

# Models (override via env if your account uses different names)
# script writing
SCRIPT_MODEL = os.getenv("SCRIPT_MODEL", "gemini-2.5-flash")
# panel images, driven as a chat so later panels see earlier ones
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image-preview")

STYLE_PRESET = os.getenv(
    "STYLE_PRESET",
    "Photorealistic, cinematic lighting, sharp focus, high detail, 8k resolution, "
    "shot on 35mm film, tasteful, artistic.")
PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "1") == "1"

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


SCRIPT_PROMPT_TEMPLATE = load_prompt("scriptwriter")
PANEL_IMAGE_TEMPLATE = load_prompt("panel_image")

# Clickable starters shown in the UI
EXAMPLE_STORIES = [
    "A lighthouse keeper finds a message in a bottle that was written by her future self.",
    "An old street musician in Lisbon plays one last song before the city wakes up.",
    "A young astronaut repairs her ship alone while drifting past Saturn's rings.",
    "A retired boxer teaches his granddaughter to ride a bike in a rainy park.",
]

# ------------------ ERRORS ------------------------


class ComicError(RuntimeError):
    """Base for every failure surfaced to the user.

    ``message`` is the short human text, ``detail`` the raw cause kept for
    diagnosis.
    """

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def user_message(self) -> str:
        if self.detail:
            return f"{self.message} Error: {self.detail}"
        return self.message


class CredentialError(ComicError):
    pass


class TransportError(ComicError):
    pass


class ScriptGenerationError(ComicError):
    pass


class PanelRenderError(ComicError):
    def __init__(self, panel_number: int, panel_text: str, detail: Optional[str] = None):
        super().__init__(
            f'Panel {panel_number} Failed: could not generate an image for the text: "{panel_text}"',
            detail)
        self.panel_number = panel_number
        self.panel_text = panel_text

# ------------------ DATA MODELS -------------------


class PanelText(BaseModel):
    text: str


class ComicScript(BaseModel):
    characterDescription: str
    panels: List[PanelText] = Field(default_factory=list)


class Slide(BaseModel):
    text: str
    image: bytes  # PNG
    model_text: str = ""

    def data_uri(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.image).decode("utf-8")

    def to_event(self, index: int) -> Dict[str, Any]:
        return {"type": "slide", "index": index, "text": self.text, "image": self.data_uri()}


class StreamPart(BaseModel):
    kind: str  # "text" | "image"
    text: str = ""
    image: Optional[bytes] = None


class RunPhase(str, Enum):
    IDLE = "idle"
    SCRIPT_PENDING = "script_pending"
    RENDERING = "rendering"
    FAILED = "failed"
    DONE = "done"


class GenerationRun:
    """State of one run_generation() call; a new story always gets a new one."""

    def __init__(self, story: str):
        self.story = story
        self.phase = RunPhase.IDLE
        self.script: Optional[ComicScript] = None
        self.slides: List[Slide] = []
        self.panel_index = 0
        self.error: Optional[ComicError] = None

    @property
    def finished(self) -> bool:
        return self.phase in (RunPhase.DONE, RunPhase.FAILED)

# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving JSON braces alone.

    One pass over the template, so filled-in values are never expanded again.
    """
    return re.sub(r"\{(\w+)\}", lambda m: kv.get(m.group(1), m.group(0)), template)


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def slugify(text: str, fallback: str = "item") -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text[:40].strip("-") or fallback


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b))


def pil_to_png_bytes(img: Image.Image) -> bytes:
    """Converts a PIL Image object to PNG bytes."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()

# --- Simple prompt logger (stdout + file) ---


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None):
        self.out_file = out_file
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if PRINT_PROMPTS:
            print(block)

    def flush(self):
        if self.out_file is None:
            return
        self.out_file.write_text("".join(self.lines), encoding="utf-8")

# ------------------ GENAI WRAPPER ----------------


class GAIC:
    def __init__(self, api_key: Optional[str]):
        if not api_key:
            raise CredentialError("Missing API key. Please enter a Gemini API key.")
        try:
            self.client = genai.Client(api_key=api_key)
        except Exception as e:
            raise CredentialError(
                "Initialization failed. Please check your API key.", str(e)) from e

    def verify(self, model: str = SCRIPT_MODEL) -> None:
        """Cheap authenticated call; raises CredentialError if the key is refused."""
        try:
            self.client.models.get(model=model)
        except genai_errors.APIError as e:
            raise CredentialError(
                "Initialization failed. Please check your API key.", str(e)) from e
        except Exception as e:
            raise CredentialError(
                "Could not reach the AI service to check the key.", str(e)) from e

    # Script writing, single non-streaming request
    def generate_text(self, prompt: str, model: str = SCRIPT_MODEL) -> str:
        try:
            resp = self.client.models.generate_content(
                model=model,
                contents=prompt,
                config={"response_mime_type": "application/json"},
            )
        except Exception as e:
            print(f"[ERROR] Script request failed: {e}")
            raise TransportError("The AI service request failed.", str(e)) from e
        if getattr(resp, "text", ""):
            return resp.text
        out = []
        for c in getattr(resp, "candidates", []) or []:
            content = getattr(c, "content", None)
            for p in getattr(content, "parts", None) or []:
                if getattr(p, "thought", None):
                    continue
                if getattr(p, "text", None):
                    out.append(p.text)
        return "\n".join(out).strip()

    def start_image_chat(self, model: str = IMAGE_MODEL):
        return self.client.chats.create(
            model=model,
            config=types.GenerateContentConfig(
                response_modalities=["TEXT", "IMAGE"]),
        )

    def generate_image_stream(self, chat, prompt: str) -> Iterator[Any]:
        """
        Send one panel prompt on the image chat and yield response chunks
        as they arrive. Any SDK failure, including one raised between
        chunks, comes out as TransportError.
        """
        try:
            for chunk in chat.send_message_stream(prompt):
                yield chunk
        except Exception as e:
            print(f"[ERROR] Image stream failed: {e}")
            raise TransportError("The image stream failed.", str(e)) from e

# ------------------ STREAM DEMUX ------------------


def decode_inline_image(data: bytes, mime_type: Optional[str] = "image/png") -> bytes:
    """Validate inline image bytes and normalise them to PNG."""
    if isinstance(data, str):
        data = base64.b64decode(data)
    try:
        img = image_bytes_to_pil(data)
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise TransportError(
            "The image model returned unreadable image data.", str(e)) from e
    if img.format == "PNG" and (mime_type or "image/png") == "image/png":
        return data
    return pil_to_png_bytes(img)


def iter_parts(chunks: Iterable[Any]) -> Iterator[StreamPart]:
    """Flatten a response stream into text/image parts in arrival order."""
    for chunk in chunks:
        candidates = getattr(chunk, "candidates", None) or []
        if not candidates:
            continue
        content = getattr(candidates[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "thought", None):
                continue
            if getattr(part, "text", None):
                yield StreamPart(kind="text", text=part.text)
            elif getattr(part, "inline_data", None) is not None and part.inline_data.data:
                png = decode_inline_image(
                    part.inline_data.data, part.inline_data.mime_type)
                yield StreamPart(kind="image", image=png)

# ------------------ SLIDE ASSEMBLY ----------------


class SlideAssembler:
    """
    Pairs streamed text with the image that follows (or precedes) it.

    The pairing check runs after every part, so one chunk carrying
    [text, image, text, image] gives two slides. Images are not queued:
    a second image before any text replaces the first.
    """

    def __init__(self, on_slide: Optional[Callable[[Slide], None]] = None):
        self.on_slide = on_slide
        self.text = ""
        self.image: Optional[bytes] = None
        self.slides: List[Slide] = []

    def feed(self, part: StreamPart) -> Optional[Slide]:
        if part.kind == "text":
            self.text += part.text
        elif part.kind == "image":
            if self.image is not None:
                print("[WARN] Image replaced before it was paired with text")
            self.image = part.image

        if self.text and self.image is not None:
            slide = Slide(text=self.text, image=self.image)
            self.slides.append(slide)
            self.text = ""
            self.image = None
            if self.on_slide:
                self.on_slide(slide)
            return slide
        return None

    def feed_all(self, parts: Iterable[StreamPart]) -> List[Slide]:
        for part in parts:
            self.feed(part)
        return self.slides

    def finish(self) -> Dict[str, bool]:
        """Drop anything left unpaired at end of stream."""
        dropped = {"text": bool(self.text), "image": self.image is not None}
        if dropped["text"] or dropped["image"]:
            print(f"[WARN] Discarding unpaired stream leftovers: {dropped}")
        self.text = ""
        self.image = None
        return dropped


def assemble_slides(chunks: Iterable[Any]) -> List[Slide]:
    assembler = SlideAssembler()
    assembler.feed_all(iter_parts(chunks))
    assembler.finish()
    return assembler.slides

# ------------------ SCRIPT STAGE ------------------


def build_script_prompt(story: str) -> str:
    return fill(SCRIPT_PROMPT_TEMPLATE, story=story)


_FENCE_OPEN = re.compile(r"^\s*```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```\s*$")


def clean_script_text(text: str) -> str:
    """Strip a ```json ... ``` wrapper the model may add despite instructions."""
    text = _FENCE_OPEN.sub("", text)
    text = _FENCE_CLOSE.sub("", text)
    return text.strip()


def parse_script(text: str) -> ComicScript:
    if not text or not text.strip():
        raise ScriptGenerationError(
            "Scriptwriting Failed: the text model returned no response.")
    cleaned = clean_script_text(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ScriptGenerationError(
            "Scriptwriting Failed: the AI did not return a valid story script. "
            "Try simplifying your prompt.", str(e)) from e
    if not isinstance(data, dict):
        raise ScriptGenerationError(
            "Scriptwriting Failed: the script was not a JSON object.")
    try:
        script = ComicScript.model_validate(data)
    except ValidationError as e:
        raise ScriptGenerationError(
            "Scriptwriting Failed: the script did not match the expected shape.", str(e)) from e
    if not script.panels:
        raise ScriptGenerationError(
            "Scriptwriting Failed: the script contained no panels.")
    return script


def generate_script(g: GAIC, story: str, log: PromptLogger) -> ComicScript:
    prompt = build_script_prompt(story)
    log.log("SCRIPT_PROMPT", prompt)
    try:
        raw = g.generate_text(prompt)
    except TransportError as e:
        raise ScriptGenerationError(
            "Scriptwriting Failed: the script request did not complete.", e.detail) from e
    log.log("SCRIPT_RESPONSE", raw or "<empty>")
    return parse_script(raw)

# ------------------ PANEL STAGE -------------------


def build_panel_image_prompt(panel: PanelText, character_description: str) -> str:
    return fill(
        PANEL_IMAGE_TEMPLATE,
        panel_text=panel.text,
        character_description=character_description,
        STYLE_PRESET=STYLE_PRESET,
    )


def render_panel(g: GAIC, chat, script: ComicScript, index: int, log: PromptLogger) -> Slide:
    """Stream one panel image and turn it into the panel's slide."""
    panel = script.panels[index]
    prompt = build_panel_image_prompt(panel, script.characterDescription)
    log.log(f"PANEL_IMAGE_PROMPT [#{index + 1}]", prompt)

    assembler = SlideAssembler()
    try:
        assembler.feed_all(iter_parts(g.generate_image_stream(chat, prompt)))
    except TransportError as e:
        raise PanelRenderError(index + 1, panel.text, e.detail) from e

    if assembler.slides:
        if len(assembler.slides) > 1:
            print(f"[WARN] Panel {index + 1} produced {len(assembler.slides)} slides; keeping the first")
        first = assembler.slides[0]
        image, model_text = first.image, first.text
        assembler.finish()
    elif assembler.image is not None:
        # image-only reply
        image, model_text = assembler.image, ""
        assembler.image = None
    else:
        assembler.finish()
        raise PanelRenderError(
            index + 1, panel.text,
            "Image model did not return an image for this panel.")
    if model_text:
        log.log(f"PANEL_MODEL_TEXT [#{index + 1}]", model_text)
    return Slide(text=panel.text, image=image, model_text=model_text)

# ------------------ MAIN ORCHESTRATION -----------


def run_generation(g: GAIC, story: str, emit: Optional[Callable[[Dict[str, Any]], None]] = None,
                   log: Optional[PromptLogger] = None) -> GenerationRun:
    """
    Run the two-stage pipeline for one story.

    Args:
        g: Service wrapper
        story: Raw user story; blank stories return an IDLE run untouched
        emit: Receives progress events (status, script, slide, error, done)
        log: Prompt log for this run

    Never raises ComicError: failures end the run in FAILED with
    ``run.error`` set and every slide rendered so far kept.
    """
    emit = emit or (lambda evt: None)
    log = log or PromptLogger()
    run = GenerationRun(story)
    if not story or not story.strip():
        return run

    try:
        run.phase = RunPhase.SCRIPT_PENDING
        emit({"type": "status", "message": "Writing the script..."})
        print(">> Writing the script...")
        run.script = generate_script(g, story.strip(), log)
        total = len(run.script.panels)
        print(f"   Panels: {total}")
        emit({"type": "script",
              "characterDescription": run.script.characterDescription,
              "panels": [p.text for p in run.script.panels]})

        run.phase = RunPhase.RENDERING
        chat = g.start_image_chat()
        for i in range(total):
            run.panel_index = i
            message = f"Generating panel {i + 1} of {total}..."
            emit({"type": "status", "message": message})
            print(f">> {message}")
            slide = render_panel(g, chat, run.script, i, log)
            run.slides.append(slide)
            emit(slide.to_event(i))
        run.phase = RunPhase.DONE
    except ComicError as e:
        print(f"[ERROR] {e.user_message()}")
        run.phase = RunPhase.FAILED
        run.error = e
        emit({"type": "error", "message": e.user_message()})
    finally:
        log.flush()

    emit({"type": "status", "message": ""})
    return run


def save_run(run: GenerationRun, out_dir: Path) -> Path:
    """Write panel PNGs and a manifest for a finished run."""
    ensure_dir(out_dir)
    files = []
    for i, slide in enumerate(run.slides, start=1):
        name = f"panel-{i:02d}.png"
        (out_dir / name).write_bytes(slide.image)
        files.append(name)
    manifest = {
        "story": run.story,
        "phase": run.phase.value,
        "characterDescription": run.script.characterDescription if run.script else None,
        "panels": [p.text for p in run.script.panels] if run.script else [],
        "slides": [{"file": f, "text": s.text} for f, s in zip(files, run.slides)],
        "error": run.error.user_message() if run.error else None,
    }
    mp = out_dir / "manifest.json"
    mp.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return mp


DEMO_STORY = """\
A young woman with a red scarf wakes before dawn in her tiny apartment.
She rides an old bicycle through empty streets to the harbour.
At the end of the pier she opens a tin box left by her grandfather.
Inside is a faded map, and she smiles as the sun comes up.
"""


# ------------------ CLI -------------------------
if __name__ == "__main__":
    if len(sys.argv) > 1 and Path(sys.argv[1]).exists():
        story_text = Path(sys.argv[1]).read_text(encoding="utf-8")
        slug = slugify(Path(sys.argv[1]).stem)
    else:
        print("No input file given; using DEMO_STORY.")
        story_text = DEMO_STORY
        slug = "demo-story"

    run_id = "".join(random.choices(
        string.ascii_lowercase + string.digits, k=6))
    out_dir = Path("output") / f"{slug}-{run_id}"
    ensure_dir(out_dir)
    try:
        g = GAIC(API_KEY)
    except CredentialError as e:
        print(f"[ERROR] {e.user_message()}")
        sys.exit(1)
    result = run_generation(
        g, story_text, log=PromptLogger(out_dir / "prompts_used.txt"))
    save_run(result, out_dir)
    print(f">> {result.phase.value}. Output at: {out_dir}")
    sys.exit(0 if result.phase == RunPhase.DONE else 1)
