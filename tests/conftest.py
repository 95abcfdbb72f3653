from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from product_video import metrics
from product_video.pipeline.generation import PollResult
from product_video.pipeline.memory_store import MemoryJobStore
from product_video.pipeline.processor import JobProcessor

IMAGES = [
    "https://cdn.example.com/products/mug-front.jpg",
    "https://cdn.example.com/products/mug-side.jpg",
]


# ── Scripted generation client ───────────────────────────────────────────────

@dataclass
class FakeOperation:
    name: str
    seq: int = 0


PENDING = {"done": False}


def done(video_ref="gs://videos-bucket/videos/1700000000000/sample_0.mp4"):
    return {"done": True, "video_ref": video_ref}


def errored(message):
    return {"done": True, "error_message": message}


class FakeGenerationClient:
    """
    Plays back a script of poll answers. Each item is PENDING, done(...),
    errored(...) or an exception instance to raise. When the script runs out
    every further poll is PENDING.
    """

    def __init__(self, script=None, start_error=None, playback_error=None):
        self.script = list(script or [])
        self.start_error = start_error
        self.playback_error = playback_error
        self.started = []
        self.polled = []

    def start(self, prompt, reference_images, duration_seconds, aspect_ratio):
        if self.start_error is not None:
            raise self.start_error
        self.started.append({
            "prompt": prompt,
            "reference_images": reference_images,
            "duration_seconds": duration_seconds,
            "aspect_ratio": aspect_ratio,
        })
        return FakeOperation(name="operations/op-1")

    def poll(self, handle):
        self.polled.append(handle)
        step = self.script.pop(0) if self.script else PENDING
        if isinstance(step, Exception):
            raise step
        return PollResult(handle=FakeOperation(handle.name, handle.seq + 1), **step)

    def resolve_playback_url(self, video_ref):
        if self.playback_error is not None:
            raise self.playback_error
        return "https://signed.example.com/" + video_ref[len("gs://"):]

    def handle_token(self, handle):
        return f"{handle.name}#{handle.seq}"

    def restore_handle(self, token):
        name, seq = token.rsplit("#", 1)
        return FakeOperation(name, int(seq))


# ── Events / time ────────────────────────────────────────────────────────────

class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event, **fields):
        self.events.append((event, fields))

    def of(self, name):
        return [fields for event, fields in self.events if event == name]


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class RecordingDispatcher:
    def __init__(self):
        self.enqueued = []

    def enqueue(self, job_id, account_id, image_refs, template_id):
        self.enqueued.append({
            "job_id": job_id,
            "account_id": account_id,
            "image_refs": list(image_refs),
            "template_id": template_id,
        })


class BrokenDispatcher:
    def enqueue(self, job_id, account_id, image_refs, template_id):
        raise ConnectionError("redis down")


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryJobStore(clock=clock)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_processor(store, sink, clock):
    """Build a JobProcessor around a FakeGenerationClient; sleeps are recorded, not slept."""

    def _make(client, **kwargs):
        sleeps = []
        processor = JobProcessor(
            store,
            client,
            events=sink,
            sleep=sleeps.append,
            clock=clock,
            **kwargs,
        )
        processor.sleeps = sleeps
        return processor

    return _make


@pytest.fixture
def queued_job(store):
    store.get_or_create_account("shop-1")
    return store.create_job("shop-1", "gid://shopify/Product/1", IMAGES, "zoom-pan")
