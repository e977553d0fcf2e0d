import asyncio

import pytest

from adworker.config import Settings
from adworker.pipeline.animate import Animator
from adworker.pipeline.errors import ProviderError
from adworker.pipeline.models import JobContext, SettingsPatch
from adworker.pipeline.orchestrator import (
    AnimationStage,
    BackgroundStage,
    VideoGenerationService,
)
from adworker.pipeline.polling import PollResult
from adworker.pipeline.project_service import InMemoryProjectStore, ProjectService
from adworker.pipeline.render import VideoCompositor
from adworker.pipeline.scene_gen import SceneGenerator
from adworker.pipeline.storage import MemoryStorage
from adworker.pipeline.tts import MusicLibrary, SpeechSynthesizer
from adworker.pipeline.upscale import Upscaler

PRODUCT_IMAGE = "https://cdn.example.com/products/mug.png"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        supabase_url="mock",
        s3_access_key="mock",
        photoroom_api_key="mock",
        stability_ai_api_key="mock",
        yandex_api_key="mock",
        piapi_api_key="mock",
        render_mode="mock",
        video_poll_delay_ms=0,
        video_max_poll_attempts=3,
        render_output_dir=str(tmp_path / "renders"),
    )


@pytest.fixture
def projects():
    return ProjectService(InMemoryProjectStore())


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def ctx():
    return JobContext(job_id="job-1", attempt=1, max_attempts=3)


async def make_project(projects, **settings):
    values = {"product_name": "Ceramic Mug", "usps": ["Dishwasher safe", "Keeps heat"]}
    values.update(settings)
    if "main_image" not in settings:
        values["main_image"] = PRODUCT_IMAGE
    return await projects.create_project("user-1", "Mug ad", SettingsPatch(**values))


# ── Adapter doubles ──────────────────────────────────────────────────────────

class FailingUpscaler:
    provider = "stability"
    enabled = True

    def __init__(self):
        self.calls = 0

    async def upscale(self, image_bytes):
        self.calls += 1
        raise ProviderError("Stability AI error (500): boom", self.provider)


class FailingSynthesizer:
    provider = "yandex-cloud"

    async def synthesize(self, text, voice=None):
        raise ProviderError("TTS HTTP 500", self.provider)


class FailingSceneGenerator:
    provider = "photoroom"

    def __init__(self):
        self.calls = 0

    async def generate(self, source_url, prompt, width, height):
        self.calls += 1
        raise ProviderError("Photoroom API error (503): unavailable", self.provider)


class ScriptedAnimator:
    """Returns the given poll results in order, then keeps returning the last one."""
    provider = "kling"

    def __init__(self, results, submit_error=None):
        self.results = list(results)
        self.submit_error = submit_error
        self.checks = 0

    async def submit(self, image_url, prompt):
        if self.submit_error:
            raise self.submit_error
        return "task-123"

    async def check(self, task_id):
        self.checks += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]

    async def download(self, video_url):
        return b"\x00\x00\x00\x18ftypmp42fragment"


class RecordingCompositor:
    """Writes a small file like the mock renderer and remembers its input."""

    def __init__(self, output_dir):
        self.output_dir = output_dir
        self.inputs = []
        self.outputs = []

    async def render(self, data):
        self.inputs.append(data)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"video-{len(self.outputs)}.mp4"
        path.write_bytes(b"rendered")
        self.outputs.append(path)
        return path


class FlakyCompositor(RecordingCompositor):
    """Fails the first `failures` renders with a retryable error."""

    def __init__(self, output_dir, failures=1):
        super().__init__(output_dir)
        self.failures = failures

    async def render(self, data):
        if self.failures:
            self.failures -= 1
            self.inputs.append(data)
            raise ProviderError("Render failed: ffmpeg exited with status 1", "moviepy")
        return await super().render(data)


class BrokenStorage(MemoryStorage):
    """Fails uploads into one folder."""

    def __init__(self, folder):
        super().__init__()
        self.folder = folder

    async def upload(self, data, mime_type, folder="uploads"):
        if folder == self.folder:
            raise ProviderError(f"Storage upload failed: {folder}", "s3")
        return await super().upload(data, mime_type, folder)


@pytest.fixture
def build_background(projects, storage, settings):
    def build(**overrides):
        return BackgroundStage(
            projects,
            overrides.get("storage", storage),
            scene_generator=overrides.get("scene_generator", SceneGenerator(settings)),
            upscaler=overrides.get("upscaler", Upscaler(settings)),
            synthesizer=overrides.get("synthesizer", SpeechSynthesizer(settings)),
            settings=settings,
        )
    return build


@pytest.fixture
def build_animation(projects, storage, settings):
    def build(**overrides):
        return AnimationStage(
            projects,
            overrides.get("storage", storage),
            animator=overrides.get("animator", Animator(settings)),
            compositor=overrides.get("compositor", VideoCompositor(settings)),
            music=MusicLibrary(settings),
            settings=settings,
        )
    return build


@pytest.fixture
def service(build_background, build_animation):
    return VideoGenerationService(build_background(), build_animation())


def completed(url="https://cdn.kling.ai/out.mp4"):
    return PollResult.completed(url)


# ── Async Redis double ───────────────────────────────────────────────────────

class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return record

    async def execute(self):
        return [await getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.calls]


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the job queue (decode_responses=True)."""

    def __init__(self):
        self.hashes = {}
        self.lists = {}
        self.zsets = {}
        self.expiry = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def hset(self, key, field=None, value=None, mapping=None):
        h = self.hashes.setdefault(key, {})
        if mapping:
            h.update({k: str(v) for k, v in mapping.items()})
        if field is not None:
            h[field] = str(value)
        return 1

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hincrby(self, key, field, amount=1):
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    async def expire(self, key, seconds):
        self.expiry[key] = seconds
        return True

    async def exists(self, key):
        return int(key in self.hashes)

    async def lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def lrange(self, key, start, end):
        lst = self.lists.get(key, [])
        return list(lst[start:] if end == -1 else lst[start:end + 1])

    async def lrem(self, key, count, value):
        lst = self.lists.get(key, [])
        if value in lst:
            lst.remove(value)
            return 1
        return 0

    async def blmove(self, first_list, second_list, timeout, src="LEFT", dest="RIGHT"):
        source = self.lists.get(first_list, [])
        if not source:
            # Stand in for the blocking wait without stalling the event loop
            await asyncio.sleep(0.01 if timeout else 0)
            return None
        item = source.pop() if src == "RIGHT" else source.pop(0)
        target = self.lists.setdefault(second_list, [])
        if dest == "LEFT":
            target.insert(0, item)
        else:
            target.append(item)
        return item

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrangebyscore(self, key, low, high):
        items = self.zsets.get(key, {})
        return [m for m, s in sorted(items.items(), key=lambda kv: kv[1]) if low <= s <= high]

    async def zrem(self, key, member):
        return int(self.zsets.get(key, {}).pop(member, None) is not None)

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()
