import asyncio
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from comfyexec.comfyui.client import ComfyUIClient
from comfyexec.config import ComfyUISettings
from comfyexec.utils.logger_config import disable_logging

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 32

disable_logging()


class FakeTime:
    """A fake clock. Sleeping advances the clock immediately and records the requested delay."""
    def __init__(self, start: float = 0.0):
        self.current = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.current

    def advance(self, seconds: float):
        self.current += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.current += seconds
        # Let other tasks run, as a real sleep would
        await asyncio.sleep(0)


class FakeComfyUI:
    """
    In-process stand-in for the ComfyUI HTTP API.
    """
    def __init__(self):
        self.base_url = ""
        self.prompt_id = "prompt-1"

        self.prompts: list[dict[str, Any]] = []
        self.prompt_calls = 0
        self.prompt_failures = 0
        self.prompt_status = 500

        self.history_calls = 0
        self.history_failures = 0
        # History call number on which the prompt is reported finished. None: never.
        self.complete_after: Optional[int] = 1
        self.status: dict[str, Any] = {"status_str": "success", "completed": True, "messages": []}
        self.outputs: dict[str, Any] = {
            "9": {"images": [{"filename": "ComfyUI_00001_.png", "subfolder": "", "type": "output"}]},
        }
        self.on_history: Optional[Callable[["FakeComfyUI"], None]] = None
        # When set, history requests block until the event is set
        self.history_gate: Optional[asyncio.Event] = None

        self.uploads: list[dict[str, Any]] = []
        self.upload_status = 200
        self.view_calls: list[str] = []
        self.files: dict[str, bytes] = {
            "ComfyUI_00001_.png": PNG_BYTES,
            "ComfyUI_00002_.png": PNG_BYTES + b"2",
            "clip_00001.mp4": MP4_BYTES,
        }
        self.interrupts = 0

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/prompt", self.handle_prompt)
        app.router.add_get("/history/{prompt_id}", self.handle_history)
        app.router.add_get("/history", self.handle_history_list)
        app.router.add_post("/upload/image", self.handle_upload)
        app.router.add_get("/view", self.handle_view)
        app.router.add_get("/system_stats", self.handle_system_stats)
        app.router.add_post("/interrupt", self.handle_interrupt)
        return app

    async def handle_prompt(self, request: web.Request) -> web.Response:
        self.prompt_calls += 1
        self.prompts.append(await request.json())
        if self.prompt_failures > 0:
            self.prompt_failures -= 1
            return web.json_response({"error": {"message": "Server busy"}}, status=self.prompt_status)
        return web.json_response({"prompt_id": self.prompt_id, "number": 1, "node_errors": {}})

    async def handle_history(self, request: web.Request) -> web.Response:
        self.history_calls += 1
        if self.on_history:
            self.on_history(self)
        if self.history_gate is not None:
            await self.history_gate.wait()
        if self.history_failures > 0:
            self.history_failures -= 1
            return web.Response(status=503, text="unavailable")

        prompt_id = request.match_info["prompt_id"]
        if self.complete_after is None or self.history_calls < self.complete_after:
            return web.json_response({})
        return web.json_response({prompt_id: {"prompt": [], "outputs": self.outputs, "status": self.status}})

    async def handle_history_list(self, request: web.Request) -> web.Response:
        return web.json_response({self.prompt_id: {"outputs": {}, "status": self.status},
                                  "max_items": request.query.get("max_items")})

    async def handle_upload(self, request: web.Request) -> web.Response:
        form = await request.post()
        image = form["image"]
        self.uploads.append({"filename": image.filename, "data": image.file.read(),
                             "overwrite": form.get("overwrite")})
        if self.upload_status != 200:
            return web.Response(status=self.upload_status, text="upload failed")
        return web.json_response({"name": image.filename, "subfolder": "", "type": "input"})

    async def handle_view(self, request: web.Request) -> web.Response:
        filename = request.query.get("filename", "")
        self.view_calls.append(filename)
        if filename not in self.files:
            return web.Response(status=404, text="not found")
        return web.Response(body=self.files[filename])

    async def handle_system_stats(self, request: web.Request) -> web.Response:
        return web.json_response({"system": {"os": "posix", "comfyui_version": "0.3.0"}, "devices": []})

    async def handle_interrupt(self, request: web.Request) -> web.Response:
        self.interrupts += 1
        return web.Response(status=200)


class FakeImageHost:
    """
    An external web server serving images, with a few misbehaving routes.
    """
    def __init__(self):
        self.base_url = ""
        self.requests: list[dict[str, str]] = []

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/images/cat.png", self.handle_image)
        app.router.add_get("/images/photo", self.handle_image)
        app.router.add_get("/blocked.png", self.handle_blocked)
        app.router.add_get("/empty.png", self.handle_empty)
        return app

    async def handle_image(self, request: web.Request) -> web.Response:
        self.requests.append(dict(request.headers))
        return web.Response(body=PNG_BYTES, content_type="image/png")

    async def handle_blocked(self, request: web.Request) -> web.Response:
        self.requests.append(dict(request.headers))
        return web.Response(status=403, text="Forbidden")

    async def handle_empty(self, request: web.Request) -> web.Response:
        self.requests.append(dict(request.headers))
        return web.Response(body=b"", content_type="image/png")


@pytest.fixture
def fake_time():
    return FakeTime(start=1000.0)


@pytest_asyncio.fixture
async def comfy():
    fake = FakeComfyUI()
    server = test_utils.TestServer(fake.make_app())
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    if fake.history_gate is not None:
        fake.history_gate.set()
    await server.close()


@pytest_asyncio.fixture
async def image_host():
    fake = FakeImageHost()
    server = test_utils.TestServer(fake.make_app())
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
def make_settings():
    def _make(base_url: str = "http://127.0.0.1:8188", **overrides) -> ComfyUISettings:
        values = dict(base_url=base_url, request_timeout_s=5, max_retries=2, retry_delay_s=0.5, max_backoff_s=30,
                      poll_interval_s=1.0, max_wait_s=60, max_file_size_mb=1)
        values.update(overrides)
        return ComfyUISettings(**values)
    return _make


@pytest_asyncio.fixture
async def client(comfy, fake_time, make_settings):
    comfy_client = ComfyUIClient(settings=make_settings(comfy.base_url), time_function=fake_time.time,
                                 sleep_function=fake_time.sleep)
    yield comfy_client
    await comfy_client.destroy()
