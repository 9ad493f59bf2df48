"""
Shared pytest fixtures for the studio tests
"""
import base64
import io
import json

import httpx
import pytest
from PIL import Image

from image_studio.config import Settings

API_KEY = "test-key-5f1c9a"


def png_base64(color=(200, 30, 30)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 3), color).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def png_data_url(color=(200, 30, 30)) -> str:
    return f"data:image/png;base64,{png_base64(color)}"


class FakeUpstream:
    """httpx handler that replays queued responses and records requests."""

    def __init__(self):
        self.requests = []
        self._responses = []

    def queue(self, status_code=200, payload=None, exc=None):
        self._responses.append((status_code, payload, exc))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, payload, exc = self._responses.pop(0)
        if exc is not None:
            raise exc
        if isinstance(payload, (dict, list)):
            return httpx.Response(status_code, json=payload)
        return httpx.Response(status_code, text=payload or "")

    def last_json(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture
def settings():
    """Settings with a direct credential and a fake model API root"""
    return Settings(
        gemini_api_key=API_KEY,
        gemini_base_url="https://models.test/v1beta",
    )


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def sample_png():
    return png_base64()
