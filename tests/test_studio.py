"""
Tests for the StudioSession request lifecycle: loading, stop, supersession
"""
import asyncio
import json

import httpx
import pytest

from image_studio.client import EditResult, StudioClient
from image_studio.errors import RequestFailedError
from image_studio.images import AspectRatio, SourceImage
from image_studio.studio import (
    CANCELLED_MESSAGE,
    DEFAULT_EDIT_PROMPT,
    DEFAULT_GENERATE_PROMPT,
    NO_IMAGES_MESSAGE,
    Mode,
    StudioSession,
)


class GatedClient:
    """Stands in for StudioClient; every call blocks until the test releases it.

    The gate ignores the cancellation token, which models a network call that
    keeps running after the UI has stopped caring about it.
    """

    def __init__(self):
        self.calls = []

    async def _call(self, kind, *args):
        future = asyncio.get_running_loop().create_future()
        self.calls.append((kind, args, future))
        return await future

    async def generate(self, prompt, token=None):
        return await self._call("generate", prompt)

    async def edit(self, prompt, images, aspect_ratio=None, token=None):
        return await self._call("edit", prompt, images, aspect_ratio)

    async def wait_for_calls(self, count):
        while len(self.calls) < count:
            await asyncio.sleep(0)


def proxy_session(handler) -> StudioSession:
    return StudioSession(StudioClient("http://studio.test", transport=httpx.MockTransport(handler)))


def source_image(name="a.png") -> SourceImage:
    return SourceImage(filename=name, data_url="data:image/png;base64,QUJD", mime_type="image/png")


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "   ", "\n\t", None])
async def test_blank_generate_prompt_uses_default(prompt):
    sent = []

    def handler(request):
        sent.append(json.loads(request.content)["prompt"])
        return httpx.Response(200, json={"imageUrl": "data:image/png;base64,AAAA"})

    await proxy_session(handler).start_generate(prompt)

    assert sent == [DEFAULT_GENERATE_PROMPT]


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "  "])
async def test_blank_edit_prompt_uses_default(prompt):
    sent = []

    def handler(request):
        sent.append(json.loads(request.content)["prompt"])
        return httpx.Response(200, json={"imageUrl": "data:image/png;base64,AAAA", "text": None})

    await proxy_session(handler).start_edit(prompt, [source_image()])

    assert sent == [DEFAULT_EDIT_PROMPT]


@pytest.mark.asyncio
async def test_generate_success_stores_exact_image_url():
    session = proxy_session(lambda request: httpx.Response(200, json={"imageUrl": "data:image/png;base64,AAAA"}))

    await session.start_generate("a red fox")

    assert session.generate.result == "data:image/png;base64,AAAA"
    assert session.generate.is_loading is False
    assert session.generate.error is None
    assert session.generate.active is None


@pytest.mark.asyncio
async def test_proxy_error_message_is_shown_verbatim():
    session = proxy_session(lambda request: httpx.Response(500, json={"error": "model declined"}))

    await session.start_generate("a red fox")

    assert session.generate.error == "model declined"
    assert session.generate.is_loading is False
    assert session.generate.result is None


@pytest.mark.asyncio
async def test_edit_caption_keeps_newlines():
    session = proxy_session(
        lambda request: httpx.Response(200, json={"imageUrl": "data:image/png;base64,OUT", "text": "note1\nnote2"})
    )

    await session.start_edit("make it night", [source_image()], AspectRatio.PORTRAIT)

    assert session.edit.result == EditResult(image_url="data:image/png;base64,OUT", text="note1\nnote2")
    assert session.edit.is_loading is False


@pytest.mark.asyncio
async def test_edit_without_images_never_calls_the_network():
    client = GatedClient()
    session = StudioSession(client)

    await session.start_edit("make it night")

    assert client.calls == []
    assert session.edit.error == NO_IMAGES_MESSAGE
    assert session.edit.is_loading is False


@pytest.mark.asyncio
async def test_edit_uses_session_images_by_default():
    client = GatedClient()
    session = StudioSession(client)
    session.images._images.extend([source_image("a.png"), source_image("b.png")])

    task = asyncio.ensure_future(session.start_edit("x", aspect_ratio=AspectRatio.SQUARE))
    await client.wait_for_calls(1)

    kind, (prompt, images, ratio), future = client.calls[0]
    assert [image.filename for image in images] == ["a.png", "b.png"]
    assert ratio is AspectRatio.SQUARE
    future.set_result(EditResult(image_url="data:image/png;base64,OUT"))
    await task


@pytest.mark.asyncio
async def test_start_sets_loading_and_clears_previous_state():
    client = GatedClient()
    session = StudioSession(client)
    session.generate.result = "data:image/png;base64,OLD"
    session.generate.error = "old error"

    task = asyncio.ensure_future(session.start_generate("x"))
    await client.wait_for_calls(1)

    assert session.generate.is_loading is True
    assert session.generate.result is None
    assert session.generate.error is None
    assert session.generate.active is not None

    client.calls[0][2].set_result("data:image/png;base64,NEW")
    await task
    assert session.generate.result == "data:image/png;base64,NEW"


@pytest.mark.asyncio
async def test_stop_clears_loading_before_the_call_resolves():
    started = asyncio.Event()

    async def handler(request):
        started.set()
        await asyncio.sleep(30)
        return httpx.Response(200, json={"imageUrl": "late"})

    session = proxy_session(handler)
    task = asyncio.ensure_future(session.start_generate("x"))
    await started.wait()

    session.stop(Mode.GENERATE)

    assert not task.done()
    assert session.generate.is_loading is False
    assert session.generate.status_text == CANCELLED_MESSAGE
    assert session.generate.active is None

    await asyncio.wait_for(task, timeout=5)
    assert session.generate.error is None
    assert session.generate.result is None
    assert session.generate.status_text == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_stop_signals_the_token():
    client = GatedClient()
    session = StudioSession(client)
    task = asyncio.ensure_future(session.start_generate("x"))
    await client.wait_for_calls(1)
    source = session.generate.active

    session.stop(Mode.GENERATE)

    assert source.cancelled
    client.calls[0][2].set_result("data:image/png;base64,LATE")
    await task
    assert session.generate.result is None


def test_stop_without_active_request_is_a_no_op():
    session = StudioSession(GatedClient())

    session.stop(Mode.EDIT)

    assert session.edit.status_text == ""
    assert session.edit.is_loading is False


@pytest.mark.asyncio
async def test_superseded_request_cannot_clear_new_loading_state():
    client = GatedClient()
    session = StudioSession(client)

    first = asyncio.ensure_future(session.start_generate("first"))
    await client.wait_for_calls(1)
    session.stop(Mode.GENERATE)
    second = asyncio.ensure_future(session.start_generate("second"))
    await client.wait_for_calls(2)

    client.calls[0][2].set_result("data:image/png;base64,FIRST")
    await first

    assert session.generate.is_loading is True
    assert session.generate.result is None
    assert session.generate.active is not None

    client.calls[1][2].set_result("data:image/png;base64,SECOND")
    await second

    assert session.generate.is_loading is False
    assert session.generate.result == "data:image/png;base64,SECOND"


@pytest.mark.asyncio
async def test_superseded_failure_is_not_reported():
    client = GatedClient()
    session = StudioSession(client)

    first = asyncio.ensure_future(session.start_generate("first"))
    await client.wait_for_calls(1)
    second = asyncio.ensure_future(session.start_generate("second"))
    await client.wait_for_calls(2)

    client.calls[0][2].set_exception(RequestFailedError("old failure", 500))
    await first

    assert session.generate.error is None
    assert session.generate.is_loading is True

    client.calls[1][2].set_result("data:image/png;base64,SECOND")
    await second
    assert session.generate.result == "data:image/png;base64,SECOND"


@pytest.mark.asyncio
async def test_slots_are_independent():
    client = GatedClient()
    session = StudioSession(client)

    generate = asyncio.ensure_future(session.start_generate("x"))
    edit = asyncio.ensure_future(session.start_edit("y", [source_image()]))
    await client.wait_for_calls(2)

    session.stop(Mode.EDIT)

    assert session.generate.is_loading is True
    assert session.edit.is_loading is False

    for _, _, future in client.calls:
        future.set_result(EditResult(image_url="data:image/png;base64,OUT"))
    await asyncio.gather(generate, edit)
    assert session.edit.result is None


@pytest.mark.asyncio
async def test_failure_keeps_loading_cleared_and_message():
    client = GatedClient()
    session = StudioSession(client)
    task = asyncio.ensure_future(session.start_edit("x", [source_image()]))
    await client.wait_for_calls(1)

    client.calls[0][2].set_exception(RuntimeError("socket closed"))
    await task

    assert session.edit.error == "socket closed"
    assert session.edit.is_loading is False
    assert session.edit.active is None
