"""Per-session request orchestration for the studio UI.

A `StudioSession` tracks one request slot per mode. Starting a request gives
the slot a fresh `CancellationSource`; a finishing call only touches the slot
when that source is still the one the slot tracks, so a late answer from a
stopped or superseded request can never overwrite newer state.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from image_studio.cancellation import CancellationSource
from image_studio.client import StudioClient
from image_studio.errors import RequestCancelledError, ValidationError, exception_to_message
from image_studio.images import MAX_SOURCE_IMAGES, AspectRatio, SourceImage, SourceImageSet

logger = logging.getLogger(__name__)

DEFAULT_GENERATE_PROMPT = "A beautiful and vibrant landscape painting, digital art."
DEFAULT_EDIT_PROMPT = "Improve the quality and lighting of the image."
CANCELLED_MESSAGE = "Request cancelled."
NO_IMAGES_MESSAGE = "Please upload at least one image to edit."


class Mode(str, Enum):
    GENERATE = "generate"
    EDIT = "edit"


def effective_prompt(prompt: str | None, mode: Mode) -> str:
    text = (prompt or "").strip()
    if text:
        return text
    return DEFAULT_GENERATE_PROMPT if mode is Mode.GENERATE else DEFAULT_EDIT_PROMPT


@dataclass
class RequestState:
    is_loading: bool = False
    error: str | None = None
    status_text: str = ""
    result: Any = None
    active: CancellationSource | None = None

    def begin(self) -> CancellationSource:
        source = CancellationSource()
        self.active = source
        self.is_loading = True
        self.error = None
        self.status_text = ""
        self.result = None
        return source

    def owns(self, source: CancellationSource) -> bool:
        return self.active is source

    def finish(self, source: CancellationSource) -> None:
        if self.owns(source):
            self.is_loading = False
            self.active = None


class StudioSession:
    def __init__(self, client: StudioClient, max_images: int = MAX_SOURCE_IMAGES) -> None:
        self.client = client
        self.images = SourceImageSet(limit=max_images)
        self.slots = {Mode.GENERATE: RequestState(), Mode.EDIT: RequestState()}

    @property
    def generate(self) -> RequestState:
        return self.slots[Mode.GENERATE]

    @property
    def edit(self) -> RequestState:
        return self.slots[Mode.EDIT]

    async def start_generate(self, prompt: str | None) -> None:
        text = effective_prompt(prompt, Mode.GENERATE)
        await self._run(Mode.GENERATE, lambda token: self.client.generate(text, token=token))

    async def start_edit(
        self,
        prompt: str | None,
        images: list[SourceImage] | None = None,
        aspect_ratio: AspectRatio | None = None,
    ) -> None:
        attached = list(self.images.images if images is None else images)
        if not attached:
            self.edit.error = NO_IMAGES_MESSAGE
            return
        text = effective_prompt(prompt, Mode.EDIT)
        await self._run(Mode.EDIT, lambda token: self.client.edit(text, attached, aspect_ratio, token=token))

    async def _run(self, mode: Mode, call) -> None:
        slot = self.slots[mode]
        source = slot.begin()
        try:
            result = await call(source.token)
        except RequestCancelledError:
            logger.debug("%s request cancelled", mode.value)
        except Exception as exc:
            if slot.owns(source):
                slot.error = exception_to_message(exc)
            else:
                logger.debug("Ignoring failure of superseded %s request: %s", mode.value, exc)
        else:
            if slot.owns(source):
                slot.result = result
            else:
                logger.debug("Ignoring late result of superseded %s request", mode.value)
        finally:
            slot.finish(source)

    def stop(self, mode: Mode) -> None:
        slot = self.slots[mode]
        if slot.active is None:
            return
        slot.active.cancel()
        slot.is_loading = False
        slot.status_text = CANCELLED_MESSAGE
        slot.active = None

    async def upload(self, paths: list[str | Path]) -> None:
        try:
            added = await self.images.add_files(paths)
        except ValidationError as exc:
            self.edit.error = str(exc)
            return
        if added:
            self.edit.error = None
            self.edit.result = None

    def remove_image(self, index: int) -> None:
        self.images.remove(index)

    def clear_images(self) -> None:
        self.images.clear()
