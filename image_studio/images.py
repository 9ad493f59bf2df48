import asyncio
import base64
import binascii
import io
import mimetypes
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from PIL import Image

from image_studio.errors import ValidationError

MAX_SOURCE_IMAGES = 8

INVALID_IMAGE_MESSAGE = "Please upload valid image files (PNG, JPG, etc.)."
READ_FAILED_MESSAGE = "Failed to read an image file."


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"

    @property
    def label(self) -> str:
        return self.name.lower()


def to_data_url(image_b64: str, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{image_b64}"


def split_data_url(data_url: str) -> tuple[str, str]:
    """Return `(mime_type, base64_data)` for a `data:<mime>;base64,<data>` string."""
    header, sep, payload = data_url.partition(",")
    if not sep or not header.startswith("data:") or not header.endswith(";base64"):
        raise ValueError("Not a base64 data URL")
    return header[len("data:"):-len(";base64")], payload


def decode_data_url(data_url: str) -> tuple[str, bytes]:
    mime_type, payload = split_data_url(data_url)
    try:
        return mime_type, base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise ValueError("Data URL payload is not valid base64") from exc


def data_url_to_image(data_url: str) -> Image.Image:
    _, raw = decode_data_url(data_url)
    image = Image.open(io.BytesIO(raw))
    image.load()
    return image


def save_png(data_url: str, directory: Path, prefix: str) -> Path:
    """Convert any encoded image to PNG on disk, named `<prefix>-<millis>.png`."""
    image = data_url_to_image(data_url)
    if image.mode not in ("RGB", "RGBA", "L", "LA"):
        image = image.convert("RGBA")
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{prefix}-{int(time.time() * 1000)}.png"
    image.save(path, format="PNG")
    return path


@dataclass(frozen=True)
class SourceImage:
    filename: str
    data_url: str
    mime_type: str

    @property
    def base64_data(self) -> str:
        return split_data_url(self.data_url)[1]

    def to_payload(self) -> dict[str, str]:
        return {"base64Data": self.base64_data, "mimeType": self.mime_type}


def guess_image_type(path: Path) -> str | None:
    mime_type, _ = mimetypes.guess_type(path.name)
    if mime_type and mime_type.startswith("image/"):
        return mime_type
    return None


async def read_source_image(path: Path) -> SourceImage:
    mime_type = guess_image_type(path)
    if mime_type is None:
        raise ValidationError(INVALID_IMAGE_MESSAGE)
    try:
        content = await asyncio.to_thread(path.read_bytes)
    except OSError as exc:
        raise ValidationError(READ_FAILED_MESSAGE) from exc
    encoded = base64.b64encode(content).decode("utf-8")
    return SourceImage(filename=path.name, data_url=to_data_url(encoded, mime_type), mime_type=mime_type)


class SourceImageSet:
    """Images attached to the edit form, capped at `limit` entries.

    Uploads are all-or-nothing: every file of a batch is read before the set
    changes, and a batch that would overflow the cap or contains a non-image
    file is rejected without touching the existing images.
    """

    def __init__(self, limit: int = MAX_SOURCE_IMAGES) -> None:
        self.limit = limit
        self._images: list[SourceImage] = []

    def __len__(self) -> int:
        return len(self._images)

    def __iter__(self):
        return iter(self._images)

    @property
    def images(self) -> tuple[SourceImage, ...]:
        return tuple(self._images)

    async def add_files(self, paths: list[str | Path]) -> list[SourceImage]:
        if not paths:
            return []
        if len(self._images) + len(paths) > self.limit:
            raise ValidationError(f"You can upload a maximum of {self.limit} images.")

        files = [Path(p) for p in paths]
        if any(guess_image_type(f) is None for f in files):
            raise ValidationError(INVALID_IMAGE_MESSAGE)

        batch = await asyncio.gather(*(read_source_image(f) for f in files))
        # Re-check: another batch may have landed while this one was reading.
        if len(self._images) + len(batch) > self.limit:
            raise ValidationError(f"You can upload a maximum of {self.limit} images.")
        self._images.extend(batch)
        return list(batch)

    def remove(self, index: int) -> None:
        if not 0 <= index < len(self._images):
            raise IndexError(f"No source image at index {index}")
        del self._images[index]

    def clear(self) -> None:
        self._images.clear()

    def payloads(self) -> list[dict[str, str]]:
        return [image.to_payload() for image in self._images]
