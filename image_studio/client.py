"""HTTP client for the `/api/gemini` proxy endpoint.

Each call is a single POST. Error responses are turned into
`RequestFailedError` carrying the proxy's `error` message when there is one.
Calls accept an optional `CancellationToken`; when it fires before the
response arrives the in-flight request is aborted and `RequestCancelledError`
is raised instead.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from image_studio.cancellation import CancellationToken
from image_studio.errors import RequestCancelledError, RequestFailedError
from image_studio.images import AspectRatio, SourceImage

logger = logging.getLogger(__name__)

API_ENDPOINT = "/api/gemini"


@dataclass(frozen=True)
class EditResult:
    image_url: str
    text: str | None = None


def _error_message(response: httpx.Response) -> str:
    message = f"Request failed with status {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        return message
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return message


class StudioClient:
    def __init__(
        self,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(API_ENDPOINT, json=payload)
        except httpx.HTTPError as exc:
            raise RequestFailedError(f"Could not reach the studio backend: {type(exc).__name__}") from exc

        if response.status_code >= 400:
            raise RequestFailedError(_error_message(response), response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise RequestFailedError("Backend API returned an invalid response.", response.status_code) from exc
        if not isinstance(data, dict):
            raise RequestFailedError("Backend API returned an invalid response.", response.status_code)
        return data

    async def _post(self, payload: dict[str, Any], token: CancellationToken | None) -> dict[str, Any]:
        if token is None:
            return await self._send(payload)
        if token.cancelled:
            raise RequestCancelledError("Request cancelled.")

        request = asyncio.ensure_future(self._send(payload))
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            request.cancel()
            raise
        finally:
            waiter.cancel()

        if not request.done():
            request.cancel()
            await asyncio.gather(request, return_exceptions=True)
            raise RequestCancelledError("Request cancelled.")
        return request.result()

    async def generate(self, prompt: str, token: CancellationToken | None = None) -> str:
        data = await self._post({"action": "generate", "prompt": prompt}, token)
        if not data.get("imageUrl"):
            raise RequestFailedError("Backend API did not return an image URL.")
        return data["imageUrl"]

    async def edit(
        self,
        prompt: str,
        images: list[SourceImage],
        aspect_ratio: AspectRatio | None = None,
        token: CancellationToken | None = None,
    ) -> EditResult:
        payload: dict[str, Any] = {
            "action": "edit",
            "prompt": prompt,
            "images": [image.to_payload() for image in images],
        }
        if aspect_ratio is not None:
            payload["aspectRatio"] = AspectRatio(aspect_ratio).value

        data = await self._post(payload, token)
        if not data.get("imageUrl"):
            raise RequestFailedError("Backend API did not return an image.")
        return EditResult(image_url=data["imageUrl"], text=data.get("text"))
