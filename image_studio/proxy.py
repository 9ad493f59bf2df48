import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import HTTPException

from image_studio.config import Settings
from image_studio.errors import ModelServiceError
from image_studio.images import AspectRatio, to_data_url

logger = logging.getLogger(__name__)

DEFAULT_GENERATED_MIME = "image/jpeg"
UNEXPECTED_ERROR_MESSAGE = "An unexpected internal error occurred."
UNREACHABLE_MESSAGE = "Could not reach the image service."


def aspect_ratio_instruction(ratio: AspectRatio | None) -> str:
    if ratio is None or ratio is AspectRatio.SQUARE:
        return ""
    return f" Output the image with a {ratio.value} aspect ratio ({ratio.label})."


@dataclass
class ProxyResponse:
    status_code: int
    content: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def _redact(message: str, secret: str) -> str:
    if secret and secret in message:
        return message.replace(secret, "[redacted]")
    return message


def _provider_error(provider_name: str, response: httpx.Response) -> ModelServiceError:
    try:
        payload = response.json()
    except ValueError:
        return ModelServiceError(f"{provider_name} returned an unexpected error ({response.status_code}).")

    error_obj = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error_obj, dict):
        message = error_obj.get("message", "") or ""
        if "safety" in message.lower() or "blocked" in message.lower():
            return ModelServiceError(
                f"{provider_name}: Your prompt was blocked by the safety filter. Try rephrasing your description."
            )
        if message:
            return ModelServiceError(f"{provider_name}: {message}")

    return ModelServiceError(f"{provider_name} error ({response.status_code}). Please try again.")


class GeminiImageService:
    """Calls the Generative Language REST API with the server-held key."""

    def __init__(self, settings: Settings, api_key: str, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.gemini_base_url.rstrip("/") + "/",
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            timeout=settings.upstream_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(path, json=payload)
        if response.status_code >= 400:
            raise _provider_error("Google", response)
        try:
            body = response.json()
        except ValueError:
            raise ModelServiceError("Invalid response from API.")
        if not isinstance(body, dict):
            raise ModelServiceError("Invalid response from API.")
        return body

    async def generate_image(self, prompt: str) -> str:
        body = await self._post(
            f"models/{self.settings.generate_model}:predict",
            {
                "instances": [{"prompt": prompt}],
                "parameters": {"sampleCount": 1, "outputMimeType": DEFAULT_GENERATED_MIME},
            },
        )
        predictions = body.get("predictions") or []
        first = predictions[0] if predictions else {}
        image_b64 = first.get("bytesBase64Encoded") if isinstance(first, dict) else None
        if not image_b64:
            raise ModelServiceError("Image generation failed or returned no data.")
        return to_data_url(image_b64, first.get("mimeType") or DEFAULT_GENERATED_MIME)

    async def edit_image(
        self,
        prompt: str,
        images: list[dict[str, str]],
        aspect_ratio: AspectRatio | None = None,
    ) -> tuple[str, str | None]:
        parts: list[dict[str, Any]] = [{"text": prompt + aspect_ratio_instruction(aspect_ratio)}]
        for image in images:
            parts.append({"inlineData": {"mimeType": image["mimeType"], "data": image["base64Data"]}})

        body = await self._post(
            f"models/{self.settings.edit_model}:generateContent",
            {
                "contents": [{"role": "user", "parts": parts}],
                "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
            },
        )

        candidates = body.get("candidates") or []
        candidate_parts = (((candidates[0] if candidates else {}).get("content") or {}).get("parts")) or []
        image_url: str | None = None
        texts: list[str] = []
        for part in candidate_parts:
            inline_data = part.get("inlineData") or part.get("inline_data")
            if inline_data and inline_data.get("data"):
                if image_url is None:
                    mime = inline_data.get("mimeType") or inline_data.get("mime_type") or "image/png"
                    image_url = to_data_url(inline_data["data"], mime)
            elif part.get("text"):
                texts.append(part["text"])

        if image_url is None:
            block_reason = (body.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                logger.info("Edit request blocked by the model: %s", block_reason)
            raise ModelServiceError("The model did not return an image.")
        return image_url, "\n".join(texts) if texts else None


def _required_text(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _parse_images(raw: Any) -> list[dict[str, str]]:
    if not isinstance(raw, list) or not raw:
        raise HTTPException(status_code=400, detail="Prompt and images are required")
    images = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise HTTPException(status_code=400, detail="Each image requires base64Data and mimeType")
        data, mime = entry.get("base64Data"), entry.get("mimeType")
        if not (isinstance(data, str) and data and isinstance(mime, str) and mime):
            raise HTTPException(status_code=400, detail="Each image requires base64Data and mimeType")
        images.append({"base64Data": data, "mimeType": mime})
    return images


def _parse_aspect_ratio(raw: Any) -> AspectRatio | None:
    if raw is None:
        return None
    try:
        return AspectRatio(raw)
    except ValueError:
        allowed = ", ".join(r.value for r in AspectRatio)
        raise HTTPException(status_code=400, detail=f"Unsupported aspect ratio '{raw}'. Use one of {allowed}.")


class ProxyHandler:
    """Validates proxy requests and dispatches them to the model service.

    Holds the only reference to the credential. Every response body is a
    plain `{"error": ...}` or success dict, and every message that leaves the
    handler has the credential scrubbed out of it.
    """

    def __init__(self, service: GeminiImageService, api_key: str):
        self.service = service
        self._api_key = api_key

    async def handle(self, method: str, body: Any) -> ProxyResponse:
        try:
            if method.upper() != "POST":
                raise HTTPException(
                    status_code=405,
                    detail=f"Method {method.upper()} not allowed",
                    headers={"Allow": "POST"},
                )
            return ProxyResponse(200, await self._dispatch(body))
        except HTTPException as exc:
            return ProxyResponse(exc.status_code, {"error": exc.detail}, dict(exc.headers or {}))
        except ModelServiceError as exc:
            message = _redact(str(exc), self._api_key)
            logger.error("Model service error: %s", message)
            return ProxyResponse(500, {"error": message})
        except httpx.HTTPError as exc:
            logger.error("Upstream transport failure: %s", type(exc).__name__)
            return ProxyResponse(500, {"error": UNREACHABLE_MESSAGE})
        except Exception:
            logger.exception("Unhandled error in proxy handler")
            return ProxyResponse(500, {"error": UNEXPECTED_ERROR_MESSAGE})

    async def _dispatch(self, body: Any) -> dict[str, Any]:
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")

        action = body.get("action")
        if action == "generate":
            prompt = _required_text(body, "prompt")
            if prompt is None:
                raise HTTPException(status_code=400, detail="Prompt is required")
            logger.info("Generating image (prompt length %d)", len(prompt))
            return {"imageUrl": await self.service.generate_image(prompt)}

        if action == "edit":
            prompt = _required_text(body, "prompt")
            if prompt is None:
                raise HTTPException(status_code=400, detail="Prompt and images are required")
            images = _parse_images(body.get("images"))
            aspect_ratio = _parse_aspect_ratio(body.get("aspectRatio"))
            logger.info("Editing %d image(s), aspect ratio %s", len(images), aspect_ratio.value if aspect_ratio else "default")
            image_url, text = await self.service.edit_image(prompt, images, aspect_ratio)
            return {"imageUrl": image_url, "text": text}

        raise HTTPException(status_code=400, detail="Invalid action")
