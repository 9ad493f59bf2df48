import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from image_studio.client import StudioClient
from image_studio.config import Settings
from image_studio.proxy import GeminiImageService, ProxyHandler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
IN_PROCESS_BASE_URL = "http://image-studio"
# Every method reaches the handler so non-POST requests get its 405 body.
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


class ModelNames(BaseModel):
    generate: str
    edit: str


class HealthResponse(BaseModel):
    status: str
    models: ModelNames


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # httpx logs full request URLs at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def create_app(
    settings: Settings | None = None,
    model_transport: httpx.AsyncBaseTransport | None = None,
    mount_ui: bool = True,
) -> FastAPI:
    """Build the proxy application.

    Raises `ConfigurationError` when no credential can be resolved, so a
    misconfigured deployment fails at startup rather than on first request.
    """
    settings = settings or Settings()
    api_key = settings.resolve_api_key()
    service = GeminiImageService(settings, api_key, transport=model_transport)
    proxy = ProxyHandler(service, api_key)
    clients: list[StudioClient] = []

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info("Image studio ready (generate=%s, edit=%s)", settings.generate_model, settings.edit_model)
        yield
        for client in clients:
            await client.aclose()
        await service.aclose()

    app = FastAPI(title="Image Studio", lifespan=lifespan)
    app.state.settings = settings
    app.state.proxy = proxy

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.api_route("/api/gemini", methods=PROXY_METHODS)
    async def gemini_proxy(request: Request) -> JSONResponse:
        body: Any = None
        if request.method == "POST":
            try:
                body = await request.json()
            except ValueError:
                return JSONResponse({"error": "Request body must be valid JSON"}, status_code=400)
        result = await proxy.handle(request.method, body)
        return JSONResponse(result.content, status_code=result.status_code, headers=result.headers)

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            models=ModelNames(generate=settings.generate_model, edit=settings.edit_model),
        )

    if mount_ui:
        import gradio as gr

        from image_studio.ui import build_blocks

        if settings.proxy_url:
            client = StudioClient(settings.proxy_url)
        else:
            client = StudioClient(IN_PROCESS_BASE_URL, transport=httpx.ASGITransport(app=app))
        clients.append(client)
        app = gr.mount_gradio_app(app, build_blocks(client, settings), path="/")

    return app


def main() -> None:
    load_dotenv()
    settings = Settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
