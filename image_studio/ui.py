"""
Gradio web UI for the image studio.

Two tabs: Generate (prompt -> image) and Edit (up to 8 source images +
instruction + aspect ratio -> image and optional caption). All request state
lives in a per-browser-session `StudioSession`; the handlers here only render
that state.
"""

import asyncio
import html
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any

import gradio as gr

from image_studio.client import StudioClient
from image_studio.config import Settings
from image_studio.images import AspectRatio, data_url_to_image, save_png
from image_studio.studio import Mode, RequestState, StudioSession

logger = logging.getLogger(__name__)

PAGE_TITLE = "Image Studio"

ASPECT_RATIO_CHOICES = [
    ("Square (1:1)", AspectRatio.SQUARE.value),
    ("Landscape (16:9)", AspectRatio.LANDSCAPE.value),
    ("Portrait (9:16)", AspectRatio.PORTRAIT.value),
]

HEADER_HTML = """
<div style="margin: 16px 0 8px 0;">
    <h1 style="font-size: 2.2em; font-weight: 700; margin: 0;">Image Studio</h1>
    <p style="color: #6b7280; margin: 4px 0 0 0;">Generate new images or edit your own with Google's image models.</p>
</div>
"""

FOOTER_HTML = """
<div style="text-align: center; margin-top: 32px; color: #9ca3af; font-size: 0.9em;">
    Built with FastAPI, Gradio, and the Google Gemini API.
</div>
"""


class DownloadFiles:
    """PNG downloads of one browser session, one file per result slot.

    Re-rendering the same result reuses its file; a new result replaces it.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._saved: dict[str, tuple[str, Path]] = {}

    def path_for(self, image_url: str, prefix: str) -> Path:
        saved = self._saved.get(prefix)
        if saved is not None and saved[0] == image_url:
            return saved[1]
        path = save_png(image_url, self.directory, prefix)
        if saved is not None and saved[1] != path:
            saved[1].unlink(missing_ok=True)
        self._saved[prefix] = (image_url, path)
        return path

    def cleanup(self) -> None:
        self._saved.clear()
        shutil.rmtree(self.directory, ignore_errors=True)


class SessionRegistry:
    """Maps Gradio session hashes to their `StudioSession` and download files."""

    def __init__(self, client: StudioClient, max_images: int) -> None:
        self.client = client
        self.max_images = max_images
        self._sessions: dict[str, StudioSession] = {}
        self._downloads: dict[str, DownloadFiles] = {}

    @staticmethod
    def _key(request: gr.Request) -> str:
        return request.session_hash or "default"

    def get(self, request: gr.Request) -> StudioSession:
        key = self._key(request)
        session = self._sessions.get(key)
        if session is None:
            session = StudioSession(self.client, max_images=self.max_images)
            self._sessions[key] = session
        return session

    def downloads(self, request: gr.Request) -> DownloadFiles:
        key = self._key(request)
        files = self._downloads.get(key)
        if files is None:
            files = DownloadFiles(Path(tempfile.mkdtemp(prefix="image-studio-")))
            self._downloads[key] = files
        return files

    def drop(self, request: gr.Request) -> None:
        key = self._key(request)
        self._sessions.pop(key, None)
        files = self._downloads.pop(key, None)
        if files is not None:
            files.cleanup()


def format_status(state: RequestState, busy_text: str) -> str:
    if state.error:
        color, bg_color = "#ef4444", "#fee2e2"
        message = state.error
    elif state.status_text:
        color, bg_color = "#3b82f6", "#dbeafe"
        message = state.status_text
    elif state.is_loading:
        color, bg_color = "#3b82f6", "#dbeafe"
        message = busy_text
    else:
        return ""
    message = html.escape(message)
    return f"""<div style="padding: 12px 16px; border-radius: 8px; background-color: {bg_color}; border-left: 4px solid {color}; margin: 8px 0;">
    <span style="color: {color}; font-weight: 500; white-space: pre-wrap;">{message}</span>
</div>"""


def _download_update(image_url: str | None, downloads: DownloadFiles, prefix: str) -> Any:
    if not image_url:
        return gr.update(value=None, visible=False)
    try:
        path = downloads.path_for(image_url, prefix)
    except (ValueError, OSError) as exc:
        logger.warning("Could not prepare PNG download: %s", exc)
        return gr.update(value=None, visible=False)
    return gr.update(value=str(path), visible=True)


def _result_image(image_url: str | None) -> Any:
    if not image_url:
        return None
    try:
        return data_url_to_image(image_url)
    except (ValueError, OSError) as exc:
        logger.warning("Could not decode result image: %s", exc)
        return None


def render_generate(state: RequestState, downloads: DownloadFiles) -> tuple[Any, ...]:
    return (
        format_status(state, "Generating image…"),
        _result_image(state.result),
        _download_update(state.result, downloads, "ai-generated"),
        gr.update(interactive=not state.is_loading),
        gr.update(interactive=state.is_loading),
    )


def render_edit(session: StudioSession, downloads: DownloadFiles) -> tuple[Any, ...]:
    state = session.edit
    result = state.result
    image_url = result.image_url if result else None
    caption = result.text if result else None
    return (
        format_status(state, "Editing image…"),
        _result_image(image_url),
        gr.update(value=caption or "", visible=bool(caption)),
        _download_update(image_url, downloads, "ai-edited"),
        gr.update(interactive=not state.is_loading and len(session.images) > 0),
        gr.update(interactive=state.is_loading),
    )


def render_gallery(session: StudioSession) -> list[tuple[Any, str]]:
    items = []
    for image in session.images:
        try:
            items.append((data_url_to_image(image.data_url), image.filename))
        except (ValueError, OSError):
            logger.warning("Skipping unreadable source image %s in gallery", image.filename)
    return items


def build_blocks(client: StudioClient, settings: Settings) -> gr.Blocks:
    registry = SessionRegistry(client, settings.max_source_images)

    async def on_generate(prompt: str, request: gr.Request):
        session = registry.get(request)
        task = asyncio.ensure_future(session.start_generate(prompt))
        await asyncio.sleep(0)
        yield render_generate(session.generate, registry.downloads(request))
        await task
        yield render_generate(session.generate, registry.downloads(request))

    def on_generate_stop(request: gr.Request):
        session = registry.get(request)
        session.stop(Mode.GENERATE)
        return render_generate(session.generate, registry.downloads(request))

    async def on_edit(prompt: str, ratio: str, request: gr.Request):
        session = registry.get(request)
        task = asyncio.ensure_future(session.start_edit(prompt, aspect_ratio=AspectRatio(ratio)))
        await asyncio.sleep(0)
        yield render_edit(session, registry.downloads(request))
        await task
        yield render_edit(session, registry.downloads(request))

    def on_edit_stop(request: gr.Request):
        session = registry.get(request)
        session.stop(Mode.EDIT)
        return render_edit(session, registry.downloads(request))

    async def on_upload(files: list[str] | None, request: gr.Request):
        session = registry.get(request)
        await session.upload(files or [])
        return (render_gallery(session), None, *render_edit(session, registry.downloads(request)))

    def on_select(evt: gr.SelectData) -> int:
        return evt.index

    def on_remove(selected: int | None, request: gr.Request):
        session = registry.get(request)
        if selected is not None and 0 <= selected < len(session.images):
            session.remove_image(selected)
        return render_gallery(session), None, gr.update(interactive=len(session.images) > 0)

    def on_clear(request: gr.Request):
        session = registry.get(request)
        session.clear_images()
        return render_gallery(session), None, gr.update(interactive=False)

    with gr.Blocks(title=PAGE_TITLE) as blocks:
        gr.HTML(HEADER_HTML)

        with gr.Tabs():
            with gr.Tab("Generate"):
                gr.Markdown("Describe the image you want to create. The more detailed your prompt, the better the result.")
                gen_prompt = gr.Textbox(
                    label="Prompt",
                    placeholder="e.g., A majestic lion wearing a crown, cinematic lighting, hyperrealistic",
                    info="If left blank, a default prompt will be used to generate an image.",
                    lines=4,
                )
                with gr.Row():
                    gen_btn = gr.Button("Generate Image", variant="primary")
                    gen_stop_btn = gr.Button("Stop", variant="stop", interactive=False)
                gen_status = gr.HTML()
                gen_image = gr.Image(label="Result", type="pil", format="png", interactive=False)
                gen_download = gr.DownloadButton("Download Image (PNG)", visible=False)

            with gr.Tab("Edit"):
                gr.Markdown(
                    f"Upload up to {settings.max_source_images} images, choose an aspect ratio, "
                    "and describe your desired edit."
                )
                upload = gr.File(
                    label=f"1. Upload Image(s) (up to {settings.max_source_images})",
                    file_count="multiple",
                    file_types=["image"],
                    type="filepath",
                )
                gallery = gr.Gallery(label="Source images", columns=4, allow_preview=True)
                selected = gr.State(None)
                with gr.Row():
                    remove_btn = gr.Button("Remove selected", size="sm")
                    clear_btn = gr.Button("Remove all", size="sm")
                edit_prompt = gr.Textbox(
                    label="2. Describe Your Edit (Optional)",
                    placeholder="e.g., Make the background a futuristic city at night.",
                    info="If left blank, the model will try to improve the image quality.",
                    lines=3,
                )
                ratio = gr.Radio(
                    label="3. Choose Aspect Ratio",
                    choices=ASPECT_RATIO_CHOICES,
                    value=AspectRatio.SQUARE.value,
                )
                with gr.Row():
                    edit_btn = gr.Button("Edit Image", variant="primary", interactive=False)
                    edit_stop_btn = gr.Button("Stop", variant="stop", interactive=False)
                edit_status = gr.HTML()
                edit_image = gr.Image(label="Result", type="pil", format="png", interactive=False)
                edit_caption = gr.Textbox(label="Model notes", lines=3, interactive=False, visible=False)
                edit_download = gr.DownloadButton("Download Image", visible=False)

        gr.HTML(FOOTER_HTML)

        gen_outputs = [gen_status, gen_image, gen_download, gen_btn, gen_stop_btn]
        gen_btn.click(on_generate, inputs=[gen_prompt], outputs=gen_outputs, concurrency_limit=None)
        gen_stop_btn.click(on_generate_stop, inputs=[], outputs=gen_outputs, concurrency_limit=None)

        edit_outputs = [edit_status, edit_image, edit_caption, edit_download, edit_btn, edit_stop_btn]
        edit_btn.click(on_edit, inputs=[edit_prompt, ratio], outputs=edit_outputs, concurrency_limit=None)
        edit_stop_btn.click(on_edit_stop, inputs=[], outputs=edit_outputs, concurrency_limit=None)

        upload.upload(on_upload, inputs=[upload], outputs=[gallery, upload, *edit_outputs])
        gallery.select(on_select, inputs=None, outputs=[selected])
        remove_btn.click(on_remove, inputs=[selected], outputs=[gallery, selected, edit_btn])
        clear_btn.click(on_clear, inputs=[], outputs=[gallery, selected, edit_btn])

        blocks.unload(registry.drop)

    return blocks
