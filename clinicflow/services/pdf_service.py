# clinicflow/services/pdf_service.py
"""Prescription PDF rendering.

The page layout lives in ``templates/prescription.html``; the engine turns
the rendered HTML into PDF bytes with xhtml2pdf. The engine is the one
rendering resource of the process: build it once at startup, pass it to
whoever renders, and shut it down on exit.
"""
import base64
import binascii
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from io import BytesIO
from pathlib import Path
from typing import BinaryIO, Callable, Optional
import threading

import bleach
import jinja2
from xhtml2pdf import pisa

from ..exceptions import RenderError
from ..schemas import PrescriptionView

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

ADVICE_TAGS = {
    'p', 'div', 'span', 'br', 'strong', 'em', 'u', 'sub', 'sup', 'ul', 'ol', 'li',
    'table', 'thead', 'tbody', 'tr', 'th', 'td', 'h3', 'h4', 'h5', 'h6',
}
ADVICE_ATTRIBUTES = {'*': ['style', 'class']}

_template_env = jinja2.Environment(
    loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=jinja2.select_autoescape(["html"]),
)


def sanitize_rich_text(html: str) -> str:
    """Strip scripts and unknown markup from editor-authored advice text."""
    return bleach.clean(html or "", tags=ADVICE_TAGS, attributes=ADVICE_ATTRIBUTES, strip=True)


def _clean_whiteboard(payload: Optional[str]) -> Optional[str]:
    if not payload:
        return None
    if payload.startswith("data:"):
        payload = payload.split(",", 1)[-1]
    try:
        base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise RenderError(f"Whiteboard drawing is not valid base64: {e}") from e
    return payload


def build_prescription_html(view: PrescriptionView) -> str:
    if not isinstance(view, PrescriptionView):
        raise RenderError("render input must be a PrescriptionView")
    whiteboard = _clean_whiteboard(view.whiteboard_png_base64)
    template = _template_env.get_template("prescription.html")
    return template.render(
        view=view.model_copy(update={"whiteboard_png_base64": whiteboard}),
        advice_html=sanitize_rich_text(view.advice_html),
    )


def pisa_convert(html: str, dest: BinaryIO) -> bool:
    result = pisa.CreatePDF(src=html, dest=dest, encoding="utf-8")
    if result.err:
        logger.warning(f"xhtml2pdf reported {result.err} error(s) while rendering")
    return not result.err


class PdfRenderEngine:
    """Serialized, time-limited access to the HTML-to-PDF converter.

    A single worker thread runs conversions one at a time; concurrent callers
    queue behind it. A call that does not finish within ``timeout_seconds``
    fails with ``RenderError``. The stuck conversion keeps the worker busy
    until it returns, so later calls keep queueing behind it.
    """

    def __init__(self, timeout_seconds: float = 30.0,
                 converter: Optional[Callable[[str, BinaryIO], bool]] = None):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self._converter = converter or pisa_convert
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pdf-render")
        self._state_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_settings(cls, settings) -> "PdfRenderEngine":
        return cls(timeout_seconds=settings.pdf_render_timeout_seconds)

    @property
    def closed(self) -> bool:
        return self._closed

    def _convert(self, html: str) -> bytes:
        buffer = BytesIO()
        try:
            ok = self._converter(html, buffer)
            data = buffer.getvalue()
        finally:
            buffer.close()
        if not ok or not data:
            raise RenderError("PDF converter could not render the document")
        return data

    def render_html(self, html: str) -> bytes:
        with self._state_lock:
            if self._closed:
                raise RenderError("PDF render engine has been shut down")
            future = self._executor.submit(self._convert, html)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            logger.error(f"PDF rendering timed out after {self.timeout_seconds} seconds")
            raise RenderError(f"PDF rendering timed out after {self.timeout_seconds} seconds")
        except RenderError:
            raise
        except Exception as e:
            logger.error(f"PDF rendering failed: {str(e)}")
            raise RenderError(f"PDF rendering failed: {e}") from e

    def shutdown(self, wait: bool = True) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("PDF render engine stopped")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()


def render_prescription_pdf(engine: PdfRenderEngine, view: PrescriptionView) -> bytes:
    """Render a fully denormalized prescription view to PDF bytes. Not retried on failure."""
    return engine.render_html(build_prescription_html(view))
