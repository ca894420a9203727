"""Render scripts to shareable PNG cards on a pooled thread executor."""

import asyncio
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO
from typing import Optional

from celery.exceptions import SoftTimeLimitExceeded
from PIL import Image, ImageDraw, ImageFont

from scriptflow.config import get_settings
from scriptflow.errors import RenderError

settings = get_settings()
logger = logging.getLogger(__name__)

CARD_WIDTH = 1080
PADDING = 72
TITLE_SIZE = 44
LABEL_SIZE = 36
BODY_SIZE = 34
LINE_SPACING = 12
SECTION_GAP = 40

BACKGROUND = (17, 17, 27)
TITLE_COLOR = (235, 235, 245)
LABEL_COLOR = (255, 196, 61)
BODY_COLOR = (220, 220, 230)
MUTED_COLOR = (140, 140, 160)

_SECTION_PATTERN = re.compile(r"\[(HOOK|BODY|CTA)\]")


def parse_script_sections(text: str) -> list[tuple[str, str]]:
    """Split script text into ``(label, body)`` pairs by its section markers.

    Text before the first marker, or text with no markers at all, is
    returned under an empty label.
    """
    sections = []
    matches = list(_SECTION_PATTERN.finditer(text))
    if not matches:
        return [("", text.strip())]

    preamble = text[: matches[0].start()].strip()
    if preamble:
        sections.append(("", preamble))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        sections.append((match.group(1), text[match.end():end].strip()))
    return sections


def _load_font(size: int, font_path: str = ""):
    if font_path:
        try:
            return ImageFont.truetype(font_path, size)
        except OSError:
            logger.warning(f"Could not load font {font_path}, using default")
    return ImageFont.load_default(size=size)


def _wrap(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> list[str]:
    lines = []
    for paragraph in text.splitlines() or [""]:
        words = paragraph.split()
        if not words:
            lines.append("")
            continue
        current = words[0]
        for word in words[1:]:
            candidate = f"{current} {word}"
            if draw.textlength(candidate, font=font) <= max_width:
                current = candidate
            else:
                lines.append(current)
                current = word
        lines.append(current)
    return lines


def render_script_image(text: str, title: str = "", font_path: str = "") -> bytes:
    """
    Render script text to PNG bytes.

    Runs inside the render pool's worker processes, so it must stay a
    module-level function of picklable arguments.
    """
    title_font = _load_font(TITLE_SIZE, font_path)
    label_font = _load_font(LABEL_SIZE, font_path)
    body_font = _load_font(BODY_SIZE, font_path)
    max_width = CARD_WIDTH - 2 * PADDING

    # Measure on a scratch canvas, then draw at the final height
    scratch = ImageDraw.Draw(Image.new("RGB", (CARD_WIDTH, 10)))
    blocks = []
    if title:
        blocks.append((_wrap(scratch, title, title_font, max_width), title_font, TITLE_COLOR))
    for label, body in parse_script_sections(text):
        if label:
            blocks.append(([label], label_font, LABEL_COLOR))
        blocks.append((_wrap(scratch, body, body_font, max_width), body_font, BODY_COLOR))

    height = PADDING * 2
    for lines, font, _ in blocks:
        height += len(lines) * (font.size + LINE_SPACING) + SECTION_GAP // 2

    image = Image.new("RGB", (CARD_WIDTH, height), BACKGROUND)
    draw = ImageDraw.Draw(image)
    y = PADDING
    for lines, font, color in blocks:
        for line in lines:
            draw.text((PADDING, y), line, font=font, fill=color)
            y += font.size + LINE_SPACING
        y += SECTION_GAP // 2

    output = BytesIO()
    image.save(output, format="PNG", optimize=True)
    return output.getvalue()


class RenderEngine:
    """
    Reference-counted handle on the render thread pool.

    Celery prefork children are daemonic and may not start processes of
    their own, so cards are drawn on threads; Pillow releases the GIL while
    encoding. The pool is created on the first :meth:`acquire` and lives
    until :meth:`shutdown`. A pool that stops accepting work, or whose
    render ran past its timeout, is dropped and re-created on the next use.
    If shutdown is requested while jobs still hold the engine, the pool is
    closed when the last one releases it.
    """

    def __init__(self, max_workers: Optional[int] = None):
        self.max_workers = max_workers or settings.render_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._refs = 0
        self._closing = False
        self._lock = threading.Lock()

    @property
    def ref_count(self) -> int:
        return self._refs

    @property
    def is_running(self) -> bool:
        return self._executor is not None

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                logger.info(f"Starting render pool with {self.max_workers} thread(s)")
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="render"
                )
            return self._executor

    def _invalidate(self, executor: ThreadPoolExecutor):
        with self._lock:
            if self._executor is executor:
                self._executor = None
        executor.shutdown(wait=False, cancel_futures=True)

    def acquire(self) -> "RenderEngine":
        with self._lock:
            self._refs += 1
            self._closing = False
        self._ensure_executor()
        return self

    def release(self):
        with self._lock:
            self._refs = max(0, self._refs - 1)
            close_now = self._closing and self._refs == 0
        if close_now:
            self._close()

    def shutdown(self):
        """Close the pool now, or once the last holder releases it."""
        with self._lock:
            if self._refs > 0:
                self._closing = True
                return
        self._close()

    def _close(self):
        with self._lock:
            executor, self._executor = self._executor, None
            self._closing = False
        if executor is not None:
            logger.info("Shutting down render pool")
            executor.shutdown(wait=True)

    async def render(self, text: str, title: str = "", timeout: Optional[float] = None) -> bytes:
        """
        Render a script in the pool.

        Raises:
            RenderError: retryable, on timeout or any rendering failure.
        """
        timeout = timeout or settings.render_timeout_seconds
        loop = asyncio.get_running_loop()

        for attempt in (1, 2):
            executor = self._ensure_executor()
            try:
                future = loop.run_in_executor(
                    executor, render_script_image, text, title, settings.render_font_path
                )
            except RuntimeError as e:
                # BrokenThreadPool, or the pool was shut down under us
                logger.warning(f"Render pool unusable (attempt {attempt}), re-creating: {e}")
                self._invalidate(executor)
                if attempt == 2:
                    raise RenderError("Render pool unavailable") from e
                continue

            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError as e:
                # The stuck thread cannot be stopped; later renders get a fresh pool
                self._invalidate(executor)
                raise RenderError(f"Rendering timed out after {timeout}s") from e
            except SoftTimeLimitExceeded:
                raise
            except Exception as e:
                raise RenderError(f"Rendering failed: {e}") from e

        raise RenderError("Render pool unavailable")


# Singleton instance, owned by this module
render_engine = RenderEngine()
