"""Image inspection and thumbnails via Pillow.

Pillow calls are CPU-bound, so each public coroutine runs its work in a
worker thread with `asyncio.to_thread`.
"""

import asyncio
import io
import logging

from PIL import Image, UnidentifiedImageError

from cms_backend.config import settings

logger = logging.getLogger(__name__)


class ImageProcessingError(Exception):
    pass


def _open(content: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
        return image
    except (UnidentifiedImageError, OSError) as e:
        raise ImageProcessingError(f"Not a readable image: {str(e)[:200]}") from e


def _dimensions(content: bytes) -> tuple[int, int]:
    with _open(content) as image:
        return image.size


def _thumbnail(content: bytes, width: int, height: int) -> bytes:
    with _open(content) as image:
        image.thumbnail((width, height))
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        out = io.BytesIO()
        image.save(out, format="JPEG", quality=85)
        return out.getvalue()


def _verify(content: bytes) -> bool:
    try:
        with Image.open(io.BytesIO(content)) as image:
            image.verify()
        return True
    except Exception:
        return False


class ImageProcessingService:

    async def is_image(self, content: bytes) -> bool:
        if not content:
            return False
        return await asyncio.to_thread(_verify, content)

    async def get_dimensions(self, content: bytes) -> tuple[int, int]:
        return await asyncio.to_thread(_dimensions, content)

    async def generate_thumbnail(
        self,
        content: bytes,
        width: int | None = None,
        height: int | None = None,
    ) -> bytes:
        """JPEG thumbnail fitting inside width x height, aspect ratio kept."""
        width = width or settings.thumbnail_width
        height = height or settings.thumbnail_height
        thumbnail = await asyncio.to_thread(_thumbnail, content, width, height)
        logger.debug("Thumbnail generated | size=%d bytes | box=%dx%d", len(thumbnail), width, height)
        return thumbnail
