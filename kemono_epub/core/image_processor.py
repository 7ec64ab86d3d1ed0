import io
import struct
import mimetypes
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

try:
    from PIL import Image as PillowImage, UnidentifiedImageError
    HAS_PILLOW = True
except ImportError:
    HAS_PILLOW = False

from ..models import log, PASSTHROUGH_IMAGE_MIMES
from ..exceptions import EncodingError

_GENERIC_CONTENT_TYPES = {'', 'application/octet-stream', 'binary/octet-stream', 'application/binary'}
_MIME_ALIASES = {'image/jpg': 'image/jpeg', 'image/pjpeg': 'image/jpeg', 'image/x-png': 'image/png'}
_PNG_SAFE_MODES = {'1', 'L', 'LA', 'P', 'RGB', 'RGBA', 'I', 'I;16'}


@dataclass
class EncodedImage:
    data: bytes
    media_type: str
    extension: str


class ImageEncoder:
    """Bring fetched image bytes into a format every EPUB reader renders.

    PNG, JPEG, GIF and SVG pass through untouched unless ``reencode_all`` is
    set (SVG always passes through). Anything else is decoded with Pillow
    and written back out as PNG.
    """

    def __init__(self, reencode_all: bool = False):
        self.reencode_all = reencode_all

    @staticmethod
    def guess_media_type(source: str, content_type: Optional[str] = None) -> str:
        declared = (content_type or '').split(';')[0].strip().lower()
        declared = _MIME_ALIASES.get(declared, declared)
        if declared not in _GENERIC_CONTENT_TYPES:
            return declared
        path = urlparse(source).path if '://' in (source or '') else (source or '')
        guessed = mimetypes.guess_type(path)[0]
        return _MIME_ALIASES.get(guessed, guessed) or 'application/octet-stream'

    def encode(self, data: bytes, source: str, content_type: Optional[str] = None) -> EncodedImage:
        if not data:
            raise EncodingError(f"No image data for {source}")

        media_type = self.guess_media_type(source, content_type)
        if media_type == 'image/svg+xml' or (media_type in PASSTHROUGH_IMAGE_MIMES and not self.reencode_all):
            return EncodedImage(data=data, media_type=media_type, extension=PASSTHROUGH_IMAGE_MIMES[media_type])

        return EncodedImage(data=self.to_png(data, source), media_type='image/png', extension='png')

    @staticmethod
    def to_png(data: bytes, source: str = "") -> bytes:
        if not HAS_PILLOW:
            raise EncodingError(f"Pillow is required to convert {source or 'image'} to PNG")
        try:
            with PillowImage.open(io.BytesIO(data)) as img:
                img.load()
                if img.mode not in _PNG_SAFE_MODES:
                    # CMYK, YCbCr and friends have no PNG equivalent
                    img = img.convert('RGBA' if 'A' in img.getbands() else 'RGB')
                out_io = io.BytesIO()
                img.save(out_io, format='PNG', optimize=True)
        except (UnidentifiedImageError, PillowImage.DecompressionBombError, OSError, ValueError,
                SyntaxError, EOFError, IndexError, struct.error) as e:
            raise EncodingError(f"Cannot decode image {source}: {e}") from e
        log.debug(f"Re-encoded {source} to PNG ({len(data)} -> {out_io.tell()} bytes)")
        return out_io.getvalue()
