from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from .errors import ValidationError

MAX_IMAGE_SIZE: Tuple[int, int] = (400, 400)
JPEG_QUALITY = 80


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    mime_type: str = "image/jpeg"
    source: str = ""

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


def encode_image(path: Path, *, max_size: Tuple[int, int] = MAX_IMAGE_SIZE, quality: int = JPEG_QUALITY) -> EncodedImage:
    """Load an image, shrink it to fit ``max_size`` keeping aspect ratio, and JPEG-encode it."""
    p = Path(path).expanduser()
    if not p.is_file():
        raise ValidationError(f"Image not found: {p}")
    try:
        with Image.open(p) as img:
            img = img.convert("RGB")
            img.thumbnail(max_size, Image.Resampling.LANCZOS)
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=int(quality))
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Unreadable image {p.name}: {e}") from e
    return EncodedImage(data=buf.getvalue(), source=str(p))
