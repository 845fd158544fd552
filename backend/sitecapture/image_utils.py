"""Screenshot helpers: dimensions and listing thumbnails."""
from PIL import Image
import io
import base64
import logging

logger = logging.getLogger(__name__)


def image_size(screenshot_bytes: bytes) -> tuple[int, int]:
    """(width, height) of an encoded screenshot."""
    with Image.open(io.BytesIO(screenshot_bytes)) as img:
        return img.size


def make_thumbnail(screenshot_bytes: bytes, width: int = 200, height: int = 150,
                   quality: int = 85) -> bytes:
    """
    Shrink a screenshot to fit inside width x height and re-encode as JPEG.
    A 1920px full-page PNG (often several MB) becomes a few KB.
    """
    img = Image.open(io.BytesIO(screenshot_bytes))
    img.thumbnail((width, height), Image.LANCZOS)

    # JPEG has no alpha, flatten onto white
    if img.mode == 'RGBA':
        bg = Image.new('RGB', img.size, (255, 255, 255))
        bg.paste(img, mask=img.split()[3])
        img = bg
    elif img.mode != 'RGB':
        img = img.convert('RGB')

    buf = io.BytesIO()
    img.save(buf, format='JPEG', quality=quality, optimize=True, progressive=True)
    return buf.getvalue()


def thumbnail_data_url(screenshot_bytes: bytes, width: int = 200, height: int = 150,
                       quality: int = 85) -> str:
    """
    Thumbnail as a data: URL for status listings.
    Returns "" when the image can't be decoded; a thumbnail never fails a capture.
    """
    try:
        thumb = make_thumbnail(screenshot_bytes, width=width, height=height, quality=quality)
    except Exception as e:
        logger.warning(f"[thumbnail] Failed to build thumbnail: {e}")
        return ""
    return "data:image/jpeg;base64," + base64.b64encode(thumb).decode()
