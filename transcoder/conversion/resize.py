"""Resize image to fit (keep aspect or exact) or crop to an exact box."""
import logging
from typing import Optional, Tuple

from PIL import Image

logger = logging.getLogger("transcoder.resize")


def calculate_aspect_dimensions(
    width: int,
    height: int,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> Optional[Tuple[int, int]]:
    """
    New (width, height) that keeps the source ratio.
    With both targets the result fits inside the box; with one, the other follows the ratio.
    Returns None when no target is given.
    """
    if not target_width and not target_height:
        return None
    ratio = width / height
    if target_width and target_height:
        scale = min(target_width / width, target_height / height)
        return max(1, int(round(width * scale))), max(1, int(round(height * scale)))
    if target_width:
        return target_width, max(1, int(round(target_width / ratio)))
    return max(1, int(round(target_height * ratio))), target_height


def resize_to_fit(img: Image.Image, target_width: int, target_height: int) -> Image.Image:
    """
    Produce an image of exactly (target_width, target_height) by center-cropping
    the source after scaling it to cover the target (may lose edges).
    """
    w, h = img.size
    tw, th = target_width, target_height
    if w == tw and h == th:
        return img.copy()
    scale = max(tw / w, th / h)
    new_w, new_h = max(tw, int(round(w * scale))), max(th, int(round(h * scale)))
    resized = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
    left = (new_w - tw) // 2
    top = (new_h - th) // 2
    return resized.crop((left, top, left + tw, top + th))


def resize_keep_aspect(
    img: Image.Image,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> Image.Image:
    """
    Scale image to fit within target width and/or height, maintaining aspect ratio.
    If only one dimension is set, the other is computed from the image ratio.
    """
    dims = calculate_aspect_dimensions(img.width, img.height, target_width, target_height)
    if dims is None or dims == img.size:
        return img.copy()
    return img.resize(dims, Image.Resampling.LANCZOS)


def resize_exact(
    img: Image.Image,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> Image.Image:
    """Stretch to the given size; a missing dimension keeps the source value."""
    dims = (target_width or img.width, target_height or img.height)
    if dims == img.size:
        return img.copy()
    return img.resize(dims, Image.Resampling.LANCZOS)
