"""Square thumbnails for puzzle listings."""

import io

from PIL import Image


def generate_thumbnail(image: Image.Image, size: int = 300, quality: int = 80) -> bytes:
    """Cover-resize and center-crop an image to a size x size JPEG.

    Args:
        image: Source image.
        size: Edge length of the square thumbnail in pixels.
        quality: JPEG quality.

    Returns:
        Encoded JPEG bytes.
    """
    if size <= 0:
        raise ValueError(f"Thumbnail size must be positive, got {size}")

    src_w, src_h = image.size
    scale = max(size / src_w, size / src_h)
    new_w = max(size, round(src_w * scale))
    new_h = max(size, round(src_h * scale))

    resized = image.convert("RGB").resize((new_w, new_h), Image.Resampling.LANCZOS)

    crop_x = (new_w - size) // 2
    crop_y = (new_h - size) // 2
    cropped = resized.crop((crop_x, crop_y, crop_x + size, crop_y + size))

    buffer = io.BytesIO()
    cropped.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()
