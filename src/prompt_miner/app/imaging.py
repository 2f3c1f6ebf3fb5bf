from __future__ import annotations

import base64
import binascii
import io

from PIL import Image, UnidentifiedImageError

from .models import CropBox, PromptImage


class CropError(ValueError):
    """The source image cannot be decoded or the box falls outside it."""


def crop_source_image(data_uri: str, box: CropBox) -> PromptImage:
    """Cut a region out of an uploaded source image and return it as a PNG PromptImage."""
    _, sep, payload = data_uri.partition(",")
    try:
        raw = base64.b64decode(payload if sep else data_uri, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CropError("Source image payload is not valid base64") from exc

    try:
        with Image.open(io.BytesIO(raw)) as image:
            if box.left >= box.right or box.top >= box.bottom:
                raise CropError("Crop box is empty")
            if box.right > image.width or box.bottom > image.height:
                raise CropError(
                    f"Crop box exceeds image bounds {image.width}x{image.height}"
                )
            cropped = image.crop((box.left, box.top, box.right, box.bottom))
            # PNG has no CMYK mode.
            if cropped.mode == "CMYK":
                cropped = cropped.convert("RGB")
            buffer = io.BytesIO()
            cropped.save(buffer, format="PNG")
    except (UnidentifiedImageError, OSError) as exc:
        raise CropError("Source is not a decodable image") from exc

    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return PromptImage(data=f"data:image/png;base64,{encoded}", mime_type="image/png")
