"""
Upload validation, image decode/encode, and artifact naming.

These sit at the boundary of the pipeline: the core only ever receives a
decoded SourceImage and hands back a FinalImage.
"""

import io
import warnings
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Optional, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from chunked_upscaler.core.config import settings
from chunked_upscaler.core.exceptions import DecodeError, ValidationError
from chunked_upscaler.modules.upscale.models import FinalImage, OutputFormat, SourceImage

MEDIA_TYPES = {
    OutputFormat.PNG: "image/png",
    OutputFormat.JPG: "image/jpeg",
    OutputFormat.WEBP: "image/webp",
}


def validate_upload(data: bytes, content_type: Optional[str]):
    """Reject unsupported content types and oversize uploads before decoding."""
    allowed = settings.allowed_content_types
    if content_type not in allowed:
        raise ValidationError(
            "Unsupported file format. Please upload a JPG, PNG or WebP image.",
            details={"content_type": content_type, "allowed": allowed}
        )

    if len(data) > settings.MAX_IMAGE_SIZE_BYTES:
        max_mb = settings.MAX_IMAGE_SIZE_BYTES / (1024 * 1024)
        raise ValidationError(
            f"File too large. Please upload an image smaller than {max_mb:.0f}MB.",
            details={"size_bytes": len(data), "max_bytes": settings.MAX_IMAGE_SIZE_BYTES}
        )

    if not data:
        raise ValidationError("Uploaded file is empty")


def decode_image(data: bytes, filename: Optional[str] = None) -> SourceImage:
    """
    Decode image bytes into an RGBA SourceImage.

    Raises:
        ValidationError: if the image exceeds MAX_IMAGE_PIXELS or trips
            Pillow's decompression-bomb limit.
        DecodeError: if Pillow cannot read the data.
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", Image.DecompressionBombWarning)
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
                if width * height > settings.MAX_IMAGE_PIXELS:
                    raise ValidationError(
                        f"Image is too large ({width}x{height}).",
                        details={"width": width, "height": height, "max_pixels": settings.MAX_IMAGE_PIXELS}
                    )
                rgba = img.convert("RGBA")
    except ValidationError:
        raise
    except (Image.DecompressionBombWarning, Image.DecompressionBombError) as e:
        # Pillow's own pixel limit tripped before ours could be checked
        raise ValidationError(
            "Image is too large.",
            details={"reason": str(e), "max_pixels": settings.MAX_IMAGE_PIXELS}
        ) from e
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(details={"reason": str(e)}) from e

    return SourceImage.from_array(np.asarray(rgba), filename=filename)


def encode_image(
    image: FinalImage,
    output_format: Union[OutputFormat, str] = OutputFormat.PNG,
    output_quality: int = 95
) -> bytes:
    """Serialize a FinalImage. Quality is ignored for PNG."""
    fmt = OutputFormat(output_format)
    img = Image.fromarray(np.ascontiguousarray(image.pixels))
    buf = io.BytesIO()

    if fmt is OutputFormat.JPG:
        # JPEG cannot store transparency, flatten onto white
        bg = Image.new("RGB", img.size, (255, 255, 255))
        bg.paste(img, mask=img.getchannel("A"))
        bg.save(buf, format="JPEG", quality=output_quality, optimize=True)

    elif fmt is OutputFormat.WEBP:
        img.save(buf, format="WEBP", quality=output_quality, method=4)

    else:
        img.save(buf, format="PNG", compress_level=6)

    return buf.getvalue()


def build_artifact_name(
    filename: Optional[str],
    scale_factor: int,
    output_format: Union[OutputFormat, str],
    now: Optional[datetime] = None
) -> str:
    """
    Name the download artifact `<basename>_UPSCALE_<scale>x_<timestamp>.<ext>`.

    The basename is everything before the first dot of the original
    filename; the timestamp is UTC ISO-8601 to the second with ':' replaced by '-'.
    """
    fmt = OutputFormat(output_format)
    name = PurePath(filename).name if filename else ""
    base_name = name.split(".")[0] or "image"
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{base_name}_UPSCALE_{scale_factor}x_{timestamp}.{fmt.value}"


def media_type_for(output_format: Union[OutputFormat, str]) -> str:
    return MEDIA_TYPES[OutputFormat(output_format)]
