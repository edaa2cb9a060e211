import io
import unittest
from datetime import datetime

import numpy as np
from PIL import Image

from chunked_upscaler.core.config import settings
from chunked_upscaler.core.exceptions import DecodeError, ValidationError
from chunked_upscaler.modules.upscale.codec import (
    build_artifact_name,
    decode_image,
    encode_image,
    media_type_for,
    validate_upload
)
from chunked_upscaler.modules.upscale.models import FinalImage, OutputFormat


def _png_bytes(width=8, height=6, mode="RGB", color=(10, 20, 30)):
    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def _final(width=6, height=4, alpha=255):
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[..., 0] = 200
    pixels[..., 1] = np.arange(width, dtype=np.uint8)[None, :] * 10
    pixels[..., 3] = alpha
    return FinalImage(pixels=pixels, scale_factor=2)


class TestValidateUpload(unittest.TestCase):

    def test_accepts_supported_types(self):
        for content_type in ("image/png", "image/jpeg", "image/webp"):
            validate_upload(b"data", content_type)

    def test_rejects_unsupported_type(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_upload(b"GIF89a", "image/gif")
        self.assertEqual(ctx.exception.code, 400)
        self.assertEqual(ctx.exception.details["content_type"], "image/gif")

    def test_rejects_oversize_upload(self):
        original = settings.MAX_IMAGE_SIZE_BYTES
        settings.MAX_IMAGE_SIZE_BYTES = 10
        try:
            with self.assertRaises(ValidationError) as ctx:
                validate_upload(b"x" * 11, "image/png")
        finally:
            settings.MAX_IMAGE_SIZE_BYTES = original
        self.assertEqual(ctx.exception.details["size_bytes"], 11)

    def test_rejects_empty_upload(self):
        with self.assertRaises(ValidationError):
            validate_upload(b"", "image/png")


class TestDecodeImage(unittest.TestCase):

    def test_rgb_gets_opaque_alpha(self):
        source = decode_image(_png_bytes(), filename="a.png")

        self.assertEqual((source.width, source.height), (8, 6))
        self.assertEqual(source.filename, "a.png")
        self.assertEqual(tuple(source.pixels[0, 0]), (10, 20, 30, 255))
        self.assertFalse(source.pixels.flags.writeable)

    def test_garbage_bytes_raise_decode_error(self):
        with self.assertRaises(DecodeError) as ctx:
            decode_image(b"\x89PNG\r\n\x1a\nnot really a png")
        self.assertEqual(ctx.exception.code, 422)
        self.assertEqual(ctx.exception.message, "Unable to load image, please check the file format")

    def test_too_many_pixels(self):
        original = settings.MAX_IMAGE_PIXELS
        settings.MAX_IMAGE_PIXELS = 40
        try:
            with self.assertRaises(ValidationError):
                decode_image(_png_bytes(8, 6))
        finally:
            settings.MAX_IMAGE_PIXELS = original

    def test_pillow_bomb_limit_is_a_validation_error(self):
        # 90M pixels, above Pillow's default limit; ours is lifted so Pillow trips first
        data = _png_bytes(10000, 9000, mode="1", color=0)
        original = settings.MAX_IMAGE_PIXELS
        settings.MAX_IMAGE_PIXELS = 10 ** 9
        try:
            with self.assertRaises(ValidationError) as ctx:
                decode_image(data)
        finally:
            settings.MAX_IMAGE_PIXELS = original
        self.assertEqual(ctx.exception.code, 400)
        self.assertEqual(ctx.exception.details["max_pixels"], 10 ** 9)


class TestEncodeImage(unittest.TestCase):

    def test_png_is_lossless(self):
        final = _final()

        decoded = decode_image(encode_image(final, OutputFormat.PNG))

        self.assertTrue(np.array_equal(decoded.pixels, final.pixels))

    def test_jpg_is_flattened_onto_white(self):
        data = encode_image(_final(alpha=0), "jpg", 90)

        self.assertTrue(data.startswith(b"\xff\xd8"))
        with Image.open(io.BytesIO(data)) as img:
            self.assertEqual(img.mode, "RGB")
            r, g, b = img.getpixel((0, 0))
        self.assertGreater(min(r, g, b), 240)

    def test_webp(self):
        data = encode_image(_final(), OutputFormat.WEBP, 80)

        self.assertEqual(data[:4], b"RIFF")
        self.assertEqual(data[8:12], b"WEBP")

    def test_media_types(self):
        self.assertEqual(media_type_for("png"), "image/png")
        self.assertEqual(media_type_for(OutputFormat.JPG), "image/jpeg")


class TestArtifactName(unittest.TestCase):

    def test_name_format(self):
        name = build_artifact_name("photo.final.png", 4, "png", now=datetime(2026, 1, 2, 3, 4, 5))
        self.assertEqual(name, "photo_UPSCALE_4x_2026-01-02T03-04-05.png")

    def test_extension_follows_output_format(self):
        name = build_artifact_name("holiday.png", 2, OutputFormat.JPG, now=datetime(2026, 10, 18, 12, 0, 0))
        self.assertEqual(name, "holiday_UPSCALE_2x_2026-10-18T12-00-00.jpg")

    def test_missing_filename(self):
        name = build_artifact_name(None, 8, "webp", now=datetime(2026, 1, 1))
        self.assertEqual(name, "image_UPSCALE_8x_2026-01-01T00-00-00.webp")

    def test_directory_components_are_dropped(self):
        name = build_artifact_name("../../etc/cat.png", 3, "png", now=datetime(2026, 1, 1))
        self.assertTrue(name.startswith("cat_UPSCALE_3x_"))


if __name__ == "__main__":
    unittest.main()
