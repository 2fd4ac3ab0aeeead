"""
Tests for screenshot compression helpers.
"""

import os
from io import BytesIO

from PIL import Image

from vibe_gen.rendering.capture import compress_image, to_data_url


def noise_png(size=400):
    image = Image.frombytes("RGB", (size, size), os.urandom(size * size * 3))
    buffer = BytesIO()
    image.save(buffer, "PNG")
    return buffer.getvalue()


def test_compress_fits_budget_as_jpeg():
    """Test noisy screenshots are re-encoded and downscaled until they fit."""
    source = noise_png()

    data = compress_image(source, max_bytes=30_000)

    assert len(data) <= 30_000
    assert data[:3] == b"\xff\xd8\xff"
    assert Image.open(BytesIO(data)).size[0] < 400


def test_small_images_keep_their_size():
    image = Image.new("RGB", (50, 40), "white")
    buffer = BytesIO()
    image.save(buffer, "PNG")

    data = compress_image(buffer.getvalue())

    assert Image.open(BytesIO(data)).size == (50, 40)


def test_to_data_url():
    """Test data URL encoding."""
    assert to_data_url(b"abc") == "data:image/jpeg;base64,YWJj"
    assert to_data_url(b"abc", "image/png").startswith("data:image/png;base64,")
