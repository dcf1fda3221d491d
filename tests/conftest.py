"""Shared fixtures for the asset store tests"""

from io import BytesIO

import pytest
from PIL import Image


def make_image_bytes(size=(64, 48), mode="RGB", format="PNG", color=(200, 30, 30)):
    """Encode a solid-color test image"""
    if mode in ("L", "1"):
        color = 128
    elif mode in ("RGBA",) and len(color) == 3:
        color = color + (128,)
    img = Image.new(mode, size, color)
    buf = BytesIO()
    img.save(buf, format=format)
    return buf.getvalue()


def open_image(data: bytes) -> Image.Image:
    img = Image.open(BytesIO(data))
    img.load()
    return img


@pytest.fixture
def image_bytes():
    return make_image_bytes


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "uploads" / "articles"
    root.mkdir(parents=True)
    return root
