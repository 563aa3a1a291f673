import io

import pytest
from PIL import Image

from hvac_scanner.extraction.processing import (
    extension_from_filename,
    generate_request_id,
    prepare_image,
    validate_source,
)

from conftest import make_image


def test_extension_from_filename():
    assert extension_from_filename("IMG_0042.JPG") == "jpg"
    assert extension_from_filename("label.photo.webp") == "webp"
    assert extension_from_filename("noext") == ""
    assert extension_from_filename(None) == ""


def test_request_id_shape():
    rid = generate_request_id()
    assert len(rid) == 12
    int(rid, 16)
    assert rid != generate_request_id()


class TestValidateSource:
    def test_accepts_photo(self, photo):
        assert validate_source("label.jpeg", photo) == ("jpeg", photo)

    def test_empty(self):
        with pytest.raises(ValueError, match="empty_file"):
            validate_source("label.jpg", b"")

    def test_unsupported_extension(self, photo):
        with pytest.raises(ValueError, match="unsupported_extension"):
            validate_source("scan.pdf", photo)

    def test_too_large(self):
        with pytest.raises(ValueError, match="file_too_large"):
            validate_source("label.jpg", b"0" * (16 * 1024 * 1024))


class TestPrepareImage:
    def test_downscales_longest_edge(self):
        data, (w, h) = prepare_image(make_image(1600, 1200))
        assert (w, h) == (800, 600)
        with Image.open(io.BytesIO(data)) as im:
            assert im.format == "JPEG"
            assert im.size == (800, 600)

    def test_portrait(self):
        _, size = prepare_image(make_image(900, 1800))
        assert size == (400, 800)

    def test_small_image_not_upscaled(self):
        _, size = prepare_image(make_image(320, 240))
        assert size == (320, 240)

    def test_png_with_alpha_becomes_jpeg(self):
        data, _ = prepare_image(make_image(200, 100, fmt="PNG", mode="RGBA"))
        with Image.open(io.BytesIO(data)) as im:
            assert im.format == "JPEG"
            assert im.mode == "RGB"

    def test_unreadable(self):
        with pytest.raises(ValueError, match="unreadable_image"):
            prepare_image(b"definitely not an image")
