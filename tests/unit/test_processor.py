import io

import pytest
from PIL import Image

from bgflip.core.config import ProcessingConfig
from bgflip.core.exceptions import ValidationError
from bgflip.pipeline.processor import ImageProcessor, compute_resize_dimensions


def decode(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


@pytest.mark.parametrize(
    "size, expected",
    [
        ((500, 500), (500, 500)),
        ((4096, 4096), (4096, 4096)),
        ((5000, 5000), (4096, 4096)),
        ((8000, 4000), (4096, 2048)),
        ((3000, 6000), (2048, 4096)),
        ((10000, 10), (4096, 4)),
    ],
)
def test_compute_resize_dimensions(size, expected):
    assert compute_resize_dimensions(*size, 4096, 4096) == expected


def test_compute_resize_dimensions_never_returns_zero():
    width, height = compute_resize_dimensions(100000, 1, 4096, 4096)
    assert width == 4096
    assert height == 1


def test_compute_resize_dimensions_rejects_empty_image():
    with pytest.raises(ValidationError):
        compute_resize_dimensions(0, 10, 4096, 4096)


def test_validate_file_rejects_disallowed_type():
    processor = ImageProcessor()
    with pytest.raises(ValidationError) as exc_info:
        processor.validate_file("application/pdf", 100)
    assert exc_info.value.code == 400
    assert "not supported" in exc_info.value.message


def test_validate_file_rejects_oversized_and_empty():
    processor = ImageProcessor(ProcessingConfig(max_file_size=10))
    with pytest.raises(ValidationError, match="exceeds maximum"):
        processor.validate_file("image/png", 11)
    with pytest.raises(ValidationError, match="empty"):
        processor.validate_file("image/png", 0)
    processor.validate_file("image/png", 10)


def test_get_image_metadata(image_factory):
    metadata = ImageProcessor().get_image_metadata(image_factory(30, 20, "JPEG"))
    assert (metadata.width, metadata.height) == (30, 20)
    assert metadata.format == "JPEG"
    assert metadata.mime_type == "image/jpeg"



def test_multi_picture_jpeg_is_accepted_as_jpeg():
    buffer = io.BytesIO()
    Image.new("RGB", (20, 10), (255, 0, 0)).save(
        buffer, format="MPO", save_all=True, append_images=[Image.new("RGB", (20, 10), (0, 0, 255))]
    )
    data = buffer.getvalue()
    processor = ImageProcessor()

    processor.validate_file("image/jpeg", len(data))
    metadata = processor.get_image_metadata(data)

    assert metadata.format == "MPO"
    assert metadata.mime_type == "image/jpeg"
    assert (metadata.width, metadata.height) == (20, 10)
    assert decode(processor.flip_horizontally(data)).size == (20, 10)

def test_get_image_metadata_rejects_garbage():
    with pytest.raises(ValidationError, match="not a readable image"):
        ImageProcessor().get_image_metadata(b"definitely not an image")


def test_get_image_metadata_rejects_disallowed_decoded_format(image_factory):
    processor = ImageProcessor(ProcessingConfig(allowed_formats=("image/png",)))
    with pytest.raises(ValidationError):
        processor.get_image_metadata(image_factory(10, 10, "BMP"))


def test_resize_if_needed_keeps_small_image_untouched(image_factory):
    data = image_factory(100, 50)
    assert ImageProcessor().resize_if_needed(data) == (data, 100, 50)


def test_resize_if_needed_scales_down(image_factory):
    processor = ImageProcessor(ProcessingConfig(max_width=100, max_height=100))
    data, width, height = processor.resize_if_needed(image_factory(400, 200))
    assert (width, height) == (100, 50)
    assert decode(data).size == (100, 50)


def test_flip_horizontally_mirrors_pixels():
    image = Image.new("RGBA", (3, 2), (0, 0, 0, 0))
    image.putpixel((0, 0), (255, 0, 0, 255))
    image.putpixel((2, 1), (0, 255, 0, 128))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")

    flipped = decode(ImageProcessor().flip_horizontally(buffer.getvalue()))

    assert flipped.size == (3, 2)
    assert flipped.getpixel((2, 0)) == (255, 0, 0, 255)
    assert flipped.getpixel((0, 1)) == (0, 255, 0, 128)
    assert flipped.getpixel((0, 0)) == (0, 0, 0, 0)


def test_flip_twice_is_identity(split_image_factory):
    processor = ImageProcessor()
    original = decode(split_image_factory(20, 10))
    twice = decode(processor.flip_horizontally(processor.flip_horizontally(split_image_factory(20, 10))))
    assert list(twice.convert("RGB").getdata()) == list(original.convert("RGB").getdata())


def test_convert_to_png_keeps_alpha():
    image = Image.new("RGBA", (8, 8), (10, 20, 30, 40))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")

    data, width, height = ImageProcessor().convert_to_output_format(buffer.getvalue())

    encoded = decode(data)
    assert encoded.format == "PNG"
    assert (width, height) == (8, 8)
    assert encoded.getpixel((4, 4)) == (10, 20, 30, 40)


def test_convert_to_webp(image_factory):
    processor = ImageProcessor(ProcessingConfig(output_format="webp", output_quality=80))
    data, width, height = processor.convert_to_output_format(image_factory(16, 16, "GIF"))
    assert decode(data).format == "WEBP"
    assert (width, height) == (16, 16)
    assert processor.output_content_type == "image/webp"
    assert processor.output_extension == ".webp"


def test_unsupported_output_format():
    with pytest.raises(ValueError):
        ImageProcessor(ProcessingConfig(output_format="tiff"))
