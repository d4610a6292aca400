import numpy as np
import pytest

from utils import (
    ImageBuffer,
    create_synthetic_test_image,
    format_bytes,
    format_time,
    load_image_buffer,
    save_image_buffer,
    validate_image_buffer,
)

from fixtures.generate_fixtures import make_checkerboard_png


def test_buffer_length_checked():
    with pytest.raises(ValueError):
        ImageBuffer(width=2, height=2, pixels=np.zeros(15, dtype=np.uint8))
    with pytest.raises(TypeError):
        ImageBuffer(width=1, height=1, pixels=np.zeros(4, dtype=np.float32))


def test_from_array_shapes():
    grey = ImageBuffer.from_array(np.full((3, 5), 7, dtype=np.uint8))
    assert (grey.width, grey.height) == (5, 3)
    assert tuple(grey.as_array()[0, 0]) == (7, 7, 7, 255)
    rgb = ImageBuffer.from_array(np.zeros((2, 2, 3), dtype=np.uint8))
    assert (rgb.as_array()[..., 3] == 255).all()
    with pytest.raises(ValueError):
        ImageBuffer.from_array(np.zeros((2, 2, 2), dtype=np.uint8))


def test_copy_is_independent(red_image):
    c = red_image.copy()
    c.pixels[0] = 1
    assert red_image.pixels[0] == 255


def test_dims(red_image):
    assert red_image.dims() == {'width': 100, 'height': 100, 'megapixels': 0.01}
    assert red_image.nbytes == 40000


def test_validate_image_buffer_errors():
    with pytest.raises(ValueError):
        validate_image_buffer(None)
    with pytest.raises(TypeError):
        validate_image_buffer(np.zeros((4, 4, 4), dtype=np.uint8))
    with pytest.raises(ValueError):
        validate_image_buffer(ImageBuffer.blank(0, 5))
    with pytest.raises(ValueError):
        validate_image_buffer(ImageBuffer.blank(20, 5), max_size=10)
    validate_image_buffer(ImageBuffer.blank(10, 10), max_size=10)


def test_load_and_save(tmp_path, valid_test_image):
    path = save_image_buffer(valid_test_image, str(tmp_path / 'img.png'))
    loaded = load_image_buffer(path)
    assert np.array_equal(loaded.pixels, valid_test_image.pixels)


def test_load_checkerboard(tmp_path):
    loaded = load_image_buffer(make_checkerboard_png(str(tmp_path / 'cb.png')))
    assert (loaded.width, loaded.height) == (32, 32)
    assert set(np.unique(loaded.as_array()[..., 0])) == {0, 255}


def test_create_synthetic_image():
    img = create_synthetic_test_image(200, 100, complexity='complex')
    assert (img.width, img.height) == (200, 100)
    again = create_synthetic_test_image(200, 100, complexity='complex')
    assert np.array_equal(img.pixels, again.pixels)


def test_format_helpers():
    assert 'KB' in format_bytes(2048)
    assert format_bytes(None) == 'N/A'
    assert format_time(12.5) == '12.50 ms'
    assert format_time(2500.0) == '2.500 s'
    assert format_time(None) == 'N/A'
