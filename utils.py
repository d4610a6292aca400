"""Image buffer model and image-related helpers.

This module centralizes the RGBA buffer type passed between the processing
routines, the trial runner and the verification engine, together with the
loading, validation and formatting helpers used by the benchmark CLI.
Functions document the exceptions they raise so callers can handle them
consistently.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import random

import numpy as np
import cv2
from PIL import Image


CHANNELS = 4


@dataclass
class ImageBuffer:
    """A width x height grid of 8-bit RGBA pixels stored as a flat uint8 array."""
    width: int
    height: int
    pixels: np.ndarray

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise ValueError(f'Image has negative dimensions: {self.width}x{self.height}')
        pixels = np.asarray(self.pixels)
        if pixels.dtype != np.uint8:
            raise TypeError(f'pixels must be uint8, got {pixels.dtype}')
        pixels = pixels.reshape(-1)
        expected = self.width * self.height * CHANNELS
        if pixels.size != expected:
            raise ValueError(f'pixels length {pixels.size} does not match {self.width}x{self.height}x{CHANNELS} = {expected}')
        self.pixels = pixels

    @classmethod
    def from_array(cls, arr: np.ndarray) -> 'ImageBuffer':
        """Build a buffer from an HxWx4, HxWx3 (opaque) or HxW greyscale array."""
        if arr is None:
            raise ValueError('image array is None')
        arr = np.asarray(arr)
        if arr.ndim == 2:
            h, w = arr.shape
            rgba = np.empty((h, w, CHANNELS), dtype=np.uint8)
            rgba[..., :3] = arr[..., None]
            rgba[..., 3] = 255
        elif arr.ndim == 3 and arr.shape[2] == 3:
            h, w = arr.shape[:2]
            rgba = np.empty((h, w, CHANNELS), dtype=np.uint8)
            rgba[..., :3] = arr
            rgba[..., 3] = 255
        elif arr.ndim == 3 and arr.shape[2] == CHANNELS:
            h, w = arr.shape[:2]
            rgba = np.array(arr, dtype=np.uint8, copy=True)
        else:
            raise ValueError(f'Unsupported image array shape {arr.shape}')
        return cls(width=int(w), height=int(h), pixels=rgba.reshape(-1))

    @classmethod
    def blank(cls, width: int, height: int) -> 'ImageBuffer':
        return cls(width=width, height=height, pixels=np.zeros(width * height * CHANNELS, dtype=np.uint8))

    @classmethod
    def solid(cls, width: int, height: int, rgba: Tuple[int, int, int, int]) -> 'ImageBuffer':
        arr = np.empty((height, width, CHANNELS), dtype=np.uint8)
        arr[...] = rgba
        return cls(width=width, height=height, pixels=arr.reshape(-1))

    def copy(self) -> 'ImageBuffer':
        return ImageBuffer(width=self.width, height=self.height, pixels=self.pixels.copy())

    def as_array(self) -> np.ndarray:
        """Return an HxWx4 view over the pixel data (no copy)."""
        return self.pixels.reshape(self.height, self.width, CHANNELS)

    @property
    def megapixels(self) -> float:
        return (self.width * self.height) / 1e6

    @property
    def nbytes(self) -> int:
        return int(self.pixels.nbytes)

    def dims(self) -> Dict[str, float]:
        return {'width': self.width, 'height': self.height, 'megapixels': self.megapixels}


def validate_image_buffer(buffer: ImageBuffer, min_size: int = 1, max_size: int = 10000) -> None:
    """Validate a buffer before benchmarking and raise descriptive exceptions on failure.

    Raises ValueError or TypeError with clear messages for callers to present to users.
    """
    if buffer is None:
        raise ValueError('image buffer is None')
    if not isinstance(buffer, ImageBuffer):
        raise TypeError(f'expected ImageBuffer, got {type(buffer).__name__}')

    h, w = buffer.height, buffer.width
    if h <= 0 or w <= 0:
        raise ValueError('Image has non-positive dimensions')
    if h < min_size or w < min_size:
        raise ValueError(f'Image too small: minimum dimension is {min_size}px')
    if h > max_size or w > max_size:
        raise ValueError(f'Image too large: maximum dimension is {max_size}px')


def load_image_buffer(image_path: str) -> ImageBuffer:
    """Load an image file from disk as an RGBA buffer.

    Raises:
        FileNotFoundError: when the path does not exist
        PIL.UnidentifiedImageError: when the file is not a readable image
    """
    with Image.open(image_path) as im:
        arr = np.array(im.convert('RGBA'))
    return ImageBuffer.from_array(arr)


def save_image_buffer(buffer: ImageBuffer, image_path: str) -> str:
    Image.fromarray(buffer.as_array()).save(image_path)
    return image_path


def create_synthetic_test_image(width: int, height: int, complexity: str = 'moderate', seed: Optional[int] = 0) -> ImageBuffer:
    """Draw a synthetic RGBA test image with OpenCV.

    'simple' draws a frame, 'moderate' adds a filled disc and coloured bands,
    anything else draws many random lines (seeded, so repeated calls match).
    """
    img = np.full((height, width, 3), 255, dtype=np.uint8)
    if complexity == 'simple':
        cv2.rectangle(img, (10, 10), (width - 10, height - 10), (0, 0, 0), 2)
    elif complexity == 'moderate':
        cv2.rectangle(img, (10, 10), (width - 10, height - 10), (0, 0, 0), 2)
        cv2.circle(img, (width // 2, height // 2), max(1, min(width, height) // 6), (30, 60, 200), -1)
        band = max(1, height // 8)
        for i, color in enumerate([(220, 40, 40), (40, 180, 60), (240, 200, 30)]):
            y0 = band * (i + 1)
            cv2.rectangle(img, (0, y0), (width // 4, y0 + band // 2), color, -1)
    else:
        rng = random.Random(seed)
        for _ in range(200):
            x1 = rng.randint(0, width - 1)
            y1 = rng.randint(0, height - 1)
            x2 = rng.randint(0, width - 1)
            y2 = rng.randint(0, height - 1)
            color = (rng.randint(0, 255), rng.randint(0, 255), rng.randint(0, 255))
            cv2.line(img, (x1, y1), (x2, y2), color, 1)
    return ImageBuffer.from_array(img)


def format_bytes(b: Optional[int]) -> str:
    if b is None:
        return 'N/A'
    for unit in ['B', 'KB', 'MB', 'GB']:
        if abs(b) < 1024.0:
            return f"{b:3.1f} {unit}"
        b /= 1024.0
    return f"{b:.1f} TB"


def format_time(milliseconds: Optional[float]) -> str:
    if milliseconds is None:
        return 'N/A'
    if milliseconds < 1000.0:
        return f"{milliseconds:.2f} ms"
    return f"{milliseconds / 1000.0:.3f} s"
