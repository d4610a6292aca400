"""Reference (interpreted) implementations of the benchmarked image routines.

Every routine walks the RGBA bytes with plain Python loops. They define the
expected output of each scenario; the vectorised versions in
``optimized_processors`` must agree with them within the verification
tolerance.
"""
import math
from typing import List, Tuple

import numpy as np

from utils import ImageBuffer, CHANNELS


EDGE_THRESHOLD = 170
MAX_SAMPLE_SIZE = 1000
MAX_ITERATIONS = 20
CONVERGENCE_THRESHOLD = 1.0

BLUR_KERNEL = ((1, 2, 1), (2, 4, 2), (1, 2, 1))
BLUR_KERNEL_SUM = 16
SOBEL_X = ((-1, 0, 1), (-2, 0, 2), (-1, 0, 1))
SOBEL_Y = ((-1, -2, -1), (0, 0, 0), (1, 2, 1))


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _to_buffer(data: bytearray, width: int, height: int) -> ImageBuffer:
    return ImageBuffer(width=width, height=height, pixels=np.frombuffer(bytes(data), dtype=np.uint8).copy())


def invert_colors(buffer: ImageBuffer) -> ImageBuffer:
    data = bytearray(buffer.pixels.tobytes())
    for i in range(0, len(data), CHANNELS):
        data[i] = 255 - data[i]
        data[i + 1] = 255 - data[i + 1]
        data[i + 2] = 255 - data[i + 2]
        # alpha left as it is
    return _to_buffer(data, buffer.width, buffer.height)


def _blur(data: bytes, width: int, height: int) -> bytearray:
    gray = [0] * (width * height)
    for p in range(width * height):
        idx = p * CHANNELS
        gray[p] = _round_half_up((data[idx] + data[idx + 1] + data[idx + 2]) / 3)

    out = bytearray(len(data))
    for y in range(1, height - 1):
        for x in range(1, width - 1):
            acc = 0
            for ky in range(3):
                row = (y + ky - 1) * width
                for kx in range(3):
                    acc += gray[row + x + kx - 1] * BLUR_KERNEL[ky][kx]
            g = _round_half_up(acc / BLUR_KERNEL_SUM)
            idx = (y * width + x) * CHANNELS
            out[idx] = out[idx + 1] = out[idx + 2] = g
            out[idx + 3] = 255
    return out


def detect_edges(buffer: ImageBuffer) -> ImageBuffer:
    """Blur to greyscale, then threshold the Sobel gradient magnitude.

    Border pixels are left fully zero (including alpha).
    """
    width, height = buffer.width, buffer.height
    blurred = _blur(buffer.pixels.tobytes(), width, height)
    output = bytearray(len(blurred))

    for y in range(1, height - 1):
        for x in range(1, width - 1):
            gx = 0
            gy = 0
            for ky in range(3):
                for kx in range(3):
                    # already greyscale from blur
                    gray = blurred[((y + ky - 1) * width + (x + kx - 1)) * CHANNELS]
                    gx += gray * SOBEL_X[ky][kx]
                    gy += gray * SOBEL_Y[ky][kx]
            magnitude = min(255, _round_half_up(math.sqrt(gx * gx + gy * gy)))
            edge = 255 if magnitude > EDGE_THRESHOLD else 0
            idx = (y * width + x) * CHANNELS
            output[idx] = output[idx + 1] = output[idx + 2] = edge
            output[idx + 3] = 255

    return _to_buffer(output, width, height)


Color = Tuple[float, float, float]


def _distance(p1: Color, p2: Color) -> float:
    dr = p1[0] - p2[0]
    dg = p1[1] - p2[1]
    db = p1[2] - p2[2]
    return math.sqrt(dr * dr + dg * dg + db * db)


def _nearest(pixel: Color, centroids: List[Color]) -> int:
    min_dist = math.inf
    nearest = 0
    for i, c in enumerate(centroids):
        d = _distance(pixel, c)
        if d < min_dist:
            min_dist = d
            nearest = i
    return nearest


def deterministic_sample(pixels: List[Color], sample_size: int) -> List[Color]:
    """Pick evenly strided pixels so both implementations train on the same subset."""
    step = len(pixels) / sample_size
    return [pixels[int(math.floor(i * step))] for i in range(sample_size)]


def initialize_centroids(pixels: List[Color], k: int) -> List[Color]:
    """K-Means++ style seeding without randomness: start at the 1/4 position,
    then repeatedly take the pixel farthest from every chosen centroid."""
    if not pixels:
        return []
    centroids = [pixels[len(pixels) // 4]]
    sample_rate = max(1, len(pixels) // 1000)
    for _ in range(1, k):
        max_min_dist = -1.0
        best = 0
        for i in range(0, len(pixels), sample_rate):
            min_dist = min(_distance(pixels[i], c) for c in centroids)
            if min_dist > max_min_dist:
                max_min_dist = min_dist
                best = i
        centroids.append(pixels[best])
    return centroids


def _mean(cluster: List[Color]) -> Color:
    sr = sg = sb = 0.0
    for r, g, b in cluster:
        sr += r
        sg += g
        sb += b
    n = len(cluster)
    return (sr / n, sg / n, sb / n)


def quantize(buffer: ImageBuffer, k: int = 8) -> ImageBuffer:
    if k < 1:
        raise ValueError(f'k must be >= 1, got {k}')
    data = buffer.pixels.tobytes()
    pixels = [(float(data[i]), float(data[i + 1]), float(data[i + 2])) for i in range(0, len(data), CHANNELS)]
    if not pixels:
        return buffer.copy()

    sampled = deterministic_sample(pixels, min(MAX_SAMPLE_SIZE, len(pixels)))
    centroids = initialize_centroids(sampled, k)

    for _ in range(MAX_ITERATIONS):
        clusters: List[List[Color]] = [[] for _ in range(k)]
        for pixel in sampled:
            clusters[_nearest(pixel, centroids)].append(pixel)
        new_centroids = [_mean(cl) if cl else centroids[i] for i, cl in enumerate(clusters)]
        if all(_distance(o, n) <= CONVERGENCE_THRESHOLD for o, n in zip(centroids, new_centroids)):
            break
        centroids = new_centroids

    output = bytearray(len(data))
    for i, pixel in enumerate(pixels):
        r, g, b = centroids[_nearest(pixel, centroids)]
        idx = i * CHANNELS
        output[idx] = _round_half_up(r)
        output[idx + 1] = _round_half_up(g)
        output[idx + 2] = _round_half_up(b)
        output[idx + 3] = data[idx + 3]

    return _to_buffer(output, buffer.width, buffer.height)
