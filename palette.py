"""Palette quantization backed by Pillow.

A palette of at most 256 colors is trained on every ``sample``-th pixel with
median cut, then the whole frame is mapped onto it without dithering.
"""
from typing import Sequence

from PIL import Image

MAX_COLORS = 256


def _rgb_strip(rgb: bytes) -> Image.Image:
    return Image.frombytes("RGB", (len(rgb) // 3, 1), rgb)


def quantize(pixels: Sequence[int], sample: int = 10) -> tuple[list[int], list[int]]:
    """Return ``(color_table, indexes)`` for interleaved RGB ``pixels``.

    Lower ``sample`` values train on more pixels, which is slower but gives
    better colors. Frames too small to yield a full palette from the sampled
    pixels are trained on every pixel.
    """
    rgb = bytes(pixels[:len(pixels) - len(pixels) % 3])
    if not rgb:
        raise ValueError("No pixels to quantize")

    sample = max(sample, 1)
    if len(rgb) // (3 * sample) < MAX_COLORS:
        sample = 1
    training = rgb if sample == 1 else b"".join(
        rgb[k:k + 3] for k in range(0, len(rgb), 3 * sample))

    trained = _rgb_strip(training).quantize(
        colors=MAX_COLORS, method=Image.Quantize.MEDIANCUT, dither=Image.Dither.NONE)
    indexed = _rgb_strip(rgb).quantize(palette=trained, dither=Image.Dither.NONE)

    indexes = list(indexed.getdata())
    color_table = list(indexed.getpalette()[:3 * MAX_COLORS])
    # the table has to cover every index used by the frame
    needed = 3 * (max(indexes) + 1)
    if len(color_table) < needed:
        color_table.extend([0] * (needed - len(color_table)))
    return color_table, indexes
