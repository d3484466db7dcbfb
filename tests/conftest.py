"""Shared fixtures.

Most tests swap the Pillow quantizer for an exact quantizer so palettes and indexes are
predictable, and walk the produced stream block by block.
"""
import struct
from collections import namedtuple

import pytest

from gif_encode import GIFEncoder

Block = namedtuple("Block", "kind info data")


def exact_quantize(pixels, sample):
    """Palette of the distinct colors in order of appearance."""
    palette = []
    lookup = {}
    indexes = []
    for k in range(0, len(pixels), 3):
        color = tuple(pixels[k:k + 3])
        if color not in lookup:
            lookup[color] = len(lookup)
            palette.extend(color)
        indexes.append(lookup[color])
    return palette, indexes


def _read_sub_blocks(data, pos):
    blocks = []
    while True:
        size = data[pos]
        pos += 1
        if size == 0:
            return blocks, pos
        blocks.append(bytes(data[pos:pos + size]))
        pos += size


def parse_blocks(data):
    """Split a GIF stream into a list of ``Block`` tuples."""
    assert data[:6] == b"GIF89a"
    blocks = [Block("header", None, data[:6])]
    width, height, packed, _, _ = struct.unpack("<HHBBB", data[6:13])
    blocks.append(Block("lsd", (width, height, packed), data[6:13]))
    pos = 13
    if packed & 0x80:
        size = 3 * (2 << (packed & 7))
        blocks.append(Block("gct", None, data[pos:pos + size]))
        pos += size

    while pos < len(data):
        introducer = data[pos]
        if introducer == 0x21:
            label = data[pos + 1]
            sub_blocks, pos = _read_sub_blocks(data, pos + 2)
            blocks.append(Block("ext", label, sub_blocks))
        elif introducer == 0x2C:
            descriptor = struct.unpack("<HHHHB", data[pos + 1:pos + 10])
            blocks.append(Block("image", descriptor, data[pos:pos + 10]))
            pos += 10
            packed = descriptor[4]
            if packed & 0x80:
                size = 3 * (2 << (packed & 7))
                blocks.append(Block("lct", None, data[pos:pos + size]))
                pos += size
            min_code_size = data[pos]
            sub_blocks, pos = _read_sub_blocks(data, pos + 1)
            blocks.append(Block("pixels", min_code_size, b"".join(sub_blocks)))
        elif introducer == 0x3B:
            blocks.append(Block("trailer", None, data[pos:pos + 1]))
            pos += 1
            assert pos == len(data), "data after trailer"
        else:
            raise AssertionError(f"unexpected block 0x{introducer:02x} at {pos}")
    return blocks


def block_names(blocks):
    return [f"ext:{block.info:02x}" if block.kind == "ext" else block.kind for block in blocks]


@pytest.fixture
def parse_gif():
    return parse_blocks


@pytest.fixture
def names():
    return block_names


@pytest.fixture
def encoder():
    """Encoder with the exact quantizer, no comment and a 2x2 canvas."""
    enc = GIFEncoder(quantizer=exact_quantize)
    enc.set_comment("")
    enc.set_size(2, 2)
    return enc


@pytest.fixture
def red_green():
    return [(255, 0, 0), (0, 255, 0), (0, 255, 0), (255, 0, 0)]


@pytest.fixture
def blue_white():
    return [(0, 0, 255), (255, 255, 255), (0, 0, 255), (0, 0, 255)]


@pytest.fixture
def exact_quantizer():
    return exact_quantize
