import io
import struct
from typing import Iterable, Iterator, Sequence

MAX_CODE_LENGTH = 12
MAX_TABLE_SIZE = 1 << MAX_CODE_LENGTH
SUB_BLOCK_SIZE = 0xFF


def _fresh_table(clear_code: int) -> dict[bytes, int]:
    return {bytes((i,)): i for i in range(clear_code)}


def lzw_codes(pixels: Iterable[int], init_code_size: int) -> Iterator[tuple[int, int]]:
    """Yield ``(code, code_length)`` pairs for the GIF flavour of LZW."""
    clear_code = 1 << init_code_size
    end_code = clear_code + 1

    table = _fresh_table(clear_code)
    next_code = end_code + 1
    code_length = init_code_size + 1

    yield clear_code, code_length

    pixels = iter(pixels)
    first = next(pixels, None)
    if first is None:
        yield end_code, code_length
        return

    prefix = bytes((first,))
    for index in pixels:
        candidate = prefix + bytes((index,))
        if candidate in table:
            prefix = candidate
            continue

        yield table[prefix], code_length
        if next_code >= 1 << code_length and code_length < MAX_CODE_LENGTH:
            code_length += 1

        if next_code < MAX_TABLE_SIZE:
            table[candidate] = next_code
            next_code += 1
        else:
            yield clear_code, code_length
            table = _fresh_table(clear_code)
            next_code = end_code + 1
            code_length = init_code_size + 1
        prefix = bytes((index,))

    yield table[prefix], code_length
    if next_code >= 1 << code_length and code_length < MAX_CODE_LENGTH:
        code_length += 1
    yield end_code, code_length


def pack_codes(codes: Iterable[tuple[int, int]]) -> bytes:
    """Pack variable length codes, least significant bit first."""
    with io.BytesIO() as packed:
        accumulator = 0
        bit_count = 0
        for code, code_length in codes:
            accumulator |= code << bit_count
            bit_count += code_length
            while bit_count >= 8:
                packed.write(struct.pack("<B", accumulator & 0xFF))
                accumulator >>= 8
                bit_count -= 8
        if bit_count:
            packed.write(struct.pack("<B", accumulator & 0xFF))
        return packed.getvalue()


def write_sub_blocks(data: bytes, dest: io.BufferedIOBase):
    for offset in range(0, len(data), SUB_BLOCK_SIZE):
        block = data[offset:offset + SUB_BLOCK_SIZE]
        dest.write(struct.pack("<B", len(block)))
        dest.write(block)
    dest.write(struct.pack("<B", 0))


def compress(width: int, height: int, pixels: Sequence[int], color_depth: int, dest: io.BufferedIOBase):
    """Write the image data block of one frame.

    That is the LZW minimum code size, the compressed indexes split into
    sub-blocks and the block terminator.
    """
    pixel_count = width * height
    if len(pixels) < pixel_count:
        raise ValueError(f"Expected {pixel_count} indexed pixels, got {len(pixels)}")

    init_code_size = max(2, color_depth)
    dest.write(struct.pack("<B", init_code_size))
    write_sub_blocks(pack_codes(lzw_codes(pixels[:pixel_count], init_code_size)), dest)
