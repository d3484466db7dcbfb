"""Animated GIF89a encoding.

``GIFEncoder`` builds the stream frame by frame into a ``ByteArray``. The
block writers are plain functions writing to any ``dest`` with a ``write``
method, so they can target an ``io.BytesIO`` as well.
"""
import io
import logging
import math
import struct
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Optional, Sequence, Union

from PIL import Image

import lzw_encode
import palette

logger = logging.getLogger(__name__)

DEFAULT_COMMENT = "Generated by gif_encode"
DEFAULT_WIDTH = 320
DEFAULT_HEIGHT = 240
COLOR_DEPTH = 8
MAX_SHORT = 0xFFFF
# ignored by set_frame_rate, kept for compatibility with jsgif
RESERVED_FRAME_RATE = 0xF

Quantizer = Callable[[Sequence[int], int], tuple[Sequence[int], Sequence[int]]]
Compressor = Callable[[int, int, Sequence[int], int, io.BufferedIOBase], None]


class GifEncodeError(Exception):
    """Base class of the encoder errors."""


class SequenceError(GifEncodeError):
    """Operation called in the wrong encoder state."""


class SinkWriteError(GifEncodeError):
    """Writing to the byte sink failed."""


class ConfigurationError(GifEncodeError, ValueError):
    """Setting value the GIF format cannot hold."""


class GifBlockType(IntEnum):
    EXTENSION = 0x21
    IMAGE_DESCRIPTOR = 0x2C
    TRAILER = 0x3B
    GRAPHIC_CONTROL = 0xF9
    COMMENT = 0xFE
    APPLICATION = 0xFF


class EncoderState(Enum):
    UNSTARTED = "unstarted"
    STARTED = "started"
    FINISHED = "finished"


@contextmanager
def _sink_write():
    try:
        yield
    except (TypeError, ValueError) as e:
        raise SinkWriteError(str(e)) from e


class ByteArray:
    """Append only byte buffer the encoder writes into."""

    def __init__(self):
        self._bin = bytearray()

    def __len__(self) -> int:
        return len(self._bin)

    def get_data(self) -> bytes:
        return bytes(self._bin)

    def write_byte(self, value: int):
        with _sink_write():
            self._bin.append(value)

    def write_utf_bytes(self, text: str):
        # one byte per character, so only Latin-1 text fits
        with _sink_write():
            self._bin.extend(text.encode("latin-1"))

    def write_bytes(self, array: Sequence[int], offset: int = 0, count: Optional[int] = None):
        """Append ``count`` values of ``array`` starting at ``offset``.

        ``count`` defaults to everything after ``offset``.
        """
        end = len(array) if count is None else offset + count
        with _sink_write():
            self._bin.extend(array[offset:end])

    def write(self, data: bytes) -> int:
        with _sink_write():
            self._bin.extend(data)
        return len(data)


@dataclass
class EncoderSettings:
    delay: int = 0
    dispose: int = -1
    repeat: int = -1
    transparent: Optional[int] = None
    comment: str = DEFAULT_COMMENT
    sample: int = 10


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _checked_delay(delay: int) -> int:
    if not 0 <= delay <= MAX_SHORT:
        raise ConfigurationError(f"Delay of {delay} centiseconds does not fit in 16 bits")
    return delay


def palette_size(n_colors: int) -> int:
    """Size field of a color table holding ``n_colors`` entries."""
    if n_colors <= 1:
        return 0
    return min(max(math.ceil(math.log2(n_colors)) - 1, 0), 7)


def write_header(dest: io.BufferedIOBase):
    dest.write(b"GIF89a")


def write_logical_screen_descriptor(dest: io.BufferedIOBase, width: int, height: int, pal_size: int):
    # global color table, color resolution 7, not sorted
    packed = 0x80 | 0x70 | pal_size
    dest.write(struct.pack("<HHBBB", width, height, packed, 0, 0))


def write_color_table(color_table: Sequence[int], pal_size: int, dest: io.BufferedIOBase):
    table_length = 3 * (2 << pal_size)
    if len(color_table) > table_length:
        raise ValueError("Too many colors in color table")
    dest.write(bytes(color_table))
    dest.write(bytes(table_length - len(color_table)))


def write_netscape_ext(repeat: int, dest: io.BufferedIOBase):
    dest.write(struct.pack("<BBB", GifBlockType.EXTENSION, GifBlockType.APPLICATION, 11))
    dest.write(b"NETSCAPE2.0")
    # loop sub-block, 0 repeats forever
    dest.write(struct.pack("<BBHB", 3, 1, repeat, 0))


def write_graphic_control_ext(dest: io.BufferedIOBase, *, disposal: int, transparent: bool,
                              delay: int, trans_index: int):
    packed = ((disposal & 7) << 2) | int(transparent)
    dest.write(struct.pack("<BBBB", GifBlockType.EXTENSION, GifBlockType.GRAPHIC_CONTROL, 4, packed))
    dest.write(struct.pack("<HBB", delay, trans_index & 0xFF, 0))


def write_comment_ext(comment: str, dest: io.BufferedIOBase):
    data = comment.encode("latin-1")
    if len(data) > 0xFF:
        raise ConfigurationError(f"Comment is {len(data)} bytes long, at most 255 fit in one block")
    dest.write(struct.pack("<BBB", GifBlockType.EXTENSION, GifBlockType.COMMENT, len(data)))
    dest.write(data)
    dest.write(struct.pack("<B", 0))


def write_image_descriptor(dest: io.BufferedIOBase, width: int, height: int, *,
                           local_pal_size: Optional[int] = None):
    """Write an image descriptor placed at 0, 0.

    Without ``local_pal_size`` the frame uses the global color table.
    """
    packed = 0 if local_pal_size is None else 0x80 | local_pal_size
    dest.write(struct.pack("<BHHHHB", GifBlockType.IMAGE_DESCRIPTOR, 0, 0, width, height, packed))


def write_trailer(dest: io.BufferedIOBase):
    dest.write(struct.pack("<B", GifBlockType.TRAILER))


def _rgba_data(pixels: Sequence) -> list[int]:
    """Flatten raw pixel data to interleaved RGBA values.

    Accepts either a flat RGBA sequence or a sequence of RGB/RGBA tuples.
    """
    if len(pixels) and isinstance(pixels[0], (tuple, list)):
        data = []
        for pixel in pixels:
            if len(pixel) == 3:
                data.extend((*pixel, 0xFF))
            else:
                data.extend(pixel[:4])
        return data
    return list(pixels)


class GIFEncoder:
    """Encoder for one animation session.

    Call ``start``, then ``add_frame`` for each frame and ``finish`` to write
    the trailer. The finished stream is available from ``stream``.
    """

    def __init__(self, settings: Optional[EncoderSettings] = None, *,
                 quantizer: Quantizer = palette.quantize, compressor: Compressor = lzw_encode.compress):
        self.settings = settings if settings is not None else EncoderSettings()
        self._quantizer = quantizer
        self._compressor = compressor

        self.width = DEFAULT_WIDTH
        self.height = DEFAULT_HEIGHT
        self.size_set = False
        self.state = EncoderState.UNSTARTED
        self.first_frame = True
        self._out = ByteArray()

        self.trans_index = 0
        self._image = None
        self._pixels = None
        self.indexed_pixels = None
        self.color_tab = None
        self.used_entry = []
        self.pal_size = 7

    @property
    def started(self) -> bool:
        return self.state is EncoderState.STARTED

    def set_delay(self, milliseconds: float):
        """Set the delay of the frame being built and all following ones."""
        self.settings.delay = _checked_delay(round_half_up(milliseconds / 10))

    def set_frame_rate(self, fps: float):
        if fps <= 0:
            raise ConfigurationError(f"Frame rate must be positive, got {fps}")
        if fps != RESERVED_FRAME_RATE:
            self.settings.delay = _checked_delay(round_half_up(100 / fps))

    def set_dispose(self, code: int):
        """Override the disposal method, negative codes keep the default.

        The default is 0 without a transparent color and 2 with one.
        """
        if code >= 0:
            self.settings.dispose = code

    def set_repeat(self, iterations: int):
        """Set how often the animation plays, 0 loops forever.

        Only has an effect before the first frame is added.
        """
        if iterations > MAX_SHORT:
            raise ConfigurationError(f"Repeat count {iterations} does not fit in 16 bits")
        if iterations >= 0:
            self.settings.repeat = iterations

    def set_transparent(self, color: Optional[int]):
        """Set the 0xRRGGBB color shown as transparent, or None.

        Quantization changes colors, so the closest palette entry of each
        frame becomes its transparent index.
        """
        self.settings.transparent = color

    def set_comment(self, comment: str):
        try:
            length = len(comment.encode("latin-1"))
        except UnicodeEncodeError as e:
            raise ConfigurationError("Comment must only contain Latin-1 characters") from e
        if length > 0xFF:
            raise ConfigurationError(f"Comment is {length} bytes long, at most 255 fit in one block")
        self.settings.comment = comment

    def set_quality(self, quality: int):
        """Set the quantizer sample factor.

        The palette is trained on every ``quality``-th pixel, so 1 gives the
        best colors and is slowest. 10 is the default.
        """
        self.settings.sample = max(quality, 1)

    def set_size(self, width: int, height: int):
        if self.started and not self.first_frame:
            return
        self.width = width if width >= 1 else DEFAULT_WIDTH
        self.height = height if height >= 1 else DEFAULT_HEIGHT
        self.size_set = True

    def set_properties(self, started: bool, first_frame: bool):
        """Force the session flags.

        After ``cont`` this encodes a later frame of an animation on its own,
        with a local color table and no global structures.
        """
        self.state = EncoderState.STARTED if started else EncoderState.UNSTARTED
        self.first_frame = first_frame

    def reset(self):
        self.trans_index = 0
        self._image = None
        self._pixels = None
        self.indexed_pixels = None
        self.color_tab = None
        self.used_entry = []
        self.first_frame = True

    def start(self) -> bool:
        """Start a new stream with the GIF header, returns False if that fails."""
        self._open()
        try:
            write_header(self._out)
        except SinkWriteError:
            logger.exception("Failed to write GIF header")
            self.state = EncoderState.UNSTARTED
            return False
        logger.debug("Started GIF stream")
        return True

    def cont(self) -> bool:
        """Start a stream without header, to continue one written elsewhere."""
        self._open()
        logger.debug("Continuing GIF stream")
        return True

    def _open(self):
        self.reset()
        self._out = ByteArray()
        self.state = EncoderState.STARTED

    def stream(self) -> ByteArray:
        return self._out

    def add_frame(self, image: Union[Image.Image, Sequence], is_image_data: bool = False) -> bool:
        """Quantize a frame and write its blocks.

        ``image`` is a Pillow image, or with ``is_image_data`` raw pixel data
        (flat RGBA values or RGB/RGBA tuples) matching the configured size.
        Returns False if encoding failed; the stream is unusable then.
        """
        if image is None or not self.started:
            raise SequenceError("Please call start before calling add_frame")

        try:
            self._image = self._frame_data(image, is_image_data)
            self._get_image_pixels()
            self._analyze_pixels()

            if self.first_frame:
                write_logical_screen_descriptor(self._out, self.width, self.height, self.pal_size)
                write_color_table(self.color_tab, self.pal_size, self._out)
                if self.settings.repeat >= 0:
                    write_netscape_ext(self.settings.repeat, self._out)

            self._write_graphic_ctrl_ext()
            if self.settings.comment:
                write_comment_ext(self.settings.comment, self._out)

            if self.first_frame:
                write_image_descriptor(self._out, self.width, self.height)
            else:
                write_image_descriptor(self._out, self.width, self.height, local_pal_size=self.pal_size)
                write_color_table(self.color_tab, self.pal_size, self._out)

            self._compressor(self.width, self.height, self.indexed_pixels, COLOR_DEPTH, self._out)
            self.first_frame = False
        except Exception:
            logger.exception("Failed to add frame")
            return False
        return True

    def finish(self) -> bool:
        """Write the trailer, without it the stream is not a valid GIF."""
        if not self.started:
            return False

        self.state = EncoderState.FINISHED
        try:
            write_trailer(self._out)
        except SinkWriteError:
            logger.exception("Failed to write GIF trailer")
            return False
        logger.debug("Finished GIF stream of %d bytes", len(self._out))
        return True

    def find_closest(self, color: int) -> int:
        """Index of the used palette entry closest to the 0xRRGGBB color.

        Returns -1 before any palette exists.
        """
        if self.color_tab is None:
            return -1
        r = (color >> 16) & 0xFF
        g = (color >> 8) & 0xFF
        b = color & 0xFF

        closest = 0
        min_distance = 256 * 256 * 256
        for index in range(len(self.color_tab) // 3):
            if index >= len(self.used_entry) or not self.used_entry[index]:
                continue
            dr = r - (self.color_tab[3 * index] & 0xFF)
            dg = g - (self.color_tab[3 * index + 1] & 0xFF)
            db = b - (self.color_tab[3 * index + 2] & 0xFF)
            distance = dr * dr + dg * dg + db * db
            if distance < min_distance:
                min_distance = distance
                closest = index
        return closest

    def _frame_data(self, image: Union[Image.Image, Sequence], is_image_data: bool) -> list[int]:
        if is_image_data or not isinstance(image, Image.Image):
            if not self.size_set:
                raise ConfigurationError("Call set_size before adding raw pixel data")
            data = _rgba_data(image)
        else:
            if not self.size_set:
                self.set_size(*image.size)
            if image.size != (self.width, self.height):
                image = image.crop((0, 0, self.width, self.height))
            data = list(image.convert("RGBA").tobytes())

        expected = self.width * self.height * 4
        if len(data) < expected:
            raise ConfigurationError(f"Frame has {len(data) // 4} pixels, expected {self.width * self.height}")
        return data

    def _get_image_pixels(self):
        """Extract interleaved RGB values, dropping alpha."""
        data = self._image
        pixels = []
        for offset in range(0, self.width * self.height * 4, 4):
            pixels.extend(data[offset:offset + 3])
        self._pixels = pixels

    def _analyze_pixels(self):
        color_tab, indexed_pixels = self._quantizer(self._pixels, self.settings.sample)
        self.color_tab = list(color_tab)
        self.indexed_pixels = list(indexed_pixels)

        self.used_entry = [False] * (len(self.color_tab) // 3)
        for index in self.indexed_pixels:
            self.used_entry[index] = True

        self._image = None
        self._pixels = None
        self.pal_size = palette_size(len(self.color_tab) // 3)

        if self.settings.transparent is not None:
            self.trans_index = self.find_closest(self.settings.transparent)

    def _write_graphic_ctrl_ext(self):
        transparent = self.settings.transparent is not None
        # clear the frame when it has transparent pixels
        disposal = 2 if transparent else 0
        if self.settings.dispose >= 0:
            disposal = self.settings.dispose & 7
        write_graphic_control_ext(self._out, disposal=disposal, transparent=transparent,
                                  delay=self.settings.delay, trans_index=self.trans_index)
