"""
Terminal rendering of QR rasters as character-cell art.

This module turns a decoded grayscale QR raster into lines of block
characters that can be printed straight to a terminal, so that a setup
code can be scanned without ever writing an image to disk. The raster is
sampled in fixed-size blocks, each block is classified by how dark it is,
and the resulting character grid is optionally inverted and folded into
half-block characters before a fixed caption block is appended.

Functions
---------
downsample
    Convert a GrayscaleImage into a CharacterGrid by block sampling.
apply_color_mode
    Optionally invert the polarity of a CharacterGrid.
reduce_size
    Optionally merge row pairs into half-block characters.
append_captions
    Append the fixed instruction lines after the raster lines.
render_lines
    Write lines to an output stream and flush it once.
qr_text
    Run the whole pipeline and return plain text lines.
print_qr_text
    Run the whole pipeline and write the result to a stream.

Classes
-------
GrayscaleImage
    Read-only 2D intensity grid.
RenderConfig
    Immutable rendering configuration.
Symbol, ColorMode, SizeMode
    Glyph alphabet and mode selectors.
RasterLine, CaptionLine
    Tagged output lines.

Examples
--------
>>> import numpy as np
>>> img = GrayscaleImage(np.zeros((200, 200), dtype=np.uint8))
>>> lines = qr_text(img, RenderConfig(captions=False))
>>> len(lines), len(lines[0])
(50, 100)
>>> set(lines[0])
{'█'}
"""

from __future__ import annotations

import enum
import logging
import sys
from dataclasses import dataclass
from io import BytesIO
from typing import Iterable, Optional, TextIO, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

DEFAULT_TERMINAL_WIDTH = 100
DARK_THRESHOLD = 128  # intensities strictly below this count as dark


# ---------- Errors ----------

class QRTextError(Exception):
    """Base class for terminal QR rendering errors."""


class InvalidImageError(QRTextError, ValueError):
    """Raised when a raster has no pixels or is not two-dimensional."""


class DecodeError(QRTextError, RuntimeError):
    """Raised when a QR raster could not be produced or decoded."""


class OutputError(QRTextError, RuntimeError):
    """Raised when rendered lines could not be written or flushed."""


# ---------- Glyphs and modes ----------

class Symbol(str, enum.Enum):
    """
    Terminal glyphs used for rendered QR cells.

    Only ``FULL``, ``MEDIUM_SHADE``, ``LIGHT_SHADE`` and ``BLANK`` are
    produced by block classification. ``THIN_SHADE`` appears only after
    inversion and the half blocks only after mini-size reduction.
    """

    FULL = "█"
    MEDIUM_SHADE = "▓"
    LIGHT_SHADE = "▒"
    BLANK = " "
    THIN_SHADE = "░"
    UPPER_HALF = "▀"
    LOWER_HALF = "▄"

    @property
    def glyph(self) -> str:
        """
        Printable character for this symbol.

        Returns
        -------
        str
            Single character written to the terminal.
        """
        return self.value


class ColorMode(enum.Enum):
    """Polarity of rendered glyphs relative to the source raster."""

    DIRECT = "direct"
    INVERTED = "inverted"


class SizeMode(enum.Enum):
    """Whether row pairs are folded into half-block glyphs."""

    FULL = "full"
    MINI = "mini"


CharacterGrid = list[list[Symbol]]

DARK_SYMBOLS = frozenset(
    {Symbol.FULL, Symbol.MEDIUM_SHADE, Symbol.LIGHT_SHADE}
)

RASTER_GLYPHS = frozenset(symbol.value for symbol in Symbol)

# Not an involution: MEDIUM_SHADE and LIGHT_SHADE both end up as
# THIN_SHADE after two passes.
INVERSION_TABLE = {
    Symbol.FULL: Symbol.BLANK,
    Symbol.MEDIUM_SHADE: Symbol.THIN_SHADE,
    Symbol.LIGHT_SHADE: Symbol.MEDIUM_SHADE,
    Symbol.BLANK: Symbol.FULL,
}

CAPTIONS = (
    "",
    "Scan this QR code with your authenticator app.",
    "Keep it secret: anyone who scans it can generate your login codes!",
    "Tip: if the code looks cut off or wrapped, widen the terminal window.",
    "Tip: if it will not scan, zoom out (smaller font) or try mini/inverted mode.",
)


# ---------- Data model ----------

@dataclass(frozen=True, eq=False)
class GrayscaleImage:
    """
    Read-only grayscale raster.

    Parameters
    ----------
    pixels : numpy.ndarray
        Array of shape (height, width) with intensities in 0–255. Boolean
        arrays are treated as module masks (True is dark, mapped to 0;
        False to 255). Values of any other dtype are clipped and
        converted to uint8.

    Notes
    -----
    The stored array is a non-writeable view, so sampling never copies
    the caller's buffer and never modifies it. Zero-sized rasters are
    accepted here and rejected by ``downsample``.

    Raises
    ------
    InvalidImageError
        If `pixels` is not two-dimensional.
    """

    pixels: np.ndarray

    def __post_init__(self) -> None:
        arr = np.asarray(self.pixels)
        if arr.ndim != 2:
            raise InvalidImageError(
                f"grayscale raster must be 2D; got shape {arr.shape}"
            )
        if arr.dtype == bool:
            # Module mask: True is a dark module
            arr = np.where(arr, 0, 255).astype(np.uint8)
        elif arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
        view = arr.view()
        view.flags.writeable = False
        object.__setattr__(self, "pixels", view)

    @property
    def width(self) -> int:
        """
        Number of pixel columns.

        Returns
        -------
        int
            Second dimension of `pixels`.
        """
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        """
        Number of pixel rows.

        Returns
        -------
        int
            First dimension of `pixels`.
        """
        return int(self.pixels.shape[0])

    @classmethod
    def from_bytes(cls, width: int, height: int, data: bytes) -> GrayscaleImage:
        """
        Build an image from row-major 8-bit intensities.

        Raises
        ------
        InvalidImageError
            If ``len(data)`` does not equal ``width * height``.
        """
        if width < 0 or height < 0 or len(data) != width * height:
            raise InvalidImageError(
                f"expected {width}x{height} = {width * height} bytes, "
                f"got {len(data)}"
            )
        arr = np.frombuffer(data, dtype=np.uint8).reshape(height, width)
        return cls(arr)

    @classmethod
    def from_pil(cls, image: Image.Image) -> GrayscaleImage:
        """
        Build an image from any PIL image, converting it to mode 'L'.

        Parameters
        ----------
        image : PIL.Image.Image
            Source image in any mode Pillow can convert to grayscale.

        Returns
        -------
        GrayscaleImage
            Image holding the luminance of `image`.
        """
        return cls(np.asarray(image.convert("L"), dtype=np.uint8))

    @classmethod
    def from_png_bytes(cls, data: bytes) -> GrayscaleImage:
        """
        Decode PNG (or any Pillow-readable) bytes into a grayscale image.

        Raises
        ------
        DecodeError
            If Pillow cannot identify or decode the data.
        """
        try:
            with Image.open(BytesIO(data)) as img:
                return cls.from_pil(img)
        except (UnidentifiedImageError, OSError) as exc:
            raise DecodeError(f"could not decode QR image: {exc}") from exc


@dataclass(frozen=True)
class RasterLine:
    """A rendered row of QR glyphs."""

    text: str

    def __post_init__(self) -> None:
        stray = set(self.text) - RASTER_GLYPHS
        if stray:
            raise ValueError(
                f"raster line contains non-raster characters: {sorted(stray)!r}"
            )


@dataclass(frozen=True)
class CaptionLine:
    """Plain instructional text; never touched by raster transforms."""

    text: str


Line = Union[RasterLine, CaptionLine]


@dataclass(frozen=True)
class RenderConfig:
    """
    Immutable rendering configuration.

    Parameters
    ----------
    terminal_width : int, optional
        Target width, in columns, used to choose the sampling block size.
        The default is 100.
    color_mode : ColorMode or str, optional
        ``'direct'`` keeps polarity, ``'inverted'`` flips it. The value is
        normalized to a ColorMode. The default is ColorMode.DIRECT.
    size_mode : SizeMode or str, optional
        ``'full'`` keeps one row per block row, ``'mini'`` folds row pairs
        into half blocks. The default is SizeMode.FULL.
    captions : bool, optional
        Whether to append the instruction lines. The default is True.

    Raises
    ------
    ValueError
        If `terminal_width` is not a positive integer or a mode name is
        unknown.
    """

    terminal_width: int = DEFAULT_TERMINAL_WIDTH
    color_mode: ColorMode = ColorMode.DIRECT
    size_mode: SizeMode = SizeMode.FULL
    captions: bool = True

    def __post_init__(self) -> None:
        width = self.terminal_width
        if isinstance(width, bool) or not isinstance(width, int) or width < 1:
            raise ValueError("'terminal_width' must be a positive integer")

        object.__setattr__(
            self, "color_mode", _coerce_mode(ColorMode, self.color_mode)
        )
        object.__setattr__(
            self, "size_mode", _coerce_mode(SizeMode, self.size_mode)
        )


def _coerce_mode(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(repr(m.value) for m in enum_cls)
        raise ValueError(
            f"unknown {enum_cls.__name__} {value!r}; expected one of {choices}"
        ) from None


# ---------- Downsampling ----------

def block_scale(width: int, terminal_width: int) -> tuple[int, int]:
    """
    Sampling block size for an image of the given width.

    Returns
    -------
    tuple of int
        Pair (scale_x, scale_y). `scale_x` is never below 1, and
        `scale_y` is twice `scale_x` because terminal cells are about
        twice as tall as they are wide.
    """
    scale_x = max(1, width // terminal_width)
    return scale_x, 2 * scale_x


def classify(darkness: float) -> Symbol:
    """Map a darkness ratio in [0, 1] to a glyph. Thresholds are exclusive."""
    if darkness > 0.7:
        return Symbol.FULL
    if darkness > 0.4:
        return Symbol.MEDIUM_SHADE
    if darkness > 0.2:
        return Symbol.LIGHT_SHADE
    return Symbol.BLANK


def downsample(
    image: GrayscaleImage,
    terminal_width: int = DEFAULT_TERMINAL_WIDTH,
) -> CharacterGrid:
    """
    Convert a grayscale raster into a grid of glyphs by block sampling.

    The image is split into blocks of ``scale_x x scale_y`` pixels (see
    ``block_scale``). Each block is classified by the fraction of its
    pixels darker than ``DARK_THRESHOLD``.

    Parameters
    ----------
    image : GrayscaleImage
        Source raster.
    terminal_width : int, optional
        Target width in columns. The default is 100.

    Returns
    -------
    CharacterGrid
        ``ceil(height / scale_y)`` rows of ``ceil(width / scale_x)``
        symbols each.

    Raises
    ------
    InvalidImageError
        If the image has zero width or height.
    ValueError
        If `terminal_width` is less than 1.

    Notes
    -----
    Blocks on the right and bottom edges that extend past the image
    sample the last valid column/row instead, so every block has exactly
    ``scale_x * scale_y`` samples.
    """
    if image.width == 0 or image.height == 0:
        raise InvalidImageError(
            f"cannot render an empty raster ({image.width}x{image.height})"
        )
    if terminal_width < 1:
        raise ValueError("'terminal_width' must be a positive integer")

    scale_x, scale_y = block_scale(image.width, terminal_width)
    rows = -(-image.height // scale_y)
    cols = -(-image.width // scale_x)
    logger.debug(
        "Downsampling %dx%d raster with %dx%d blocks into %dx%d cells",
        image.width, image.height, scale_x, scale_y, cols, rows,
    )

    dark = image.pixels < DARK_THRESHOLD
    pad_y = rows * scale_y - image.height
    pad_x = cols * scale_x - image.width
    if pad_y or pad_x:
        # Clamp out-of-range samples to the last row/column
        dark = np.pad(dark, ((0, pad_y), (0, pad_x)), mode="edge")

    counts = dark.reshape(rows, scale_y, cols, scale_x).sum(axis=(1, 3))
    darkness = counts / (scale_x * scale_y)

    return [[classify(float(d)) for d in row] for row in darkness]


# ---------- Color mode ----------

def invert_symbol(symbol: Symbol) -> Symbol:
    """
    Substitute one glyph through ``INVERSION_TABLE``.

    Returns
    -------
    Symbol
        The inverted glyph, or `symbol` itself when it has no entry.
    """
    return INVERSION_TABLE.get(symbol, symbol)


def apply_color_mode(grid: CharacterGrid, mode: ColorMode) -> CharacterGrid:
    """
    Apply a color mode to a character grid.

    ``ColorMode.DIRECT`` returns a copy of the grid unchanged.
    ``ColorMode.INVERTED`` substitutes every glyph once through
    ``INVERSION_TABLE``; glyphs outside the table are kept.
    """
    if mode is ColorMode.DIRECT:
        return [list(row) for row in grid]
    return [[invert_symbol(s) for s in row] for row in grid]


def apply_color_mode_to_lines(
    lines: Iterable[Line],
    mode: ColorMode,
) -> list[Line]:
    """Line-wise color mode; caption lines pass through untouched."""
    lines = list(lines)
    if mode is ColorMode.DIRECT:
        return lines

    out: list[Line] = []
    for line in lines:
        if isinstance(line, RasterLine):
            text = "".join(invert_symbol(Symbol(ch)).glyph for ch in line.text)
            out.append(RasterLine(text))
        else:
            out.append(line)
    return out


# ---------- Size reduction ----------

def _merge_pair(top: Symbol, bottom: Symbol) -> Symbol:
    if top in DARK_SYMBOLS and bottom is Symbol.BLANK:
        return Symbol.UPPER_HALF
    if top is Symbol.BLANK and bottom in DARK_SYMBOLS:
        return Symbol.LOWER_HALF
    if top is bottom and top in DARK_SYMBOLS:
        return top
    return Symbol.BLANK


def reduce_size(grid: CharacterGrid, mode: SizeMode) -> CharacterGrid:
    """
    Apply a size mode to a character grid.

    ``SizeMode.FULL`` returns a copy of the grid unchanged.
    ``SizeMode.MINI`` merges rows two at a time into half-block glyphs,
    pairing a trailing odd row with a blank row, which yields
    ``ceil(len(grid) / 2)`` rows.
    """
    if mode is SizeMode.FULL:
        return [list(row) for row in grid]

    out: CharacterGrid = []
    for i in range(0, len(grid), 2):
        top = grid[i]
        if i + 1 < len(grid):
            bottom = grid[i + 1]
        else:
            bottom = [Symbol.BLANK] * len(top)
        out.append([_merge_pair(t, b) for t, b in zip(top, bottom)])
    return out


# ---------- Lines, captions and output ----------

def grid_to_lines(grid: CharacterGrid) -> list[RasterLine]:
    """
    Join each grid row into a RasterLine.

    Returns
    -------
    list of RasterLine
        One line per grid row, top to bottom.
    """
    return [RasterLine("".join(s.glyph for s in row)) for row in grid]


def append_captions(lines: Iterable[Line]) -> list[Line]:
    """Return `lines` followed by the fixed ``CAPTIONS`` block."""
    return list(lines) + [CaptionLine(text) for text in CAPTIONS]


def render_lines(
    lines: Iterable[Union[Line, str]],
    out: Optional[TextIO] = None,
) -> None:
    """
    Write lines to a text stream, one per line, then flush once.

    Parameters
    ----------
    lines : iterable of RasterLine, CaptionLine or str
        Lines to write, in order.
    out : TextIO, optional
        Destination stream. The default is ``sys.stdout``.

    Raises
    ------
    OutputError
        If the stream rejects a write or the final flush (for example a
        broken pipe or a closed stream).
    """
    if out is None:
        out = sys.stdout

    try:
        for line in lines:
            text = line if isinstance(line, str) else line.text
            out.write(text + "\n")
        out.flush()
    except (OSError, ValueError) as exc:
        raise OutputError(f"could not write QR code to output: {exc}") from exc


# ---------- Pipeline ----------

def build_lines(
    image: GrayscaleImage,
    config: Optional[RenderConfig] = None,
) -> list[Line]:
    """
    Run the rendering pipeline and return tagged lines.

    Stages run in a fixed order: downsample, color mode, size reduction,
    captions.
    """
    if config is None:
        config = RenderConfig()

    grid = downsample(image, config.terminal_width)
    grid = apply_color_mode(grid, config.color_mode)
    grid = reduce_size(grid, config.size_mode)
    logger.debug(
        "Rendered %d rows (%s, %s)",
        len(grid), config.color_mode.value, config.size_mode.value,
    )

    lines: list[Line] = list(grid_to_lines(grid))
    if config.captions:
        lines = append_captions(lines)
    return lines


def qr_text(
    image: GrayscaleImage,
    config: Optional[RenderConfig] = None,
) -> list[str]:
    """Render `image` and return the plain text lines."""
    return [line.text for line in build_lines(image, config)]


def print_qr_text(
    image: GrayscaleImage,
    config: Optional[RenderConfig] = None,
    out: Optional[TextIO] = None,
) -> None:
    """Render `image` and write it to `out` (``sys.stdout`` by default)."""
    render_lines(build_lines(image, config), out)
