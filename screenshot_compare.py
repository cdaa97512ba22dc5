#!/usr/bin/env python3

"""
Compare two screenshots and quantify their difference

This module scores the visual difference between two images of the same size
as a single number between 0.0 (identical) and 1.0 (totally different), and
reports it as a percentage and as the process exit code, so it can be used as
a pass/fail check in automated screenshot tests.

Only the alpha channel of the reference image is considered: transparent
regions of the reference image match anything in the base image.

Requirements
============

You'll need to install the following Python packages to use this tool:

    pip install Pillow numpy typing_extensions

Bugs
====

The normalization constant is tuned for RGB and reused for Y'UV, so scores in
the two color spaces are not directly comparable.

---

Copyright (c) 2020, Crown Copyright (Government Digital Service)
"""

import enum
import json
import logging
import re
import sys
import threading
import time
from argparse import (
    ArgumentParser,
    ArgumentTypeError,
    Namespace,
    RawDescriptionHelpFormatter,
)
from datetime import timedelta
from pathlib import Path
from typing import (
    Callable,
    Dict,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

import numpy as np
from PIL import Image, UnidentifiedImageError
from typing_extensions import TypedDict

T = TypeVar("T")

# BT.601 luma weights
WR = 0.299
WG = 0.587
WB = 0.114

MAX_ALPHA = 0xFFFF

# rows converted or scored at once, bounds the size of temporary arrays
BLOCK_ROWS = 128

# distance of pure black to pure white in 16-bit RGB, sqrt(3) * 0xFFFF
NORMALIZATION = 113510.0

# scores come out systematically low, this compensates for it
ROUNDING_ERROR_FACTOR = 1.25

EXIT_INVALID = 101
EXIT_TIMEOUT = 102

EPILOG = """\
<S> matches '\\d+[ismh]'
  is a duration specifier. The prefix defines the value.
  The suffix defines the unit. Examples:
    '600i'   600 milliseconds       '2s'    2 seconds
    '1m'     1 minute               '24h'   24 hours
  A number without suffix is read as seconds.

remarks:
  Y'UV resembles the perception of colors by the eye better than RGB.
  Only the alpha channel of the reference image is considered.
  Scoring uses 64-bit floating point numbers, so it is subject to
  floating point rounding errors.

return code:
  0       no differences (every pixel has same RGB value)
  1-99    difference percentage
  100     high difference
  101     invalid arguments, unreadable image or dimensions do not correspond
  102     timeout reached
"""


class ColorSpace(enum.Enum):
    RGB = "RGB"
    YUV = "Y'UV"

    def __str__(self) -> str:
        return self.value


class State(enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    COMPARING = "comparing"
    COMPLETED = "completed"
    TIMED_OUT = "timed out"
    REJECTED = "rejected"


class Outcome(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed out"


class CompareError(Exception):
    exit_code = EXIT_INVALID


class DecodeError(CompareError):
    pass


class DimensionMismatch(CompareError):
    pass


class CorruptPixelError(ArithmeticError):
    """An alpha fraction outside of [0, 1], i.e. broken channel data"""


class Settings(NamedTuple):
    base_img: Path
    ref_img: Path
    color_space: ColorSpace = ColorSpace.RGB
    timeout: timedelta = timedelta(0)
    wait: timedelta = timedelta(0)
    jobs: int = 1


class LoadedImage(NamedTuple):
    # premultiplied 16-bit RGBA, shape (height, width, 4), read-only
    pixels: np.ndarray
    width: int
    height: int
    format: Optional[str]


class Difference(NamedTuple):
    score: float
    min_value: float = 0.0
    max_value: float = 1.0
    rounding_error_factor: float = ROUNDING_ERROR_FACTOR

    @property
    def percent(self) -> float:
        return 100 * (self.score - self.min_value) / (self.max_value - self.min_value)

    @property
    def exit_code(self) -> int:
        """
        >>> Difference(0.0).exit_code
        0
        >>> Difference(0.4269).exit_code
        42
        >>> Difference(1.0).exit_code
        100
        """
        return min(max(int(self.percent), 0), 100)


class Report(TypedDict):
    base: str
    reference: str
    color_space: str
    outcome: str
    percentage: Optional[float]
    runtime: float


#
# Durations
#


DURATION_UNITS = {
    "i": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}

DURATION_RE = re.compile(r"(?P<value>\d+)(?P<unit>[ismh]?)")

# longest wait threading.Timer and time.sleep accept
MAX_DURATION = timedelta(seconds=threading.TIMEOUT_MAX)


def parse_duration(s: str) -> timedelta:
    """Read a duration specifier like '12s'

    >>> parse_duration("500i")
    datetime.timedelta(microseconds=500000)
    >>> parse_duration("30m")
    datetime.timedelta(seconds=1800)
    >>> parse_duration("5")
    datetime.timedelta(seconds=5)
    >>> parse_duration("5x")
    Traceback (most recent call last):
    ...
    ValueError: invalid duration specifier; expected integer and one of 'ismh'; got '5x'
    """
    error = ValueError(
        f"invalid duration specifier; expected integer and one of 'ismh'; got {s!r}"
    )
    m = DURATION_RE.fullmatch(s.strip().lower())
    if not m:
        raise error
    unit = DURATION_UNITS[m["unit"] or "s"]
    try:
        d = int(m["value"]) * unit
    except OverflowError:
        raise error
    if d > MAX_DURATION:
        raise ValueError(f"duration {s!r} is longer than the maximum of {MAX_DURATION}")
    return d


#
# Decoding
#


def load_image(path: Union[str, Path]) -> LoadedImage:
    try:
        with Image.open(path) as im:
            format = im.format
            rgba = np.asarray(im.convert("RGBA"))
    except (OSError, UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise DecodeError(f"could not read image {str(path)!r}: {e}") from e

    # widen to 16 bits and premultiply, like most image libraries hand it out
    height, width = rgba.shape[:2]
    pixels = np.empty(rgba.shape, dtype=np.uint16)
    for start, stop in row_blocks(0, height):
        block = rgba[start:stop].astype(np.uint32) * 0x101
        block[..., :3] = block[..., :3] * block[..., 3:] // MAX_ALPHA
        pixels[start:stop] = block
    pixels.flags.writeable = False

    logging.debug(f"{format} image ({width}×{height}) read from {path}")
    return LoadedImage(pixels, width, height, format)


def load_pair(base_img: Path, ref_img: Path) -> Tuple[LoadedImage, LoadedImage]:
    base = load_image(base_img)
    ref = load_image(ref_img)
    if (base.width, base.height) != (ref.width, ref.height):
        raise DimensionMismatch(
            "image dimensions do not correspond; "
            f"got {base.width}×{base.height} (base) "
            f"and {ref.width}×{ref.height} (ref)"
        )
    return base, ref


#
# Color model
#

Channels = Tuple[np.ndarray, np.ndarray, np.ndarray]


def to_straight(r, g, b, a) -> Tuple[np.ndarray, ...]:
    """Undo alpha premultiplication of 16-bit channels

    Transparent pixels become black, not NaN.

    >>> [float(c) for c in to_straight(0x7FFF, 0, 0, 0x7FFF)]
    [65535.0, 0.0, 0.0, 32767.0]
    >>> [float(c) for c in to_straight(0, 0, 0, 0)]
    [0.0, 0.0, 0.0, 0.0]
    """
    a = np.asarray(a, dtype=np.float64)
    opaque = a != 0

    def unpremultiply(c):
        c = np.asarray(c, dtype=np.float64) * MAX_ALPHA
        return np.divide(c, a, out=np.zeros(np.broadcast(c, a).shape), where=opaque)

    return unpremultiply(r), unpremultiply(g), unpremultiply(b), a


def to_rgb(r, g, b) -> Channels:
    return r, g, b


def to_yuv(r, g, b) -> Channels:
    """https://en.wikipedia.org/wiki/YUV#SDTV_with_BT.601"""
    y_ = WR * r + WG * g + WB * b
    return y_, 0.492 * (b - y_), 0.877 * (r - y_)


COLOR_MODELS: Dict[ColorSpace, Callable[..., Channels]] = {
    ColorSpace.RGB: to_rgb,
    ColorSpace.YUV: to_yuv,
}


#
# Scoring
#


def pixel_distance(
    color_space: ColorSpace,
    base: Channels,
    ref: Channels,
    *,
    normalization: float = NORMALIZATION,
) -> np.ndarray:
    """Euclidean distance of two straight RGB pixels in `color_space`

    The same normalization is used for every color space.

    >>> black, white = (0, 0, 0), (0xFFFF, 0xFFFF, 0xFFFF)
    >>> float(pixel_distance(ColorSpace.RGB, black, white).round(4))
    1.0
    >>> float(pixel_distance(ColorSpace.YUV, black, white).round(3))
    0.577
    """
    to_model = COLOR_MODELS[color_space]
    x = to_model(*(np.asarray(c, dtype=np.float64) for c in base))
    y = to_model(*(np.asarray(c, dtype=np.float64) for c in ref))
    squares = sum((u - v) ** 2 for u, v in zip(x, y))
    return np.sqrt(squares) / normalization


def scan_rows(
    color_space: ColorSpace,
    base: LoadedImage,
    ref: LoadedImage,
    start: int,
    stop: int,
    *,
    normalization: float = NORMALIZATION,
) -> Tuple[float, int]:
    """Sum up alpha-weighted pixel distances of rows `start` to `stop`

    Returns the sum and the number of pixels it covers.
    """
    r1, g1, b1, _ = to_straight(*np.moveaxis(base.pixels[start:stop], -1, 0))
    r2, g2, b2, a2 = to_straight(*np.moveaxis(ref.pixels[start:stop], -1, 0))
    d = pixel_distance(
        color_space, (r1, g1, b1), (r2, g2, b2), normalization=normalization
    )

    # NOTE only the alpha channel of the reference image is considered
    alpha = a2 / MAX_ALPHA
    if alpha.size and (alpha.min() < 0.0 or alpha.max() > 1.0):
        bad = alpha[(alpha < 0.0) | (alpha > 1.0)][0]
        raise CorruptPixelError(
            f"alpha fraction {bad} outside of [0, 1] in rows {start}-{stop}"
        )

    return float((d * alpha).sum()), int(d.size)


def row_ranges(height: int, jobs: int) -> List[Tuple[int, int]]:
    """Split `height` rows into at most `jobs` contiguous ranges

    >>> row_ranges(10, 3)
    [(0, 4), (4, 7), (7, 10)]
    >>> row_ranges(2, 4)
    [(0, 1), (1, 2)]
    >>> row_ranges(0, 2)
    []
    """
    jobs = max(1, min(jobs, height))
    size, rest = divmod(height, jobs)
    ranges = []
    start = 0
    for i in range(jobs if height else 0):
        stop = start + size + (1 if i < rest else 0)
        ranges.append((start, stop))
        start = stop
    return ranges


def row_blocks(
    start: int, stop: int, block_rows: int = BLOCK_ROWS
) -> List[Tuple[int, int]]:
    """
    >>> row_blocks(0, 300)
    [(0, 128), (128, 256), (256, 300)]
    >>> row_blocks(10, 20, 8)
    [(10, 18), (18, 20)]
    """
    return [(lo, min(lo + block_rows, stop)) for lo in range(start, stop, block_rows)]


def scan_range(
    color_space: ColorSpace,
    base: LoadedImage,
    ref: LoadedImage,
    start: int,
    stop: int,
    *,
    block_rows: int = BLOCK_ROWS,
    normalization: float = NORMALIZATION,
) -> Tuple[float, int]:
    """Like scan_rows(), but never more than `block_rows` rows at a time"""
    total, count = 0.0, 0
    for lo, hi in row_blocks(start, stop, block_rows):
        t, c = scan_rows(color_space, base, ref, lo, hi, normalization=normalization)
        total += t
        count += c
    return total, count


def scan(
    color_space: ColorSpace,
    base: LoadedImage,
    ref: LoadedImage,
    *,
    jobs: int = 1,
    block_rows: int = BLOCK_ROWS,
    normalization: float = NORMALIZATION,
) -> Tuple[float, int]:
    ranges = row_ranges(base.height, jobs)
    if len(ranges) <= 1:
        return scan_range(
            color_space,
            base,
            ref,
            0,
            base.height,
            block_rows=block_rows,
            normalization=normalization,
        )

    # every worker owns exactly one slot, the slots are merged after joining
    partials: List[Union[Tuple[float, int], BaseException, None]] = [None] * len(
        ranges
    )

    def work(i: int, start: int, stop: int) -> None:
        logging.debug(f"scanning rows {start}-{stop}")
        try:
            partials[i] = scan_range(
                color_space,
                base,
                ref,
                start,
                stop,
                block_rows=block_rows,
                normalization=normalization,
            )
        except Exception as e:
            partials[i] = e  # re-raised once every worker is done

    workers = [
        threading.Thread(target=work, args=(i, *r), name=f"rows-{i}", daemon=True)
        for i, r in enumerate(ranges)
    ]
    for w in workers:
        w.start()
    for w in workers:
        w.join()

    total, count = 0.0, 0
    for p in partials:
        if isinstance(p, BaseException):
            raise p
        assert p is not None
        total += p[0]
        count += p[1]
    return total, count


def aggregate(
    total: float,
    count: int,
    *,
    rounding_error_factor: float = ROUNDING_ERROR_FACTOR,
) -> Difference:
    """Turn a sum of pixel distances into a score in [0, 1]

    >>> aggregate(30.0, 100)
    Difference(score=0.375, min_value=0.0, max_value=1.0, rounding_error_factor=1.25)
    >>> aggregate(100.0, 100).score
    1.0
    """
    diff = Difference(0.0, rounding_error_factor=rounding_error_factor)
    if not count:
        # nothing to compare, nothing differs
        return diff
    score = total / count * rounding_error_factor
    return diff._replace(score=min(max(score, diff.min_value), diff.max_value))


def compare_images(
    settings: Settings,
    *,
    normalization: float = NORMALIZATION,
    rounding_error_factor: float = ROUNDING_ERROR_FACTOR,
) -> Difference:
    """Decode, validate, scan and score two images, without any deadline"""
    base, ref = load_pair(settings.base_img, settings.ref_img)
    total, count = scan(
        settings.color_space,
        base,
        ref,
        jobs=settings.jobs,
        normalization=normalization,
    )
    return aggregate(total, count, rounding_error_factor=rounding_error_factor)


#
# Timeouts
#


class ResultSlot:
    """Holds the outcome of a race, written at most once

    >>> slot = ResultSlot()
    >>> slot.settle(Outcome.COMPLETED, 0.5)
    True
    >>> slot.settle(Outcome.TIMED_OUT)
    False
    >>> slot.wait()
    (<Outcome.COMPLETED: 'completed'>, 0.5)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._settled = threading.Event()
        self._outcome: Optional[Outcome] = None
        self._value = None
        self._error: Optional[BaseException] = None

    def settle(
        self,
        outcome: Outcome,
        value=None,
        error: Optional[BaseException] = None,
    ) -> bool:
        with self._lock:
            if self._settled.is_set():
                logging.debug(f"discarding {outcome.value} result, race is decided")
                return False
            self._outcome, self._value, self._error = outcome, value, error
            self._settled.set()
        return True

    def wait(self) -> Tuple[Outcome, object]:
        self._settled.wait()
        if self._error is not None:
            raise self._error
        assert self._outcome is not None
        return self._outcome, self._value


def race(task: Callable[[], T], timeout: timedelta) -> Tuple[Outcome, Optional[T]]:
    """Run `task` against a deadline; a zero `timeout` means no deadline

    Whatever finishes first decides the outcome. A task that loses keeps
    running on its daemon thread but its result is thrown away.

    >>> race(lambda: 42, timedelta(0))
    (<Outcome.COMPLETED: 'completed'>, 42)
    """
    slot = ResultSlot()

    def work() -> None:
        try:
            value = task()
        except Exception as e:
            slot.settle(Outcome.FAILED, error=e)
        else:
            slot.settle(Outcome.COMPLETED, value)

    threading.Thread(target=work, name="compare", daemon=True).start()

    timer = None
    if timeout > timedelta(0):
        timer = threading.Timer(
            timeout.total_seconds(), slot.settle, args=(Outcome.TIMED_OUT,)
        )
        timer.daemon = True
        timer.start()

    try:
        outcome, value = slot.wait()
    finally:
        if timer is not None:
            timer.cancel()
    if outcome is Outcome.TIMED_OUT:
        return outcome, None
    return outcome, value  # type: ignore


class Comparison:
    """One run of the comparison, from waiting to a final state

    The timeout clock starts once the wait is over, so it covers decoding
    the images as well as scoring them.
    """

    def __init__(self, settings: Settings, **constants: float) -> None:
        self.settings = settings
        self.constants = constants
        self.state = State.IDLE
        self.difference: Optional[Difference] = None

    def _enter(self, state: State) -> None:
        logging.debug(f"comparison {self.state.value} -> {state.value}")
        self.state = state

    def run(self) -> Optional[Difference]:
        if self.state is not State.IDLE:
            raise RuntimeError(f"comparison already {self.state.value}")

        if self.settings.wait > timedelta(0):
            self._enter(State.WAITING)
            time.sleep(self.settings.wait.total_seconds())

        self._enter(State.COMPARING)
        try:
            outcome, diff = race(
                lambda: compare_images(self.settings, **self.constants),
                self.settings.timeout,
            )
        except (CompareError, CorruptPixelError):
            self._enter(State.REJECTED)
            raise

        if outcome is Outcome.TIMED_OUT:
            self._enter(State.TIMED_OUT)
            return None
        self._enter(State.COMPLETED)
        self.difference = diff
        return diff


#
# Command line
#


class _ArgumentParser(ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID, f"{self.prog}: invalid arguments: {message}\n")


def duration(s: str) -> timedelta:
    try:
        return parse_duration(s)
    except ValueError as e:
        raise ArgumentTypeError(str(e))


def positive_int(s: str) -> int:
    n = int(s)
    if n < 1:
        raise ArgumentTypeError(f"expected a positive integer; got {s!r}")
    return n


def parse_arguments(argv: Optional[Sequence[str]] = None) -> Namespace:
    parser = _ArgumentParser(
        prog="screenshot-compare",
        description="Compare two images and quantify their difference.",
        epilog=EPILOG,
        formatter_class=RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "base", type=Path, help="base image (transparency is ignored)"
    )
    parser.add_argument(
        "ref", type=Path, help="reference image (may contain transparency)"
    )
    parser.add_argument(
        "--colors",
        type=ColorSpace,
        choices=list(ColorSpace),
        default=ColorSpace.RGB,
        metavar="<colorspace>",
        help="color space, one of \"RGB\" (default) or \"Y'UV\"",
    )
    parser.add_argument(
        "--timeout",
        type=duration,
        default=timedelta(0),
        metavar="<S>",
        help="maximum runtime for comparing, '0s' (default) means infinity",
    )
    parser.add_argument(
        "--wait",
        type=duration,
        default=timedelta(0),
        metavar="<S>",
        help="how long to wait before reading the image files",
    )
    parser.add_argument(
        "--jobs",
        "-j",
        type=positive_int,
        default=1,
        help="number of threads scanning rows in parallel",
    )
    parser.add_argument("--format", choices=("plain", "json"), default="plain")
    parser.add_argument("--verbose", "-v", action="count", default=0)
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    start = time.monotonic()
    args = parse_arguments(argv)

    if args.verbose >= 1:
        logging.basicConfig(level="DEBUG")
        logging.getLogger("PIL").setLevel("WARNING")
    if args.verbose >= 2:
        logging.getLogger("PIL").setLevel("DEBUG")

    settings = Settings(
        base_img=args.base,
        ref_img=args.ref,
        color_space=args.colors,
        timeout=args.timeout,
        wait=args.wait,
        jobs=args.jobs,
    )
    comparison = Comparison(settings)
    try:
        diff = comparison.run()
    except CompareError as e:
        print(e, file=sys.stderr)
        sys.exit(e.exit_code)
    except CorruptPixelError:
        logging.critical("corrupted channel data, refusing to score", exc_info=True)
        sys.exit(EXIT_INVALID)

    runtime = timedelta(seconds=time.monotonic() - start)

    if args.format == "json":
        report: Report = {
            "base": str(settings.base_img),
            "reference": str(settings.ref_img),
            "color_space": str(settings.color_space),
            "outcome": comparison.state.value,
            "percentage": diff.percent if diff is not None else None,
            "runtime": runtime.total_seconds(),
        }
        print(json.dumps(report, indent=2))
    elif diff is not None:
        print(f"difference percentage:  {diff.percent:.3f} %")
        print(f"runtime:                {runtime}")
    else:
        print(f"program timed out within {settings.timeout}")

    if diff is None:
        sys.exit(EXIT_TIMEOUT)
    sys.exit(diff.exit_code)


if __name__ == "__main__":
    main()
