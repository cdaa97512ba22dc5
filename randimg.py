#!/usr/bin/env python3

"""Draw a pseudo-random test image

The colour of every pixel depends on its distance to five points derived from
the seed, so the same seed always gives the same image.
"""

import argparse
import logging
import time
from pathlib import Path
from typing import List, Tuple, Union

import numpy as np
from PIL import Image

WIDTH = 640
HEIGHT = 400


def five_points(seed: int) -> List[Tuple[int, int]]:
    """
    >>> five_points(0)
    [(0, 0), (0, 0), (0, 0), (0, 0), (0, 0)]
    >>> five_points(1000)[0]
    (197, 228)

    Seeds must not be negative: floor division would pick other points
    than the truncating division these images were first drawn with.
    """
    if seed < 0:
        raise ValueError(f"seed must not be negative; got {seed}")
    points = []
    for d in (7, 11, 13, 17, 19):
        x = (seed // d + seed % (135 * d)) % WIDTH
        y = (3 * seed // d + seed % (287 * d)) % HEIGHT
        points.append((x, y))
    return points


def _trunc(a: np.ndarray) -> np.ndarray:
    return np.trunc(a).astype(np.int64)


def render(seed: int) -> Image.Image:
    p = five_points(seed)
    y, x = np.mgrid[0:HEIGHT, 0:WIDTH]

    def dist(i: int) -> np.ndarray:
        return np.hypot(x - p[i][0], y - p[i][1])

    def more_white(v: np.ndarray) -> np.ndarray:
        return _trunc(220 * v / 256) + 36

    d1 = dist(0) + 2 * dist(1)
    d2 = dist(2) + d1 - 5 * dist(3)
    d3 = dist(4)

    # d2 goes negative, remainders keep the sign of the dividend
    channels = [more_white(np.fmod(_trunc(d), 256)) for d in (d1, d2, d3)]
    rgb = np.stack([np.mod(c, 256) for c in channels], axis=-1).astype(np.uint8)
    return Image.fromarray(rgb)


def draw(path: Union[str, Path], seed: int) -> None:
    render(seed).save(path, format="PNG")
    logging.debug(f"drew {WIDTH}×{HEIGHT} image with seed {seed} to {path}")


def non_negative_int(s: str) -> int:
    n = int(s)
    if n < 0:
        raise argparse.ArgumentTypeError(f"seed must not be negative; got {s!r}")
    return n


def main(argv=None):
    parser = argparse.ArgumentParser(description="Draw a pseudo-random test image")
    parser.add_argument(
        "seed", type=non_negative_int, nargs="?", help="defaults to the current Unix time"
    )
    parser.add_argument("output", type=Path, nargs="?", default=Path("randimg.png"))
    args = parser.parse_args(argv)

    seed = args.seed
    if seed is None:
        seed = int(time.time())
        print(f"Using current time as random seed: {seed}")

    draw(args.output, seed)


if __name__ == "__main__":
    main()
