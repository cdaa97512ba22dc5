import numpy as np
import pytest
from PIL import Image

import randimg

BLACK = (0, 0, 0, 255)
WHITE = (255, 255, 255, 255)


@pytest.fixture
def solid(tmp_path):
    """Write a single-colour image and return its path"""

    def _solid(color, size=(100, 100), name=None, format="PNG"):
        name = name or f"{'-'.join(map(str, color))}-{size[0]}x{size[1]}.png"
        path = tmp_path / name
        mode = "RGBA" if format == "PNG" else "RGB"
        Image.new(mode, size, color=color[: len(mode)]).save(path, format=format)
        return path

    return _solid


@pytest.fixture
def random_image(tmp_path):
    """Write a test image drawn from `seed`, optionally with an alpha channel"""

    def _random_image(seed, alpha=None, name=None):
        path = tmp_path / (name or f"random-{seed}-{alpha}.png")
        im = randimg.render(seed)
        if alpha is not None:
            im.putalpha(alpha)
        im.save(path)
        return path

    return _random_image


@pytest.fixture
def noise(tmp_path):
    """Write an image of uniform noise"""

    def _noise(size, seed=0, name="noise.png"):
        rng = np.random.default_rng(seed)
        pixels = rng.integers(0, 256, size=(size[1], size[0], 4), dtype=np.uint8)
        path = tmp_path / name
        Image.fromarray(pixels).save(path)
        return path

    return _noise
