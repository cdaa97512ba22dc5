import numpy as np
import pytest
from PIL import Image

import randimg


def test_draw(tmp_path):
    path = tmp_path / "random.png"
    randimg.draw(path, 1234)
    with Image.open(path) as im:
        assert im.format == "PNG"
        assert im.size == (randimg.WIDTH, randimg.HEIGHT)


def test_same_seed_same_image():
    a = np.asarray(randimg.render(42))
    b = np.asarray(randimg.render(42))
    assert np.array_equal(a, b)


def test_different_seed_different_image():
    a = np.asarray(randimg.render(42))
    b = np.asarray(randimg.render(43))
    assert not np.array_equal(a, b)


def test_colours_are_whitish():
    # more_white() maps every channel into [36, 255] for non-negative distances
    pixels = np.asarray(randimg.render(7))
    assert pixels[..., 0].min() >= 36
    assert pixels[..., 2].min() >= 36


def test_five_points_within_image():
    for seed in (0, 1, 99, 1234567890):
        for x, y in randimg.five_points(seed):
            assert 0 <= x < randimg.WIDTH
            assert 0 <= y < randimg.HEIGHT


def test_main(tmp_path, capsys):
    path = tmp_path / "out.png"
    randimg.main(["5", str(path)])
    assert path.exists()
    assert capsys.readouterr().out == ""


def test_main_seeds_from_time(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(randimg.time, "time", lambda: 1600000000.5)
    randimg.main([])
    assert (tmp_path / "randimg.png").exists()
    assert "Using current time as random seed: 1600000000" in capsys.readouterr().out


def test_negative_seed_rejected():
    with pytest.raises(ValueError, match="negative"):
        randimg.five_points(-1)


def test_main_rejects_negative_seed(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        randimg.main(["-1", str(tmp_path / "out.png")])
    assert excinfo.value.code == 2
    assert "seed must not be negative" in capsys.readouterr().err
    assert not (tmp_path / "out.png").exists()
