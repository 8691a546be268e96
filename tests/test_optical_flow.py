import numpy as np
import pytest

from vslamtools.optical_flow import (
    detect_good_features,
    main,
    optical_flow_multi_level,
    optical_flow_single_level,
)

SHIFT = (3.0, 2.0)


def _texture(size, sx=0.0, sy=0.0):
    y, x = np.mgrid[0:size, 0:size].astype(float)
    x = x - sx
    y = y - sy
    values = 128 + 50 * np.sin(x / 10.0) + 50 * np.cos(y / 9.0)
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


@pytest.fixture
def pair():
    return _texture(256), _texture(256, *SHIFT)


@pytest.fixture
def keypoints():
    g = np.arange(90.0, 170.0, 20.0)
    xs, ys = np.meshgrid(g, g)
    return np.column_stack((xs.ravel(), ys.ravel()))


def test_identical_images_do_not_move(keypoints):
    img = _texture(256)
    tracked, success = optical_flow_single_level(img, img, keypoints)
    assert np.allclose(tracked, keypoints)
    assert success.all()


def test_single_level_recovers_shift(pair, keypoints):
    img1, img2 = pair
    tracked, success = optical_flow_single_level(img1, img2, keypoints)
    assert success.all()
    assert np.allclose(tracked - keypoints, SHIFT, atol=0.3)


def test_single_level_inverse_recovers_shift(pair, keypoints):
    img1, img2 = pair
    tracked, success = optical_flow_single_level(img1, img2, keypoints, inverse=True)
    assert success.all()
    assert np.allclose(tracked - keypoints, SHIFT, atol=0.3)


def test_single_level_with_initial_guess(pair, keypoints):
    img1, img2 = pair
    guess = keypoints + np.array([2.5, 1.5])
    tracked, success = optical_flow_single_level(
        img1, img2, keypoints, guess, has_initial=True
    )
    assert success.all()
    assert np.allclose(tracked - keypoints, SHIFT, atol=0.3)


def test_initial_guess_required(pair, keypoints):
    img1, img2 = pair
    with pytest.raises(ValueError):
        optical_flow_single_level(img1, img2, keypoints, None, has_initial=True)
    with pytest.raises(ValueError):
        optical_flow_single_level(img1, img2, keypoints, keypoints[:2], has_initial=True)


def test_flat_patch_fails():
    img = np.full((64, 64), 100, dtype=np.uint8)
    tracked, success = optical_flow_single_level(img, img, [[32.0, 32.0]])
    assert not success[0]
    assert np.allclose(tracked, [[32.0, 32.0]])


def test_empty_keypoints(pair):
    img1, img2 = pair
    tracked, success = optical_flow_single_level(img1, img2, np.empty((0, 2)))
    assert tracked.shape == (0, 2)
    assert success.shape == (0,)


@pytest.mark.parametrize("inverse", [False, True])
def test_multi_level_recovers_shift(pair, keypoints, inverse):
    img1, img2 = pair
    tracked, success = optical_flow_multi_level(img1, img2, keypoints, inverse)
    assert tracked.shape == keypoints.shape
    assert success.all()
    assert np.allclose(tracked - keypoints, SHIFT, atol=0.5)


def _square_image():
    img = np.zeros((64, 64), dtype=np.uint8)
    img[20:40, 20:40] = 255
    return img


def test_detect_square_corners():
    corners = detect_good_features(_square_image(), 500, 0.01, 5)
    assert corners.shape == (4, 2)
    expected = np.array([[19.5, 19.5], [39.5, 19.5], [19.5, 39.5], [39.5, 39.5]])
    for corner in corners:
        assert np.min(np.linalg.norm(expected - corner, axis=1)) < 3.0


def test_detect_respects_max_corners():
    corners = detect_good_features(_square_image(), 2, 0.01, 5)
    assert len(corners) == 2


def test_detect_respects_min_distance():
    corners = detect_good_features(_texture(128), 500, 0.01, 10)
    assert len(corners) > 1
    diffs = corners[:, None, :] - corners[None, :, :]
    dist = np.linalg.norm(diffs, axis=2)
    np.fill_diagonal(dist, np.inf)
    assert dist.min() >= 10


def test_detect_flat_image_finds_nothing():
    corners = detect_good_features(np.full((32, 32), 9, dtype=np.uint8))
    assert corners.shape == (0, 2)


def test_main_rejects_bad_arguments():
    assert main(["only_one.png"]) == 1


def test_main_writes_tracks(tmp_path, monkeypatch):
    from PIL import Image

    first = tmp_path / "a.png"
    second = tmp_path / "b.png"
    Image.fromarray(_texture(128)).save(first)
    Image.fromarray(_texture(128, 1.0, 1.0)).save(second)
    monkeypatch.chdir(tmp_path)
    assert main([str(first), str(second)]) == 0
    assert (tmp_path / "tracked_single_level.png").exists()
    assert (tmp_path / "tracked_multi_level.png").exists()