"""
Tests for cursor path synthesis and delay profiles
"""

import math
import random

import pytest

from browser2video.motion import (
    DEFAULT_DELAYS,
    eased_step_ms,
    linear_path,
    merge_delays,
    pick_ms,
    round_half_up,
    spiral_duration_ms,
    spiral_path,
    step_ease_multiplier,
    wind_mouse,
)


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2


def test_wind_mouse_ends_exactly_on_target():
    for seed in range(20):
        path = wind_mouse((10, 10), (640, 360), rng=random.Random(seed))
        assert path[-1] == (640, 360)


def test_wind_mouse_has_no_consecutive_duplicates():
    path = wind_mouse((0, 0), (500, 300), rng=random.Random(7))
    for a, b in zip(path, path[1:]):
        assert a != b


def test_wind_mouse_endpoints_hold_for_any_direction():
    rng = random.Random(2024)
    pairs = [
        ((640, 360), (10, 10)),
        ((0, 500), (500, 0)),
        ((300, 300), (300, 20)),
        ((50, 50), (51, 52)),
    ]
    pairs += [
        ((rng.randint(0, 1280), rng.randint(0, 720)), (rng.randint(0, 1280), rng.randint(0, 720)))
        for _ in range(25)
    ]
    for start, end in pairs:
        path = wind_mouse(start, end, rng=rng)
        assert path[-1] == end
        for a, b in zip(path, path[1:]):
            assert a != b


def test_wind_mouse_same_point_returns_target_only():
    assert wind_mouse((100, 100), (100, 100), rng=random.Random(1)) == [(100, 100)]


def test_wind_mouse_is_reproducible_with_seeded_rng():
    a = wind_mouse((0, 0), (300, 200), rng=random.Random(42))
    b = wind_mouse((0, 0), (300, 200), rng=random.Random(42))
    assert a == b


def test_wind_mouse_rounds_fractional_target():
    path = wind_mouse((0, 0), (100.5, 50.4), rng=random.Random(3))
    assert path[-1] == (101, 50)


def test_linear_path_has_steps_plus_one_points():
    path = linear_path((0, 0), (100, 50), 10)
    assert len(path) == 11
    assert path[0] == (0, 0)
    assert path[-1] == (100, 50)


def test_linear_path_is_eased():
    path = linear_path((0, 0), (100, 0), 10)
    first_gap = path[1][0] - path[0][0]
    middle_gap = path[6][0] - path[5][0]
    assert first_gap < middle_gap


def test_step_ease_multiplier_range():
    assert step_ease_multiplier(0, 10) == pytest.approx(0.3)
    assert step_ease_multiplier(9, 10) == pytest.approx(1.5)
    assert step_ease_multiplier(0, 1) == 1.0


@pytest.mark.parametrize("n", [2, 3, 10, 57, 200])
def test_step_ease_multiplier_is_monotonic_and_bounded(n):
    values = [step_ease_multiplier(i, n) for i in range(n)]
    assert all(a <= b for a, b in zip(values, values[1:]))
    assert all(0.3 - 1e-9 <= v <= 1.5 + 1e-9 for v in values)


def test_eased_step_ms():
    assert eased_step_ms(10, 0, 10) == 3
    assert eased_step_ms(10, 9, 10) == 15
    assert eased_step_ms(10, 9, 10, factor=2) == 30


def test_pick_ms_uses_midpoint():
    assert pick_ms((100, 200)) == 150
    assert pick_ms((35, 35)) == 35
    assert pick_ms((0, 0)) == 0


def test_fast_profile_is_all_zero():
    assert all(value == (0, 0) for value in DEFAULT_DELAYS["fast"].values())
    assert set(DEFAULT_DELAYS["fast"]) == set(DEFAULT_DELAYS["human"])


def test_merge_delays_applies_overrides():
    delays = merge_delays("human", {"key_delay": (10, 20)})
    assert delays["key_delay"] == (10, 20)
    assert delays["breathe"] == DEFAULT_DELAYS["human"]["breathe"]


def test_merge_delays_rejects_unknown_names():
    with pytest.raises(ValueError):
        merge_delays("human", {"typo_delay": (1, 2)})
    with pytest.raises(ValueError):
        merge_delays("slow")


def test_spiral_duration_is_clamped():
    assert spiral_duration_ms(5, 5) == 800
    assert spiral_duration_ms(2000, 2000) == 1500
    medium = spiral_duration_ms(60, 40)
    assert 800 <= medium <= 1500


def test_spiral_path_grows_around_center():
    path = spiral_path((500, 400), 100, 50, steps=60, rng=random.Random(0))
    assert len(path) == 60
    first = math.hypot((path[0][0] - 500) / 100, (path[0][1] - 400) / 50)
    last = math.hypot((path[-1][0] - 500) / 100, (path[-1][1] - 400) / 50)
    assert first == pytest.approx(0.7, abs=0.1)
    assert last == pytest.approx(1.0, abs=0.1)
