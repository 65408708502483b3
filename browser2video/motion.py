"""
Human-motion synthesis: cursor paths and step timing.

WindMouse produces the organic, slightly wobbly path a hand takes towards a
target; the smoothstep linear path is used for drags and selections where a
straight eased sweep reads better on video. All functions are pure apart
from the random source, which can be injected for reproducible paths.
"""
import math
import random
from typing import Optional

Point = tuple[int, int]
DelayRange = tuple[int, int]

MODES = ("human", "fast")

DEFAULT_DELAYS: dict[str, dict[str, DelayRange]] = {
    "human": {
        "breathe": (150, 150),
        "after_scroll_into_view": (350, 350),
        "mouse_move_step": (3, 3),
        "click_effect": (25, 25),
        "click_hold": (90, 90),
        "after_click": (300, 300),
        "before_type": (55, 55),
        "key_delay": (35, 35),
        "key_boundary_pause": (30, 30),
        "after_type": (150, 150),
        "select_open": (120, 120),
        "select_option": (70, 70),
        "after_drag": (120, 120),
    },
}
DEFAULT_DELAYS["fast"] = {name: (0, 0) for name in DEFAULT_DELAYS["human"]}

SQRT3 = math.sqrt(3)
SQRT5 = math.sqrt(5)
MAX_ITERATIONS = 2000


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero on the positive side."""
    return int(math.floor(value + 0.5))


def pick_ms(delay: DelayRange) -> int:
    """Resolve a delay range to a single value (the midpoint, not random)."""
    min_ms, max_ms = delay
    if max_ms <= min_ms:
        return min_ms
    return round_half_up((min_ms + max_ms) / 2)


def merge_delays(mode: str, overrides: Optional[dict] = None) -> dict[str, DelayRange]:
    """Layer per-session delay overrides on top of the mode profile."""
    if mode not in DEFAULT_DELAYS:
        raise ValueError(f"Unknown mode: {mode!r} (expected one of {MODES})")
    delays = dict(DEFAULT_DELAYS[mode])
    for name, value in (overrides or {}).items():
        if name not in delays:
            raise ValueError(f"Unknown delay: {name!r}")
        delays[name] = (int(value[0]), int(value[1]))
    return delays


def step_ease_multiplier(i: int, n: int) -> float:
    """
    Delay multiplier for step i of n.

    Quadratic ease-in from 0.3 (fast ballistic start) to 1.5 (slow
    corrective approach).
    """
    if n <= 1:
        return 1.0
    t = min(1.0, max(0.0, i / (n - 1)))
    return 0.3 + 1.2 * t * t


def eased_step_ms(base_ms: float, i: int, n: int, factor: float = 1.0) -> int:
    return max(0, round_half_up(base_ms * factor * step_ease_multiplier(i, n)))


def wind_mouse(
    start: Point,
    end: Point,
    gravity: float = 9.0,
    wind: float = 3.0,
    max_step: float = 18.0,
    target_area: float = 15.0,
    rng: Optional[random.Random] = None,
) -> list[Point]:
    """
    Generate a WindMouse cursor path from start to end.

    Args:
        start: Current cursor position
        end: Target position
        gravity: Pull towards the target (G0)
        wind: Turbulence magnitude far from the target (W0)
        max_step: Initial cap on per-step velocity (M0)
        target_area: Distance below which the motion starts correcting (D0)
        rng: Random source (module-level random when omitted)

    Returns:
        Integer points, without consecutive duplicates, whose last element
        is always exactly the rounded target.
    """
    rand = rng or random
    sx, sy = float(start[0]), float(start[1])
    tx, ty = float(end[0]), float(end[1])
    vx = vy = 0.0
    wx = wy = 0.0
    step_cap = max_step
    points: list[Point] = []

    for _ in range(MAX_ITERATIONS):
        dist = math.hypot(tx - sx, ty - sy)
        if dist < 1:
            break

        wind_mag = min(wind, dist)
        if dist >= target_area:
            wx = wx / SQRT3 + rand.uniform(-1.0, 1.0) * wind_mag / SQRT5
            wy = wy / SQRT3 + rand.uniform(-1.0, 1.0) * wind_mag / SQRT5
        else:
            wx /= SQRT3
            wy /= SQRT3
            if step_cap < 3:
                step_cap = rand.random() * 3 + 3
            else:
                step_cap /= SQRT5

        vx += wx + gravity * (tx - sx) / dist
        vy += wy + gravity * (ty - sy) / dist

        speed = math.hypot(vx, vy)
        if speed > step_cap:
            clip = step_cap / 2 + rand.random() * step_cap / 2
            vx = vx / speed * clip
            vy = vy / speed * clip

        sx += vx
        sy += vy
        point = (round_half_up(sx), round_half_up(sy))
        if not points or points[-1] != point:
            points.append(point)

    target = (round_half_up(tx), round_half_up(ty))
    if not points or points[-1] != target:
        points.append(target)
    return points


def linear_path(start: Point, end: Point, steps: int) -> list[Point]:
    """Straight sweep from start to end with smoothstep easing (steps + 1 points)."""
    steps = max(1, steps)
    points = []
    for i in range(steps + 1):
        t = i / steps
        ease = t * t * (3 - 2 * t)
        points.append((
            round_half_up(start[0] + (end[0] - start[0]) * ease),
            round_half_up(start[1] + (end[1] - start[1]) * ease),
        ))
    return points


def spiral_duration_ms(radius_x: float, radius_y: float,
                       r_start: float = 0.7, r_end: float = 1.0) -> int:
    """Duration for a 1.5-turn spiral at ~400px/s, clamped to 800-1500ms."""
    avg_radius = (radius_x + radius_y) / 2
    path_length = 1.5 * 2 * math.pi * avg_radius * ((r_start + r_end) / 2)
    return max(800, min(1500, round_half_up(path_length / 400 * 1000)))


def spiral_path(
    center: tuple[float, float],
    radius_x: float,
    radius_y: float,
    steps: int,
    r_start: float = 0.7,
    r_end: float = 1.0,
    turns: float = 1.5,
    rng: Optional[random.Random] = None,
) -> list[Point]:
    """
    Points of a hand-drawn spiral around center, excluding the entry point.

    The radius grows linearly from r_start to r_end while the per-point
    jitter shrinks from 3px to 1.8px.
    """
    rand = rng or random
    cx, cy = center
    total_angle = turns * 2 * math.pi
    points = []
    for i in range(1, steps + 1):
        t = i / steps
        angle = t * total_angle
        r_factor = r_start + (r_end - r_start) * t
        noise = 3.0 * (1 - t * 0.4)
        points.append((
            round_half_up(cx + radius_x * r_factor * math.cos(angle) + (rand.random() - 0.5) * noise),
            round_half_up(cy + radius_y * r_factor * math.sin(angle) + (rand.random() - 0.5) * noise),
        ))
    return points
