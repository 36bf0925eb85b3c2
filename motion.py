"""Movement laws for the stimulus target.

Positions are normalized: 0.0 is the far left, 1.0 the far right.
"""
import math
from dataclasses import dataclass
from typing import Literal, Optional

from config import clamp

Direction = Literal[1, -1]


@dataclass(frozen=True)
class MotionParams:
    min_x: float
    max_x: float
    speed_per_sec: float       # normalized units per second
    edge_pause_ms: float = 0.0


@dataclass(frozen=True)
class MotionState:
    x: float
    direction: Direction = 1
    paused_until_ms: float = 0.0
    hit_edge: Optional[str] = None    # 'left' / 'right' on the step that reached an edge


def position_to_pan(position: float) -> float:
    """Map a 0..1 position onto the -1..1 stereo pan range."""
    return clamp(position * 2.0 - 1.0, -1.0, 1.0)


def sine_position(elapsed_s: float, frequency_hz: float, amplitude: float, center_offset: float) -> float:
    """center + amplitude * sin(2*pi*f*t), clamped to [0, 1]."""
    value = center_offset + amplitude * math.sin(2.0 * math.pi * frequency_hz * elapsed_s)
    return clamp(value, 0.0, 1.0)


def sweep_bounds(amplitude: float, center_offset: float) -> tuple[float, float]:
    return clamp(center_offset - amplitude, 0.0, 1.0), clamp(center_offset + amplitude, 0.0, 1.0)


def ping_pong_params(frequency_hz: float, amplitude: float, center_offset: float,
                     edge_pause_ms: float = 0.0) -> MotionParams:
    """One full left-right-left cycle per 1/frequency_hz seconds."""
    min_x, max_x = sweep_bounds(amplitude, center_offset)
    speed = 2.0 * (max_x - min_x) * max(0.0, frequency_hz)
    return MotionParams(min_x=min_x, max_x=max_x, speed_per_sec=speed, edge_pause_ms=edge_pause_ms)


def advance_position(state: MotionState, params: MotionParams, dt_s: float, now_ms: float) -> MotionState:
    """Advance a constant-speed sweep with reflective edges and an optional edge pause."""
    x, direction, paused_until_ms = state.x, state.direction, state.paused_until_ms
    hit_edge = None

    if now_ms < paused_until_ms:
        return MotionState(x, direction, paused_until_ms)

    x += direction * params.speed_per_sec * dt_s

    if x <= params.min_x:
        x = params.min_x
        if direction == -1:
            hit_edge = "left"
        direction = 1
        if params.edge_pause_ms > 0 and hit_edge:
            paused_until_ms = now_ms + params.edge_pause_ms
    elif x >= params.max_x:
        x = params.max_x
        if direction == 1:
            hit_edge = "right"
        direction = -1
        if params.edge_pause_ms > 0 and hit_edge:
            paused_until_ms = now_ms + params.edge_pause_ms

    return MotionState(x, direction, paused_until_ms, hit_edge)


def beat_phase(elapsed_ms: float, beat_interval_ms: float) -> tuple[int, float]:
    """Return (beat_number, fraction of the current beat elapsed)."""
    if beat_interval_ms <= 0:
        return 0, 0.0
    elapsed_ms = max(0.0, elapsed_ms)
    beat_number = int(math.floor(elapsed_ms / beat_interval_ms))
    fraction = (elapsed_ms % beat_interval_ms) / beat_interval_ms
    return beat_number, fraction
