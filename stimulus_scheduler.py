"""
bilateral-beats - Stimulus Scheduler
The tick loop that moves the target and the stereo pan together.

Each tick resolves one strategy from the live config:
  BeatSync           - hard left/right alternation on the detected beat,
                       with a beat-boundary event (cue + pulse) once per beat
  ManualOscillation  - smooth sine or ping-pong sweep at frequency_hz,
                       no beat events

One position is computed per tick and written to both the audio panner and
the renderer in that same tick, so sound and picture never drift apart.
"""

import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Union

from beat_analysis import TempoEstimate
from config import Config, MovementPattern, SyncMode
from logging_utils import log_event
from motion import (
    MotionState,
    advance_position,
    beat_phase,
    ping_pong_params,
    position_to_pan,
    sine_position,
)


class SchedulerState:
    IDLE = "idle"
    RUNNING = "running"


class SchedulerStatus:
    """Status messages surfaced through the status callback"""
    BEAT_UNAVAILABLE = "Beat data unavailable - using manual rate"
    BEAT_SYNC_ACTIVE = "Beat sync active"
    SESSION_COMPLETE = "Session complete"


@dataclass
class ScheduleState:
    """Runtime state, owned by the scheduler; consumers get copies."""
    start_timestamp: float = 0.0
    position: float = 0.5          # 0.0 = left, 1.0 = right
    current_pan: float = 0.0       # -1.0 .. 1.0, what the panner received
    current_beat_index: int = 0
    is_left_phase: bool = True
    pulse_active: bool = False
    last_fired_beat: int = -1


@dataclass(frozen=True)
class BeatBoundary:
    """Emitted once at the start of every beat in beat-synced mode"""
    beat_index: int
    is_left: bool
    timestamp: float

    @property
    def side(self) -> str:
        return "left" if self.is_left else "right"


@dataclass(frozen=True)
class BeatSync:
    tempo: TempoEstimate


@dataclass(frozen=True)
class ManualOscillation:
    pattern: MovementPattern
    frequency_hz: float
    amplitude: float
    center_offset: float
    edge_pause_ms: float = 0.0


TickStrategy = Union[BeatSync, ManualOscillation]


class IntervalTimer:
    """Fixed-rate background ticker. cancel() is idempotent and never joins from its own thread."""

    def __init__(self, interval_s: float, callback: Callable[[], None]):
        self.interval_s = max(0.001, float(interval_s))
        self.callback = callback
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="stimulus-tick", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _run(self) -> None:
        next_time = time.monotonic()
        while not self._stop_event.is_set():
            self.callback()
            next_time += self.interval_s
            delay = next_time - time.monotonic()
            if delay < 0:
                # Fell behind: drop missed ticks instead of bursting
                next_time = time.monotonic()
                delay = 0.0
            if self._stop_event.wait(delay):
                break


class StimulusScheduler:
    """
    Owns the tick timer and the schedule state; start() and stop() are its only lifecycle mutators.

    Args:
        config: Live configuration, read every tick
        audio_graph: Object exposing set_pan(value) and click(kind, side); may be None
        on_position: Renderer callback receiving the 0..1 position each tick
        on_beat: Called with a BeatBoundary at the start of each beat
        status_callback: Called with (message, ok) on sync-status changes
        clock: Monotonic time source in seconds
        timer_factory: Builds the periodic ticker from (interval_s, callback)
    """

    def __init__(self, config: Config,
                 audio_graph=None,
                 on_position: Optional[Callable[[float], None]] = None,
                 on_beat: Optional[Callable[[BeatBoundary], None]] = None,
                 status_callback: Optional[Callable[[str, bool], None]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 timer_factory: Callable[[float, Callable[[], None]], object] = IntervalTimer):
        self.config = config
        self.audio_graph = audio_graph
        self.on_position = on_position
        self.on_beat = on_beat
        self.status_callback = status_callback
        self.clock = clock
        self.timer_factory = timer_factory

        self.status = SchedulerState.IDLE
        self.state = ScheduleState()
        self.tempo: Optional[TempoEstimate] = None
        self.beat_unavailable = False

        self._lock = threading.RLock()
        self._timer = None
        self._strategy: Optional[TickStrategy] = None
        self._beat_anchor = 0.0
        self._motion: Optional[MotionState] = None
        self._last_tick_time = 0.0

    @property
    def running(self) -> bool:
        return self.status == SchedulerState.RUNNING

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def set_tempo(self, tempo: Optional[TempoEstimate]) -> None:
        """Install a cached analysis result; picked up on the next tick."""
        with self._lock:
            self.tempo = tempo

    def has_usable_tempo(self) -> bool:
        tempo = self.tempo
        if tempo is None or not tempo.is_measured or tempo.bpm <= 0:
            return False
        return tempo.confidence >= self.config.analysis.min_confidence_for_sync

    def snapshot(self) -> ScheduleState:
        with self._lock:
            return replace(self.state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Begin ticking. A second start() while running is a no-op."""
        with self._lock:
            if self.running:
                log_event("DEBUG", "Scheduler", "SchedulerAlreadyRunning: start ignored")
                return False
            # Never leave a previous loop alive
            stale, self._timer = self._timer, None

            now = self.clock()
            self.state = ScheduleState(start_timestamp=now)
            self._strategy = None
            self._beat_anchor = now
            self._motion = None
            self._last_tick_time = now
            self.beat_unavailable = False
            self.status = SchedulerState.RUNNING

            interval_s = self.config.scheduler.tick_interval_ms / 1000.0
            self._timer = self.timer_factory(interval_s, self.tick)
            self._timer.start()

        if stale is not None:
            stale.cancel()
        log_event("INFO", "Scheduler", "Started",
                  mode=self.config.stimulus.sync_mode.value,
                  pattern=self.config.stimulus.movement_pattern.value,
                  tick_ms=f"{self.config.scheduler.tick_interval_ms:.0f}")
        return True

    def stop(self) -> None:
        """Cancel the tick, release cue nodes and reset state. Idempotent."""
        with self._lock:
            timer, self._timer = self._timer, None
            was_running = self.running
            self.status = SchedulerState.IDLE
            self.state = ScheduleState()
            self._strategy = None
            self._motion = None
            self.beat_unavailable = False

        # Joined outside the lock: a tick in flight may be waiting on it
        if timer is not None:
            timer.cancel()
        if self.audio_graph is not None:
            try:
                self.audio_graph.release_transients()
                self.audio_graph.set_pan(0.0)
            except Exception as e:
                log_event("WARN", "Scheduler", "Audio release failed on stop", error=e)
        if was_running:
            log_event("INFO", "Scheduler", "Stopped")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _resolve_strategy(self) -> TickStrategy:
        stimulus = self.config.stimulus
        if stimulus.sync_mode == SyncMode.BEAT:
            if self.has_usable_tempo():
                if self.beat_unavailable:
                    self.beat_unavailable = False
                    self._notify_status(SchedulerStatus.BEAT_SYNC_ACTIVE, True)
                return BeatSync(self.tempo)
            if not self.beat_unavailable:
                self.beat_unavailable = True
                log_event("WARN", "Scheduler", "Beat sync requested without usable tempo, staying on manual rate")
                self._notify_status(SchedulerStatus.BEAT_UNAVAILABLE, False)
        else:
            self.beat_unavailable = False

        return ManualOscillation(
            pattern=stimulus.movement_pattern,
            frequency_hz=stimulus.frequency_hz,
            amplitude=stimulus.amplitude,
            center_offset=stimulus.center_offset,
            edge_pause_ms=stimulus.edge_pause_ms,
        )

    def tick(self) -> None:
        """Compute this tick's position and write it to the panner and the renderer."""
        boundary = None
        with self._lock:
            if not self.running:
                return
            now = self.clock()
            elapsed_s = now - self.state.start_timestamp

            duration = self.config.scheduler.session_duration_s
            if duration > 0 and elapsed_s >= duration:
                complete = True
            else:
                complete = False
                try:
                    boundary = self._advance(now, elapsed_s)
                except Exception as e:
                    log_event("ERROR", "Scheduler", "Tick failed", error=e)
                    return
                position = self.state.position

        if complete:
            log_event("INFO", "Scheduler", "Session duration reached", duration=f"{duration:.0f}s")
            self.stop()
            self._notify_status(SchedulerStatus.SESSION_COMPLETE, True)
            return

        self._emit(position, boundary)

    def _advance(self, now: float, elapsed_s: float) -> Optional[BeatBoundary]:
        strategy = self._resolve_strategy()
        previous = self._strategy
        if isinstance(strategy, BeatSync):
            if not isinstance(previous, BeatSync) or previous.tempo.bpm != strategy.tempo.bpm:
                # Beat clock restarts whenever beat sync (re)engages or the tempo changes
                self._beat_anchor = self.state.start_timestamp if previous is None else now
                self.state.last_fired_beat = -1
        self._strategy = strategy

        state = self.state
        boundary = None

        if isinstance(strategy, BeatSync):
            elapsed_ms = (now - self._beat_anchor) * 1000.0
            beat_number, fraction = beat_phase(elapsed_ms, strategy.tempo.beat_interval_ms)
            is_left = beat_number % 2 == 0
            state.current_beat_index = beat_number
            state.is_left_phase = is_left
            state.position = 0.0 if is_left else 1.0
            state.pulse_active = fraction < self.config.scheduler.pulse_fraction
            if fraction < self.config.scheduler.beat_epsilon and beat_number != state.last_fired_beat:
                state.last_fired_beat = beat_number
                boundary = BeatBoundary(beat_index=beat_number, is_left=is_left, timestamp=now)
            self._motion = None
        else:
            state.pulse_active = False
            if strategy.pattern == MovementPattern.PING_PONG:
                state.position = self._advance_ping_pong(strategy, now)
            else:
                self._motion = None
                state.position = sine_position(elapsed_s, strategy.frequency_hz,
                                               strategy.amplitude, strategy.center_offset)
            state.is_left_phase = state.position < 0.5

        self._last_tick_time = now
        return boundary

    def _advance_ping_pong(self, strategy: ManualOscillation, now: float) -> float:
        params = ping_pong_params(strategy.frequency_hz, strategy.amplitude,
                                  strategy.center_offset, strategy.edge_pause_ms)
        if self._motion is None:
            start_x = min(max(self.state.position, params.min_x), params.max_x)
            self._motion = MotionState(x=start_x, direction=1)
            dt_s = 0.0
        else:
            dt_s = max(0.0, now - self._last_tick_time)
        self._motion = advance_position(self._motion, params, dt_s, now * 1000.0)
        return self._motion.x

    def _emit(self, position: float, boundary: Optional[BeatBoundary]) -> None:
        # Panner and renderer get the same position in the same tick
        pan = position_to_pan(position)
        if self.audio_graph is not None:
            try:
                pan = self.audio_graph.set_pan(pan)
            except Exception as e:
                log_event("ERROR", "Scheduler", "set_pan failed", error=e)
        with self._lock:
            self.state.current_pan = pan

        if self.on_position is not None:
            try:
                self.on_position(position)
            except Exception as e:
                log_event("ERROR", "Scheduler", "Renderer callback failed", error=e)

        if boundary is None:
            return
        if self.audio_graph is not None and self.config.cue.enabled:
            try:
                self.audio_graph.click(self.config.cue.kind, side=boundary.side)
            except Exception as e:
                log_event("ERROR", "Scheduler", "Beat cue failed", error=e)
        if self.on_beat is not None:
            try:
                self.on_beat(boundary)
            except Exception as e:
                log_event("ERROR", "Scheduler", "Beat callback failed", error=e)

    def _notify_status(self, message: str, ok: bool) -> None:
        if self.status_callback:
            try:
                self.status_callback(message, ok)
            except Exception as e:
                log_event("ERROR", "Scheduler", "Status callback failed", error=e)
