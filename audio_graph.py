"""
bilateral-beats - Audio Graph
Builds the session audio graph once (track source -> gain -> stereo panner
-> destination) and exposes the controls the scheduler drives every tick:
set_pan, set_volume and short synthesized cue sounds.

When no audio output can be opened every operation turns into a no-op and
the status callback is told once; visual stimulation carries on.
"""

from collections import deque
from typing import Callable, Optional

import numpy as np

from audio_nodes import AudioContext, AudioNode, ContextState, SourceNode
from audio_source import SampleBuffer
from config import AudioConfig, CueConfig, CueKind, clamp
from logging_utils import log_event

# Longest any cue may ring, in seconds
MAX_CUE_SECONDS = 0.3


class _Transient:
    """Nodes of one cue, torn down together when its source ends."""
    __slots__ = ("source", "nodes", "kind")

    def __init__(self, source: SourceNode, nodes: list[AudioNode], kind: str):
        self.source = source
        self.nodes = nodes
        self.kind = kind


class AudioGraph:
    """
    Engine facade over an AudioContext.
    The context and the main node chain are created lazily on first use.
    """

    def __init__(self, audio_config: Optional[AudioConfig] = None,
                 cue_config: Optional[CueConfig] = None,
                 status_callback: Optional[Callable[[str, bool], None]] = None,
                 context_factory: Callable[..., AudioContext] = AudioContext):
        self.audio_config = audio_config or AudioConfig()
        self.cue_config = cue_config or CueConfig()
        self.status_callback = status_callback
        self._context_factory = context_factory

        self.context: Optional[AudioContext] = None
        self.gain_node = None
        self.panner_node = None
        self.source_node = None

        self.available = bool(self.audio_config.enabled)
        self._disabled_reported = False
        self._closed = False
        self._pan = 0.0
        self._volume = clamp(float(self.audio_config.volume), 0.0, 1.0)
        self._track: Optional[SampleBuffer] = None
        self._track_loop = bool(self.audio_config.loop)
        self._transients: deque[_Transient] = deque()
        self._rng = np.random.default_rng()

        if not self.available:
            self._disable("audio output disabled in settings")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.context is not None and self.context.state == ContextState.RUNNING

    @property
    def pan(self) -> float:
        """Last pan value applied (clamped), even when audio is unavailable."""
        return self._pan

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def live_transient_count(self) -> int:
        return len(self._transients)

    def _disable(self, reason: str) -> None:
        self.available = False
        if self._disabled_reported:
            return
        self._disabled_reported = True
        log_event("WARN", "AudioGraph", "Audio disabled, continuing visual-only", reason=reason)
        self._notify_status(f"Audio disabled: {reason}", False)

    def ensure(self) -> bool:
        """Create the context and node chain if they do not exist yet."""
        if not self.available or self._closed:
            return False
        if self.context is not None:
            return True
        try:
            context = self._context_factory(
                sample_rate=self.audio_config.sample_rate,
                block_size=self.audio_config.block_size,
                device=self.audio_config.device_index,
            )
            gain = context.create_gain(self._volume)
            panner = context.create_stereo_panner(self._pan)
            gain.connect(panner)
            panner.connect(context.destination)
        except Exception as e:
            log_event("ERROR", "AudioGraph", "Failed to build audio graph", error=e)
            self._disable(str(e))
            return False

        self.context = context
        self.gain_node = gain
        self.panner_node = panner
        log_event("INFO", "AudioGraph", "Graph built", sample_rate=context.sample_rate)
        if self._track is not None:
            self._connect_track()
        return True

    def start(self) -> bool:
        """Build if needed and resume a suspended context. Returns False when audio is unavailable."""
        if not self.ensure():
            return False
        if self.context.state == ContextState.SUSPENDED:
            try:
                self.context.resume()
            except Exception as e:
                log_event("ERROR", "AudioGraph", "Failed to start audio output", error=e)
                self._disable(str(e))
                return False
        if self.source_node is not None and self.source_node.start_time is None:
            self.source_node.start()
        return True

    def pause(self) -> None:
        if self.context is not None:
            try:
                self.context.suspend()
            except Exception as e:
                log_event("WARN", "AudioGraph", "Failed to suspend audio output", error=e)

    # ------------------------------------------------------------------
    # Track source
    # ------------------------------------------------------------------

    def attach_source(self, buffer: Optional[SampleBuffer], loop: Optional[bool] = None) -> None:
        """Replace the track feeding the gain node (None detaches it)."""
        self._track = buffer
        if loop is not None:
            self._track_loop = bool(loop)
        self._drop_track_node()
        if buffer is not None and self.context is not None:
            self._connect_track()

    def _connect_track(self) -> None:
        buffer = self._track
        samples = buffer.channels if buffer.channel_count <= 2 else buffer.mixdown()
        node = self.context.create_buffer_source(samples, buffer.sample_rate, loop=self._track_loop)
        node.connect(self.gain_node)
        self.source_node = node
        if self.is_running:
            node.start()

    def _drop_track_node(self) -> None:
        node, self.source_node = self.source_node, None
        if node is None or self.context is None:
            return
        if node.start_time is not None:
            self.context.release_source(node)
        else:
            node.disconnect()

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def set_pan(self, value: float) -> float:
        """Set stereo pan, clamped to [-1, 1]. Returns the applied value."""
        pan = clamp(float(value), -1.0, 1.0)
        self._pan = pan
        if self.available and self.panner_node is not None:
            self.panner_node.pan.value = pan
        return pan

    def set_volume(self, value: float) -> float:
        """Set track gain, clamped to [0, 1]. Returns the applied value."""
        volume = clamp(float(value), 0.0, 1.0)
        self._volume = volume
        if self.available and self.gain_node is not None:
            self.gain_node.gain.value = volume
        return volume

    # ------------------------------------------------------------------
    # Cues
    # ------------------------------------------------------------------

    def click(self, kind=None, side: Optional[str] = None) -> bool:
        """Play a short cue. ``side`` ('left'/'right') picks the beat pitch for clicks.

        Returns True when a cue was scheduled.
        """
        if not self.available or not self.cue_config.enabled or not self.is_running:
            return False
        try:
            kind = CueKind(kind) if kind is not None else self.cue_config.kind
        except ValueError:
            log_event("WARN", "AudioGraph", "Unknown cue kind, using click", kind=kind)
            kind = CueKind.CLICK

        try:
            with self.context.lock:
                self._enforce_transient_cap()
                source, nodes = self._build_cue(kind, side)
                transient = _Transient(source, nodes, kind.value)
                source.on_ended = lambda _node, t=transient: self._release_transient(t)
                self._transients.append(transient)
        except Exception as e:
            log_event("ERROR", "AudioGraph", "Failed to play cue", kind=kind.value, error=e)
            return False
        return True

    def _build_cue(self, kind: CueKind, side: Optional[str]):
        ctx = self.context
        now = ctx.current_time
        level = float(self.cue_config.volume)
        # Cues ride the panner so they are heard on the side the target is on
        out = self.panner_node

        if kind == CueKind.BEEP:
            osc = ctx.create_oscillator(800.0, "sine")
            env = ctx.create_gain(0.0)
            env.gain.set_value_at_time(0.0, now)
            env.gain.linear_ramp_to_value_at_time(0.3 * level, now + 0.01)
            env.gain.exponential_ramp_to_value_at_time(0.001, now + 0.15)
            duration = 0.15
        elif kind == CueKind.HISS:
            frames = int(ctx.sample_rate * 0.1)
            noise = (self._rng.uniform(-1.0, 1.0, frames) * 0.3).astype(np.float32)
            osc = ctx.create_buffer_source(noise, ctx.sample_rate)
            highpass = ctx.create_highpass(3000.0)
            env = ctx.create_gain(0.0)
            env.gain.set_value_at_time(0.0, now)
            env.gain.linear_ramp_to_value_at_time(0.4 * level, now + 0.01)
            env.gain.exponential_ramp_to_value_at_time(0.001, now + 0.08)
            osc.connect(highpass)
            highpass.connect(env)
            env.connect(out)
            osc.start(now)
            return osc, [osc, highpass, env]
        elif kind == CueKind.CHIRP:
            osc = ctx.create_oscillator(200.0, "sine")
            osc.frequency.set_value_at_time(200.0, now)
            osc.frequency.exponential_ramp_to_value_at_time(1200.0, now + 0.12)
            env = ctx.create_gain(0.0)
            env.gain.set_value_at_time(0.0, now)
            env.gain.linear_ramp_to_value_at_time(0.25 * level, now + 0.01)
            env.gain.exponential_ramp_to_value_at_time(0.001, now + 0.12)
            duration = 0.12
        elif kind == CueKind.PULSE:
            osc = ctx.create_oscillator(150.0, "square")
            env = ctx.create_gain(0.0)
            peak = 0.3 * level
            env.gain.set_value_at_time(0.0, now)
            for offset, value in ((0.01, peak), (0.05, peak), (0.06, 0.0), (0.08, 0.0),
                                  (0.09, peak), (0.13, peak), (0.14, 0.0)):
                env.gain.linear_ramp_to_value_at_time(value, now + offset)
            duration = 0.2
        elif kind == CueKind.SUCCESS:
            osc = ctx.create_oscillator(440.0, "sine")
            osc.frequency.set_value_at_time(440.0, now)
            osc.frequency.linear_ramp_to_value_at_time(880.0, now + 0.2)
            env = ctx.create_gain(0.1 * level)
            env.gain.set_value_at_time(0.1 * level, now)
            env.gain.exponential_ramp_to_value_at_time(0.001, now + 0.3)
            duration = 0.3
            out = ctx.destination
        else:
            if side == "left":
                frequency = self.cue_config.left_frequency
            elif side == "right":
                frequency = self.cue_config.right_frequency
            else:
                frequency = 950.0
            osc = ctx.create_oscillator(frequency, self.cue_config.waveform.value)
            env = ctx.create_gain(0.5 * level)
            duration = 0.05 if side else 0.03

        osc.connect(env)
        env.connect(out)
        osc.start(now)
        osc.stop(now + min(duration, MAX_CUE_SECONDS))
        return osc, [osc, env]

    def _release_transient(self, transient: _Transient) -> None:
        with self.context.lock:
            for node in transient.nodes:
                node.disconnect()
            try:
                self._transients.remove(transient)
            except ValueError:
                pass

    def _enforce_transient_cap(self) -> None:
        while len(self._transients) >= self.cue_config.max_transients:
            oldest = self._transients[0]
            self.context.release_source(oldest.source)
            if self._transients and self._transients[0] is oldest:
                self._release_transient(oldest)

    def release_transients(self) -> None:
        """Tear down every live cue immediately."""
        if self.context is None:
            self._transients.clear()
            return
        with self.context.lock:
            for transient in list(self._transients):
                self.context.release_source(transient.source)
                self._release_transient(transient)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release every node and close the context. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self.release_transients()
        self._drop_track_node()
        if self.context is not None:
            self.context.close()
        self.context = None
        self.gain_node = None
        self.panner_node = None
        log_event("INFO", "AudioGraph", "Closed")

    def _notify_status(self, message: str, ok: bool) -> None:
        if self.status_callback:
            self.status_callback(message, ok)
