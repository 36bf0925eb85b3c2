"""
bilateral-beats - Audio Nodes
A small pull-based audio graph rendered block by block into a PortAudio
output stream (sounddevice).

Signals travel between nodes as float32 arrays shaped (channels, frames)
with 1 or 2 channels. Parameter values are plain attributes written by the
scheduler thread and read by the audio callback thread; topology changes and
rendering share the context lock.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from scipy.signal import butter, sosfilt, sosfilt_zi

from logging_utils import log_event

try:
    import sounddevice as sd
    HAS_SOUNDDEVICE = True
except (ImportError, OSError):
    # PortAudio missing or no audio stack on this host: contexts can still
    # render offline, but resume() cannot open an output stream.
    sd = None
    HAS_SOUNDDEVICE = False
    log_event("WARN", "AudioContext", "sounddevice not available, audio output disabled")


class ContextState:
    SUSPENDED = "suspended"
    RUNNING = "running"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Automation:
    time: float
    value: float
    kind: str          # 'set', 'linear' or 'exp'


class AudioParam:
    """
    A settable node parameter with optional sample-accurate automation.

    Writing ``value`` takes effect on the next rendered block and cancels any
    scheduled automation. Automation events are evaluated per block as a
    numpy curve; events that are fully in the past are folded into the
    settled value.
    """

    def __init__(self, value: float, min_value: float = -np.inf, max_value: float = np.inf):
        self.min_value = float(min_value)
        self.max_value = float(max_value)
        self._value = self._clamp(value)
        self._anchor_time = 0.0
        self._events: list[_Automation] = []

    def _clamp(self, value: float) -> float:
        return float(min(self.max_value, max(self.min_value, float(value))))

    @property
    def value(self) -> float:
        return self._value

    @value.setter
    def value(self, value: float) -> None:
        self._events = []
        self._value = self._clamp(value)

    @property
    def has_automation(self) -> bool:
        return bool(self._events)

    def _schedule(self, event: _Automation) -> None:
        events = list(self._events)
        events.append(event)
        events.sort(key=lambda e: e.time)
        self._events = events

    def set_value_at_time(self, value: float, when: float) -> "AudioParam":
        self._schedule(_Automation(float(when), self._clamp(value), "set"))
        return self

    def linear_ramp_to_value_at_time(self, value: float, end_time: float) -> "AudioParam":
        self._schedule(_Automation(float(end_time), self._clamp(value), "linear"))
        return self

    def exponential_ramp_to_value_at_time(self, value: float, end_time: float) -> "AudioParam":
        self._schedule(_Automation(float(end_time), self._clamp(value), "exp"))
        return self

    def curve(self, times: np.ndarray) -> np.ndarray:
        """Evaluate the parameter at each time in ``times`` (seconds)."""
        events = self._events
        if not events:
            return np.full(len(times), self._value, dtype=np.float64)

        out = np.full(len(times), self._value, dtype=np.float64)
        prev_time, prev_value = self._anchor_time, self._value
        for event in events:
            if event.kind == "set":
                out[times >= event.time] = event.value
            else:
                span = event.time - prev_time
                ramp = (times >= prev_time) & (times < event.time)
                if span > 0 and np.any(ramp):
                    frac = (times[ramp] - prev_time) / span
                    if event.kind == "exp" and prev_value * event.value > 0:
                        out[ramp] = prev_value * (event.value / prev_value) ** frac
                    else:
                        out[ramp] = prev_value + (event.value - prev_value) * frac
                out[times >= event.time] = event.value
            prev_time, prev_value = event.time, event.value
        return out

    def settle(self, until: float) -> None:
        """Fold automation events at or before ``until`` into the settled value."""
        events = self._events
        if not events or events[0].time > until:
            return
        remaining = list(events)
        while remaining and remaining[0].time <= until:
            event = remaining.pop(0)
            self._value = event.value
            self._anchor_time = event.time
        self._events = remaining


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

def _to_stereo(signal: np.ndarray) -> np.ndarray:
    if signal.shape[0] == 2:
        return signal
    return np.repeat(signal[:1], 2, axis=0)


class AudioNode:
    """Base node: keeps connections and caches its output per render block."""

    def __init__(self, context: "AudioContext"):
        self.context = context
        self._inputs: list["AudioNode"] = []
        self._outputs: list["AudioNode"] = []
        self._cache_block = -1
        self._cache: Optional[np.ndarray] = None

    @property
    def connected(self) -> bool:
        return bool(self._outputs)

    def connect(self, destination: "AudioNode") -> "AudioNode":
        with self.context.lock:
            if destination not in self._outputs:
                self._outputs.append(destination)
                destination._inputs.append(self)
        return destination

    def disconnect(self) -> None:
        with self.context.lock:
            for destination in self._outputs:
                if self in destination._inputs:
                    destination._inputs.remove(self)
            self._outputs = []

    def _mix_inputs(self, times: np.ndarray) -> np.ndarray:
        frames = len(times)
        signals = [node.pull(times) for node in list(self._inputs)]
        if not signals:
            return np.zeros((1, frames), dtype=np.float32)
        if len(signals) == 1:
            return signals[0]
        if any(s.shape[0] == 2 for s in signals):
            signals = [_to_stereo(s) for s in signals]
        return np.sum(signals, axis=0, dtype=np.float32)

    def pull(self, times: np.ndarray) -> np.ndarray:
        block = self.context.block_index
        if self._cache_block != block or self._cache is None:
            self._cache = self.process(times)
            self._cache_block = block
        return self._cache

    def process(self, times: np.ndarray) -> np.ndarray:
        return self._mix_inputs(times)


class GainNode(AudioNode):
    def __init__(self, context: "AudioContext", gain: float = 1.0):
        super().__init__(context)
        self.gain = AudioParam(gain, min_value=0.0)

    def process(self, times: np.ndarray) -> np.ndarray:
        signal = self._mix_inputs(times)
        if not self.gain.has_automation:
            return (signal * self.gain.value).astype(np.float32)
        return (signal * self.gain.curve(times)).astype(np.float32)


class StereoPannerNode(AudioNode):
    """Equal-power stereo panner; pan is clamped to [-1, 1]."""

    def __init__(self, context: "AudioContext", pan: float = 0.0):
        super().__init__(context)
        self.pan = AudioParam(pan, min_value=-1.0, max_value=1.0)

    def process(self, times: np.ndarray) -> np.ndarray:
        signal = self._mix_inputs(times)
        if self.pan.has_automation:
            pan = self.pan.curve(times)
        else:
            pan = np.full(len(times), self.pan.value)

        out = np.empty((2, len(times)), dtype=np.float32)
        if signal.shape[0] == 1:
            x = (pan + 1.0) / 2.0
            out[0] = signal[0] * np.cos(x * np.pi / 2)
            out[1] = signal[0] * np.sin(x * np.pi / 2)
            return out

        left, right = signal[0], signal[1]
        x = np.where(pan <= 0, pan + 1.0, pan)
        gain_l = np.cos(x * np.pi / 2)
        gain_r = np.sin(x * np.pi / 2)
        out[0] = np.where(pan <= 0, left + right * gain_l, left * gain_l)
        out[1] = np.where(pan <= 0, right * gain_r, right + left * gain_r)
        return out


class HighpassFilterNode(AudioNode):
    """Butterworth high-pass (second-order sections) with per-channel state."""

    def __init__(self, context: "AudioContext", cutoff_hz: float = 3000.0, order: int = 2):
        super().__init__(context)
        nyquist = context.sample_rate / 2.0
        cutoff = min(max(float(cutoff_hz), 1.0), nyquist * 0.99)
        self.cutoff_hz = cutoff
        self._sos = butter(order, cutoff, btype="highpass", fs=context.sample_rate, output="sos")
        self._zi: Optional[np.ndarray] = None

    def process(self, times: np.ndarray) -> np.ndarray:
        signal = self._mix_inputs(times)
        channels = signal.shape[0]
        if self._zi is None or self._zi.shape[0] != channels:
            self._zi = np.stack([sosfilt_zi(self._sos) * 0.0 for _ in range(channels)])
        out = np.empty_like(signal)
        for ch in range(channels):
            out[ch], self._zi[ch] = sosfilt(self._sos, signal[ch], zi=self._zi[ch])
        return out.astype(np.float32)


class DestinationNode(AudioNode):
    """Final stereo mix bus."""

    def process(self, times: np.ndarray) -> np.ndarray:
        return _to_stereo(self._mix_inputs(times))


class SourceNode(AudioNode):
    """
    Base for nodes that generate sound between start() and stop().
    Ended sources disconnect themselves and fire ``on_ended``.
    """

    def __init__(self, context: "AudioContext"):
        super().__init__(context)
        self.start_time: Optional[float] = None
        self.stop_time: Optional[float] = None
        self.ended = False
        self.on_ended: Optional[Callable[["SourceNode"], None]] = None

    def start(self, when: float = 0.0) -> None:
        if self.start_time is not None:
            return
        self.start_time = max(float(when), self.context.current_time)
        self.context._register_source(self)

    def stop(self, when: float = 0.0) -> None:
        self.stop_time = max(float(when), self.context.current_time)

    @property
    def end_time(self) -> Optional[float]:
        return self.stop_time

    def _active_mask(self, times: np.ndarray) -> np.ndarray:
        if self.start_time is None or self.ended:
            return np.zeros(len(times), dtype=bool)
        mask = times >= self.start_time
        end = self.end_time
        if end is not None:
            mask &= times < end
        return mask

    def _finish(self) -> None:
        if self.ended:
            return
        self.ended = True
        self.disconnect()
        if self.on_ended is not None:
            try:
                self.on_ended(self)
            except Exception as e:
                log_event("ERROR", "AudioContext", "on_ended callback failed", error=e)


class OscillatorNode(SourceNode):
    """Phase-continuous periodic oscillator."""

    WAVEFORMS = ("sine", "square", "sawtooth", "triangle")

    def __init__(self, context: "AudioContext", frequency: float = 440.0, waveform: str = "sine"):
        super().__init__(context)
        self.frequency = AudioParam(frequency, min_value=0.0, max_value=context.sample_rate / 2.0)
        self.waveform = waveform if waveform in self.WAVEFORMS else "sine"
        self._phase = 0.0

    def _shape(self, phase: np.ndarray) -> np.ndarray:
        if self.waveform == "square":
            return np.where(phase < 0.5, 1.0, -1.0)
        if self.waveform == "sawtooth":
            return 2.0 * phase - 1.0
        if self.waveform == "triangle":
            return 1.0 - 4.0 * np.abs(phase - 0.5)
        return np.sin(2.0 * np.pi * phase)

    def process(self, times: np.ndarray) -> np.ndarray:
        out = np.zeros((1, len(times)), dtype=np.float32)
        active = self._active_mask(times)
        if not np.any(active):
            return out
        if self.frequency.has_automation:
            freq = self.frequency.curve(times[active])
        else:
            freq = np.full(int(np.count_nonzero(active)), self.frequency.value)
        increments = freq / self.context.sample_rate
        phase = (self._phase + np.concatenate(([0.0], np.cumsum(increments)[:-1]))) % 1.0
        self._phase = float((self._phase + np.sum(increments)) % 1.0)
        out[0, active] = self._shape(phase)
        return out


class BufferSourceNode(SourceNode):
    """Plays a decoded sample array, resampled linearly to the context rate."""

    def __init__(self, context: "AudioContext", samples: np.ndarray, sample_rate: int, loop: bool = False):
        super().__init__(context)
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 1:
            data = data[np.newaxis, :]
        if data.shape[0] > 2:
            data = np.mean(data, axis=0, keepdims=True, dtype=np.float32)
        self.samples = data
        self.sample_rate = int(sample_rate)
        self.loop = loop
        self._position = 0.0    # in buffer frames
        self._rate = self.sample_rate / float(context.sample_rate)

    @property
    def duration(self) -> float:
        return self.samples.shape[1] / self.sample_rate if self.sample_rate > 0 else 0.0

    @property
    def end_time(self) -> Optional[float]:
        if self.start_time is None:
            return self.stop_time
        natural_end = None if self.loop else self.start_time + self.duration
        candidates = [t for t in (self.stop_time, natural_end) if t is not None]
        return min(candidates) if candidates else None

    def process(self, times: np.ndarray) -> np.ndarray:
        channels, length = self.samples.shape
        out = np.zeros((channels, len(times)), dtype=np.float32)
        active = self._active_mask(times)
        count = int(np.count_nonzero(active))
        if count == 0 or length == 0:
            return out

        positions = self._position + np.arange(count) * self._rate
        self._position += count * self._rate
        if self.loop:
            positions = positions % length
            self._position %= length
        valid = np.ones(count, dtype=bool) if self.loop else positions <= length - 1
        index = np.arange(length)
        active_idx = np.nonzero(active)[0]
        for ch in range(channels):
            values = np.interp(positions, index, self.samples[ch])
            values[~valid] = 0.0
            out[ch, active_idx] = values
        return out


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

def _open_output_stream(context: "AudioContext"):
    if not HAS_SOUNDDEVICE:
        raise RuntimeError("sounddevice/PortAudio is not available")
    return sd.OutputStream(
        samplerate=context.sample_rate,
        blocksize=context.block_size,
        channels=2,
        dtype="float32",
        device=context.device,
        callback=context._stream_callback,
    )


class AudioContext:
    """
    Owns the node graph, the output stream and the audio clock.

    Starts suspended; ``resume()`` opens and starts the output stream.
    ``render()`` may also be called directly to pull audio offline.
    """

    def __init__(self, sample_rate: int = 44100, block_size: int = 512, device: Optional[int] = None,
                 stream_factory: Callable[["AudioContext"], object] = _open_output_stream):
        self.sample_rate = int(sample_rate)
        self.block_size = int(block_size)
        self.device = device
        self.state = ContextState.SUSPENDED
        self.lock = threading.RLock()
        self.destination = DestinationNode(self)
        self.block_index = 0
        self._frames_rendered = 0
        self._sources: list[SourceNode] = []
        self._stream = None
        self._stream_factory = stream_factory

    @property
    def current_time(self) -> float:
        return self._frames_rendered / self.sample_rate

    @property
    def live_source_count(self) -> int:
        return len(self._sources)

    # ----- node factories -----

    def create_gain(self, gain: float = 1.0) -> GainNode:
        return GainNode(self, gain)

    def create_stereo_panner(self, pan: float = 0.0) -> StereoPannerNode:
        return StereoPannerNode(self, pan)

    def create_oscillator(self, frequency: float = 440.0, waveform: str = "sine") -> OscillatorNode:
        return OscillatorNode(self, frequency, waveform)

    def create_buffer_source(self, samples: np.ndarray, sample_rate: Optional[int] = None,
                             loop: bool = False) -> BufferSourceNode:
        return BufferSourceNode(self, samples, sample_rate or self.sample_rate, loop)

    def create_highpass(self, cutoff_hz: float = 3000.0) -> HighpassFilterNode:
        return HighpassFilterNode(self, cutoff_hz)

    # ----- lifecycle -----

    def resume(self) -> None:
        """Open the output stream on first use and start it. Raises on device failure."""
        with self.lock:
            if self.state == ContextState.CLOSED:
                raise RuntimeError("audio context is closed")
            if self.state == ContextState.RUNNING:
                return
            if self._stream is None:
                self._stream = self._stream_factory(self)
            self._stream.start()
            self.state = ContextState.RUNNING
        log_event("INFO", "AudioContext", "Resumed", sample_rate=self.sample_rate, block=self.block_size)

    def suspend(self) -> None:
        """Silence output and stop the stream. stream.stop() blocks on an in-flight
        callback that takes the lock, so it runs after the lock is released."""
        with self.lock:
            if self.state != ContextState.RUNNING:
                return
            self.state = ContextState.SUSPENDED
            stream = self._stream
        if stream is not None:
            stream.stop()
        log_event("INFO", "AudioContext", "Suspended")

    def close(self) -> None:
        with self.lock:
            if self.state == ContextState.CLOSED:
                return
            stream, self._stream = self._stream, None
            self.state = ContextState.CLOSED
            for source in list(self._sources):
                source._finish()
            self._sources = []
            self.destination._inputs = []
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                log_event("WARN", "AudioContext", "Error closing output stream", error=e)
        log_event("INFO", "AudioContext", "Closed")

    # ----- rendering -----

    def _register_source(self, source: SourceNode) -> None:
        with self.lock:
            if source not in self._sources:
                self._sources.append(source)

    def release_source(self, source: SourceNode) -> None:
        with self.lock:
            source._finish()
            if source in self._sources:
                self._sources.remove(source)

    def render(self, frames: int) -> np.ndarray:
        """Render the next ``frames`` frames as a (frames, 2) float32 array."""
        frames = int(frames)
        if self.state == ContextState.CLOSED or frames <= 0:
            return np.zeros((max(frames, 0), 2), dtype=np.float32)

        with self.lock:
            start = self._frames_rendered
            times = (start + np.arange(frames)) / self.sample_rate
            self.block_index += 1
            mix = self.destination.pull(times)
            self._frames_rendered += frames
            block_end = self.current_time

            for node in self._automated_nodes():
                for param in node:
                    param.settle(block_end)

            for source in list(self._sources):
                end = source.end_time
                if end is not None and end <= block_end:
                    self.release_source(source)

        return np.clip(mix.T, -1.0, 1.0).astype(np.float32)

    def _automated_nodes(self):
        seen = set()
        stack = list(self.destination._inputs)
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            stack.extend(node._inputs)
            params = [p for p in vars(node).values() if isinstance(p, AudioParam) and p.has_automation]
            if params:
                yield params

    def _stream_callback(self, outdata, frames, time_info, status) -> None:
        if status:
            log_event("DEBUG", "AudioContext", "Stream status", status=status)
        if self.state != ContextState.RUNNING:
            outdata.fill(0)
            return
        outdata[:] = self.render(frames)
