"""
bilateral-beats - Session
Wires track loading, beat analysis, the audio graph and the stimulus
scheduler into one controllable session.

The renderer is any object exposing:
    show_position(position: float)   - called every tick, 0.0 left .. 1.0 right
    show_beat(boundary: BeatBoundary) - called at the start of every beat
"""

import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union

from audio_graph import AudioGraph
from audio_source import AudioSource, SourceOrigin, TrackSlot, decode_source
from beat_analysis import BeatAnalyzer, TempoEstimate
from config import Config, apply_dict_to_dataclass, sanitize_config
from logging_utils import log_event
from session_wiring import play_success_cue, shutdown_runtime, tempo_summary_text
from stimulus_scheduler import BeatBoundary, IntervalTimer, SchedulerStatus, StimulusScheduler

# Flat setting name -> config section, for update_settings()
SETTING_SECTIONS = {
    'sync_mode': 'stimulus',
    'movement_pattern': 'stimulus',
    'frequency_hz': 'stimulus',
    'amplitude': 'stimulus',
    'center_offset': 'stimulus',
    'sensitivity': 'stimulus',
    'edge_pause_ms': 'stimulus',
    'volume': 'audio',
    'loop': 'audio',
    'cue_enabled': 'cue',
    'cue_kind': 'cue',
    'cue_volume': 'cue',
    'cue_waveform': 'cue',
    'session_duration_s': 'scheduler',
}

# Flat names that differ from the dataclass field they land on
_FIELD_NAMES = {
    'cue_enabled': 'enabled',
    'cue_kind': 'kind',
    'cue_volume': 'volume',
    'cue_waveform': 'waveform',
}


class BilateralSession:
    """
    Owns one track, its cached tempo estimate, the audio graph and the scheduler.
    All public methods report problems through status_callback instead of raising.
    """

    def __init__(self, config: Optional[Config] = None,
                 renderer=None,
                 status_callback: Optional[Callable[[str, bool], None]] = None,
                 audio_graph: Optional[AudioGraph] = None,
                 fetch: Optional[Callable[[str], bytes]] = None,
                 timer_factory=None,
                 clock: Optional[Callable[[], float]] = None):
        self.config = sanitize_config(config or Config())
        self.renderer = renderer
        self.status_callback = status_callback
        self.fetch = fetch

        self.audio_graph = audio_graph or AudioGraph(self.config.audio, self.config.cue, status_callback)
        self.track = TrackSlot()
        self.analyzer = BeatAnalyzer(self.config.analysis)
        self.scheduler = StimulusScheduler(
            self.config,
            audio_graph=self.audio_graph,
            on_position=self._on_position,
            on_beat=self._on_beat,
            status_callback=self._on_scheduler_status,
            clock=clock or time.monotonic,
            timer_factory=timer_factory or IntervalTimer,
        )

        self._estimate: Optional[TempoEstimate] = None
        self._lock = threading.Lock()
        self._analysis_thread: Optional[threading.Thread] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self.scheduler.running

    # ------------------------------------------------------------------
    # Track
    # ------------------------------------------------------------------

    def load_track(self, source: Union[AudioSource, str, Path]) -> bool:
        """Decode and install a track. Returns False (visual-only) when decoding fails."""
        if not isinstance(source, AudioSource):
            source = self._source_from_reference(source)

        if self.running:
            self.stop()
        self.track.release()
        self.audio_graph.attach_source(None)
        self._set_estimate(None)

        try:
            buffer = decode_source(source, self.fetch)
        except RuntimeError as e:
            log_event("ERROR", "Session", "Track load failed", title=source.display_title, error=e)
            source.release()
            self._notify_status(f"Could not load {source.display_title}: visual-only", False)
            return False

        self.track.replace(source, buffer)
        self.audio_graph.attach_source(buffer, loop=self.config.audio.loop)
        self._notify_status(f"Loaded {source.display_title} ({buffer.duration:.1f}s)", True)
        return True

    @staticmethod
    def _source_from_reference(reference: Union[str, Path]) -> AudioSource:
        text = str(reference)
        if text.startswith(("http://", "https://")):
            return AudioSource(SourceOrigin.REMOTE_URL, text)
        return AudioSource(SourceOrigin.UPLOAD, Path(text))

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, background: bool = False):
        """Estimate the track tempo once and cache it.

        Returns the TempoEstimate, or the worker thread when background=True.
        """
        buffer = self.track.buffer
        if buffer is None:
            log_event("WARN", "Session", "Analyze requested with no track loaded")
            self._notify_status("Load a track before analyzing", False)
            return None

        if not background:
            return self._run_analysis(buffer)

        if self._analysis_thread is not None and self._analysis_thread.is_alive():
            log_event("DEBUG", "Session", "Analysis already in progress")
            return self._analysis_thread
        thread = threading.Thread(target=self._run_analysis, args=(buffer,),
                                  name="beat-analysis", daemon=True)
        self._analysis_thread = thread
        thread.start()
        return thread

    def _run_analysis(self, buffer) -> Optional[TempoEstimate]:
        try:
            estimate = self.analyzer.analyze(buffer, self.config.stimulus.sensitivity)
        except Exception as e:
            log_event("ERROR", "Session", "Beat analysis failed", error=e)
            self._notify_status("Beat analysis failed", False)
            return None

        # The track may have been swapped while a background analysis ran
        if self.track.buffer is not buffer:
            log_event("DEBUG", "Session", "Discarding analysis for a replaced track")
            return estimate

        self._set_estimate(estimate)
        self._notify_status(tempo_summary_text(estimate), estimate.is_measured)
        play_success_cue(self.audio_graph, estimate, self.config.cue.success_chime)
        return estimate

    def _set_estimate(self, estimate: Optional[TempoEstimate]) -> None:
        with self._lock:
            self._estimate = estimate
        self.scheduler.set_tempo(estimate)

    def tempo_snapshot(self) -> Optional[TempoEstimate]:
        with self._lock:
            return self._estimate

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start audio (if available) and the stimulus tick. No-op when already running."""
        if self._closed:
            log_event("WARN", "Session", "Start ignored on a closed session")
            return False
        if self.running:
            return False
        self.audio_graph.start()
        started = self.scheduler.start()
        if started:
            self._notify_status("Session started", True)
        return started

    def stop(self) -> None:
        """Stop the tick and pause audio. Safe to call repeatedly."""
        was_running = self.running
        self.scheduler.stop()
        self.audio_graph.pause()
        if was_running:
            self._notify_status("Session stopped", True)

    def update_settings(self, **changes) -> dict:
        """Apply live setting changes; values are clamped into range.
        Returns the applied values keyed by the names given."""
        sections: dict = {}
        for name, value in changes.items():
            section = SETTING_SECTIONS.get(name)
            if section is None:
                log_event("WARN", "Session", "Ignoring unknown setting", name=name)
                continue
            sections.setdefault(section, {})[_FIELD_NAMES.get(name, name)] = value

        apply_dict_to_dataclass(self.config, sections)
        sanitize_config(self.config)

        if 'volume' in changes:
            self.audio_graph.set_volume(self.config.audio.volume)
        if 'loop' in changes and self.track.buffer is not None and not self.running:
            self.audio_graph.attach_source(self.track.buffer, loop=self.config.audio.loop)

        applied = {}
        for name in changes:
            section = SETTING_SECTIONS.get(name)
            if section is not None:
                applied[name] = getattr(getattr(self.config, section), _FIELD_NAMES.get(name, name))
        log_event("DEBUG", "Session", "Settings updated", **applied)
        return applied

    def close(self) -> None:
        """Tear down the scheduler, audio graph and track. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        shutdown_runtime(self.stop, self.audio_graph)
        self.track.release()
        log_event("INFO", "Session", "Closed")

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _on_position(self, position: float) -> None:
        if self.renderer is not None:
            self.renderer.show_position(position)

    def _on_beat(self, boundary: BeatBoundary) -> None:
        if self.renderer is not None:
            self.renderer.show_beat(boundary)

    def _on_scheduler_status(self, message: str, ok: bool) -> None:
        if message == SchedulerStatus.SESSION_COMPLETE:
            self.audio_graph.pause()
        self._notify_status(message, ok)

    def _notify_status(self, message: str, ok: bool) -> None:
        if self.status_callback:
            try:
                self.status_callback(message, ok)
            except Exception as e:
                log_event("ERROR", "Session", "Status callback failed", error=e)
