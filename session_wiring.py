from typing import Optional

from beat_analysis import TempoEstimate
from config import SyncMode, clamp


def tempo_summary_text(estimate: Optional[TempoEstimate]) -> str:
    """Return the human-readable tempo line, e.g. 'Detected Beat: 120 BPM, confidence 95%'."""
    if estimate is None:
        return "Detected Beat: not analyzed"
    return f"Detected Beat: {estimate.bpm:.0f} BPM, confidence {estimate.confidence * 100:.0f}%"


def sync_status_text(sync_mode: SyncMode, beat_unavailable: bool, frequency_hz: float) -> str:
    """Return the sync indicator text for the current mode."""
    if sync_mode == SyncMode.BEAT and not beat_unavailable:
        return "Beat sync"
    rate = f"Manual {frequency_hz:.2f} Hz"
    if sync_mode == SyncMode.BEAT:
        return f"{rate} (no beat data)"
    return rate


def position_bar(position: float, width: int = 41) -> str:
    """Render a 0..1 position as a one-line track with a marker, for console output."""
    width = max(3, int(width))
    index = int(round(clamp(position, 0.0, 1.0) * (width - 1)))
    return "[" + "-" * index + "O" + "-" * (width - 1 - index) + "]"


def play_success_cue(audio_graph, estimate: Optional[TempoEstimate], enabled: bool) -> bool:
    """Play the rising chime after a tempo was measured.
    Returns True when the cue was scheduled."""
    if not audio_graph or not enabled or estimate is None or not estimate.is_measured:
        return False
    return bool(audio_graph.click("success"))


def shutdown_runtime(stop_scheduler_callback, audio_graph) -> None:
    """Stop the scheduler first, then close the audio graph if present."""
    stop_scheduler_callback()
    if audio_graph:
        audio_graph.close()
