"""
bilateral-beats - Beat Analysis
Estimates tempo (BPM) and a confidence score from raw track samples.

Pipeline: normalize + smooth (signal_utils) -> greedy local-maximum peak
picking over the leading segment -> median peak interval -> BPM, with the
coefficient of variation of the intervals mapped to a 0-1 confidence.
Runs once per loaded track, never on the scheduler tick path.
"""

import time
from dataclasses import dataclass
from typing import Optional

import numpy as np

from config import AnalysisConfig, clamp
from logging_utils import log_event
from signal_utils import preprocess

# Ordered sample indices of detected onsets
PeakSet = tuple[int, ...]


@dataclass(frozen=True)
class TempoEstimate:
    """Detected tempo snapshot"""
    bpm: float                # Always within [min_bpm, max_bpm]
    confidence: float         # 0.0 = untrustworthy, 1.0 = perfectly regular intervals
    peak_count: int = 0       # Peaks the estimate was derived from

    @property
    def is_measured(self) -> bool:
        """False when bpm is only the default fallback (fewer than 2 peaks)."""
        return self.peak_count >= 2

    @property
    def beat_interval_ms(self) -> float:
        return 60000.0 / self.bpm if self.bpm > 0 else 0.0


def detection_threshold(sensitivity: float, config: Optional[AnalysisConfig] = None) -> float:
    """Map sensitivity (0-1) onto the peak threshold (0.3-0.7 with defaults)."""
    config = config or AnalysisConfig()
    return config.threshold_base + clamp(float(sensitivity), 0.0, 1.0) * config.threshold_span


def find_peaks(samples: np.ndarray, sample_rate: int, sensitivity: float = 0.5,
               config: Optional[AnalysisConfig] = None) -> PeakSet:
    """Find onset peaks in a preprocessed (normalized, smoothed) buffer.

    A sample is a peak when it exceeds the threshold, is strictly greater
    than its two neighbours on each side, and lies at least the minimum
    peak distance after the previously accepted peak. Only the first
    ``max_analysis_seconds`` of the buffer are scanned.
    """
    config = config or AnalysisConfig()
    data = np.asarray(samples, dtype=np.float64)
    if sample_rate <= 0:
        return ()

    threshold = detection_threshold(sensitivity, config)
    min_distance = max(1, int(np.floor(sample_rate * config.min_peak_distance_s)))
    segment_length = min(len(data), int(sample_rate * config.max_analysis_seconds))
    if segment_length < 5:
        return ()

    segment = data[:segment_length]
    center = segment[2:-2]
    # 5-point strict local maximum above threshold
    is_candidate = (
        (center > threshold)
        & (center > segment[1:-3])
        & (center > segment[:-4])
        & (center > segment[3:-1])
        & (center > segment[4:])
    )
    candidates = np.nonzero(is_candidate)[0] + 2

    peaks: list[int] = []
    last_peak = -min_distance
    for index in candidates:
        index = int(index)
        if index - last_peak >= min_distance:
            peaks.append(index)
            last_peak = index
    return tuple(peaks)


def estimate_tempo(peaks: PeakSet, sample_rate: int,
                   config: Optional[AnalysisConfig] = None) -> TempoEstimate:
    """Convert peak positions into a clamped BPM and an interval-regularity confidence.

    Never raises: degenerate inputs produce the default fallback estimate.
    """
    config = config or AnalysisConfig()
    peak_count = len(peaks)
    if peak_count < 2 or sample_rate <= 0:
        return TempoEstimate(bpm=config.default_bpm, confidence=0.0, peak_count=peak_count)

    intervals = np.diff(np.asarray(peaks, dtype=np.float64))
    # Median (upper median on even counts) resists one or two spurious/missed peaks
    median_interval = float(np.sort(intervals)[len(intervals) // 2])
    if median_interval <= 0:
        return TempoEstimate(bpm=config.default_bpm, confidence=0.0, peak_count=peak_count)

    raw_bpm = 60.0 * sample_rate / median_interval
    bpm = clamp(raw_bpm, config.min_bpm, config.max_bpm)

    if peak_count < 4:
        confidence = config.neutral_confidence
    else:
        mean_interval = float(np.mean(intervals))
        cv = float(np.std(intervals)) / mean_interval if mean_interval > 0 else 1.0
        # cv >= 0.5 collapses confidence to 0, perfectly regular intervals give 1
        confidence = clamp(1.0 - 2.0 * cv, 0.0, 1.0)

    return TempoEstimate(bpm=bpm, confidence=confidence, peak_count=peak_count)


class BeatAnalyzer:
    """
    Runs the full analysis pipeline on a decoded track.
    The result is meant to be cached by the caller for the life of the track.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()
        self.last_peaks: PeakSet = ()

    def analyze_samples(self, samples: np.ndarray, sample_rate: int,
                        sensitivity: float = 0.5) -> TempoEstimate:
        t_start = time.perf_counter()
        smoothed = preprocess(samples, self.config.smoothing_window)
        peaks = find_peaks(smoothed, sample_rate, sensitivity, self.config)
        estimate = estimate_tempo(peaks, sample_rate, self.config)
        self.last_peaks = peaks
        elapsed_ms = (time.perf_counter() - t_start) * 1000.0

        if not estimate.is_measured:
            log_event("WARN", "Analysis", "Insufficient beat data, using default tempo",
                      peaks=len(peaks), bpm=f"{estimate.bpm:.1f}", elapsed_ms=f"{elapsed_ms:.0f}")
        else:
            log_event("INFO", "Analysis", "Tempo estimated",
                      bpm=f"{estimate.bpm:.1f}", confidence=f"{estimate.confidence:.2f}",
                      peaks=len(peaks), elapsed_ms=f"{elapsed_ms:.0f}")
        return estimate

    def analyze(self, buffer, sensitivity: float = 0.5) -> TempoEstimate:
        """Analyze the first channel of a SampleBuffer."""
        return self.analyze_samples(buffer.mono(), buffer.sample_rate, sensitivity)
