import unittest
from unittest import mock

import numpy as np

from audio_source import SampleBuffer
from beat_analysis import BeatAnalyzer, TempoEstimate, detection_threshold, estimate_tempo, find_peaks
from config import AnalysisConfig
from signal_utils import preprocess

SR = 1000


def bump_train(centers, length, amplitudes=None):
    """Triangular onsets 21 samples wide; wide enough to survive 5-tap smoothing."""
    data = np.zeros(length)
    shape = 1.0 - np.abs(np.arange(-10, 11)) / 10.0
    amplitudes = amplitudes or [1.0] * len(centers)
    for center, amplitude in zip(centers, amplitudes):
        data[center - 10:center + 11] += amplitude * shape
    return data


class TestThreshold(unittest.TestCase):
    def test_sensitivity_sweeps_threshold(self):
        self.assertAlmostEqual(detection_threshold(0.0), 0.3)
        self.assertAlmostEqual(detection_threshold(0.5), 0.5)
        self.assertAlmostEqual(detection_threshold(1.0), 0.7)
        self.assertAlmostEqual(detection_threshold(5.0), 0.7)


class TestFindPeaks(unittest.TestCase):
    def test_regular_onsets(self):
        centers = [250 + 500 * k for k in range(6)]
        peaks = find_peaks(preprocess(bump_train(centers, 3200)), SR)
        self.assertEqual(peaks, tuple(centers))

    def test_min_distance_keeps_first_peak(self):
        peaks = find_peaks(preprocess(bump_train([100, 150], 400)), SR)
        self.assertEqual(peaks, (100,))

    def test_sensitivity_filters_weak_onsets(self):
        samples = preprocess(bump_train([200, 600], 1000, amplitudes=[0.6, 1.0]))
        self.assertEqual(find_peaks(samples, SR, sensitivity=0.5), (200, 600))
        self.assertEqual(find_peaks(samples, SR, sensitivity=1.0), (600,))

    def test_only_leading_segment_scanned(self):
        config = AnalysisConfig(max_analysis_seconds=1.0)
        samples = preprocess(bump_train([250, 750, 1250, 1750], 2000))
        self.assertEqual(find_peaks(samples, SR, config=config), (250, 750))

    def test_tiny_or_silent_input(self):
        self.assertEqual(find_peaks(np.zeros(3), SR), ())
        self.assertEqual(find_peaks(np.zeros(5000), SR), ())


class TestEstimateTempo(unittest.TestCase):
    def test_fewer_than_two_peaks_falls_back(self):
        for peaks in [(), (42,)]:
            estimate = estimate_tempo(peaks, 44100)
            self.assertEqual(estimate.bpm, 120.0)
            self.assertEqual(estimate.confidence, 0.0)
            self.assertFalse(estimate.is_measured)

    def test_fast_tempo_clamped_to_max(self):
        # 150-sample intervals imply 400 BPM
        self.assertEqual(estimate_tempo((0, 150, 300, 450), SR).bpm, 180.0)

    def test_slow_tempo_clamped_to_min(self):
        # 6000-sample intervals imply 10 BPM
        self.assertEqual(estimate_tempo((0, 6000, 12000, 18000), SR).bpm, 60.0)

    def test_three_peaks_give_neutral_confidence(self):
        estimate = estimate_tempo((0, 500, 1000), SR)
        self.assertEqual(estimate.bpm, 120.0)
        self.assertEqual(estimate.confidence, 0.5)

    def test_periodic_peaks_high_confidence(self):
        peaks = tuple(range(0, 10 * 22050, 22050))
        estimate = estimate_tempo(peaks, 44100)
        self.assertAlmostEqual(estimate.bpm, 120.0)
        self.assertGreaterEqual(estimate.confidence, 0.95)

    def test_alternating_intervals_low_confidence(self):
        peaks = [0]
        for k in range(8):
            peaks.append(peaks[-1] + (100 if k % 2 == 0 else 300))
        estimate = estimate_tempo(tuple(peaks), SR)
        self.assertLess(estimate.confidence, 0.3)

    def test_upper_median_on_even_count(self):
        # intervals 400, 500, 600, 700 -> upper median 600 -> 100 BPM
        estimate = estimate_tempo((0, 400, 900, 1500, 2200), SR)
        self.assertAlmostEqual(estimate.bpm, 100.0)

    def test_beat_interval(self):
        self.assertAlmostEqual(TempoEstimate(120.0, 1.0, 10).beat_interval_ms, 500.0)


class TestBeatAnalyzer(unittest.TestCase):
    def test_analyze_buffer(self):
        centers = [250 + 500 * k for k in range(10)]
        buffer = SampleBuffer.from_array(bump_train(centers, 5200), SR)
        analyzer = BeatAnalyzer()
        with mock.patch("beat_analysis.log_event") as log_mock:
            estimate = analyzer.analyze(buffer)

        self.assertAlmostEqual(estimate.bpm, 120.0)
        self.assertAlmostEqual(estimate.confidence, 1.0)
        self.assertEqual(analyzer.last_peaks, tuple(centers))
        self.assertEqual(log_mock.call_args[0][0], "INFO")

    def test_silent_buffer_warns_and_falls_back(self):
        buffer = SampleBuffer.from_array(np.zeros(4000), SR)
        with mock.patch("beat_analysis.log_event") as log_mock:
            estimate = BeatAnalyzer().analyze(buffer)

        self.assertEqual((estimate.bpm, estimate.confidence), (120.0, 0.0))
        self.assertEqual(log_mock.call_args[0][0], "WARN")
        self.assertIn("Insufficient beat data", log_mock.call_args[0][2])


if __name__ == "__main__":
    unittest.main()
