import unittest

from beat_analysis import TempoEstimate
from config import SyncMode
from session_wiring import (
    play_success_cue,
    position_bar,
    shutdown_runtime,
    sync_status_text,
    tempo_summary_text,
)


class DummyGraph:
    def __init__(self):
        self.clicks = []
        self.closed = False

    def click(self, kind=None, side=None):
        self.clicks.append(kind)
        return True

    def close(self):
        self.closed = True


class TestSessionWiring(unittest.TestCase):
    def test_tempo_summary_text(self):
        estimate = TempoEstimate(bpm=120.0, confidence=0.95, peak_count=12)
        self.assertEqual(tempo_summary_text(estimate), "Detected Beat: 120 BPM, confidence 95%")
        self.assertEqual(tempo_summary_text(None), "Detected Beat: not analyzed")

    def test_sync_status_text(self):
        self.assertEqual(sync_status_text(SyncMode.BEAT, False, 0.5), "Beat sync")
        self.assertEqual(sync_status_text(SyncMode.BEAT, True, 0.5), "Manual 0.50 Hz (no beat data)")
        self.assertEqual(sync_status_text(SyncMode.MANUAL, False, 1.25), "Manual 1.25 Hz")

    def test_position_bar(self):
        self.assertEqual(position_bar(0.0, 5), "[O----]")
        self.assertEqual(position_bar(0.5, 5), "[--O--]")
        self.assertEqual(position_bar(1.0, 5), "[----O]")
        self.assertEqual(position_bar(7.0, 5), "[----O]")

    def test_play_success_cue(self):
        graph = DummyGraph()
        measured = TempoEstimate(bpm=120.0, confidence=1.0, peak_count=8)
        fallback = TempoEstimate(bpm=120.0, confidence=0.0, peak_count=0)

        self.assertFalse(play_success_cue(graph, fallback, True))
        self.assertFalse(play_success_cue(graph, measured, False))
        self.assertFalse(play_success_cue(None, measured, True))
        self.assertTrue(play_success_cue(graph, measured, True))
        self.assertEqual(graph.clicks, ["success"])

    def test_shutdown_runtime_order(self):
        calls = []
        graph = DummyGraph()

        def stop():
            calls.append("stop")
            self.assertFalse(graph.closed)

        shutdown_runtime(stop, graph)
        self.assertEqual(calls, ["stop"])
        self.assertTrue(graph.closed)

        shutdown_runtime(stop, None)
        self.assertEqual(calls, ["stop", "stop"])


if __name__ == "__main__":
    unittest.main()
