import io
import os
import tempfile
import unittest

import numpy as np
import soundfile as sf

from audio_source import AudioSource, SourceOrigin
from config import Config, SyncMode, clamp
from session import BilateralSession
from stimulus_scheduler import SchedulerStatus

SR = 1000


def beat_track(bpm_interval: int = 500, beats: int = 10) -> np.ndarray:
    data = np.zeros(bpm_interval * beats + 200, dtype=np.float32)
    shape = 1.0 - np.abs(np.arange(-10, 11)) / 10.0
    for k in range(beats):
        center = 250 + bpm_interval * k
        data[center - 10:center + 11] += shape
    return data


def wav_bytes(data: np.ndarray) -> bytes:
    handle = io.BytesIO()
    sf.write(handle, data, SR, format="WAV", subtype="FLOAT")
    return handle.getvalue()


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class ManualTimer:
    def __init__(self, interval_s, callback):
        self.callback = callback
        self.cancelled = False

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True


class DummyGraph:
    def __init__(self):
        self.attached = []
        self.started = 0
        self.paused = 0
        self.closed = 0
        self.volumes = []
        self.pans = []
        self.clicks = []

    def attach_source(self, buffer, loop=None):
        self.attached.append(buffer)

    def start(self):
        self.started += 1
        return True

    def pause(self):
        self.paused += 1

    def close(self):
        self.closed += 1

    def set_volume(self, value):
        self.volumes.append(value)
        return value

    def set_pan(self, value):
        pan = clamp(value, -1.0, 1.0)
        self.pans.append(pan)
        return pan

    def click(self, kind=None, side=None):
        self.clicks.append((getattr(kind, "value", kind), side))
        return True

    def release_transients(self):
        pass


class DummyRenderer:
    def __init__(self):
        self.positions = []
        self.beats = []

    def show_position(self, position):
        self.positions.append(position)

    def show_beat(self, boundary):
        self.beats.append(boundary.beat_index)


class TestBilateralSession(unittest.TestCase):
    def setUp(self):
        self.statuses = []
        self.graph = DummyGraph()
        self.renderer = DummyRenderer()
        self.clock = FakeClock()
        self.fetched = []
        self.tmpdir = tempfile.TemporaryDirectory()
        self.track_path = os.path.join(self.tmpdir.name, "beat.wav")
        sf.write(self.track_path, beat_track(), SR, subtype="FLOAT")
        self.session = BilateralSession(
            Config(),
            self.renderer,
            lambda message, ok: self.statuses.append((message, ok)),
            audio_graph=self.graph,
            fetch=self._fetch,
            timer_factory=ManualTimer,
            clock=self.clock,
        )

    def tearDown(self):
        self.session.close()
        self.tmpdir.cleanup()

    def _fetch(self, url):
        self.fetched.append(url)
        return wav_bytes(beat_track())

    def test_load_and_analyze(self):
        self.assertTrue(self.session.load_track(self.track_path))
        self.assertIsNotNone(self.graph.attached[-1])

        estimate = self.session.analyze()
        self.assertAlmostEqual(estimate.bpm, 120.0)
        self.assertIs(self.session.tempo_snapshot(), estimate)
        self.assertIs(self.session.scheduler.tempo, estimate)
        self.assertIn(("Detected Beat: 120 BPM, confidence 100%", True), self.statuses)
        self.assertIn(("success", None), self.graph.clicks)

    def test_background_analysis(self):
        self.session.load_track(self.track_path)
        thread = self.session.analyze(background=True)
        thread.join(5.0)
        self.assertFalse(thread.is_alive())
        self.assertAlmostEqual(self.session.tempo_snapshot().bpm, 120.0)

    def test_analyze_without_track(self):
        self.assertIsNone(self.session.analyze())
        self.assertFalse(self.statuses[-1][1])

    def test_load_failure_is_visual_only(self):
        self.assertFalse(self.session.load_track(os.path.join(self.tmpdir.name, "missing.wav")))
        self.assertFalse(self.session.track.loaded)
        self.assertFalse(self.statuses[-1][1])
        self.assertIn("visual-only", self.statuses[-1][0])

        self.assertTrue(self.session.start())
        self.clock.now = 0.5
        self.session.scheduler.tick()
        self.assertEqual(len(self.renderer.positions), 1)

    def test_remote_url_uses_fetch(self):
        self.assertTrue(self.session.load_track("https://example.invalid/beat.wav"))
        self.assertEqual(self.fetched, ["https://example.invalid/beat.wav"])
        self.assertEqual(self.session.track.source.origin, SourceOrigin.REMOTE_URL)

    def test_uploaded_bytes(self):
        source = AudioSource(SourceOrigin.UPLOAD, wav_bytes(beat_track()), title="upload.wav")
        self.assertTrue(self.session.load_track(source))
        self.assertEqual(self.session.track.buffer.sample_rate, SR)

    def test_replacing_track_releases_previous(self):
        released = []
        first = AudioSource(SourceOrigin.SAMPLE, self.track_path, on_release=lambda: released.append("first"))
        self.session.load_track(first)
        self.session.analyze()
        self.session.load_track(self.track_path)

        self.assertEqual(released, ["first"])
        self.assertTrue(first.released)
        self.assertIsNone(self.session.tempo_snapshot())

    def test_start_stop(self):
        self.session.load_track(self.track_path)
        self.session.analyze()

        self.assertTrue(self.session.start())
        self.assertFalse(self.session.start())
        self.assertEqual(self.graph.started, 1)

        for now in (0.0, 0.5, 1.0):
            self.clock.now = now
            self.session.scheduler.tick()
        self.assertEqual(self.renderer.positions, [0.0, 1.0, 0.0])
        self.assertEqual(self.renderer.beats, [0, 1, 2])

        self.session.stop()
        self.session.stop()
        self.assertFalse(self.session.running)
        self.assertIn(("Session stopped", True), self.statuses)
        self.assertEqual(self.statuses.count(("Session stopped", True)), 1)

    def test_loading_stops_running_session(self):
        self.session.load_track(self.track_path)
        self.session.start()
        self.session.load_track(self.track_path)
        self.assertFalse(self.session.running)

    def test_update_settings(self):
        applied = self.session.update_settings(frequency_hz=50, volume=3, sync_mode="manual", bogus=1)
        self.assertEqual(applied, {"frequency_hz": 10.0, "volume": 1.0, "sync_mode": SyncMode.MANUAL})
        self.assertEqual(self.graph.volumes, [1.0])
        self.assertEqual(self.session.config.stimulus.sync_mode, SyncMode.MANUAL)

    def test_cue_settings_use_field_names(self):
        applied = self.session.update_settings(cue_enabled=False, cue_kind="beep")
        self.assertFalse(self.session.config.cue.enabled)
        self.assertEqual(applied["cue_kind"].value, "beep")

    def test_session_complete_pauses_audio(self):
        self.session.update_settings(session_duration_s=1.0)
        self.session.start()
        self.clock.now = 1.0
        self.session.scheduler.tick()
        self.assertFalse(self.session.running)
        self.assertIn((SchedulerStatus.SESSION_COMPLETE, True), self.statuses)
        self.assertGreaterEqual(self.graph.paused, 1)

    def test_close_is_idempotent(self):
        self.session.start()
        self.session.close()
        self.session.close()
        self.assertEqual(self.graph.closed, 1)
        self.assertFalse(self.session.start())


if __name__ == "__main__":
    unittest.main()
