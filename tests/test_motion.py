import unittest

from motion import (
    MotionParams,
    MotionState,
    advance_position,
    beat_phase,
    ping_pong_params,
    position_to_pan,
    sine_position,
)


class TestMotion(unittest.TestCase):
    def test_position_to_pan(self):
        self.assertEqual(position_to_pan(0.0), -1.0)
        self.assertEqual(position_to_pan(0.5), 0.0)
        self.assertEqual(position_to_pan(1.0), 1.0)
        self.assertEqual(position_to_pan(3.0), 1.0)

    def test_sine_law(self):
        self.assertAlmostEqual(sine_position(0.0, 0.5, 0.5, 0.5), 0.5)
        self.assertAlmostEqual(sine_position(0.5, 0.5, 0.5, 0.5), 1.0)
        self.assertAlmostEqual(sine_position(1.5, 0.5, 0.5, 0.5), 0.0)

    def test_sine_clamped(self):
        self.assertEqual(sine_position(0.5, 0.5, 0.5, 0.9), 1.0)
        self.assertEqual(sine_position(1.5, 0.5, 0.5, 0.1), 0.0)

    def test_ping_pong_params(self):
        params = ping_pong_params(0.5, 0.5, 0.5, 100)
        self.assertEqual((params.min_x, params.max_x), (0.0, 1.0))
        self.assertAlmostEqual(params.speed_per_sec, 1.0)
        self.assertEqual(params.edge_pause_ms, 100)

    def test_reflects_at_edges(self):
        params = MotionParams(min_x=0.0, max_x=1.0, speed_per_sec=1.0)
        state = advance_position(MotionState(x=0.9, direction=1), params, 0.2, 0.0)
        self.assertEqual(state.x, 1.0)
        self.assertEqual(state.direction, -1)
        self.assertEqual(state.hit_edge, "right")

        state = advance_position(MotionState(x=0.1, direction=-1), params, 0.2, 0.0)
        self.assertEqual(state.x, 0.0)
        self.assertEqual(state.direction, 1)
        self.assertEqual(state.hit_edge, "left")

    def test_edge_pause_holds_position(self):
        params = MotionParams(min_x=0.0, max_x=1.0, speed_per_sec=1.0, edge_pause_ms=100)
        state = advance_position(MotionState(x=0.95, direction=1), params, 0.1, 1000.0)
        self.assertEqual(state.paused_until_ms, 1100.0)

        held = advance_position(state, params, 0.05, 1050.0)
        self.assertEqual(held.x, 1.0)
        self.assertIsNone(held.hit_edge)

        moved = advance_position(held, params, 0.25, 1150.0)
        self.assertAlmostEqual(moved.x, 0.75)

    def test_beat_phase(self):
        self.assertEqual(beat_phase(0.0, 500.0), (0, 0.0))
        self.assertEqual(beat_phase(500.0, 500.0), (1, 0.0))
        self.assertEqual(beat_phase(750.0, 500.0), (1, 0.5))
        self.assertEqual(beat_phase(100.0, 0.0), (0, 0.0))


if __name__ == "__main__":
    unittest.main()
