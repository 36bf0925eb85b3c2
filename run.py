#!/usr/bin/env python3
"""
bilateral-beats - Beat-synchronized bilateral stimulation

Plays a track while a target alternates left/right on the detected beat
(or at a manual rate), panning the audio to the same side every tick.
The console stands in for the visual renderer.
"""

import argparse
import cProfile
import sys
import threading

from config import Config, CueKind, MovementPattern, SyncMode, sanitize_config
from logging_utils import log_event, set_log_level
from session import BilateralSession
from session_wiring import position_bar, sync_status_text
from stimulus_scheduler import SchedulerStatus


class ConsoleRenderer:
    """Draws the target as a moving marker on a single console line."""

    def __init__(self, stream=None, width: int = 41):
        self.stream = stream or sys.stdout
        self.width = width
        self._pulse_beat = -1
        self._lock = threading.Lock()

    def show_position(self, position: float) -> None:
        with self._lock:
            marker = "*" if self._pulse_beat >= 0 else " "
            self.stream.write(f"\r{position_bar(position, self.width)} {marker}")
            self.stream.flush()
            self._pulse_beat = -1

    def show_beat(self, boundary) -> None:
        with self._lock:
            self._pulse_beat = boundary.beat_index


def list_devices() -> int:
    """Print output-capable audio devices."""
    from audio_nodes import HAS_SOUNDDEVICE, sd

    if not HAS_SOUNDDEVICE:
        print("sounddevice is not available on this system")
        return 1
    print("Available Output Devices:\n")
    for i, d in enumerate(sd.query_devices()):
        if d['max_output_channels'] < 2:
            continue
        print(f"[{i}] {d['name']}")
        print(f"    Output: {d['max_output_channels']} channels, Default SR: {d['default_samplerate']} Hz")
    return 0


def build_config(args: argparse.Namespace) -> Config:
    config = Config()
    config.log_level = args.log_level
    config.stimulus.sync_mode = SyncMode.MANUAL if args.manual else SyncMode.BEAT
    config.stimulus.movement_pattern = MovementPattern(args.pattern)
    config.stimulus.frequency_hz = args.frequency
    config.stimulus.amplitude = args.amplitude
    config.stimulus.center_offset = args.center
    config.stimulus.sensitivity = args.sensitivity
    config.stimulus.edge_pause_ms = args.edge_pause
    config.audio.volume = args.volume
    config.audio.device_index = args.device
    config.audio.enabled = not args.no_audio
    config.cue.enabled = not args.no_cues
    config.cue.kind = CueKind(args.cue)
    config.scheduler.session_duration_s = args.duration
    return sanitize_config(config)


def run_session(args: argparse.Namespace) -> int:
    config = build_config(args)
    set_log_level(config.log_level)

    done = threading.Event()

    def on_status(message: str, ok: bool) -> None:
        print(f"\n[{'OK' if ok else '!!'}] {message}", flush=True)
        if message == SchedulerStatus.SESSION_COMPLETE:
            done.set()

    session = BilateralSession(config, ConsoleRenderer(), on_status)
    try:
        if args.track:
            if session.load_track(args.track):
                session.analyze()
        elif not args.manual:
            log_event("WARN", "Run", "No track given, falling back to manual rate")

        print(sync_status_text(config.stimulus.sync_mode,
                               not session.scheduler.has_usable_tempo(),
                               config.stimulus.frequency_hz), flush=True)
        session.start()
        try:
            # Event.wait keeps Ctrl+C responsive
            while not done.wait(0.25):
                pass
        except KeyboardInterrupt:
            print("\nStopping...", flush=True)
    finally:
        session.close()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run bilateral-beats")
    parser.add_argument("track", nargs="?", help="Audio file or http(s) URL to play")
    parser.add_argument("--manual", action="store_true", help="Ignore the beat and oscillate at --frequency")
    parser.add_argument("--pattern", choices=["sine", "ping-pong"], default="sine",
                        help="Manual movement pattern (default: sine)")
    parser.add_argument("--frequency", type=float, default=0.5, help="Manual rate in Hz (default: 0.5)")
    parser.add_argument("--amplitude", type=float, default=0.5, help="Sweep half-width 0-1 (default: 0.5)")
    parser.add_argument("--center", type=float, default=0.5, help="Sweep center 0-1 (default: 0.5)")
    parser.add_argument("--edge-pause", type=int, default=0, help="Ping-pong edge dwell in ms")
    parser.add_argument("--sensitivity", type=float, default=0.5, help="Beat detection sensitivity 0-1")
    parser.add_argument("--volume", type=float, default=0.7, help="Track volume 0-1 (default: 0.7)")
    parser.add_argument("--cue", choices=["click", "beep", "hiss", "chirp", "pulse"], default="click",
                        help="Beat cue sound (default: click)")
    parser.add_argument("--no-cues", action="store_true", help="Disable beat cues")
    parser.add_argument("--no-audio", action="store_true", help="Visual-only session")
    parser.add_argument("--device", type=int, default=None, help="Output device index")
    parser.add_argument("--list-devices", action="store_true", help="List output devices and exit")
    parser.add_argument("--duration", type=float, default=0.0,
                        help="Stop automatically after this many seconds (0 = run until Ctrl+C)")
    parser.add_argument("--log-level", default="INFO", help="DEBUG/INFO/WARNING/ERROR")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )
    args = parser.parse_args()

    if args.list_devices:
        sys.exit(list_devices())

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = run_session(args)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = run_session(args)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
