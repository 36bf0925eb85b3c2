# bilateral-beats Configuration
# All default values, tuning constants and range limits

from dataclasses import dataclass, field, is_dataclass
from enum import Enum

from logging_utils import log_event


class SyncMode(str, Enum):
    """Where the stimulus cadence comes from"""
    BEAT = "beat"          # Alternate sides on the detected beat of the track
    MANUAL = "manual"      # Pure oscillation at frequency_hz


class MovementPattern(str, Enum):
    """Shape of the manual oscillation"""
    PING_PONG = "ping-pong"   # Constant-speed sweep with reflective edges
    SINE = "sine"             # Smooth sine sweep


class CueKind(str, Enum):
    """Short synthesized sounds played on beat boundaries"""
    CLICK = "click"
    BEEP = "beep"
    HISS = "hiss"
    CHIRP = "chirp"
    PULSE = "pulse"
    SUCCESS = "success"    # Rising chime after a successful analysis


class Waveform(str, Enum):
    SINE = "sine"
    SQUARE = "square"
    SAWTOOTH = "sawtooth"
    TRIANGLE = "triangle"


@dataclass
class AnalysisConfig:
    """Beat analysis tuning parameters (empirical, not correctness requirements)"""
    threshold_base: float = 0.3          # Detection threshold at sensitivity 0
    threshold_span: float = 0.4          # Added threshold at sensitivity 1 (sweeps 0.3-0.7)
    min_peak_distance_s: float = 0.1     # Minimum spacing between accepted peaks
    max_analysis_seconds: float = 30.0   # Only the leading segment is scanned
    smoothing_window: int = 5            # Centered moving average taps
    min_bpm: float = 60.0
    max_bpm: float = 180.0
    default_bpm: float = 120.0           # Reported when fewer than 2 peaks exist
    neutral_confidence: float = 0.5      # Reported when fewer than 4 peaks exist
    min_confidence_for_sync: float = 0.0  # Estimates below this are not used for beat sync


@dataclass
class StimulusConfig:
    """User-controlled stimulation parameters, read every scheduler tick"""
    sync_mode: SyncMode = SyncMode.BEAT
    movement_pattern: MovementPattern = MovementPattern.SINE
    frequency_hz: float = 0.5           # Manual oscillation rate (full cycles per second)
    amplitude: float = 0.5              # 0.0 - 1.0, half-width of the sweep
    center_offset: float = 0.5          # 0.0 - 1.0, center of the sweep
    sensitivity: float = 0.5            # 0.0 - 1.0, peak detection threshold sweep
    edge_pause_ms: int = 0              # Ping-pong only: dwell at each edge


@dataclass
class CueConfig:
    """Audible beat cues"""
    enabled: bool = True
    kind: CueKind = CueKind.CLICK
    waveform: Waveform = Waveform.SQUARE    # Oscillator shape for CLICK
    volume: float = 1.0                     # 0.0 - 1.0 multiplier on each cue's own level
    left_frequency: float = 880.0           # Beat click pitch on the left phase
    right_frequency: float = 1320.0         # Higher pitch on the right
    success_chime: bool = True              # Chime after a tempo was measured
    max_transients: int = 16                # Live cue nodes kept before the oldest is released


@dataclass
class AudioConfig:
    """Audio output settings"""
    sample_rate: int = 44100
    block_size: int = 512
    device_index: int | None = None    # None means use system default output
    volume: float = 0.7                # Track gain (0.0-1.0)
    loop: bool = True                  # Loop the loaded track
    enabled: bool = True               # False forces visual-only operation


@dataclass
class SchedulerConfig:
    """Tick timing"""
    tick_interval_ms: float = 16.0     # ~60 Hz for visual smoothness
    beat_epsilon: float = 0.05         # Beat boundary fires while beat fraction is below this
    pulse_fraction: float = 0.1        # Visual pulse stays lit for this fraction of a beat
    session_duration_s: float = 0.0    # Auto-stop after this many seconds (0 = unlimited)


@dataclass
class Config:
    """Master configuration"""
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    stimulus: StimulusConfig = field(default_factory=StimulusConfig)
    cue: CueConfig = field(default_factory=CueConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)

    @classmethod
    def from_dict(cls, data) -> "Config":
        """Build a sanitized config from plain key/value settings."""
        config = cls()
        apply_dict_to_dataclass(config, data)
        sanitize_config(config)
        return config


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored; Enum fields are coerced when possible."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        key = str(key).replace("-", "_")
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            apply_dict_to_dataclass(current, value)
            continue

        if isinstance(current, Enum):
            try:
                setattr(target, key, current.__class__(value))
            except ValueError:
                log_event("WARN", "Config", f"Could not convert {key} to {current.__class__.__name__}, keeping default",
                          value=value)
            continue

        setattr(target, key, value)


# (min, max) limits applied by sanitize_config, keyed by section then field
RANGE_LIMITS = {
    'analysis': {
        'threshold_base': (0.0, 1.0),
        'threshold_span': (0.0, 1.0),
        'min_peak_distance_s': (0.001, 2.0),
        'max_analysis_seconds': (1.0, 600.0),
        'smoothing_window': (1, 101),
        'min_bpm': (1.0, 400.0),
        'max_bpm': (1.0, 400.0),
        'neutral_confidence': (0.0, 1.0),
        'min_confidence_for_sync': (0.0, 1.0),
    },
    'stimulus': {
        'frequency_hz': (0.0, 10.0),
        'amplitude': (0.0, 1.0),
        'center_offset': (0.0, 1.0),
        'sensitivity': (0.0, 1.0),
        'edge_pause_ms': (0, 5000),
    },
    'cue': {
        'volume': (0.0, 1.0),
        'left_frequency': (20.0, 20000.0),
        'right_frequency': (20.0, 20000.0),
        'max_transients': (1, 256),
    },
    'audio': {
        'sample_rate': (8000, 192000),
        'block_size': (32, 8192),
        'volume': (0.0, 1.0),
    },
    'scheduler': {
        'tick_interval_ms': (1.0, 250.0),
        'beat_epsilon': (0.0, 0.5),
        'pulse_fraction': (0.0, 1.0),
        'session_duration_s': (0.0, 24 * 3600.0),
    },
}


def sanitize_config(config: Config) -> Config:
    """Clamp every numeric setting into its valid range in place.
    Out-of-range values are clamped silently rather than rejected."""
    for section_name, limits in RANGE_LIMITS.items():
        section = getattr(config, section_name)
        for key, (low, high) in limits.items():
            raw = getattr(section, key)
            default = getattr(section.__class__(), key)
            try:
                value = float(raw)
            except (TypeError, ValueError):
                value = float(default)
            if value != value:  # NaN
                value = float(default)
            clamped = clamp(value, low, high)
            if isinstance(default, int) and not isinstance(default, bool):
                clamped = int(round(clamped))
            if clamped != raw:
                log_event("DEBUG", "Config", "Clamped setting", field=f"{section_name}.{key}",
                          value=raw, clamped=clamped)
            setattr(section, key, clamped)

    if config.analysis.max_bpm < config.analysis.min_bpm:
        config.analysis.max_bpm = config.analysis.min_bpm
    config.analysis.default_bpm = clamp(float(config.analysis.default_bpm),
                                        config.analysis.min_bpm, config.analysis.max_bpm)
    return config

