"""
bilateral-beats - Audio Source
Identifies the loaded track, decodes it into a SampleBuffer and owns both
for the life of the session. Superseded tracks are released so repeated
track swaps do not accumulate decoded audio.
"""

import io
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

import numpy as np
import soundfile as sf

from logging_utils import log_event


class SourceOrigin(str, Enum):
    UPLOAD = "upload"
    SAMPLE = "sample"
    REMOTE_URL = "remote-url"


@dataclass
class AudioSource:
    """A playable track reference"""
    origin: SourceOrigin
    reference: Union[str, Path, bytes]    # File path, raw uploaded bytes, or URL
    title: str = ""
    on_release: Optional[Callable[[], None]] = field(default=None, repr=False)
    released: bool = field(default=False, repr=False)

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        if isinstance(self.reference, (str, Path)):
            return Path(str(self.reference)).name or str(self.reference)
        return "Uploaded audio"

    def release(self) -> None:
        """Revoke the reference. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        if self.on_release is not None:
            try:
                self.on_release()
            except Exception as e:
                log_event("WARN", "AudioSource", "Release hook failed", title=self.display_title, error=e)


@dataclass(frozen=True, eq=False)
class SampleBuffer:
    """Decoded per-channel float samples, shape (n_channels, n_frames)"""
    channels: np.ndarray
    sample_rate: int

    def __post_init__(self):
        data = np.array(self.channels, dtype=np.float32, copy=True)
        if data.ndim == 1:
            data = data[np.newaxis, :]
        data.setflags(write=False)
        object.__setattr__(self, "channels", data)

    @classmethod
    def from_array(cls, samples, sample_rate: int) -> "SampleBuffer":
        return cls(np.asarray(samples, dtype=np.float32), int(sample_rate))

    @property
    def channel_count(self) -> int:
        return int(self.channels.shape[0])

    @property
    def frame_count(self) -> int:
        return int(self.channels.shape[1])

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate if self.sample_rate > 0 else 0.0

    def mono(self) -> np.ndarray:
        """First channel, which is what beat analysis reads."""
        return self.channels[0]

    def mixdown(self) -> np.ndarray:
        """Average of all channels, used for playback through the mono panner."""
        if self.channel_count == 1:
            return self.channels[0]
        return np.mean(self.channels, axis=0, dtype=np.float32)


def _read_audio(handle) -> SampleBuffer:
    data, sample_rate = sf.read(handle, dtype="float32", always_2d=True)
    return SampleBuffer(np.ascontiguousarray(data.T), int(sample_rate))


def decode_source(source: AudioSource,
                  fetch: Optional[Callable[[str], bytes]] = None) -> SampleBuffer:
    """Decode an AudioSource into a SampleBuffer.

    Remote URLs are resolved through ``fetch``, an external collaborator
    returning the encoded bytes. Raises RuntimeError on any decode failure.
    """
    reference = source.reference
    if source.origin == SourceOrigin.REMOTE_URL and fetch is None:
        raise RuntimeError(f"no fetch helper configured for remote audio: {source.display_title}")

    try:
        if isinstance(reference, (bytes, bytearray)):
            buffer = _read_audio(io.BytesIO(bytes(reference)))
        elif source.origin == SourceOrigin.REMOTE_URL:
            buffer = _read_audio(io.BytesIO(fetch(str(reference))))
        else:
            buffer = _read_audio(str(reference))
    except Exception as e:
        raise RuntimeError(f"could not decode {source.display_title}: {e}") from e

    if buffer.frame_count == 0:
        raise RuntimeError(f"decoded track is empty: {source.display_title}")

    log_event("INFO", "AudioSource", "Decoded", title=source.display_title,
              channels=buffer.channel_count, sample_rate=buffer.sample_rate,
              duration=f"{buffer.duration:.1f}s")
    return buffer


class TrackSlot:
    """Exclusive owner of the current AudioSource and its decoded buffer."""

    def __init__(self):
        self.source: Optional[AudioSource] = None
        self.buffer: Optional[SampleBuffer] = None

    @property
    def loaded(self) -> bool:
        return self.buffer is not None

    def replace(self, source: AudioSource, buffer: Optional[SampleBuffer]) -> None:
        """Install a new track, releasing the superseded one first."""
        if self.source is not None and self.source is not source:
            self.release()
        self.source = source
        self.buffer = buffer

    def release(self) -> None:
        if self.source is not None:
            log_event("DEBUG", "AudioSource", "Released", title=self.source.display_title)
            self.source.release()
        self.source = None
        self.buffer = None
