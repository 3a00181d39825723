from __future__ import annotations

import io
from typing import Callable

import numpy as np
import pytest
import soundfile as sf

from convertix.models.pcm import PcmBuffer


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _sine(seconds: float, sample_rate: int, channels: int, freq: float, amplitude: float) -> np.ndarray:
    n = int(round(seconds * sample_rate))
    t = np.arange(n, dtype=np.float64) / sample_rate
    mono = amplitude * np.sin(2 * np.pi * freq * t)
    return np.stack([mono] * channels, axis=1).astype(np.float32)  # (frames, channels)


@pytest.fixture
def wav_bytes() -> Callable[..., bytes]:
    def make(
        *,
        seconds: float = 1.0,
        sample_rate: int = 8000,
        channels: int = 1,
        freq: float = 440.0,
        amplitude: float = 0.5,
        format: str = "WAV",
        subtype: str = "PCM_16",
    ) -> bytes:
        buf = io.BytesIO()
        sf.write(buf, _sine(seconds, sample_rate, channels, freq, amplitude), sample_rate,
                 format=format, subtype=subtype)
        return buf.getvalue()

    return make


@pytest.fixture
def pcm() -> Callable[..., PcmBuffer]:
    def make(samples, sample_rate: int = 44100) -> PcmBuffer:
        arr = np.asarray(samples, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr[np.newaxis, :]
        return PcmBuffer(samples=arr, sample_rate=sample_rate)

    return make
