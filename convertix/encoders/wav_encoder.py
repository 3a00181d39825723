from __future__ import annotations

import logging
import struct
from typing import Callable

import numpy as np

from convertix.core import settings
from convertix.core.errors import EncodeError
from convertix.models.pcm import PcmBuffer
from convertix.runtime.cancellation import CancellationToken

WAV_HEADER_SIZE = 44
SUPPORTED_BIT_DEPTHS = (16, 24)

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


def build_wav_header(*, channels: int, sample_rate: int, bit_depth: int, frame_count: int) -> bytes:
    """Canonical 44-byte RIFF/WAVE header for integer PCM."""
    bytes_per_sample = bit_depth // 8
    data_len = frame_count * channels * bytes_per_sample
    return _HEADER.pack(
        b"RIFF",
        36 + data_len,
        b"WAVE",
        b"fmt ",
        16,
        1,  # PCM
        channels,
        sample_rate,
        sample_rate * bytes_per_sample * channels,
        channels * bytes_per_sample,
        bit_depth,
        b"data",
        data_len,
    )


class WavEncoder:
    """
    Bit-exact float -> integer PCM WAV writer.

    Samples are clamped to [-1, 1] and scaled asymmetrically (negative by
    2^(n-1), non-negative by 2^(n-1) - 1), truncating toward zero. Work is
    done in fixed strides of interleaved samples; the cancellation token is
    checked and progress reported once per stride.
    """

    def __init__(self, *, cancel_stride: int | None = None) -> None:
        self.cancel_stride = max(1, int(cancel_stride or settings.ENCODE_CANCEL_STRIDE))
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def encode(
        self,
        buffer: PcmBuffer,
        *,
        bit_depth: int,
        cancel_token: CancellationToken | None = None,
        on_progress: Callable[[float], None] | None = None,
    ) -> bytearray:
        if bit_depth not in SUPPORTED_BIT_DEPTHS:
            raise EncodeError(f"unsupported bit depth: {bit_depth}")
        if buffer.frames == 0:
            raise EncodeError("cannot encode an empty buffer")

        channels = buffer.channels
        bytes_per_sample = bit_depth // 8
        header = build_wav_header(
            channels=channels,
            sample_rate=buffer.sample_rate,
            bit_depth=bit_depth,
            frame_count=buffer.frames,
        )

        # frame-major: all channels of frame 0, then frame 1, ...
        interleaved = np.asarray(buffer.samples, dtype=np.float32).T.reshape(-1)
        total = int(interleaved.size)

        try:
            out = bytearray(WAV_HEADER_SIZE + total * bytes_per_sample)
        except MemoryError as exc:
            raise EncodeError(f"cannot allocate {total * bytes_per_sample} bytes for WAV data") from exc
        out[:WAV_HEADER_SIZE] = header

        pos = WAV_HEADER_SIZE
        for start in range(0, total, self.cancel_stride):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled("encode")
            chunk = interleaved[start:start + self.cancel_stride]
            try:
                raw = self._pack_samples(chunk, bit_depth)
            except MemoryError as exc:
                raise EncodeError("out of memory while packing samples") from exc
            out[pos:pos + len(raw)] = raw
            pos += len(raw)
            if on_progress is not None:
                on_progress(min(total, start + self.cancel_stride) / total)

        return out

    def _pack_samples(self, chunk: np.ndarray, bit_depth: int) -> bytes:
        s = np.nan_to_num(chunk.astype(np.float64), nan=0.0)
        s = np.clip(s, -1.0, 1.0)
        if bit_depth == 16:
            scaled = np.where(s < 0, s * 0x8000, s * 0x7FFF)
            return np.trunc(scaled).astype("<i2").tobytes()

        scaled = np.where(s < 0, s * 0x800000, s * 0x7FFFFF)
        ints = np.trunc(scaled).astype("<i4")
        # low three bytes of each little-endian int32
        return ints.view(np.uint8).reshape(-1, 4)[:, :3].tobytes()
