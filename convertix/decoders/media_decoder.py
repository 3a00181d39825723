from __future__ import annotations

import io
import logging
import mimetypes
import os
import tempfile
import time
from pathlib import Path
from typing import cast

import librosa
import numpy as np
import soundfile as sf

from convertix.core import settings
from convertix.core.errors import DecodeError
from convertix.models.pcm import PcmBuffer
from convertix.runtime.cancellation import CancellationToken


class MediaDecoder:
    """
    Decode raw media bytes into float32 PCM at the source's own sample rate.

    libsndfile (via soundfile) handles WAV/FLAC/OGG/AIFF/MP3 straight from
    memory. Anything it rejects (video containers, AAC/M4A, ...) goes through
    librosa.load on a temp file so the audioread backend can reach ffmpeg.
    """

    def __init__(self, *, max_decoded_bytes: int | None = None) -> None:
        self.max_decoded_bytes = int(max_decoded_bytes or settings.MAX_DECODED_BYTES)
        self.block_frames = 65536
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def decode(
        self,
        data: bytes,
        *,
        type_hint: str | None = None,
        name: str | None = None,
        deadline: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PcmBuffer:
        """
        `deadline` is a time.monotonic() value; it and `cancel_token` are
        checked between blocks, so an abandoned decode stops in its own thread.
        """
        if not data:
            raise DecodeError("empty input")

        try:
            buffer = self._decode_soundfile(data, deadline=deadline, cancel_token=cancel_token)
        except RuntimeError as exc:
            # LibsndfileError: unknown or unsupported format
            self.logger.debug("soundfile could not decode %s (%s); trying librosa", name or "<bytes>", exc)
            self._check_interrupt(deadline, cancel_token)
            buffer = self._decode_librosa(data, suffix=self._resolve_suffix(name, type_hint))
            self._check_interrupt(deadline, cancel_token)

        if buffer.frames <= 0:
            raise DecodeError("decoded audio has zero length")
        return buffer

    def _decode_soundfile(
        self,
        data: bytes,
        *,
        deadline: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PcmBuffer:
        with sf.SoundFile(io.BytesIO(data)) as f:
            sr = int(f.samplerate)
            frames, channels = int(f.frames), int(f.channels)
            self._check_budget(frames, channels)
            y = np.empty((frames, channels), dtype=np.float32)
            pos = 0
            while pos < frames:
                self._check_interrupt(deadline, cancel_token)
                got = f.read(dtype="float32", always_2d=True, out=y[pos:pos + self.block_frames])
                if got.shape[0] == 0:
                    break
                pos += got.shape[0]
        return PcmBuffer(samples=np.ascontiguousarray(y[:pos].T), sample_rate=sr)

    def _decode_librosa(self, data: bytes, *, suffix: str) -> PcmBuffer:
        fd, tmp_name = tempfile.mkstemp(suffix=suffix, prefix="convertix-")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(data)
            y, sr = librosa.load(tmp_name, sr=None, mono=False)
        except Exception as exc:
            raise DecodeError(f"unsupported or corrupt media: {exc}") from exc
        finally:
            Path(tmp_name).unlink(missing_ok=True)

        y = cast(np.ndarray, np.asarray(y, dtype=np.float32))
        if y.ndim == 1:
            y = y[np.newaxis, :]
        self._check_budget(int(y.shape[1]), int(y.shape[0]))
        return PcmBuffer(samples=np.ascontiguousarray(y), sample_rate=int(sr))

    def _check_budget(self, frames: int, channels: int) -> None:
        needed = frames * channels * 4
        if needed > self.max_decoded_bytes:
            raise DecodeError(
                f"decoded audio needs {needed} bytes, over the {self.max_decoded_bytes} byte budget"
            )

    def _resolve_suffix(self, name: str | None, type_hint: str | None) -> str:
        if name:
            suf = Path(name).suffix
            if suf and len(suf) <= 10:
                return suf
        if type_hint:
            guess = mimetypes.guess_extension(type_hint.split(";")[0].strip())
            if guess:
                return guess
        return ".bin"

    def _check_interrupt(self, deadline: float | None, cancel_token: CancellationToken | None) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled("decode")
        if deadline is not None and time.monotonic() > deadline:
            raise DecodeError("decoding ran past its time budget")
