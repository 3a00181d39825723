from __future__ import annotations

import importlib.util
import logging
import math
from typing import Protocol

import librosa
import numpy as np

from convertix.core import settings
from convertix.core.errors import ConversionCancelled, RenderError
from convertix.models.pcm import PcmBuffer
from convertix.runtime.cancellation import CancellationToken


def expected_frame_count(frame_count: int, source_sr: int, target_sr: int) -> int:
    return max(1, int(round(frame_count * target_sr / source_sr)))


class PcmRenderer(Protocol):
    def render(
        self,
        buffer: PcmBuffer,
        *,
        start_frame: int,
        frame_count: int,
        target_sample_rate: int,
        target_channels: int,
        cancel_token: CancellationToken | None = None,
    ) -> PcmBuffer:
        ...


class LibrosaPcmRenderer:
    """
    Offline slice -> remix -> resample renderer.

    Downmix to mono is an equal-weight mean of all channels, upmix duplicates
    the mono channel, and more than two channels keep the first two for
    stereo. Output length is pinned to round(n * target_sr / source_sr).
    """

    def __init__(self, *, resample_res_type: str | None = None) -> None:
        # Prefer SoXR (C-accelerated) when available; fallback to resampy (kaiser_fast).
        preferred = resample_res_type or settings.RESAMPLE_RES_TYPE
        if preferred:
            self.resample_res_type = str(preferred)
        else:
            self.resample_res_type = (
                "soxr_hq" if importlib.util.find_spec("soxr") is not None else "kaiser_fast"
            )
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def render(
        self,
        buffer: PcmBuffer,
        *,
        start_frame: int,
        frame_count: int,
        target_sample_rate: int,
        target_channels: int,
        cancel_token: CancellationToken | None = None,
    ) -> PcmBuffer:
        if frame_count <= 0 or start_frame < 0 or start_frame + frame_count > buffer.frames:
            raise RenderError(
                f"slice [{start_frame}, {start_frame + frame_count}) outside buffer of {buffer.frames} frames"
            )
        if target_channels not in (1, 2):
            raise RenderError(f"unsupported channel count: {target_channels}")

        y = buffer.samples[:, start_frame:start_frame + frame_count]
        y = self._remix(y, target_channels)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled("render")

        try:
            out = self._resample_audio(y, orig_sr=buffer.sample_rate, target_sr=target_sample_rate)
        except (ConversionCancelled, RenderError):
            raise
        except Exception as exc:
            raise RenderError(f"resampling failed: {exc}") from exc

        target_n = expected_frame_count(frame_count, buffer.sample_rate, target_sample_rate)
        out = self._fit_length(self._sanitize(out), target_n)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled("render")

        self.logger.debug(
            "Rendered %d frames @%d Hz x%d -> %d frames @%d Hz x%d",
            frame_count, buffer.sample_rate, buffer.channels,
            target_n, target_sample_rate, target_channels,
        )
        return PcmBuffer(samples=out, sample_rate=int(target_sample_rate))

    def _remix(self, y: np.ndarray, target_channels: int) -> np.ndarray:
        y = np.asarray(y, dtype=np.float32)
        n_ch = y.shape[0]
        if n_ch == target_channels:
            return y
        if target_channels == 1:
            return y.mean(axis=0, keepdims=True, dtype=np.float64).astype(np.float32)
        if n_ch == 1:
            return np.repeat(y, 2, axis=0)
        return y[:2, :]

    def _resample_audio(self, y: np.ndarray, *, orig_sr: int, target_sr: int) -> np.ndarray:
        if orig_sr == target_sr:
            return np.asarray(y, dtype=np.float32)

        res_types: list[str] = []
        preferred = str(self.resample_res_type or "").strip()
        if preferred:
            res_types.append(preferred)
        # Always include a sane fallback order.
        if "soxr_hq" not in res_types:
            res_types.append("soxr_hq")
        if "kaiser_fast" not in res_types:
            res_types.append("kaiser_fast")

        last_exc: Exception | None = None
        for res_type in res_types:
            try:
                out = librosa.resample(y, orig_sr=orig_sr, target_sr=target_sr, res_type=res_type)
                return np.asarray(out, dtype=np.float32)
            except ModuleNotFoundError as exc:
                last_exc = exc
                msg = str(exc)
                if res_type.startswith("soxr_") and "soxr" in msg:
                    continue
                if res_type.startswith("kaiser") and "resampy" in msg:
                    continue
                raise

        # Last resort: polyphase resampling (deterministic).
        from scipy.signal import resample_poly

        self.logger.warning("No librosa resampler backend available (%s); using resample_poly", last_exc)
        g = math.gcd(int(orig_sr), int(target_sr))
        up = int(target_sr) // g
        down = int(orig_sr) // g
        rows = [np.asarray(resample_poly(row, up, down), dtype=np.float32) for row in y]
        return np.stack(rows, axis=0)

    def _fit_length(self, audio: np.ndarray, target_n: int) -> np.ndarray:
        n = audio.shape[1]
        if n == target_n:
            return audio
        if n > target_n:
            return np.ascontiguousarray(audio[:, :target_n])
        pad = np.zeros((audio.shape[0], target_n - n), dtype=np.float32)
        return np.concatenate([audio, pad], axis=1)

    def _sanitize(self, audio: np.ndarray) -> np.ndarray:
        audio = np.asarray(audio, dtype=np.float32)
        if audio.ndim == 1:
            audio = audio[np.newaxis, :]
        return np.nan_to_num(audio, nan=0.0, posinf=0.0, neginf=0.0)
