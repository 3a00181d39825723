from __future__ import annotations

import asyncio
import io
import logging
from pathlib import Path

import numpy as np
import soundfile as sf

from convertix.core import settings
from convertix.core.errors import DecodeError
from convertix.decoders.media_decoder import MediaDecoder
from convertix.models.pcm import PcmBuffer
from convertix.models.track import ProbeInfo, SourceFile


def waveform_peaks(buffer: PcmBuffer, buckets: int = 200) -> list[float]:
    """Max absolute amplitude of the first channel per bucket (for previews)."""
    if buckets <= 0 or buffer.frames == 0:
        return []
    data = np.abs(buffer.samples[0])
    step = int(np.ceil(data.size / buckets))
    peaks: list[float] = []
    for i in range(buckets):
        window = data[i * step:(i + 1) * step]
        peaks.append(float(window.max()) if window.size else 0.0)
    return peaks


class MediaProbe:
    """
    Best-effort metadata and waveform extraction for display.

    Never fails a track: every error is logged and turns into missing fields.
    """

    def __init__(
        self,
        *,
        decoder: MediaDecoder | None = None,
        timeout_s: float | None = None,
        decode_max_bytes: int | None = None,
        waveform_buckets: int | None = None,
        waveform_max_bytes: int | None = None,
    ) -> None:
        self.decoder = decoder or MediaDecoder()
        self.timeout_s = float(timeout_s or settings.PROBE_TIMEOUT_S)
        self.decode_max_bytes = int(decode_max_bytes or settings.PROBE_DECODE_MAX_BYTES)
        self.waveform_buckets = int(waveform_buckets or settings.WAVEFORM_BUCKETS)
        self.waveform_max_bytes = int(waveform_max_bytes or settings.WAVEFORM_MAX_BYTES)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def probe(self, source: SourceFile) -> ProbeInfo:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._probe_sync, source), self.timeout_s)
        except asyncio.TimeoutError:
            self.logger.warning("Probe timed out after %.1fs for %s", self.timeout_s, source.name)
            return self._empty(source)

    async def peaks(self, source: SourceFile) -> list[float] | None:
        if source.size > self.waveform_max_bytes:
            return None
        return await asyncio.to_thread(self._peaks_sync, source)

    def _probe_sync(self, source: SourceFile) -> ProbeInfo:
        duration_s: float | None = None
        sample_rate: int | None = None
        channels: int | None = None

        try:
            info = sf.info(io.BytesIO(source.data))
            sample_rate = int(info.samplerate)
            channels = int(info.channels)
            duration_s = float(info.frames) / sample_rate if sample_rate > 0 else None
        except RuntimeError as exc:
            self.logger.debug("Header probe failed for %s: %s", source.name, exc)
            if source.size <= self.decode_max_bytes:
                try:
                    buf = self.decoder.decode(source.data, type_hint=source.content_type, name=source.name)
                except DecodeError as dexc:
                    self.logger.info("Probe could not decode %s: %s", source.name, dexc)
                else:
                    sample_rate, channels, duration_s = buf.sample_rate, buf.channels, buf.duration_s

        if duration_s is not None and duration_s <= 0:
            duration_s = None
        bitrate = None
        if duration_s:
            bitrate = int(round(source.size * 8 / (duration_s * 1000))) or None

        return ProbeInfo(
            size_bytes=source.size,
            format_label=self._format_label(source.name),
            duration_s=duration_s,
            sample_rate=sample_rate,
            channels=channels,
            bitrate_kbps=bitrate,
        )

    def _peaks_sync(self, source: SourceFile) -> list[float] | None:
        try:
            buf = self.decoder.decode(source.data, type_hint=source.content_type, name=source.name)
        except DecodeError as exc:
            self.logger.info("Waveform skipped for %s: %s", source.name, exc)
            return None
        return waveform_peaks(buf, self.waveform_buckets)

    def _empty(self, source: SourceFile) -> ProbeInfo:
        return ProbeInfo(size_bytes=source.size, format_label=self._format_label(source.name))

    def _format_label(self, name: str) -> str:
        suffix = Path(name).suffix.lstrip(".")
        return suffix.upper() if suffix else "Unknown"
