from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from convertix.core import settings
from convertix.core.errors import DecodeError
from convertix.decoders.media_decoder import MediaDecoder
from convertix.encoders.wav_encoder import WavEncoder
from convertix.models.pcm import PcmBuffer
from convertix.models.track import ConversionResult, FormatDescriptor, Track, output_name_for
from convertix.renderers.pcm_renderer import LibrosaPcmRenderer, PcmRenderer
from convertix.runtime.cancellation import CancellationToken
from convertix.schemas.conversion import ConversionSettings
from convertix.services.trim import compute_trim_window

ProgressFn = Callable[[int], None]

# progress milestones (percent) reported while a track is processing
PROGRESS_STARTED = 10
PROGRESS_DECODED = 30
PROGRESS_TRIMMED = 40
PROGRESS_RENDERED = 70
PROGRESS_ENCODE_SPAN = 29


class ConversionService:
    """
    One track through decode -> trim -> render -> encode.

    CPU-heavy stages run in worker threads; the cancellation token is checked
    between decode blocks, after trim, around render and inside the encode
    loop. A decode that outlives its time budget is still waited for, so two
    tracks never decode at once.
    """

    def __init__(
        self,
        *,
        decoder: MediaDecoder | None = None,
        renderer: PcmRenderer | None = None,
        encoder: WavEncoder | None = None,
        decode_timeout_s: float | None = None,
        enable_timing_logs: bool = False,
    ) -> None:
        self.decoder = decoder or MediaDecoder()
        self.renderer = renderer or LibrosaPcmRenderer()
        self.encoder = encoder or WavEncoder()
        self.decode_timeout_s = float(decode_timeout_s or settings.DECODE_TIMEOUT_S)
        self.enable_timing_logs = enable_timing_logs
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def convert(
        self,
        track: Track,
        conv: ConversionSettings,
        cancel_token: CancellationToken,
        on_progress: ProgressFn | None = None,
    ) -> ConversionResult:
        report = on_progress or (lambda _pct: None)
        diagnostics: list[str] = []

        step_start = time.perf_counter()
        decoded = await self._decode(track, cancel_token)
        self._record_timing(track, "decode", step_start)
        cancel_token.raise_if_cancelled("decode")
        report(PROGRESS_DECODED)

        requested = track.requested_trim()
        window = compute_trim_window(
            decoded.frames,
            decoded.sample_rate,
            *(requested if requested else (None, None)),
        )
        if window.diagnostic:
            diagnostics.append(window.diagnostic)
        cancel_token.raise_if_cancelled("trim")
        report(PROGRESS_TRIMMED)

        step_start = time.perf_counter()
        rendered = await asyncio.to_thread(
            self.renderer.render,
            decoded,
            start_frame=window.start_frame,
            frame_count=window.frame_count,
            target_sample_rate=conv.sample_rate,
            target_channels=conv.channel_count,
            cancel_token=cancel_token,
        )
        self._record_timing(track, "render", step_start)
        original_duration_s = decoded.duration_s
        del decoded
        cancel_token.raise_if_cancelled("render")
        report(PROGRESS_RENDERED)

        def encode_progress(fraction: float) -> None:
            report(PROGRESS_RENDERED + int(fraction * PROGRESS_ENCODE_SPAN))

        step_start = time.perf_counter()
        data = await asyncio.to_thread(
            self.encoder.encode,
            rendered,
            bit_depth=conv.bit_depth,
            cancel_token=cancel_token,
            on_progress=encode_progress,
        )
        self._record_timing(track, "encode", step_start)

        applied = requested if requested is not None and not window.fell_back else None
        return ConversionResult(
            data=data,
            output_name=output_name_for(track.display_name, "wav"),
            duration_s=rendered.duration_s,
            format=FormatDescriptor(
                format_label=conv.format_label,
                sample_rate=conv.sample_rate,
                bit_depth=conv.bit_depth,
                channel_mode=conv.channel_mode,
            ),
            trim_start=applied[0] if applied else None,
            trim_end=applied[1] if applied else None,
            original_duration_s=original_duration_s if applied else None,
            diagnostics=diagnostics,
        )

    async def _decode(self, track: Track, cancel_token: CancellationToken) -> PcmBuffer:
        source = track.source
        work = asyncio.ensure_future(asyncio.to_thread(
            self.decoder.decode,
            source.data,
            type_hint=source.content_type,
            name=source.name,
            deadline=time.monotonic() + self.decode_timeout_s,
            cancel_token=cancel_token,
        ))
        try:
            return await asyncio.wait_for(asyncio.shield(work), self.decode_timeout_s)
        except asyncio.TimeoutError as exc:
            # the worker thread cannot be interrupted; it stops at its next block
            # check, and the next job must not start decoding before it does
            await asyncio.gather(work, return_exceptions=True)
            raise DecodeError(f"decoding exceeded {self.decode_timeout_s:g}s") from exc

    def _record_timing(self, track: Track, label: str, start: float) -> None:
        if self.enable_timing_logs:
            self.logger.info("Track %s %s: %.3fs", track.id, label, time.perf_counter() - start)
