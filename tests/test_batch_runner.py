import io
import threading
import time

import numpy as np
import pytest
import soundfile as sf

from convertix.core.errors import BatchAlreadyRunning, ConversionCancelled, DecodeError
from convertix.encoders.wav_encoder import WavEncoder
from convertix.models.pcm import PcmBuffer
from convertix.models.track import ConversionResult, FormatDescriptor, SourceFile, Track, TrackStatus
from convertix.runtime.cancellation import CancellationToken
from convertix.schemas.conversion import ConversionSettings
from convertix.services.batch_runner import BatchRunner
from convertix.services.conversion_service import ConversionService
from convertix.services.track_queue import TrackQueue

pytestmark = pytest.mark.anyio

SETTINGS = ConversionSettings(sample_rate=44100, bit_depth=16, channel_mode="stereo")


def _submit(queue: TrackQueue, *items: tuple[str, bytes]) -> list[str]:
    report = queue.submit(SourceFile(name=n, content_type="audio/wav", data=d) for n, d in items)
    assert not report.rejected
    return [t.id for t in report.accepted]


class FakeService:
    """Records which tracks were started; optionally cancels the run on one of them."""

    def __init__(self, *, cancel_on: str | None = None, fail_on: str | None = None) -> None:
        self.cancel_on = cancel_on
        self.fail_on = fail_on
        self.runner: BatchRunner | None = None
        self.started: list[str] = []
        self.processing_seen: list[str] = []

    async def convert(self, track: Track, conv, cancel_token: CancellationToken, on_progress=None) -> ConversionResult:
        self.started.append(track.display_name)
        self.processing_seen.append(self.runner.queue.processing().id)
        if track.display_name == self.cancel_on:
            self.runner.cancel()
            cancel_token.raise_if_cancelled("decode")
        if track.display_name == self.fail_on:
            raise DecodeError("corrupt input")
        if on_progress is not None:
            on_progress(50)
        return ConversionResult(
            data=b"RIFF",
            output_name=track.display_name,
            duration_s=1.0,
            format=FormatDescriptor("WAV", conv.sample_rate, conv.bit_depth, conv.channel_mode),
        )


def _runner_with(service: FakeService, queue: TrackQueue) -> BatchRunner:
    runner = BatchRunner(queue, service)
    service.runner = runner
    return runner


async def test_failure_is_isolated_to_its_track(wav_bytes) -> None:
    queue = TrackQueue()
    ids = _submit(
        queue,
        ("one.wav", wav_bytes(seconds=0.5)),
        ("two.wav", b"garbage" * 100),
        ("three.wav", wav_bytes(seconds=0.5, channels=2)),
    )

    report = await BatchRunner(queue).run(SETTINGS)

    statuses = [queue.get(i).status for i in ids]
    assert statuses == [TrackStatus.DONE, TrackStatus.ERROR, TrackStatus.DONE]
    assert report.completed == [ids[0], ids[2]]
    assert report.failed == [ids[1]]
    assert report.state == "finished"
    assert queue.get(ids[1]).error
    assert queue.get(ids[1]).progress == 0

    done = queue.get(ids[0])
    assert done.progress == 100
    assert done.result.output_name == "one.wav"
    assert done.result.format.describe() == "WAV (44.1kHz 16bit stereo)"
    y, sr = sf.read(io.BytesIO(done.result.data), dtype="int16", always_2d=True)
    assert sr == 44100
    assert y.shape == (22050, 2)


async def test_cancellation_stops_after_current_track() -> None:
    queue = TrackQueue()
    ids = _submit(queue, *[(f"{i}.wav", b"x") for i in range(1, 6)])
    service = FakeService(cancel_on="3.wav")
    runner = _runner_with(service, queue)

    report = await runner.run(SETTINGS)

    assert service.started == ["1.wav", "2.wav", "3.wav"]
    assert [queue.get(i).status for i in ids] == [
        TrackStatus.DONE, TrackStatus.DONE,
        TrackStatus.WAITING, TrackStatus.WAITING, TrackStatus.WAITING,
    ]
    assert queue.get(ids[2]).progress == 0
    assert report.cancelled
    assert report.state == "stopped"
    assert not runner.is_running

    # a new run picks up where the cancelled one stopped
    service.cancel_on = None
    await runner.run(SETTINGS)
    assert service.started[3:] == ["3.wav", "4.wav", "5.wav"]
    assert all(queue.get(i).status is TrackStatus.DONE for i in ids)


async def test_tracks_are_processed_one_at_a_time_in_order() -> None:
    queue = TrackQueue()
    ids = _submit(queue, *[(f"{i}.wav", b"x") for i in range(4)])
    service = FakeService()

    await _runner_with(service, queue).run(SETTINGS)

    assert service.processing_seen == ids
    assert queue.processing() is None


async def test_error_tracks_are_retried_on_next_run() -> None:
    queue = TrackQueue()
    ids = _submit(queue, ("a.wav", b"x"), ("b.wav", b"x"))
    service = FakeService(fail_on="b.wav")
    runner = _runner_with(service, queue)

    report = await runner.run(SETTINGS)
    assert report.failed == [ids[1]]
    assert queue.get(ids[1]).error == "corrupt input"

    service.fail_on = None
    report = await runner.run(SETTINGS)
    assert report.completed == [ids[1]]
    assert queue.get(ids[1]).status is TrackStatus.DONE
    assert queue.get(ids[1]).error is None
    assert service.started == ["a.wav", "b.wav", "b.wav"]


async def test_second_run_is_rejected_while_one_is_active() -> None:
    queue = TrackQueue()
    _submit(queue, ("a.wav", b"x"))
    runner = _runner_with(FakeService(), queue)

    task = runner.start(SETTINGS)
    assert runner.is_running
    with pytest.raises(BatchAlreadyRunning):
        runner.start(SETTINGS)
    with pytest.raises(BatchAlreadyRunning):
        await runner.run(SETTINGS)

    report = await task
    assert report.state == "finished"
    assert runner.last_report is report
    assert not runner.cancel()


async def test_degenerate_trim_falls_back_to_full_length(wav_bytes) -> None:
    queue = TrackQueue()
    (tid,) = _submit(queue, ("long.wav", wav_bytes(seconds=20.0, sample_rate=8000)))
    queue.set_trim(tid, 10.0, 5.0)

    await BatchRunner(queue).run(SETTINGS)

    track = queue.get(tid)
    assert track.status is TrackStatus.DONE
    assert track.result.duration_s == pytest.approx(20.0, abs=1e-3)
    assert not track.result.trimmed
    assert track.diagnostics and "full range" in track.diagnostics[0]
    assert track.result.diagnostics == track.diagnostics


async def test_trim_is_applied_and_recorded(wav_bytes) -> None:
    queue = TrackQueue()
    (tid,) = _submit(queue, ("long.wav", wav_bytes(seconds=20.0, sample_rate=8000)))
    queue.set_trim(tid, 5.0, 15.0)

    await BatchRunner(queue).run(ConversionSettings(sample_rate=48000, bit_depth=24, channel_mode="mono"))

    result = queue.get(tid).result
    assert result.duration_s == pytest.approx(10.0, abs=1e-3)
    assert (result.trim_start, result.trim_end) == (5.0, 15.0)
    assert result.original_duration_s == pytest.approx(20.0)
    assert result.byte_size == 44 + 480000 * 3


async def test_cancellation_inside_encode_loop(wav_bytes) -> None:
    service = ConversionService(encoder=WavEncoder(cancel_stride=1000))
    track = Track(source=SourceFile("a.wav", "audio/wav", wav_bytes(seconds=1.0)), display_name="a.wav")
    token = CancellationToken()
    seen: list[int] = []

    def on_progress(pct: int) -> None:
        seen.append(pct)
        if pct > 70:
            token.cancel()

    with pytest.raises(ConversionCancelled):
        await service.convert(track, SETTINGS, token, on_progress=on_progress)
    assert seen[:3] == [30, 40, 70]
    assert max(seen) < 99


class SlowDecoder:
    """Sleeps instead of decoding and records how many decodes overlap."""

    def __init__(self, delays: list[float]) -> None:
        self.delays = list(delays)
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def decode(self, data: bytes, **_kwargs) -> PcmBuffer:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            delay = self.delays.pop(0)
        try:
            time.sleep(delay)
        finally:
            with self._lock:
                self.active -= 1
        return PcmBuffer(np.zeros((1, 8000), dtype=np.float32), 8000)


class CancellingDecoder:
    def __init__(self, token: CancellationToken) -> None:
        self.token = token

    def decode(self, data: bytes, **_kwargs) -> PcmBuffer:
        self.token.cancel()
        return PcmBuffer(np.zeros((1, 8000), dtype=np.float32), 8000)


class RecordingRenderer:
    def __init__(self) -> None:
        self.calls = 0

    def render(self, buffer: PcmBuffer, **_kwargs) -> PcmBuffer:
        self.calls += 1
        return buffer


async def test_timed_out_decode_finishes_before_next_track_starts() -> None:
    queue = TrackQueue()
    ids = _submit(queue, ("slow.wav", b"x"), ("next.wav", b"x"))
    decoder = SlowDecoder([0.6, 0.2])
    service = ConversionService(decoder=decoder, decode_timeout_s=0.1)

    report = await BatchRunner(queue, service).run(SETTINGS)

    assert [queue.get(i).status for i in ids] == [TrackStatus.ERROR, TrackStatus.ERROR]
    assert report.failed == ids
    assert decoder.max_active == 1
    assert queue.get(ids[0]).error == "decoding exceeded 0.1s"


async def test_cancellation_after_decode_skips_render() -> None:
    token = CancellationToken()
    renderer = RecordingRenderer()
    service = ConversionService(decoder=CancellingDecoder(token), renderer=renderer)
    track = Track(source=SourceFile("a.wav", "audio/wav", b"x"), display_name="a.wav")
    seen: list[int] = []

    with pytest.raises(ConversionCancelled, match="decode"):
        await service.convert(track, SETTINGS, token, on_progress=seen.append)
    assert renderer.calls == 0
    assert seen == []


async def test_cancellation_after_trim_skips_render(wav_bytes) -> None:
    token = CancellationToken()
    renderer = RecordingRenderer()
    service = ConversionService(renderer=renderer)
    track = Track(source=SourceFile("a.wav", "audio/wav", wav_bytes(seconds=2.0)), display_name="a.wav")
    track.trim_start, track.trim_end = 0.5, 1.5
    seen: list[int] = []

    def on_progress(pct: int) -> None:
        seen.append(pct)
        token.cancel()

    with pytest.raises(ConversionCancelled, match="trim"):
        await service.convert(track, SETTINGS, token, on_progress=on_progress)
    assert renderer.calls == 0
    assert seen == [30]
