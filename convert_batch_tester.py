#!/usr/bin/env python
"""Run the conversion queue end-to-end over a directory, without the HTTP API."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from convertix.analyzers.media_probe import MediaProbe
from convertix.models.track import SourceFile, Track, TrackStatus
from convertix.schemas.conversion import ConversionSettings
from convertix.services.batch_runner import BatchReport, BatchRunner
from convertix.services.conversion_service import ConversionService
from convertix.services.track_queue import TrackQueue, resolve_type_hint


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Convert every media file in a directory to WAV using the batch runner."
    )
    parser.add_argument(
        "input_dir",
        help="Directory containing input audio/video files.",
    )
    parser.add_argument(
        "--output-dir",
        default="convert_outputs",
        help="Directory for converted WAV files and the JSON summary.",
    )
    parser.add_argument(
        "--sample-rate",
        type=int,
        default=44100,
        choices=[44100, 48000],
        help="Target sample rate.",
    )
    parser.add_argument(
        "--bit-depth",
        type=int,
        default=16,
        choices=[16, 24],
        help="Target bit depth.",
    )
    parser.add_argument(
        "--channel-mode",
        default="stereo",
        choices=["mono", "stereo"],
        help="Target channel layout.",
    )
    parser.add_argument(
        "--trim",
        default=None,
        help="Optional START:END in seconds applied to every track (e.g. 5:35).",
    )
    parser.add_argument(
        "--enable-timing-logs",
        action="store_true",
        help="Log per-stage timings.",
    )
    return parser.parse_args()


SUPPORTED_EXTENSIONS = {
    ".mp3",
    ".wav",
    ".flac",
    ".ogg",
    ".m4a",
    ".aac",
    ".aiff",
    ".aif",
    ".opus",
    ".mp4",
    ".mov",
    ".mkv",
    ".webm",
}


def _collect_files(input_dir: Path) -> list[Path]:
    files = [
        p.resolve()
        for p in input_dir.iterdir()
        if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
    ]
    files.sort(key=lambda p: (p.name.lower(), str(p)))
    return files


def _parse_trim(value: str | None) -> tuple[float, float] | None:
    if not value:
        return None
    start_s, _, end_s = value.partition(":")
    try:
        return float(start_s), float(end_s)
    except ValueError:
        raise ValueError(f"--trim must look like START:END, got {value!r}") from None


async def _run_batch(
    paths: list[Path],
    settings: ConversionSettings,
    *,
    trim: tuple[float, float] | None,
    enable_timing_logs: bool,
) -> tuple[TrackQueue, BatchReport, list[str]]:
    queue = TrackQueue()
    report = queue.submit(
        SourceFile(name=p.name, content_type=resolve_type_hint(p.name, None), data=p.read_bytes())
        for p in paths
    )

    probe = MediaProbe()
    for track in report.accepted:
        queue.apply_probe(track.id, await probe.probe(track.source))
        if trim is not None:
            queue.set_trim(track.id, *trim)

    runner = BatchRunner(queue, ConversionService(enable_timing_logs=enable_timing_logs))
    batch = await runner.run(settings)
    return queue, batch, report.rejected


def _track_summary(track: Track, out_path: Path | None) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "id": track.id,
        "source": track.source.name,
        "status": track.status.value,
        "error": track.error,
        "diagnostics": track.diagnostics,
        "duration_s": track.probe.duration_s if track.probe else None,
    }
    if track.result is not None and out_path is not None:
        summary["output"] = {
            "path": str(out_path),
            "format": track.result.format.describe(),
            "duration_s": track.result.duration_s,
            "bytes": track.result.byte_size,
            "trim": [track.result.trim_start, track.result.trim_end] if track.result.trimmed else None,
        }
    return summary


def main() -> int:
    args = parse_args()

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    input_dir = Path(args.input_dir).expanduser().resolve()
    if not input_dir.exists():
        raise FileNotFoundError(f"Input directory does not exist: {input_dir}")
    if not input_dir.is_dir():
        raise NotADirectoryError(f"Input path is not a directory: {input_dir}")

    paths = _collect_files(input_dir)
    if not paths:
        raise ValueError(
            f"No supported media files found in {input_dir}. "
            f"Supported extensions: {sorted(SUPPORTED_EXTENSIONS)}"
        )

    settings = ConversionSettings(
        sample_rate=args.sample_rate,
        bit_depth=args.bit_depth,
        channel_mode=args.channel_mode,
    )
    queue, batch, rejected = asyncio.run(
        _run_batch(
            paths,
            settings,
            trim=_parse_trim(args.trim),
            enable_timing_logs=bool(args.enable_timing_logs),
        )
    )

    output_dir = Path(args.output_dir).expanduser().resolve()
    output_dir.mkdir(parents=True, exist_ok=True)

    tracks_payload = []
    for track in queue.list_tracks():
        out_path = None
        if track.status is TrackStatus.DONE and track.result is not None:
            out_path = output_dir / track.result.output_name
            out_path.write_bytes(track.result.data)
        tracks_payload.append(_track_summary(track, out_path))

    summary = {
        "input_directory": str(input_dir),
        "settings": settings.model_dump(),
        "run_id": batch.run_id,
        "state": batch.state,
        "rejected": rejected,
        "tracks": tracks_payload,
    }
    summary_path = output_dir / "batch_summary.json"
    summary_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
    queue.clear()

    print(f"[OK] Converted: {len(batch.completed)} | Failed: {len(batch.failed)} | Rejected: {len(rejected)}")
    print(f"[OK] Outputs: {output_dir}")
    print(f"[OK] Summary: {summary_path}")
    return 0 if not batch.failed else 1


if __name__ == "__main__":
    raise SystemExit(main())
