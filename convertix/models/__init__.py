from convertix.models.pcm import PcmBuffer
from convertix.models.track import (
    ConversionResult,
    FormatDescriptor,
    ProbeInfo,
    SourceFile,
    Track,
    TrackStatus,
)

__all__ = [
    "PcmBuffer",
    "ConversionResult",
    "FormatDescriptor",
    "ProbeInfo",
    "SourceFile",
    "Track",
    "TrackStatus",
]
