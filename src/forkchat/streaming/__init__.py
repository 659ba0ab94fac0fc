from forkchat.streaming.client import CompletionClient, ProviderConfig
from forkchat.streaming.frames import Frame, FrameParser, iter_frames
from forkchat.streaming.normalizer import NormalizedDelta, UsageSnapshot, normalize_frames, normalize_payload

__all__ = [
    "CompletionClient",
    "Frame",
    "FrameParser",
    "NormalizedDelta",
    "ProviderConfig",
    "UsageSnapshot",
    "iter_frames",
    "normalize_frames",
    "normalize_payload",
]
