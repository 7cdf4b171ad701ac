from agora.frames.types import AuthorType, Frame, FrameClock, FrameType, frame_target
from agora.frames.store import FrameFilter, FrameStore
from agora.frames.builders import FrameWriter
from agora.frames.compiler import compile_frames, get_visible_frames
from agora.frames.compaction import Compactor, build_snapshot, load_context

__all__ = [
    "AuthorType",
    "Frame",
    "FrameClock",
    "FrameType",
    "frame_target",
    "FrameFilter",
    "FrameStore",
    "FrameWriter",
    "compile_frames",
    "get_visible_frames",
    "Compactor",
    "build_snapshot",
    "load_context",
]
