"""Pure reconstruction of current frame state from an ordered frame log.

``compile_frames`` is a fold over frames in append order:

- ``compact`` frames merge their snapshot into the state,
- ``update`` frames replace the payload of already-known ``frame:<id>``
  targets (unknown targets are skipped and never revisited),
- every other frame stores its own payload under its id.

The fold holds no state between calls, so it is safe to run repeatedly and
from several threads on the same input.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

from agora.frames.types import FRAME_TARGET_PREFIX, Frame, FrameType


def compile_frames(frames: Iterable[Frame]) -> Dict[str, Any]:
    compiled: Dict[str, Any] = {}

    for frame in frames:
        if frame.type == FrameType.COMPACT:
            snapshot = frame.payload.get("snapshot") if isinstance(frame.payload, dict) else None
            if snapshot:
                for frame_id, payload in snapshot.items():
                    compiled[frame_id] = payload

        elif frame.type == FrameType.UPDATE:
            for target in frame.target_ids:
                if not target.startswith(FRAME_TARGET_PREFIX):
                    continue
                target_id = target[len(FRAME_TARGET_PREFIX):]
                if target_id in compiled:
                    compiled[target_id] = frame.payload

        else:
            compiled[frame.id] = frame.payload

    return compiled


def is_hidden(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("hidden") is True


def get_visible_frames(
    frames: Iterable[Frame],
    compiled: Mapping[str, Any],
    show_hidden: bool = False,
) -> List[Frame]:
    """Frames to display, in order.

    Update frames never display. Compact frames always display (as a
    transcript divider). Anything else is dropped when its compiled payload
    is marked hidden, unless ``show_hidden`` is set.
    """
    visible: List[Frame] = []
    for frame in frames:
        if frame.type == FrameType.UPDATE:
            continue
        if frame.type == FrameType.COMPACT:
            visible.append(frame)
            continue
        if not show_hidden and is_hidden(compiled.get(frame.id)):
            continue
        visible.append(frame)
    return visible
