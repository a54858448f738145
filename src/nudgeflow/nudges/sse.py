"""Server-Sent Event framing for nudge streams."""

from __future__ import annotations

import json

from pydantic import BaseModel

FRAME_PREFIX = "data: "
FRAME_SEPARATOR = "\n\n"

SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: BaseModel) -> str:
    """``data: {json}\\n\\n`` with camelCase keys where the model defines them."""
    payload = event.model_dump_json(by_alias=True)
    return f"{FRAME_PREFIX}{payload}{FRAME_SEPARATOR}"


def encode_payload(payload: dict[str, object]) -> str:
    return f"{FRAME_PREFIX}{json.dumps(payload, separators=(',', ':'))}{FRAME_SEPARATOR}"


def decode_frames(body: str) -> list[dict[str, object]]:
    """Parse a buffered SSE body back into payload dicts, in order."""
    frames: list[dict[str, object]] = []
    for block in body.split(FRAME_SEPARATOR):
        block = block.strip()
        if not block.startswith(FRAME_PREFIX):
            continue
        frames.append(json.loads(block[len(FRAME_PREFIX):]))
    return frames
