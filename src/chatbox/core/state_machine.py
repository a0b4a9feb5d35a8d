from __future__ import annotations

from typing import Dict, Optional, Tuple

IDLE = "idle"
STREAMING = "streaming"

# Per-session streaming lifecycle: idle -> streaming -> idle
STREAM_TRANSITIONS: Dict[Tuple[str, str], str] = {
    (IDLE, "send"): STREAMING,
    (STREAMING, "completed"): IDLE,
    (STREAMING, "failed"): IDLE,
    (STREAMING, "cancelled"): IDLE,
}


def next_state(current: str, event: str) -> Optional[str]:
    return STREAM_TRANSITIONS.get((current, event))


def is_valid_transition(current: str, event: str) -> bool:
    return (current, event) in STREAM_TRANSITIONS
