"""Deterministic merge policy.

This module contains *no* payload parsing. The ingestion boundary is
responsible for producing normalized payloads and timestamps.
"""

from __future__ import annotations

from fleetpulse.state.events import ChangeKind, Revision


def kind_priority(kind: ChangeKind) -> int:
    """Higher wins when two events carry the same timestamp."""
    # A delete sent in the same instant as a re-insert must stay deleted.
    priorities: dict[ChangeKind, int] = {
        ChangeKind.DELETE: 3,
        ChangeKind.UPDATE: 2,
        ChangeKind.INSERT: 1,
    }
    return priorities.get(kind, 0)


def should_accept_event(
    *,
    current: Revision | None,
    incoming_timestamp: float,
    incoming_kind: ChangeKind,
) -> bool:
    """Decide whether an incoming event should be applied.

    Policy (last writer wins by timestamp, not by arrival order):
    - No revision for the id yet: accept.
    - Newer timestamp: accept.
    - Older timestamp: reject.
    - Equal timestamp: compare kind priority (DELETE > UPDATE > INSERT);
      equal priority is accepted so replaying an event is harmless.
    """
    if current is None:
        return True
    if incoming_timestamp != current.timestamp:
        return incoming_timestamp > current.timestamp
    return kind_priority(incoming_kind) >= kind_priority(current.kind)
