"""Decides whether a queued mutation may still be applied over the current remote state.

Pure functions only: no I/O, no clock, no database.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from tracksync.entities import APPEND_ONLY_FIELDS


class ResolutionOutcome(str, enum.Enum):
    APPLY = "apply"
    SUPERSEDED = "superseded"
    CONFLICT = "conflict"


@dataclass
class Resolution:
    outcome: ResolutionOutcome
    # Fields the mutation wants to set
    local_delta: Dict[str, Any] = field(default_factory=dict)
    # field -> {"base": ..., "remote": ..., "local": ...} for every colliding field
    remote_changes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    remote_version: Optional[datetime] = None

    @property
    def should_apply(self) -> bool:
        return self.outcome != ResolutionOutcome.CONFLICT


def same_value(a: Any, b: Any) -> bool:
    """Loose equality for values that went through JSON and form input"""
    if a in (None, "") and b in (None, ""):
        return True
    if a is None or b is None:
        return False
    if isinstance(a, bool) or isinstance(b, bool):
        return str(a).lower() == str(b).lower()
    try:
        return float(a) == float(b)
    except (TypeError, ValueError):
        return str(a) == str(b)


def resolve(
    mutation: Any,
    local_version_at_enqueue: Optional[datetime],
    current_remote_version: Optional[datetime],
    remote_payload: Optional[Dict[str, Any]],
) -> Resolution:
    """Classify a mutation against the remote state it is about to land on.

    * ``APPLY``: the remote has not moved since the mutation was made.
    * ``SUPERSEDED``: the remote moved, but none of the fields this mutation
      touches changed (or they already hold the intended value).
    * ``CONFLICT``: at least one touched field was changed remotely to a
      different value.

    Append-only fields (notes, uploads) never collide. Creates always apply.
    """
    payload = dict(getattr(mutation, "payload", None) or {})
    local_delta = {k: v for k, v in payload.items() if k not in APPEND_ONLY_FIELDS}

    if getattr(mutation, "is_create", False):
        return Resolution(ResolutionOutcome.APPLY, local_delta, remote_version=current_remote_version)

    if current_remote_version == local_version_at_enqueue:
        return Resolution(ResolutionOutcome.APPLY, local_delta, remote_version=current_remote_version)

    base = dict(getattr(mutation, "base_snapshot", None) or {})
    remote = dict(remote_payload or {})
    collisions = {}
    for name, intended in local_delta.items():
        base_value = base.get(name)
        remote_value = remote.get(name)
        if same_value(remote_value, base_value):
            continue
        if same_value(remote_value, intended):
            # Remote already converged on our value (e.g. a push whose response was lost).
            continue
        collisions[name] = {"base": base_value, "remote": remote_value, "local": intended}

    if collisions:
        return Resolution(
            ResolutionOutcome.CONFLICT,
            local_delta,
            remote_changes=collisions,
            remote_version=current_remote_version,
        )
    return Resolution(ResolutionOutcome.SUPERSEDED, local_delta, remote_version=current_remote_version)
