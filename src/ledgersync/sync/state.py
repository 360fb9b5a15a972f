"""Sync state machine.

States:
    PENDING -> SYNCED | CONFLICT | FAILED
    SYNCED -> PENDING (local change) | CONFLICT | FAILED
    CONFLICT -> SYNCED (resolved) | PENDING (re-attempt)
    FAILED -> PENDING (retry) | SYNCED | CONFLICT

All state transitions are validated. The decision of what to do for one
entity only compares timestamps; it never touches the store or the remote.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum, auto
from typing import Any

from ledgersync.core.types import SyncStatus, ensure_utc, utcnow


class SyncAction(IntEnum):
    """What a sync attempt should do for one entity."""

    NOOP = auto()
    PUSH = auto()
    PULL = auto()
    CONFLICT = auto()


# Valid state transitions
VALID_TRANSITIONS: dict[SyncStatus, set[SyncStatus]] = {
    SyncStatus.PENDING: {
        SyncStatus.PENDING,
        SyncStatus.SYNCED,
        SyncStatus.CONFLICT,
        SyncStatus.FAILED,
    },
    SyncStatus.SYNCED: {
        SyncStatus.SYNCED,
        SyncStatus.PENDING,
        SyncStatus.CONFLICT,
        SyncStatus.FAILED,
    },
    SyncStatus.CONFLICT: {SyncStatus.CONFLICT, SyncStatus.SYNCED, SyncStatus.PENDING},
    SyncStatus.FAILED: {
        SyncStatus.FAILED,
        SyncStatus.PENDING,
        SyncStatus.SYNCED,
        SyncStatus.CONFLICT,
    },
}


class InvalidTransitionError(Exception):
    """Raised when attempting invalid state transition."""


def check_transition(current: SyncStatus | str, new: SyncStatus) -> SyncStatus:
    """Validate a status change.

    Returns:
        The new status.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    current = SyncStatus(current)
    if new not in VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot transition from {current.value} to {new.value}")
    return new


@dataclass(frozen=True)
class Timestamps:
    """The three timestamps a sync decision is based on."""

    last_synced_at: datetime | None
    last_local_modified_at: datetime | None
    last_remote_modified_at: datetime | None

    @classmethod
    def of(cls, state: Any) -> Timestamps:
        """Read the timestamps of a SyncState (or None for a new entity)."""
        if state is None:
            return cls(None, None, None)
        return cls(
            ensure_utc(state.last_synced_at),
            ensure_utc(state.last_local_modified_at),
            ensure_utc(state.last_remote_modified_at),
        )


def _after(value: datetime | None, reference: datetime | None) -> bool:
    if value is None:
        return False
    if reference is None:
        return True
    return value > reference


def decide(stamps: Timestamps, *, has_local: bool, has_remote: bool) -> SyncAction:
    """Decide what to do for one entity.

    Args:
        stamps: Timestamps from the entity's SyncState (remote one refreshed).
        has_local: Whether local data exists.
        has_remote: Whether the entity exists remotely.

    Returns:
        The SyncAction to perform.
    """
    synced = stamps.last_synced_at
    local = stamps.last_local_modified_at
    remote = stamps.last_remote_modified_at

    if synced is None:
        # Never reconciled: follow whichever side has data
        if has_local and not has_remote:
            return SyncAction.PUSH
        if has_remote and not has_local:
            return SyncAction.PULL
        if not (has_local and has_remote):
            return SyncAction.NOOP
        if _after(local, remote):
            return SyncAction.PUSH
        if _after(remote, local):
            return SyncAction.PULL
        return SyncAction.NOOP

    local_changed = _after(local, synced)
    remote_changed = _after(remote, synced)
    if local_changed and remote_changed:
        return SyncAction.CONFLICT
    if local_changed:
        return SyncAction.PUSH
    if remote_changed:
        return SyncAction.PULL
    return SyncAction.NOOP


def _comparable(value: Any) -> Any:
    if value is None:
        return None
    return str(value)


def field_diff(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
    """Build the conflict snapshot for two field maps.

    Values are compared by their string form so Decimal("10.00") and
    "10.00" are equal.

    Returns:
        Snapshot with the differing fields and both full copies.
    """
    fields = {}
    for name in sorted(set(local) | set(remote)):
        left, right = _comparable(local.get(name)), _comparable(remote.get(name))
        if left != right:
            fields[name] = {"local": left, "remote": right}
    return {
        "fields": fields,
        "local": {k: _comparable(v) for k, v in local.items()},
        "remote": {k: _comparable(v) for k, v in remote.items()},
        "detected_at": utcnow().isoformat(),
    }


def reconciled_at(*stamps: datetime | None) -> datetime:
    """A last_synced_at value not earlier than now or any given timestamp."""
    values = [utcnow()] + [ensure_utc(s) for s in stamps if s is not None]
    return max(values)  # type: ignore[type-var]
