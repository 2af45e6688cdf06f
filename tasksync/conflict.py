from __future__ import annotations

from datetime import datetime

from tasksync.models import ConflictResolution, Side, serialize_datetime


def resolve(local_modified: datetime, remote_modified: datetime) -> ConflictResolution:
    """Last-write-wins between the two sides of a task that changed on both.

    Equal timestamps go to the local side.
    """
    difference = (remote_modified - local_modified).total_seconds()
    if remote_modified > local_modified:
        return ConflictResolution(
            winner=Side.REMOTE,
            reason=f"Remote modified {difference:.0f}s after the last local sync",
            winning_timestamp=remote_modified,
            losing_timestamp=local_modified,
        )
    if local_modified > remote_modified:
        return ConflictResolution(
            winner=Side.LOCAL,
            reason=f"Local modified {-difference:.0f}s after the remote change",
            winning_timestamp=local_modified,
            losing_timestamp=remote_modified,
        )
    return ConflictResolution(
        winner=Side.LOCAL,
        reason="Timestamps equal, local store takes precedence",
        winning_timestamp=local_modified,
        losing_timestamp=remote_modified,
    )


def format_conflict_log(resolution: ConflictResolution, description: str) -> str:
    difference = abs((resolution.winning_timestamp - resolution.losing_timestamp).total_seconds())
    return "\n".join(
        [
            f'Conflict on task "{description}"',
            f"  winner: {resolution.winner.value}",
            f"  reason: {resolution.reason}",
            f"  winning timestamp: {serialize_datetime(resolution.winning_timestamp)}",
            f"  losing timestamp: {serialize_datetime(resolution.losing_timestamp)}",
            f"  difference: {difference:.0f}s",
        ]
    )
