"""Last-write-wins conflict resolution."""

import logging
from dataclasses import dataclass
from enum import Enum

from ..task import Task
from ..utils.datetime import to_iso_string


logger = logging.getLogger(__name__)


class Winner(Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class ConflictDecision:
    """Outcome of comparing the local and remote copies of a task."""

    winner: Winner
    local: Task
    remote: Task

    @property
    def local_wins(self) -> bool:
        return self.winner is Winner.LOCAL

    @property
    def winning_task(self) -> Task:
        return self.local if self.local_wins else self.remote


def resolve_conflict(local: Task, remote: Task) -> ConflictDecision:
    """Pick the copy with the later ``updated_at``; a tie keeps the local copy.

    Args:
        local: The task as stored on this replica
        remote: The task as returned by the server

    Returns:
        The decision, which is also logged for auditing
    """
    winner = Winner.LOCAL if local.updated_at >= remote.updated_at else Winner.REMOTE
    decision = ConflictDecision(winner=winner, local=local, remote=remote)

    loser = remote if decision.local_wins else local
    logger.warning(
        f"Conflict resolved LWW for task {local.id}: {winner.value} wins. "
        f"Winner={decision.winning_task.id} ({to_iso_string(decision.winning_task.updated_at)}), "
        f"Loser={loser.id} ({to_iso_string(loser.updated_at)})"
    )
    return decision
