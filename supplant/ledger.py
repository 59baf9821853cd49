"""
Restoration ledger.

Every forward step that changes external state appends its undo action here
before the next step starts. Teardown drains the ledger strictly last-in,
first-out; a failing action is logged and the remaining actions still run.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from supplant.errors import RestoreFailed

logger = logging.getLogger(__name__)

RESTORE_SERVICE = "restore-service"
DELETE_ENDPOINT = "delete-endpoint"
CLOSE_TUNNEL = "close-tunnel"


@dataclass
class UndoAction:
    kind: str
    target: str
    undo: Callable[[], None]

    @property
    def description(self):
        return f"{self.kind} {self.target}"


@dataclass
class UndoOutcome:
    action: UndoAction
    error: Optional[RestoreFailed] = None

    @property
    def ok(self):
        return self.error is None


class RestorationLedger:
    """Ordered, append-only list of pending undo actions.

    The ledger is owned by the single coordinator thread: appended to during
    setup and drained during teardown. ``history`` keeps every action ever
    pushed, in push order, so the unwind order can be checked against it.
    """

    def __init__(self):
        self._pending = []
        self.history = []

    def push(self, kind, target, undo):
        """
        Append an undo action.

        Args:
            kind: One of RESTORE_SERVICE, DELETE_ENDPOINT, CLOSE_TUNNEL
            target: Human-readable object the action applies to
            undo: Zero-argument callable performing the undo

        Returns:
            UndoAction: The queued action
        """
        action = UndoAction(kind=kind, target=target, undo=undo)
        self._pending.append(action)
        self.history.append(action)
        logger.debug(f"Ledger +{action.description} ({len(self._pending)} pending)")
        return action

    def __len__(self):
        return len(self._pending)

    def __iter__(self):
        return iter(list(self._pending))

    def unwind(self):
        """
        Run every pending undo action in reverse order of pushing.

        Failures are wrapped in RestoreFailed, logged, and collected; they
        never stop the remaining actions.

        Returns:
            list[UndoOutcome]: One outcome per executed action, in execution order
        """
        outcomes = []
        while self._pending:
            action = self._pending.pop()
            try:
                action.undo()
            except Exception as e:
                error = RestoreFailed(f"{action.description} failed: {e}")
                error.__cause__ = e
                logger.error(f"✗ {error}")
                outcomes.append(UndoOutcome(action=action, error=error))
                continue
            outcomes.append(UndoOutcome(action=action))
        return outcomes
