"""Transaction log of completed, reversible provisioning steps.

Each successful external side effect is recorded together with its undo
action. If a later step fails, ``unwind`` reverses every recorded step
(newest first), logging but not raising individual undo failures, so new
kinds of provisioned resources need no rollback code of their own.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)

UndoAction = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class CompletedStep:
    name: str
    resource_id: str
    undo: UndoAction = field(repr=False)


@dataclass(frozen=True)
class UnwindFailure:
    step: CompletedStep
    error: str


class TransactionLog:
    """Ordered record of completed steps with a generic best-effort unwind.

    Args:
        label: Context label for log events (e.g. ``"telephony_webhooks"``).
    """

    def __init__(self, label: str) -> None:
        self._label = label
        self._steps: list[CompletedStep] = []

    def record(self, name: str, resource_id: str, undo: UndoAction) -> None:
        self._steps.append(CompletedStep(name=name, resource_id=resource_id, undo=undo))

    @property
    def steps(self) -> list[CompletedStep]:
        return list(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    async def unwind(self) -> list[UnwindFailure]:
        """Undo all recorded steps, newest first.

        Returns:
            Steps whose undo failed; those resources may still exist remotely.
        """
        failures: list[UnwindFailure] = []
        for step in reversed(self._steps):
            try:
                await step.undo()
                logger.info(
                    "transaction.step_undone",
                    log=self._label,
                    step=step.name,
                    resource_id=step.resource_id,
                )
            except Exception as exc:
                logger.error(
                    "transaction.undo_failed",
                    log=self._label,
                    step=step.name,
                    resource_id=step.resource_id,
                    error=str(exc),
                )
                failures.append(UnwindFailure(step=step, error=str(exc)))
        self._steps.clear()
        return failures
