"""Work that runs after the primary write has committed.

Each task declares whether its failure must surface (``FATAL``) or is
logged and skipped (``BEST_EFFORT``).
"""

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

from orderflow.domain.errors import OrderFlowError, PersistenceError

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    FATAL = "fatal"
    BEST_EFFORT = "best_effort"


@dataclass
class PostCommitTask:
    name: str
    action: Callable[[], Any]
    policy: FailurePolicy = FailurePolicy.BEST_EFFORT


@dataclass
class SideEffectReport:
    completed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


async def run_post_commit(tasks: List[PostCommitTask]) -> SideEffectReport:
    report = SideEffectReport()
    for task in tasks:
        try:
            result = task.action()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            if task.policy is FailurePolicy.FATAL:
                logger.error(f"Post-commit task {task.name} failed", exc_info=True)
                if isinstance(e, OrderFlowError):
                    raise
                raise PersistenceError(f"{task.name} failed: {e}") from e
            logger.warning(
                f"Best-effort task {task.name} failed",
                exc_info=True,
                extra={'extra_fields': {'task': task.name}},
            )
            report.failed[task.name] = str(e)
        else:
            report.completed.append(task.name)
    return report
