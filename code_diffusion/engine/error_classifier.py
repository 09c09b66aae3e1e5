"""Failure classification and retry policy.

Decides whether a stage failure is worth retrying, computes the backoff
delay and keeps per-(workflow, stage) failure counts. Transient failures
are recognised by their message: refused connections, timeouts, failed
name resolution, rate limiting and generic network or "temporary" wording.
Everything else is treated as permanent.
"""

import random
import re
from typing import Any

import structlog

from code_diffusion.config.settings import RetryConfig
from code_diffusion.engine.types import ErrorContext, ErrorVerdict
from code_diffusion.enums import RecoveryStrategy, WorkflowStage

log = structlog.get_logger(__name__)

TRANSIENT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"econnrefused|connection refused",
        r"etimedout|timeout|timed out",
        r"enotfound|name or service not known|name resolution|getaddrinfo",
        r"rate[ _-]?limit|too many requests|\b429\b",
        r"network",
        r"temporar(y|ily)",
    )
)


class ErrorClassifier:
    """Classifies failures and counts them per workflow stage.

    Example:
        >>> classifier = ErrorClassifier(RetryConfig())
        >>> verdict = classifier.classify(
        ...     ErrorContext("wf-1", WorkflowStage.EXPLORING, ConnectionError("ECONNREFUSED"))
        ... )
        >>> verdict.strategy
        <RecoveryStrategy.RETRY: 'retry'>
    """

    def __init__(self, config: RetryConfig | None = None, rng: random.Random | None = None) -> None:
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()
        self._failures: dict[tuple[str, WorkflowStage], int] = {}

    @staticmethod
    def is_transient(description: str) -> bool:
        return any(pattern.search(description) for pattern in TRANSIENT_PATTERNS)

    def classify(self, context: ErrorContext) -> ErrorVerdict:
        """Decide between retry and block for one failure.

        Every call counts as one failure for ``(workflow_id, stage)``.
        """
        key = (context.workflow_id, WorkflowStage(context.stage))
        self._failures[key] = self._failures.get(key, 0) + 1

        description = context.describe()
        recoverable = self.is_transient(description)

        if recoverable and context.attempt < self.config.max_attempts:
            delay = self.retry_delay(context.attempt)
            log.warning(
                "failure_retryable",
                workflow_id=context.workflow_id,
                stage=str(context.stage),
                attempt=context.attempt,
                delay=round(delay, 3),
                error=description,
            )
            return ErrorVerdict(
                strategy=RecoveryStrategy.RETRY,
                recoverable=True,
                message=f"Retrying {context.stage} after transient failure: {description}",
                retry_delay=delay,
            )

        log.error(
            "failure_blocking",
            workflow_id=context.workflow_id,
            stage=str(context.stage),
            attempt=context.attempt,
            recoverable=recoverable,
            error=description,
        )
        return ErrorVerdict(
            strategy=RecoveryStrategy.BLOCK,
            recoverable=recoverable,
            message=f"Workflow blocked at {context.stage}: {description}",
        )

    def backoff_delay(self, attempt: int) -> float:
        """Non-jittered delay for ``attempt``, capped at ``max_delay``."""
        return min(self.config.base_delay * 2**attempt, self.config.max_delay)

    def retry_delay(self, attempt: int) -> float:
        jitter = self._rng.uniform(0, self.config.max_jitter)
        return min(self.config.base_delay * 2**attempt + jitter, self.config.max_delay)

    def get_failure_count(self, workflow_id: str, stage: WorkflowStage) -> int:
        return self._failures.get((workflow_id, WorkflowStage(stage)), 0)

    def reset_count(self, workflow_id: str, stage: WorkflowStage) -> None:
        self._failures.pop((workflow_id, WorkflowStage(stage)), None)

    def clear_workflow(self, workflow_id: str) -> None:
        for key in [k for k in self._failures if k[0] == workflow_id]:
            del self._failures[key]

    def clear_all(self) -> None:
        self._failures.clear()

    def get_statistics(self) -> dict[str, Any]:
        by_workflow: dict[str, int] = {}
        for (workflow_id, _stage), count in self._failures.items():
            by_workflow[workflow_id] = by_workflow.get(workflow_id, 0) + count
        return {
            "total_failures": sum(self._failures.values()),
            "failures_by_workflow": by_workflow,
        }
