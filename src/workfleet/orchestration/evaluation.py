"""Rule-based evaluation of finished runs.

A deterministic EvaluationService: no model calls, just the outcome of the
run, the verification result, the retry budget and the failure history.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from .collaborators import EvaluationResult, VerificationResult
from .models import Decision, Run, RunStatus, WorkItem

if TYPE_CHECKING:
    from .collaborators import Repository


class RuleBasedEvaluator:
    """Publish on verified success, retry while budget remains, else escalate."""

    def __init__(self, repository: Repository, max_same_error_retries: int = 3):
        self._repo = repository
        self.max_same_error_retries = max_same_error_retries

    async def evaluate_run(self, work_item: WorkItem, run: Run, verification: VerificationResult) -> EvaluationResult:
        result = self._decide(work_item, run, verification)
        logger.debug(f"Evaluated run {run.id} for {work_item.id}: {result.decision} ({result.reasoning})")
        return result

    def _decide(self, work_item: WorkItem, run: Run, verification: VerificationResult) -> EvaluationResult:
        retries_left = work_item.retry_count < work_item.max_retries

        if run.status == RunStatus.SUCCESS:
            if verification.passed:
                return EvaluationResult(Decision.PUBLISH, "Run succeeded and all quality gates passed")
            failed_gates = [g.name for g in verification.gate_results if not g.passed]
            detail = verification.failure_reason or ", ".join(failed_gates) or "verification failed"
            if retries_left:
                return EvaluationResult(
                    Decision.RETRY,
                    f"Verification failed ({detail}); retry {work_item.retry_count + 1} of {work_item.max_retries}",
                    ["fix failing quality gates"],
                )
            return EvaluationResult(
                Decision.ESCALATE,
                f"Verification failed ({detail}) and no retries remain",
                ["human review of failing quality gates"],
            )

        if run.status == RunStatus.FAILURE:
            repeated = self._repo.get_repeated_error_signatures(work_item.id, self.max_same_error_retries)
            if repeated:
                count = max(repeated.values())
                return EvaluationResult(
                    Decision.ESCALATE,
                    f"Same error repeated {count} times: {run.error_message or 'unknown error'}",
                    ["change approach", "human review"],
                )
            if retries_left:
                return EvaluationResult(
                    Decision.RETRY,
                    f"Run failed ({run.error_message or 'unknown error'}); "
                    f"retry {work_item.retry_count + 1} of {work_item.max_retries}",
                )
            return EvaluationResult(
                Decision.ESCALATE,
                f"Run failed ({run.error_message or 'unknown error'}) and no retries remain",
                ["human review"],
            )

        return EvaluationResult(Decision.ESCALATE, f"Unexpected run status {run.status}")
