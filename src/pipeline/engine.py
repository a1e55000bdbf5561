"""Workflow engine: runs a fixed, ordered chain of steps against one thread.

Steps run strictly one after another.  A step that raises is logged and its
neutral default is stored in its place, so a single failure never stops the
rest of the chain; only ``ProviderFatalError`` aborts a run, because the
connection itself is no longer usable.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.mcp.gmail_client import ProviderFatalError
from src.pipeline.context import PipelineServices, WorkflowContext
from src.processing import drafting, steps
from src.processing.types import (
    ANALYZE_EMAIL_INTENT,
    APPLY_LABELS,
    CHECK_EXISTING_SUMMARY,
    CREATE_DRAFT,
    FIND_MESSAGES_TO_VECTORIZE,
    GENERATE_DRAFT_CONTENT,
    GENERATE_LABELS,
    GENERATE_THREAD_SUMMARY,
    GET_USER_LABELS,
    RESULT_TYPES,
    SHOULD_GENERATE_DRAFT,
    UPSERT_EMBEDDINGS,
    UPSERT_THREAD_SUMMARY,
    VALIDATE_RESPONSE_NEEDED,
    VECTORIZE_MESSAGES,
)

logger = logging.getLogger(__name__)

StepFn = Callable[[WorkflowContext, PipelineServices], Awaitable[Any]]


class StepStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Step:
    """One unit of work in a pipeline.

    Attributes:
        id:        key the result is stored under in the run's results cache
        name:      human-readable label used in logs
        run:       ``async (ctx, services) -> result``
        default:   builds the neutral result stored when the step fails or is skipped
        requires:  step ids whose results must be present for this step to run
        halt_when: predicate on the stored result; True ends the run after this step

    A result of the wrong type counts as a failure of that step.

    ``requires`` only matters for pipelines whose earlier steps can be left
    out of the results.  In the two pipelines below every step stores a
    result or its default, and the draft chain stops through ``halt_when``,
    so a required input is always present there.
    """

    id: str
    name: str
    run: StepFn
    default: Callable[[], Any]
    requires: tuple[str, ...] = ()
    halt_when: Callable[[Any], bool] | None = None


@dataclass(frozen=True)
class Pipeline:
    name: str
    steps: tuple[Step, ...]


@dataclass(frozen=True)
class StepOutcome:
    step_id: str
    status: StepStatus
    error: str | None = None


@dataclass
class RunOutcome:
    """What happened to each step of one pipeline run."""

    pipeline: str
    thread_id: str
    steps: list[StepOutcome] = field(default_factory=list)
    halted_at: str | None = None

    @property
    def succeeded(self) -> list[str]:
        return [s.step_id for s in self.steps if s.status is StepStatus.OK]

    @property
    def failed(self) -> list[str]:
        return [s.step_id for s in self.steps if s.status is StepStatus.FAILED]

    @property
    def skipped(self) -> list[str]:
        return [s.step_id for s in self.steps if s.status is StepStatus.SKIPPED]

    def status_of(self, step_id: str) -> StepStatus | None:
        for outcome in self.steps:
            if outcome.step_id == step_id:
                return outcome.status
        return None


def _step(
    step_id: str,
    name: str,
    run: StepFn,
    *,
    requires: tuple[str, ...] = (),
    halt_when: Callable[[Any], bool] | None = None,
) -> Step:
    return Step(step_id, name, run, RESULT_TYPES[step_id], requires, halt_when)


# ── Pipelines ──────────────────────────────────────────────────────────────────

MAILBOX_UPDATE_PIPELINE = Pipeline(
    "mailbox-update",
    (
        _step(
            FIND_MESSAGES_TO_VECTORIZE,
            "Find messages to vectorize",
            steps.find_messages_to_vectorize,
        ),
        _step(
            VECTORIZE_MESSAGES,
            "Vectorize messages",
            steps.vectorize_messages,
            requires=(FIND_MESSAGES_TO_VECTORIZE,),
        ),
        _step(
            UPSERT_EMBEDDINGS,
            "Upsert message embeddings",
            steps.upsert_embeddings,
            requires=(VECTORIZE_MESSAGES,),
        ),
        _step(CHECK_EXISTING_SUMMARY, "Check existing summary", steps.check_existing_summary),
        _step(
            GENERATE_THREAD_SUMMARY,
            "Generate thread summary",
            steps.generate_thread_summary,
            requires=(CHECK_EXISTING_SUMMARY,),
        ),
        _step(
            UPSERT_THREAD_SUMMARY,
            "Upsert thread summary",
            steps.upsert_thread_summary,
            requires=(GENERATE_THREAD_SUMMARY,),
        ),
        _step(GET_USER_LABELS, "Get user labels", steps.get_user_labels),
        _step(
            GENERATE_LABELS,
            "Generate labels",
            steps.generate_labels,
            requires=(GENERATE_THREAD_SUMMARY,),
        ),
        _step(
            APPLY_LABELS,
            "Apply labels",
            steps.apply_labels,
            requires=(GENERATE_LABELS, GET_USER_LABELS),
        ),
    ),
)

AUTO_DRAFT_PIPELINE = Pipeline(
    "auto-draft",
    (
        _step(
            SHOULD_GENERATE_DRAFT,
            "Should generate draft",
            drafting.should_generate_draft,
            halt_when=lambda gate: not gate.should_generate,
        ),
        _step(
            ANALYZE_EMAIL_INTENT,
            "Analyze email intent",
            drafting.analyze_email_intent,
            requires=(SHOULD_GENERATE_DRAFT,),
        ),
        _step(
            VALIDATE_RESPONSE_NEEDED,
            "Validate response needed",
            drafting.validate_response_needed,
            requires=(ANALYZE_EMAIL_INTENT,),
            halt_when=lambda check: not check.requires_response,
        ),
        _step(
            GENERATE_DRAFT_CONTENT,
            "Generate draft content",
            drafting.generate_automatic_draft,
            requires=(VALIDATE_RESPONSE_NEEDED,),
        ),
        _step(
            CREATE_DRAFT,
            "Create draft",
            drafting.create_draft,
            requires=(GENERATE_DRAFT_CONTENT,),
        ),
    ),
)


# ── Engine ─────────────────────────────────────────────────────────────────────


class WorkflowEngine:
    """Executes pipelines with the injected services.

    Usage::

        engine = WorkflowEngine(services)
        outcome = await engine.run_mailbox_update_pipeline(ctx)
        if outcome.failed:
            ...
    """

    def __init__(self, services: PipelineServices) -> None:
        self._services = services

    @property
    def services(self) -> PipelineServices:
        return self._services

    async def run_mailbox_update_pipeline(self, context: WorkflowContext) -> RunOutcome:
        return await self.run(MAILBOX_UPDATE_PIPELINE, context)

    async def run_auto_draft_pipeline(self, context: WorkflowContext) -> RunOutcome:
        return await self.run(AUTO_DRAFT_PIPELINE, context)

    async def run(self, pipeline: Pipeline, context: WorkflowContext) -> RunOutcome:
        """Run every step of ``pipeline`` in order against ``context``.

        Raises:
            ProviderFatalError: the provider rejected the connection's credentials.
        """
        outcome = RunOutcome(pipeline.name, context.thread_id)
        logger.info("pipeline=%s thread=%s starting", pipeline.name, context.thread_id)

        for index, step in enumerate(pipeline.steps):
            result, status, error = await self._run_step(step, context)
            outcome.steps.append(StepOutcome(step.id, status, error))

            if step.halt_when is not None and step.halt_when(result):
                logger.info(
                    "pipeline=%s thread=%s halted after %s",
                    pipeline.name,
                    context.thread_id,
                    step.id,
                )
                outcome.halted_at = step.id
                outcome.steps.extend(
                    StepOutcome(rest.id, StepStatus.SKIPPED)
                    for rest in pipeline.steps[index + 1 :]
                )
                break

        logger.info(
            "pipeline=%s thread=%s finished ok=%d failed=%d skipped=%d",
            pipeline.name,
            context.thread_id,
            len(outcome.succeeded),
            len(outcome.failed),
            len(outcome.skipped),
        )
        return outcome

    async def _run_step(
        self, step: Step, context: WorkflowContext
    ) -> tuple[Any, StepStatus, str | None]:
        """Run one step and store its result, or its default in its place."""
        missing = [r for r in step.requires if r not in context.results]
        if missing:
            logger.debug(
                "thread=%s step=%s skipped; missing input from %s",
                context.thread_id,
                step.id,
                ", ".join(missing),
            )
            result = step.default()
            context.results.set(step.id, result)
            return result, StepStatus.SKIPPED, None

        try:
            result = await step.run(context, self._services)
            context.results.set(step.id, result)
        except ProviderFatalError:
            logger.error(
                "thread=%s step=%s provider rejected the connection; aborting run",
                context.thread_id,
                step.id,
            )
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "thread=%s step=%s (%s) failed: %s",
                context.thread_id,
                step.id,
                step.name,
                exc,
                exc_info=True,
            )
            result = step.default()
            context.results.set(step.id, result)
            return result, StepStatus.FAILED, str(exc) or type(exc).__name__
        return result, StepStatus.OK, None
