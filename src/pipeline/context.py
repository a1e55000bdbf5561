"""Per-run working set shared by the pipeline steps."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from src.mcp.types import Thread
from src.pipeline.config import PipelineConfig
from src.processing.types import RESULT_TYPES

if TYPE_CHECKING:
    from src.mcp.gmail_client import MailProvider
    from src.processing.inference import InferenceClient
    from src.storage.vector_store import VectorStore

T = TypeVar("T")


@dataclass(frozen=True)
class ConnectionInfo:
    """The mailbox connection a thread belongs to, plus its drafting policy."""

    id: str
    email: str
    name: str = ""
    auto_draft: bool = False


class StepResults:
    """Write-once cache of step results for a single pipeline run.

    Writes are checked against ``RESULT_TYPES`` so a step can only store its
    own result type, and a step id can be written once per run.
    """

    def __init__(self) -> None:
        self._results: dict[str, Any] = {}

    def set(self, step_id: str, result: Any) -> None:
        if step_id in self._results:
            raise ValueError(f"Result for step {step_id!r} was already recorded in this run")
        expected = RESULT_TYPES.get(step_id)
        if expected is not None and not isinstance(result, expected):
            raise TypeError(
                f"Step {step_id!r} must produce {expected.__name__}, "
                f"got {type(result).__name__}"
            )
        self._results[step_id] = result

    def get(self, step_id: str, expected: type[T]) -> T | None:
        """Return the step's result if present and of the expected type."""
        value = self._results.get(step_id)
        return value if isinstance(value, expected) else None

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._results

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)


@dataclass
class WorkflowContext:
    """Everything one pipeline run knows about the thread being processed.

    Create a fresh context for every run; the results cache is not reusable.
    """

    thread: Thread
    connection: ConnectionInfo
    provider_id: str = "google"
    results: StepResults = field(default_factory=StepResults)

    @property
    def thread_id(self) -> str:
        return self.thread.id

    @property
    def connection_id(self) -> str:
        return self.connection.id


@dataclass
class PipelineServices:
    """External collaborators injected into the engine and handed to each step."""

    inference: InferenceClient
    message_index: VectorStore
    thread_index: VectorStore
    provider: MailProvider
    config: PipelineConfig = field(default_factory=PipelineConfig)
