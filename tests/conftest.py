"""Shared pytest fixtures: in-memory fakes for the pipeline's collaborators."""

from collections.abc import Callable

import pytest

from src.mcp.types import DraftSpec, LabelRef, Message, Participant, Thread
from src.pipeline.config import PipelineConfig
from src.pipeline.context import ConnectionInfo, PipelineServices, WorkflowContext
from src.processing.types import TopicLabel
from src.storage.vector_store import VectorRecord


# ── Fakes ──────────────────────────────────────────────────────────────────────


class FakeVectorStore:
    """Dict-backed VectorStore that records every upsert call."""

    def __init__(self, records: list[VectorRecord] | None = None) -> None:
        self.records: dict[str, VectorRecord] = {r.id: r for r in records or []}
        self.upsert_calls: list[list[VectorRecord]] = []

    def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        return [self.records[i] for i in ids if i in self.records]

    def upsert(self, records: list[VectorRecord]) -> None:
        self.upsert_calls.append(list(records))
        for record in records:
            self.records[record.id] = record


class FakeInference:
    """InferenceClient fake.

    ``responder(system_prompt, user_prompt)`` decides the completion text;
    by default it echoes a short summary.  Every call is recorded.
    """

    def __init__(self, responder: Callable[[str, str], str] | None = None) -> None:
        self.responder = responder or (lambda system, user: "A short summary.")
        self.complete_calls: list[tuple[str, str, str | None]] = []
        self.embed_calls: list[str] = []

    async def complete(self, system_prompt: str, user_prompt: str, *, model: str | None = None) -> str:
        self.complete_calls.append((system_prompt, user_prompt, model))
        return self.responder(system_prompt, user_prompt)

    async def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        if not text.strip():
            return []
        return [float(len(text)), 1.0, 0.5]


class FakeProvider:
    """MailProvider fake holding threads, account labels and topics in memory."""

    def __init__(
        self,
        threads: list[Thread] | None = None,
        labels: list[LabelRef] | None = None,
        topics: list[TopicLabel] | None = None,
    ) -> None:
        self.threads = {t.id: t for t in threads or []}
        self.labels = list(labels or [])
        self.topics = list(topics or [])
        self.modify_calls: list[tuple[list[str], list[str], list[str]]] = []
        self.drafts: list[DraftSpec] = []
        self.created_labels: list[str] = []

    async def get_thread(self, thread_id: str) -> Thread:
        return self.threads[thread_id]

    async def get_user_labels(self) -> list[LabelRef]:
        return list(self.labels)

    async def get_user_topics(self) -> list[TopicLabel]:
        return list(self.topics)

    async def create_label(self, label_name: str) -> str:
        label_id = f"Label_{len(self.labels) + 1}"
        self.labels.append(LabelRef(label_id, label_name))
        self.created_labels.append(label_name)
        return label_id

    async def modify_labels(self, thread_ids: list[str], add: list[str], remove: list[str]) -> None:
        self.modify_calls.append((list(thread_ids), list(add), list(remove)))

    async def create_draft(self, draft: DraftSpec) -> str | None:
        self.drafts.append(draft)
        return f"draft_{len(self.drafts)}"


# ── Builders ───────────────────────────────────────────────────────────────────


def make_message(
    id: str,
    thread_id: str = "thread_1",
    body: str = "Hi, please review the attached budget figures by Friday.",
    sender: str = "alice@example.com",
    subject: str = "Q2 budget review",
    cc: list[str] | None = None,
) -> Message:
    return Message(
        id=id,
        thread_id=thread_id,
        sender=Participant(sender, "Alice"),
        subject=subject,
        decoded_body=body,
        to=[Participant("me@example.com")],
        cc=[Participant(address) for address in cc or []],
        received_on="2026-02-27T09:00:00Z",
        connection_id="me@example.com",
    )


def make_thread(
    *message_ids: str,
    thread_id: str = "thread_1",
    labels: list[LabelRef] | None = None,
) -> Thread:
    return Thread(
        id=thread_id,
        connection_id="me@example.com",
        messages=[make_message(m, thread_id) for m in message_ids],
        labels=list(labels or []),
    )


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture
def connection() -> ConnectionInfo:
    return ConnectionInfo(id="me@example.com", email="me@example.com", name="Sam")


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def message_index() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def thread_index() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def services(
    inference: FakeInference,
    message_index: FakeVectorStore,
    thread_index: FakeVectorStore,
    provider: FakeProvider,
) -> PipelineServices:
    return PipelineServices(
        inference=inference,
        message_index=message_index,
        thread_index=thread_index,
        provider=provider,
        config=PipelineConfig(label_batch_delay=0.0),
    )


@pytest.fixture
def make_context(connection: ConnectionInfo) -> Callable[..., WorkflowContext]:
    """Factory for a fresh WorkflowContext around a thread."""

    def _make(thread: Thread, **overrides: object) -> WorkflowContext:
        conn = ConnectionInfo(**{**connection.__dict__, **overrides})  # type: ignore[arg-type]
        return WorkflowContext(thread=thread, connection=conn)

    return _make


@pytest.fixture
def build_message() -> Callable[..., Message]:
    return make_message


@pytest.fixture
def build_thread() -> Callable[..., Thread]:
    return make_thread
