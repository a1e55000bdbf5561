"""Per-thread entry point: fetch a thread and run both pipelines on it."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.mcp.gmail_client import GmailClient, MailProvider
from src.pipeline.config import PipelineConfig
from src.pipeline.context import ConnectionInfo, PipelineServices, WorkflowContext
from src.pipeline.engine import RunOutcome, WorkflowEngine
from src.processing.inference import AnthropicInferenceClient
from src.storage.vector_store import MESSAGES_COLLECTION, THREADS_COLLECTION, ChromaVectorStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadRun:
    """Outcomes of processing one thread; ``draft`` is None when not attempted."""

    thread_id: str
    mailbox: RunOutcome
    draft: RunOutcome | None = None


def build_services(provider: MailProvider, config: PipelineConfig) -> PipelineServices:
    """Wire the production collaborators: Claude, ChromaDB and the given provider."""
    inference = AnthropicInferenceClient(model=config.fast_model)
    return PipelineServices(
        inference=inference,
        message_index=ChromaVectorStore(config.chroma_dir, MESSAGES_COLLECTION),
        thread_index=ChromaVectorStore(config.chroma_dir, THREADS_COLLECTION),
        provider=provider,
        config=config,
    )


class ThreadProcessor:
    """Runs the mailbox-update and auto-draft pipelines for one connection.

    Every call fetches the thread fresh and gives each pipeline its own
    context, so the results cache never leaks between runs.  Callers must not
    process the same thread concurrently.

    Raises ``ProviderFatalError`` from ``process`` when the connection's
    credentials are no longer valid; every other failure is contained in the
    returned outcomes.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        provider: MailProvider,
        connection: ConnectionInfo,
    ) -> None:
        self._engine = engine
        self._provider = provider
        self._connection = connection

    @property
    def connection(self) -> ConnectionInfo:
        return self._connection

    async def process(self, thread_id: str, *, draft: bool = True) -> ThreadRun:
        thread = await self._provider.get_thread(thread_id)
        logger.info(
            "Processing thread=%s connection=%s messages=%d",
            thread_id,
            self._connection.id,
            len(thread.messages),
        )
        mailbox = await self._engine.run_mailbox_update_pipeline(
            WorkflowContext(thread=thread, connection=self._connection)
        )
        if not draft:
            return ThreadRun(thread_id, mailbox)

        drafted = await self._engine.run_auto_draft_pipeline(
            WorkflowContext(thread=thread, connection=self._connection)
        )
        return ThreadRun(thread_id, mailbox, drafted)

    async def draft(self, thread_id: str) -> RunOutcome:
        """Run only the auto-draft pipeline."""
        thread = await self._provider.get_thread(thread_id)
        return await self._engine.run_auto_draft_pipeline(
            WorkflowContext(thread=thread, connection=self._connection)
        )


def make_thread_processor(
    gmail: GmailClient,
    config: PipelineConfig,
    *,
    auto_draft: bool | None = None,
) -> ThreadProcessor:
    """Build a processor for the account ``gmail`` is connected to.

    ``auto_draft`` overrides the configured drafting policy for this processor.
    """
    connection = ConnectionInfo(
        id=gmail.user_email,
        email=gmail.user_email,
        name=config.display_name,
        auto_draft=config.auto_draft if auto_draft is None else auto_draft,
    )
    engine = WorkflowEngine(build_services(gmail, config))
    return ThreadProcessor(engine, gmail, connection)
