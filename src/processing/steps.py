"""Mailbox-update steps: vectorise new messages, summarise the thread, label it.

Every step takes the run's WorkflowContext plus the injected services and
returns its own result type.  Steps read only results of earlier steps and
treat a missing upstream result as "nothing to do".
"""

from __future__ import annotations

import logging

from src.mcp.gmail_client import ProviderFatalError
from src.mcp.types import Message
from src.pipeline.batch import run_bounded
from src.pipeline.context import PipelineServices, WorkflowContext
from src.processing.inference import InferenceError
from src.processing.prompts import (
    RESUMMARIZE_THREAD,
    SUMMARIZE_MESSAGE,
    SUMMARIZE_THREAD,
    message_to_xml,
    thread_labels_prompt,
    thread_to_xml,
)
from src.processing.types import (
    CHECK_EXISTING_SUMMARY,
    DEFAULT_TOPICS,
    FIND_MESSAGES_TO_VECTORIZE,
    GENERATE_LABELS,
    GENERATE_THREAD_SUMMARY,
    GET_USER_LABELS,
    VECTORIZE_MESSAGES,
    ExistingSummary,
    GeneratedLabels,
    LabelChanges,
    SummaryLookup,
    ThreadSummaryResult,
    ThreadSummaryUpsert,
    TopicLabel,
    UpsertedEmbeddings,
    UserLabels,
    VectorizationDelta,
    VectorizedMessages,
)
from src.storage.vector_store import VectorRecord

logger = logging.getLogger(__name__)

# Characters stripped from each label the model returns.
_LABEL_JUNK = " \t\n\"'`*.!;:"


# ── Vectorisation ──────────────────────────────────────────────────────────────


async def find_messages_to_vectorize(
    ctx: WorkflowContext, services: PipelineServices
) -> VectorizationDelta:
    """Return the thread's messages that have no entry in the message index."""
    message_ids = [m.id for m in ctx.thread.messages]
    if not message_ids:
        return VectorizationDelta()

    existing = services.message_index.get_by_ids(message_ids)
    existing_ids = frozenset(r.id for r in existing)
    todo = [m for m in ctx.thread.messages if m.id not in existing_ids]
    logger.info(
        "thread=%s messages=%d already_indexed=%d to_vectorize=%d",
        ctx.thread_id,
        len(message_ids),
        len(existing_ids),
        len(todo),
    )
    return VectorizationDelta(messages_to_vectorize=todo, existing_ids=existing_ids)


async def vectorize_messages(
    ctx: WorkflowContext, services: PipelineServices
) -> VectorizedMessages:
    """Summarise and embed each new message, a few at a time.

    Messages with too little text are skipped; a message whose AI calls fail
    is logged and left out so the rest of the batch still gets indexed.
    """
    delta = ctx.results.get(FIND_MESSAGES_TO_VECTORIZE, VectorizationDelta)
    if delta is None or not delta.messages_to_vectorize:
        logger.debug("thread=%s no messages to vectorize", ctx.thread_id)
        return VectorizedMessages()

    async def _vectorize(message: Message) -> VectorRecord | None:
        prompt = message_to_xml(message)
        if prompt is None:
            logger.debug("Message %s has too little text to summarise; skipping", message.id)
            return None
        summary = (
            await services.inference.complete(
                SUMMARIZE_MESSAGE, prompt, model=services.config.fast_model
            )
        ).strip()
        if not summary:
            raise InferenceError(f"Empty summary for message {message.id}")
        embedding = await services.inference.embed(summary)
        if not embedding:
            raise InferenceError(f"Empty embedding for message {message.id}")
        return VectorRecord(
            id=message.id,
            embedding=embedding,
            metadata={
                "connection": message.connection_id or ctx.connection_id,
                "thread": message.thread_id or ctx.thread_id,
                "summary": summary,
            },
        )

    report = await run_bounded(
        delta.messages_to_vectorize,
        _vectorize,
        concurrency=services.config.message_concurrency,
        key=lambda m: m.id,
    )
    for failure in report.failed:
        logger.warning(
            "Failed to vectorize message %s in thread %s: %s",
            failure.key,
            ctx.thread_id,
            failure.reason,
        )
    records = report.values()
    logger.info("thread=%s vectorized=%d", ctx.thread_id, len(records))
    return VectorizedMessages(records=records)


async def upsert_embeddings(
    ctx: WorkflowContext, services: PipelineServices
) -> UpsertedEmbeddings:
    """Write all new message vectors in a single upsert."""
    vectors = ctx.results.get(VECTORIZE_MESSAGES, VectorizedMessages)
    if vectors is None or not vectors.records:
        return UpsertedEmbeddings(upserted=0)
    services.message_index.upsert(vectors.records)
    logger.info("thread=%s upserted %d message vector(s)", ctx.thread_id, len(vectors.records))
    return UpsertedEmbeddings(upserted=len(vectors.records))


# ── Thread summary ─────────────────────────────────────────────────────────────


async def check_existing_summary(
    ctx: WorkflowContext, services: PipelineServices
) -> SummaryLookup:
    """Fetch the stored thread summary; malformed metadata counts as none."""
    records = services.thread_index.get_by_ids([ctx.thread_id])
    if not records:
        return SummaryLookup()

    metadata = records[0].metadata
    summary = metadata.get("summary") if isinstance(metadata, dict) else None
    last_msg = metadata.get("lastMsg") if isinstance(metadata, dict) else None
    if not isinstance(summary, str) or not isinstance(last_msg, str):
        logger.warning(
            "Stored summary for thread %s is missing summary/lastMsg; ignoring it",
            ctx.thread_id,
        )
        return SummaryLookup()
    return SummaryLookup(existing=ExistingSummary(summary=summary, last_msg=last_msg))


async def generate_thread_summary(
    ctx: WorkflowContext, services: PipelineServices
) -> ThreadSummaryResult:
    """Summarise the thread, reusing the stored summary when nothing is new."""
    newest = ctx.thread.latest_message
    if newest is None:
        return ThreadSummaryResult()

    lookup = ctx.results.get(CHECK_EXISTING_SUMMARY, SummaryLookup)
    existing = lookup.existing if lookup is not None else None

    if existing is not None and existing.last_msg == newest.id:
        logger.info("thread=%s no new messages since last summary; reusing it", ctx.thread_id)
        return ThreadSummaryResult(summary=existing.summary, regenerated=False)

    if existing is not None:
        system_prompt = RESUMMARIZE_THREAD
        prompt = thread_to_xml(ctx.thread.messages, existing.summary)
    else:
        system_prompt = SUMMARIZE_THREAD
        prompt = thread_to_xml(ctx.thread.messages)

    summary = (
        await services.inference.complete(
            system_prompt, prompt, model=services.config.summary_model
        )
    ).strip()
    logger.info(
        "thread=%s summary %s",
        ctx.thread_id,
        "updated" if existing is not None else "created",
    )
    return ThreadSummaryResult(summary=summary or None, regenerated=bool(summary))


async def upsert_thread_summary(
    ctx: WorkflowContext, services: PipelineServices
) -> ThreadSummaryUpsert:
    """Store the new summary as the thread's single index entry."""
    result = ctx.results.get(GENERATE_THREAD_SUMMARY, ThreadSummaryResult)
    if result is None or not result.summary:
        return ThreadSummaryUpsert(upserted=False)
    if not result.regenerated:
        logger.debug("thread=%s summary unchanged; not re-upserting", ctx.thread_id)
        return ThreadSummaryUpsert(upserted=False)

    newest = ctx.thread.latest_message
    embedding = await services.inference.embed(result.summary)
    if not embedding or newest is None:
        logger.warning("thread=%s summary embedding unavailable; skipping upsert", ctx.thread_id)
        return ThreadSummaryUpsert(upserted=False)

    services.thread_index.upsert([
        VectorRecord(
            id=ctx.thread_id,
            embedding=embedding,
            metadata={
                "connection": ctx.connection_id,
                "thread": ctx.thread_id,
                "summary": result.summary,
                "lastMsg": newest.id,
            },
        )
    ])
    return ThreadSummaryUpsert(upserted=True)


# ── Labels ─────────────────────────────────────────────────────────────────────


async def get_user_labels(ctx: WorkflowContext, services: PipelineServices) -> UserLabels:
    """Fetch the account's labels; a transient failure yields none."""
    try:
        labels = await services.provider.get_user_labels()
    except ProviderFatalError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to list labels for connection %s: %s", ctx.connection_id, exc)
        return UserLabels()
    return UserLabels(labels=list(labels))


async def resolve_taxonomy(ctx: WorkflowContext, services: PipelineServices) -> list[TopicLabel]:
    """The connection's own topics, or the default taxonomy if it has none."""
    try:
        topics = await services.provider.get_user_topics()
    except ProviderFatalError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Failed to load topics for connection %s, using defaults: %s",
            ctx.connection_id,
            exc,
        )
        return list(DEFAULT_TOPICS)
    return list(topics) if topics else list(DEFAULT_TOPICS)


def parse_label_response(text: str, taxonomy: list[TopicLabel]) -> list[str]:
    """Turn the model's comma-separated answer into taxonomy label names.

    Names outside the taxonomy are dropped.  Matching ignores case and the
    taxonomy's spelling is returned, each name at most once.
    """
    allowed = {t.name.lower(): t.name for t in taxonomy}
    labels: list[str] = []
    for token in text.split(","):
        name = token.strip(_LABEL_JUNK)
        canonical = allowed.get(name.lower()) if name else None
        if canonical is not None and canonical not in labels:
            labels.append(canonical)
    return labels


async def generate_labels(ctx: WorkflowContext, services: PipelineServices) -> GeneratedLabels:
    """Ask the model which taxonomy labels fit the thread summary."""
    summary_result = ctx.results.get(GENERATE_THREAD_SUMMARY, ThreadSummaryResult)
    if summary_result is None or not summary_result.summary:
        logger.debug("thread=%s no summary available for labelling", ctx.thread_id)
        return GeneratedLabels()

    taxonomy = await resolve_taxonomy(ctx, services)
    response = await services.inference.complete(
        thread_labels_prompt(taxonomy, ctx.thread.labels),
        summary_result.summary,
        model=services.config.fast_model,
    )
    labels = parse_label_response(response, taxonomy)
    logger.info("thread=%s labels=%s (raw=%r)", ctx.thread_id, labels, response)
    return GeneratedLabels(labels=labels, taxonomy_used=taxonomy)


async def apply_labels(ctx: WorkflowContext, services: PipelineServices) -> LabelChanges:
    """Reconcile the thread's labels with the model's choice.

    Only labels from the taxonomy used in this run are ever removed, so
    labels the user applied by hand outside that taxonomy stay put.  If none
    of the chosen labels exists on the account nothing is changed at all.
    """
    generated = ctx.results.get(GENERATE_LABELS, GeneratedLabels)
    account = ctx.results.get(GET_USER_LABELS, UserLabels)
    if generated is None or not generated.labels:
        return LabelChanges()
    if account is None or not account.labels:
        logger.debug("thread=%s no account labels to map onto", ctx.thread_id)
        return LabelChanges()

    ids_by_name = {label.name.lower(): label.id for label in account.labels}
    accepted_ids = [
        ids_by_name[name.lower()] for name in generated.labels if ids_by_name.get(name.lower())
    ]
    if not accepted_ids:
        logger.info("thread=%s none of %s exist on the account", ctx.thread_id, generated.labels)
        return LabelChanges()

    current_ids = [label.id for label in ctx.thread.labels]
    to_add = [i for i in accepted_ids if i not in current_ids]

    managed_names = {t.name.lower() for t in generated.taxonomy_used}
    managed_ids = {label.id for label in account.labels if label.name.lower() in managed_names}
    to_remove = [i for i in current_ids if i in managed_ids and i not in accepted_ids]

    if not to_add and not to_remove:
        logger.debug("thread=%s labels already match", ctx.thread_id)
        return LabelChanges()

    await services.provider.modify_labels([ctx.thread_id], to_add, to_remove)
    logger.info("thread=%s labels add=%s remove=%s", ctx.thread_id, to_add, to_remove)
    return LabelChanges(applied=True, added=to_add, removed=to_remove)
