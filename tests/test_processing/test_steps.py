"""Tests for the mailbox-update steps — collaborators are in-memory fakes."""

from unittest.mock import AsyncMock

import pytest

from src.mcp.gmail_client import MCPError, ProviderFatalError
from src.mcp.types import LabelRef
from src.processing import steps
from src.processing.prompts import RESUMMARIZE_THREAD, SUMMARIZE_THREAD
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
    SummaryLookup,
    ThreadSummaryResult,
    TopicLabel,
    UserLabels,
    VectorizationDelta,
    VectorizedMessages,
)
from src.storage.vector_store import VectorRecord


def stored(id: str, **metadata: object) -> VectorRecord:
    return VectorRecord(id=id, embedding=[0.1, 0.2], metadata=dict(metadata))


# ── find_messages_to_vectorize ─────────────────────────────────────────────────


class TestFindMessagesToVectorize:
    async def test_returns_only_unindexed_messages(
        self, services, make_context, build_thread, message_index
    ) -> None:
        message_index.records = {"m1": stored("m1"), "m2": stored("m2")}
        ctx = make_context(build_thread("m1", "m2", "m3"))

        delta = await steps.find_messages_to_vectorize(ctx, services)

        assert [m.id for m in delta.messages_to_vectorize] == ["m3"]
        assert delta.existing_ids == {"m1", "m2"}

    async def test_all_indexed_gives_empty_delta(
        self, services, make_context, build_thread, message_index
    ) -> None:
        message_index.records = {"m1": stored("m1")}
        delta = await steps.find_messages_to_vectorize(make_context(build_thread("m1")), services)
        assert delta.messages_to_vectorize == []

    async def test_empty_thread(self, services, make_context, build_thread) -> None:
        delta = await steps.find_messages_to_vectorize(make_context(build_thread()), services)
        assert delta == VectorizationDelta()


# ── vectorize_messages ─────────────────────────────────────────────────────────


class TestVectorizeMessages:
    async def test_summarises_and_embeds_each_message(
        self, services, make_context, build_thread, inference
    ) -> None:
        thread = build_thread("m1", "m2")
        ctx = make_context(thread)
        ctx.results.set(FIND_MESSAGES_TO_VECTORIZE, VectorizationDelta(thread.messages))

        result = await steps.vectorize_messages(ctx, services)

        assert [r.id for r in result.records] == ["m1", "m2"]
        assert result.records[0].metadata == {
            "connection": "me@example.com",
            "thread": "thread_1",
            "summary": "A short summary.",
        }
        assert len(inference.complete_calls) == 2
        assert all(call[2] == services.config.fast_model for call in inference.complete_calls)

    async def test_one_failing_message_is_filtered_out(
        self, services, make_context, build_thread, inference
    ) -> None:
        thread = build_thread("m1", "m2", "m3", "m4", "m5")

        calls = 0

        async def complete(system: str, user: str, *, model: str | None = None) -> str:
            nonlocal calls
            calls += 1
            if calls == 3:
                raise RuntimeError("model overloaded")
            return "summary"

        inference.complete = complete
        ctx = make_context(thread)
        ctx.results.set(FIND_MESSAGES_TO_VECTORIZE, VectorizationDelta(thread.messages))

        result = await steps.vectorize_messages(ctx, services)

        assert len(result.records) == 4

    async def test_too_short_message_is_skipped(
        self, services, make_context, build_message, inference
    ) -> None:
        from src.mcp.types import Thread

        short = build_message("m1", body="ok")
        thread = Thread(id="thread_1", connection_id="me@example.com", messages=[short])
        ctx = make_context(thread)
        ctx.results.set(FIND_MESSAGES_TO_VECTORIZE, VectorizationDelta([short]))

        result = await steps.vectorize_messages(ctx, services)

        assert result.records == []
        assert inference.complete_calls == []

    async def test_no_delta_means_no_work(
        self, services, make_context, build_thread, inference
    ) -> None:
        result = await steps.vectorize_messages(make_context(build_thread("m1")), services)
        assert result == VectorizedMessages()
        assert inference.complete_calls == []


# ── upsert_embeddings ──────────────────────────────────────────────────────────


class TestUpsertEmbeddings:
    async def test_zero_records_is_a_no_op(
        self, services, make_context, build_thread, message_index
    ) -> None:
        ctx = make_context(build_thread("m1"))
        ctx.results.set(VECTORIZE_MESSAGES, VectorizedMessages())

        result = await steps.upsert_embeddings(ctx, services)

        assert result.upserted == 0
        assert message_index.upsert_calls == []

    async def test_single_upsert_of_all_records(
        self, services, make_context, build_thread, message_index
    ) -> None:
        ctx = make_context(build_thread("m1", "m2"))
        ctx.results.set(VECTORIZE_MESSAGES, VectorizedMessages([stored("m1"), stored("m2")]))

        result = await steps.upsert_embeddings(ctx, services)

        assert result.upserted == 2
        assert len(message_index.upsert_calls) == 1
        assert set(message_index.records) == {"m1", "m2"}


# ── check_existing_summary ─────────────────────────────────────────────────────


class TestCheckExistingSummary:
    async def test_returns_stored_summary(
        self, services, make_context, build_thread, thread_index
    ) -> None:
        thread_index.records = {"thread_1": stored("thread_1", summary="S", lastMsg="m2")}

        lookup = await steps.check_existing_summary(make_context(build_thread("m1")), services)

        assert lookup.existing == ExistingSummary("S", "m2")

    async def test_absent_entry(self, services, make_context, build_thread) -> None:
        lookup = await steps.check_existing_summary(make_context(build_thread("m1")), services)
        assert lookup.existing is None

    @pytest.mark.parametrize(
        "metadata",
        [{"summary": "S"}, {"lastMsg": "m2"}, {"summary": 3, "lastMsg": "m2"}, {}],
    )
    async def test_malformed_metadata_counts_as_absent(
        self, services, make_context, build_thread, thread_index, metadata
    ) -> None:
        thread_index.records = {"thread_1": stored("thread_1", **metadata)}
        lookup = await steps.check_existing_summary(make_context(build_thread("m1")), services)
        assert lookup.existing is None


# ── generate_thread_summary / upsert_thread_summary ────────────────────────────


class TestThreadSummary:
    async def test_unchanged_thread_reuses_summary_without_ai(
        self, services, make_context, build_thread, inference
    ) -> None:
        ctx = make_context(build_thread("m1", "m2"))
        ctx.results.set(CHECK_EXISTING_SUMMARY, SummaryLookup(ExistingSummary("S", "m2")))

        result = await steps.generate_thread_summary(ctx, services)

        assert result == ThreadSummaryResult(summary="S", regenerated=False)
        assert inference.complete_calls == []

    async def test_new_message_triggers_resummarize(
        self, services, make_context, build_message, inference, thread_index
    ) -> None:
        from src.mcp.types import Thread

        thread = Thread(
            id="thread_1",
            connection_id="me@example.com",
            messages=[
                build_message("m1"),
                build_message("m2"),
                build_message("m3", body="New figures attached, the total is now 42k."),
            ],
        )
        ctx = make_context(thread)
        ctx.results.set(CHECK_EXISTING_SUMMARY, SummaryLookup(ExistingSummary("Earlier S", "m2")))
        inference.responder = lambda system, user: "Updated summary"

        result = await steps.generate_thread_summary(ctx, services)
        ctx.results.set(GENERATE_THREAD_SUMMARY, result)
        upsert = await steps.upsert_thread_summary(ctx, services)

        assert len(inference.complete_calls) == 1
        system, user, model = inference.complete_calls[0]
        assert system == RESUMMARIZE_THREAD
        assert "<summary>Earlier S</summary>" in user
        assert "total is now 42k" in user
        assert model == services.config.summary_model
        assert upsert.upserted is True
        assert thread_index.records["thread_1"].metadata == {
            "connection": "me@example.com",
            "thread": "thread_1",
            "summary": "Updated summary",
            "lastMsg": "m3",
        }

    async def test_no_existing_summary_uses_fresh_prompt(
        self, services, make_context, build_thread, inference
    ) -> None:
        ctx = make_context(build_thread("m1"))
        ctx.results.set(CHECK_EXISTING_SUMMARY, SummaryLookup())

        result = await steps.generate_thread_summary(ctx, services)

        assert result.regenerated is True
        assert inference.complete_calls[0][0] == SUMMARIZE_THREAD
        assert "<summary>" not in inference.complete_calls[0][1]

    async def test_empty_thread_has_no_summary(
        self, services, make_context, build_thread, inference
    ) -> None:
        result = await steps.generate_thread_summary(make_context(build_thread()), services)
        assert result.summary is None
        assert inference.complete_calls == []

    async def test_unregenerated_summary_is_not_upserted(
        self, services, make_context, build_thread, thread_index
    ) -> None:
        ctx = make_context(build_thread("m1"))
        ctx.results.set(GENERATE_THREAD_SUMMARY, ThreadSummaryResult("S", regenerated=False))

        result = await steps.upsert_thread_summary(ctx, services)

        assert result.upserted is False
        assert thread_index.upsert_calls == []

    async def test_empty_embedding_skips_upsert(
        self, services, make_context, build_thread, thread_index, inference
    ) -> None:
        inference.embed = AsyncMock(return_value=[])
        ctx = make_context(build_thread("m1"))
        ctx.results.set(GENERATE_THREAD_SUMMARY, ThreadSummaryResult("S", regenerated=True))

        result = await steps.upsert_thread_summary(ctx, services)

        assert result.upserted is False
        assert thread_index.upsert_calls == []


# ── get_user_labels / generate_labels ──────────────────────────────────────────


class TestLabelGeneration:
    async def test_transient_label_failure_yields_empty(
        self, services, make_context, build_thread, provider
    ) -> None:
        provider.get_user_labels = AsyncMock(side_effect=MCPError("timeout"))
        result = await steps.get_user_labels(make_context(build_thread("m1")), services)
        assert result == UserLabels()

    async def test_fatal_label_failure_propagates(
        self, services, make_context, build_thread, provider
    ) -> None:
        provider.get_user_labels = AsyncMock(side_effect=ProviderFatalError("invalid_grant"))
        with pytest.raises(ProviderFatalError):
            await steps.get_user_labels(make_context(build_thread("m1")), services)

    async def test_labels_outside_taxonomy_are_dropped(
        self, services, make_context, build_thread, provider, inference
    ) -> None:
        provider.topics = [TopicLabel("Billing", "invoices")]
        inference.responder = lambda system, user: "Spam, Billing"
        ctx = make_context(build_thread("m1"))
        ctx.results.set(GENERATE_THREAD_SUMMARY, ThreadSummaryResult("S", regenerated=True))

        result = await steps.generate_labels(ctx, services)

        assert result.labels == ["Billing"]
        assert result.taxonomy_used == [TopicLabel("Billing", "invoices")]
        system, user, _ = inference.complete_calls[0]
        assert "Billing" in system
        assert user == "S"

    async def test_default_taxonomy_when_no_topics(
        self, services, make_context, build_thread, inference
    ) -> None:
        inference.responder = lambda system, user: "fyi"
        ctx = make_context(build_thread("m1"))
        ctx.results.set(GENERATE_THREAD_SUMMARY, ThreadSummaryResult("S", regenerated=False))

        result = await steps.generate_labels(ctx, services)

        assert result.labels == ["FYI"]
        assert result.taxonomy_used == DEFAULT_TOPICS

    async def test_topic_failure_falls_back_to_defaults(
        self, services, make_context, build_thread, provider, inference
    ) -> None:
        provider.get_user_topics = AsyncMock(side_effect=MCPError("down"))
        inference.responder = lambda system, user: "meeting"
        ctx = make_context(build_thread("m1"))
        ctx.results.set(GENERATE_THREAD_SUMMARY, ThreadSummaryResult("S"))

        result = await steps.generate_labels(ctx, services)

        assert result.labels == ["meeting"]

    async def test_no_summary_means_no_labels(
        self, services, make_context, build_thread, inference
    ) -> None:
        ctx = make_context(build_thread("m1"))
        ctx.results.set(GENERATE_THREAD_SUMMARY, ThreadSummaryResult())

        result = await steps.generate_labels(ctx, services)

        assert result == GeneratedLabels()
        assert inference.complete_calls == []


class TestParseLabelResponse:
    taxonomy = [TopicLabel("to respond"), TopicLabel("FYI"), TopicLabel("billing")]

    def test_trims_quotes_and_periods(self) -> None:
        assert steps.parse_label_response(' "To Respond", fyi.', self.taxonomy) == [
            "to respond",
            "FYI",
        ]

    def test_duplicates_dropped(self) -> None:
        assert steps.parse_label_response("billing, Billing, BILLING", self.taxonomy) == ["billing"]

    def test_blank_and_punctuation_only(self) -> None:
        assert steps.parse_label_response(" , . ,", self.taxonomy) == []
        assert steps.parse_label_response("", self.taxonomy) == []


# ── apply_labels ───────────────────────────────────────────────────────────────


_ACCOUNT = [
    LabelRef("L_resp", "to respond"),
    LabelRef("L_fyi", "FYI"),
    LabelRef("L_promo", "promotion"),
    LabelRef("L_travel", "Travel"),  # user's own label, not in the taxonomy
]


def labelled_context(make_context, build_thread, current: list[LabelRef], accepted: list[str]):
    ctx = make_context(build_thread("m1", labels=current))
    ctx.results.set(GET_USER_LABELS, UserLabels(list(_ACCOUNT)))
    ctx.results.set(GENERATE_LABELS, GeneratedLabels(accepted, list(DEFAULT_TOPICS)))
    return ctx


class TestApplyLabels:
    async def test_adds_new_and_removes_stale_ai_labels(
        self, services, make_context, build_thread, provider
    ) -> None:
        ctx = labelled_context(
            make_context, build_thread, [LabelRef("L_promo", "promotion")], ["to respond"]
        )

        result = await steps.apply_labels(ctx, services)

        assert result.applied is True
        assert provider.modify_calls == [(["thread_1"], ["L_resp"], ["L_promo"])]

    async def test_never_removes_labels_outside_taxonomy(
        self, services, make_context, build_thread, provider
    ) -> None:
        ctx = labelled_context(
            make_context,
            build_thread,
            [LabelRef("L_travel", "Travel"), LabelRef("L_fyi", "FYI")],
            ["to respond"],
        )

        await steps.apply_labels(ctx, services)

        _, added, removed = provider.modify_calls[0]
        assert added == ["L_resp"]
        assert removed == ["L_fyi"]
        assert "L_travel" not in removed

    async def test_matching_labels_make_no_provider_call(
        self, services, make_context, build_thread, provider
    ) -> None:
        ctx = labelled_context(make_context, build_thread, [LabelRef("L_fyi", "FYI")], ["FYI"])

        result = await steps.apply_labels(ctx, services)

        assert result.applied is False
        assert provider.modify_calls == []

    async def test_empty_ai_answer_never_strips_labels(
        self, services, make_context, build_thread, provider
    ) -> None:
        ctx = labelled_context(make_context, build_thread, [LabelRef("L_fyi", "FYI")], [])

        result = await steps.apply_labels(ctx, services)

        assert result.applied is False
        assert provider.modify_calls == []

    async def test_unresolvable_names_change_nothing(
        self, services, make_context, build_thread, provider
    ) -> None:
        ctx = labelled_context(make_context, build_thread, [LabelRef("L_fyi", "FYI")], ["billing"])

        result = await steps.apply_labels(ctx, services)

        assert result.applied is False
        assert provider.modify_calls == []
