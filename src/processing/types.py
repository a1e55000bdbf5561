"""Types for the thread processing pipeline.

Each pipeline step produces exactly one of the result dataclasses below.
``RESULT_TYPES`` maps step ids to their result type so the results cache can
reject a mistyped write, and every result type can be built with no arguments
to give the neutral value the engine substitutes when a step fails.
"""

from dataclasses import dataclass, field

from src.mcp.types import LabelRef, Message
from src.storage.vector_store import VectorRecord


@dataclass(frozen=True)
class TopicLabel:
    """One entry of a label taxonomy the AI is allowed to choose from."""

    name: str
    usecase: str = ""


#: Taxonomy used when the connection has no custom topics configured.
DEFAULT_TOPICS: list[TopicLabel] = [
    TopicLabel("to respond", "emails you need to respond to. NOT sales, marketing, or promotions."),
    TopicLabel(
        "FYI",
        "emails that are not important, but you should know about. "
        "NOT sales, marketing, or promotions.",
    ),
    TopicLabel(
        "comment",
        "Team chats in tools like Google Docs, Slack, etc. NOT marketing, sales, or promotions.",
    ),
    TopicLabel(
        "notification",
        "Automated updates from services you use. NOT sales, marketing, or promotions.",
    ),
    TopicLabel(
        "promotion",
        "Sales, marketing, cold emails, special offers or promotions. NOT to respond to.",
    ),
    TopicLabel("meeting", "Calendar events, invites, etc. NOT sales, marketing, or promotions."),
    TopicLabel("billing", "Billing notifications. NOT sales, marketing, or promotions."),
]


# ── Step ids ───────────────────────────────────────────────────────────────────

FIND_MESSAGES_TO_VECTORIZE = "find-messages-to-vectorize"
VECTORIZE_MESSAGES = "vectorize-messages"
UPSERT_EMBEDDINGS = "upsert-embeddings"
CHECK_EXISTING_SUMMARY = "check-existing-summary"
GENERATE_THREAD_SUMMARY = "generate-thread-summary"
UPSERT_THREAD_SUMMARY = "upsert-thread-summary"
GET_USER_LABELS = "get-user-labels"
GENERATE_LABELS = "generate-labels"
APPLY_LABELS = "apply-labels"

SHOULD_GENERATE_DRAFT = "should-generate-draft"
ANALYZE_EMAIL_INTENT = "analyze-email-intent"
VALIDATE_RESPONSE_NEEDED = "validate-response-needed"
GENERATE_DRAFT_CONTENT = "generate-draft-content"
CREATE_DRAFT = "create-draft"


# ── Mailbox update results ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class VectorizationDelta:
    """Messages of the thread that have no entry in the message index yet."""

    messages_to_vectorize: list[Message] = field(default_factory=list)
    existing_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class VectorizedMessages:
    records: list[VectorRecord] = field(default_factory=list)


@dataclass(frozen=True)
class UpsertedEmbeddings:
    upserted: int = 0


@dataclass(frozen=True)
class ExistingSummary:
    """A previously stored thread summary and the newest message it covered."""

    summary: str
    last_msg: str


@dataclass(frozen=True)
class SummaryLookup:
    existing: ExistingSummary | None = None


@dataclass(frozen=True)
class ThreadSummaryResult:
    """``regenerated`` is False when the stored summary was reused verbatim."""

    summary: str | None = None
    regenerated: bool = False


@dataclass(frozen=True)
class ThreadSummaryUpsert:
    upserted: bool = False


@dataclass(frozen=True)
class UserLabels:
    labels: list[LabelRef] = field(default_factory=list)


@dataclass(frozen=True)
class GeneratedLabels:
    """Label names accepted from the AI and the taxonomy they were drawn from."""

    labels: list[str] = field(default_factory=list)
    taxonomy_used: list[TopicLabel] = field(default_factory=list)


@dataclass(frozen=True)
class LabelChanges:
    applied: bool = False
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


# ── Auto-draft results ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DraftGate:
    should_generate: bool = False
    reason: str = ""


@dataclass(frozen=True)
class EmailIntent:
    """Heuristic classification of the latest message in a thread."""

    is_question: bool = False
    is_request: bool = False
    is_meeting: bool = False
    is_urgent: bool = False

    @property
    def requires_response(self) -> bool:
        return self.is_question or self.is_request or self.is_meeting or self.is_urgent


@dataclass(frozen=True)
class ResponseCheck:
    requires_response: bool = False


@dataclass(frozen=True)
class DraftContent:
    text: str | None = None


@dataclass(frozen=True)
class CreatedDraft:
    draft_id: str | None = None


#: Step id → result type written to the results cache.
RESULT_TYPES: dict[str, type] = {
    FIND_MESSAGES_TO_VECTORIZE: VectorizationDelta,
    VECTORIZE_MESSAGES: VectorizedMessages,
    UPSERT_EMBEDDINGS: UpsertedEmbeddings,
    CHECK_EXISTING_SUMMARY: SummaryLookup,
    GENERATE_THREAD_SUMMARY: ThreadSummaryResult,
    UPSERT_THREAD_SUMMARY: ThreadSummaryUpsert,
    GET_USER_LABELS: UserLabels,
    GENERATE_LABELS: GeneratedLabels,
    APPLY_LABELS: LabelChanges,
    SHOULD_GENERATE_DRAFT: DraftGate,
    ANALYZE_EMAIL_INTENT: EmailIntent,
    VALIDATE_RESPONSE_NEEDED: ResponseCheck,
    GENERATE_DRAFT_CONTENT: DraftContent,
    CREATE_DRAFT: CreatedDraft,
}
