"""Auto-draft steps: decide whether a thread needs a reply, then draft one."""

from __future__ import annotations

import logging
import re

from src.mcp.types import DraftSpec, Message
from src.pipeline.context import PipelineServices, WorkflowContext
from src.processing.prompts import draft_reply_prompt, html_to_text, thread_to_xml
from src.processing.types import (
    ANALYZE_EMAIL_INTENT,
    GENERATE_DRAFT_CONTENT,
    CreatedDraft,
    DraftContent,
    DraftGate,
    EmailIntent,
    ResponseCheck,
)

logger = logging.getLogger(__name__)

_AUTOMATED_SENDER = re.compile(
    r"(^|[._+@-])(no-?reply|do-?not-?reply|mailer-daemon|postmaster|notifications?|bounces?)"
    r"([._+-]|@)",
    re.IGNORECASE,
)

_QUESTION = re.compile(
    r"\?|\b(can|could|would|will|do|does|did|should|shall) (you|we)\b", re.IGNORECASE
)
_REQUEST = re.compile(
    r"\b(please|kindly|let me know|get back to me|send (me|over|us)|"
    r"need (you|your)|would appreciate|request(ing)?|confirm|review)\b",
    re.IGNORECASE,
)
_MEETING = re.compile(
    r"\b(meeting|meet|call|schedule|reschedule|calendar|invite|availability|"
    r"available|appointment|zoom|teams)\b",
    re.IGNORECASE,
)
_URGENT = re.compile(
    r"\b(urgent|asap|immediately|as soon as possible|right away|deadline|today|eod)\b",
    re.IGNORECASE,
)

_REPLY_PREFIX = re.compile(r"^\s*(re\s*:\s*)+", re.IGNORECASE)


class DraftError(Exception):
    """Raised when a draft cannot be produced for the thread."""


# ── Helpers ────────────────────────────────────────────────────────────────────


def is_automated_sender(email: str) -> bool:
    """True for no-reply, bounce and notification style addresses."""
    return bool(_AUTOMATED_SENDER.search(email or ""))


def classify_intent(message: Message) -> EmailIntent:
    text = f"{message.subject}\n{html_to_text(message.decoded_body)}"
    return EmailIntent(
        is_question=bool(_QUESTION.search(text)),
        is_request=bool(_REQUEST.search(text)),
        is_meeting=bool(_MEETING.search(text)),
        is_urgent=bool(_URGENT.search(text)),
    )


def reply_subject(subject: str) -> str:
    """Normalise to exactly one ``Re:`` prefix."""
    stripped = _REPLY_PREFIX.sub("", subject or "").strip()
    return f"Re: {stripped}" if stripped else "Re:"


# ── Steps ──────────────────────────────────────────────────────────────────────


async def should_generate_draft(ctx: WorkflowContext, services: PipelineServices) -> DraftGate:
    """Decide whether this thread is eligible for an automatic reply draft."""
    if not ctx.connection.auto_draft:
        return DraftGate(False, "auto-draft disabled for connection")

    latest = ctx.thread.latest_message
    if latest is None:
        return DraftGate(False, "thread has no messages")

    sender = latest.sender.email if latest.sender else ""
    if not sender:
        return DraftGate(False, "latest message has no sender")
    if sender.lower() == ctx.connection.email.lower():
        return DraftGate(False, "latest message was sent by the mailbox owner")
    if is_automated_sender(sender):
        return DraftGate(False, f"automated sender {sender}")
    return DraftGate(True, "")


async def analyze_email_intent(ctx: WorkflowContext, services: PipelineServices) -> EmailIntent:
    latest = ctx.thread.latest_message
    if latest is None:
        raise DraftError(f"Thread {ctx.thread_id} has no messages to analyse")
    intent = classify_intent(latest)
    logger.info(
        "thread=%s intent question=%s request=%s meeting=%s urgent=%s",
        ctx.thread_id,
        intent.is_question,
        intent.is_request,
        intent.is_meeting,
        intent.is_urgent,
    )
    return intent


async def validate_response_needed(
    ctx: WorkflowContext, services: PipelineServices
) -> ResponseCheck:
    intent = ctx.results.get(ANALYZE_EMAIL_INTENT, EmailIntent)
    return ResponseCheck(requires_response=intent is not None and intent.requires_response)


async def generate_automatic_draft(
    ctx: WorkflowContext, services: PipelineServices
) -> DraftContent:
    """Write the reply body with the summary model.

    Raises:
        DraftError: if the model returns nothing usable.
    """
    intent = ctx.results.get(ANALYZE_EMAIL_INTENT, EmailIntent)
    system_prompt = draft_reply_prompt(ctx.connection.name, ctx.connection.email, intent)
    text = (
        await services.inference.complete(
            system_prompt,
            thread_to_xml(ctx.thread.messages),
            model=services.config.summary_model,
        )
    ).strip()
    if not text:
        raise DraftError(f"Model returned an empty draft for thread {ctx.thread_id}")
    return DraftContent(text=text)


async def create_draft(ctx: WorkflowContext, services: PipelineServices) -> CreatedDraft:
    """Save the generated reply as a draft on the provider."""
    content = ctx.results.get(GENERATE_DRAFT_CONTENT, DraftContent)
    if content is None or not content.text:
        return CreatedDraft()

    latest = ctx.thread.latest_message
    if latest is None or latest.sender is None or not latest.sender.email:
        raise DraftError(f"Cannot determine who to reply to in thread {ctx.thread_id}")

    own = ctx.connection.email.lower()
    cc = [p.email for p in latest.cc if p.email and p.email.lower() != own]

    draft_id = await services.provider.create_draft(
        DraftSpec(
            to=latest.sender.email,
            subject=reply_subject(latest.subject),
            body=content.text,
            thread_id=ctx.thread_id,
            cc=cc,
            from_email=ctx.connection.email,
        )
    )
    logger.info("thread=%s draft created id=%s", ctx.thread_id, draft_id)
    return CreatedDraft(draft_id=draft_id)
