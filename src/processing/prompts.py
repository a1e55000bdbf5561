"""Prompt text and thread serialisation for the summary, label and draft steps."""

import re
from html import escape
from html.parser import HTMLParser

from src.mcp.types import LabelRef, Message, Participant
from src.processing.types import EmailIntent, TopicLabel

# Maximum characters of text per serialised message, counted after HTML
# stripping so markup does not eat into it.
BODY_CHAR_LIMIT = 4_000

# Messages with less text than this are too sparse to summarise usefully.
MIN_BODY_CHARS = 10

_WHITESPACE = re.compile(r"\s+")


# ── HTML stripper ───────────────────────────────────────────────────────────────


class _HTMLStripper(HTMLParser):
    """HTMLParser subclass that collects visible text, skipping script/style."""

    _SKIP = {"script", "style"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIP:
            self._skip_depth += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._parts.append(data)

    def get_text(self) -> str:
        return " ".join(self._parts)


def html_to_text(body: str) -> str:
    """Return whitespace-normalised plain text from an HTML or plain body."""
    if not body:
        return ""
    stripper = _HTMLStripper()
    try:
        stripper.feed(body)
        stripper.close()
        text = stripper.get_text()
    except Exception:  # noqa: BLE001
        text = re.sub(r"<[^>]*>", " ", body)
    return _WHITESPACE.sub(" ", text).strip()


def escape_xml(text: str | None) -> str:
    """Escape text for inclusion in the pseudo-XML prompt blocks."""
    if not text:
        return ""
    return escape(text, quote=True).replace("&#x27;", "&apos;")


# ── Thread serialisation ────────────────────────────────────────────────────────


def message_to_xml(message: Message) -> str | None:
    """Serialise one message, or return None if it has too little text."""
    body = html_to_text(message.decoded_body)
    if len(body) < MIN_BODY_CHARS:
        return None
    if len(body) > BODY_CHAR_LIMIT:
        body = body[:BODY_CHAR_LIMIT] + " [… message truncated …]"

    sender = (message.sender.name or message.sender.email) if message.sender else ""
    lines = [
        "<message>",
        f"  <from>{escape_xml(sender or 'Unknown')}</from>",
        *(f"  <to>{escape_xml(p.email)}</to>" for p in message.to),
        *(f"  <cc>{escape_xml(p.email)}</cc>" for p in message.cc),
        f"  <date>{escape_xml(message.received_on)}</date>",
        f"  <subject>{escape_xml(message.subject)}</subject>",
        f"  <body>{escape_xml(body)}</body>",
        "</message>",
    ]
    return "\n".join(lines)


def get_participants(messages: list[Message]) -> list[Participant]:
    """Unique participants by email address, in order of first appearance."""
    seen: dict[str, Participant] = {}
    for message in messages:
        people = [message.sender] if message.sender else []
        for person in [*people, *message.to, *message.cc]:
            if person.email and person.email not in seen:
                seen[person.email] = person
    return list(seen.values())


def thread_to_xml(messages: list[Message], existing_summary: str | None = None) -> str:
    """Serialise a whole thread, optionally carrying the previous summary.

    Only messages with enough text are included; participants come from every
    message so the model still knows who took part.
    """
    subject = messages[0].subject if messages and messages[0].subject else "No Subject"

    participants = []
    for p in get_participants(messages):
        display = escape_xml(p.name or p.email)
        email_tag = f" &lt;{escape_xml(p.email)}&gt;" if p.name else ""
        participants.append(f"    <participant>{display}{email_tag}</participant>")

    rendered = [xml for xml in (message_to_xml(m) for m in messages) if xml]

    lines = [
        "<thread>",
        f"  <title>{escape_xml(subject)}</title>",
        f"  <subject>{escape_xml(subject)}</subject>",
        "  <participants>",
        *participants,
        "  </participants>",
    ]
    if existing_summary:
        lines.append(f"  <summary>{escape_xml(existing_summary)}</summary>")
    lines += ["  <messages>", *rendered, "  </messages>", "</thread>"]
    return "\n".join(lines)


# ── System prompts ──────────────────────────────────────────────────────────────

SUMMARIZE_MESSAGE = """\
You summarise a single email so it can be indexed for semantic search.
The email is given as a <message> block. Write 1-3 plain sentences covering who \
wrote it, what it is about and any request, decision, date or amount it contains.
Do not add greetings, labels, markdown or commentary. Output only the summary."""

SUMMARIZE_THREAD = """\
You summarise email threads for the owner of the mailbox.
The thread is given as a <thread> block with its participants and messages.
Write a concise summary (at most 5 sentences) of what the conversation is about, \
what has been decided, and what is still open or expected from whom.
Use names and concrete details from the messages. Output only the summary text."""

RESUMMARIZE_THREAD = """\
You maintain a running summary of an email thread for the owner of the mailbox.
The thread is given as a <thread> block. Its <summary> element holds the summary \
written before the latest messages arrived.
Produce an updated summary (at most 5 sentences) that keeps what is still relevant \
from the previous summary and incorporates what the newer messages add or change.
Output only the updated summary text."""


def thread_labels_prompt(topics: list[TopicLabel], current_labels: list[LabelRef]) -> str:
    """System prompt constraining label choice to a closed taxonomy."""
    taxonomy = "\n".join(f"- {t.name}: {t.usecase}" for t in topics)
    current = ", ".join(label.name for label in current_labels) or "(none)"
    return (
        "You label email threads. You will receive a summary of one thread.\n"
        "Choose the labels that apply from this list, and ONLY from this list:\n"
        f"{taxonomy}\n\n"
        f"Labels currently on the thread: {current}\n"
        "Keep a current label only if it still applies.\n"
        "Answer with the chosen label names separated by commas, exactly as written "
        "in the list, and nothing else. If no label applies, answer with an empty line."
    )


def draft_reply_prompt(owner_name: str, owner_email: str, intent: EmailIntent | None) -> str:
    """System prompt for writing a reply draft on behalf of the mailbox owner."""
    hints = []
    if intent is not None:
        if intent.is_question:
            hints.append("answer the questions asked, or say what you will find out")
        if intent.is_request:
            hints.append("acknowledge the request and state what you will do")
        if intent.is_meeting:
            hints.append("respond to the scheduling or meeting details")
        if intent.is_urgent:
            hints.append("keep it short and acknowledge the urgency")
    guidance = "; ".join(hints) or "reply helpfully and briefly"
    owner = f"{owner_name} <{owner_email}>" if owner_name else owner_email
    return (
        f"You write email reply drafts for {owner}.\n"
        "You will receive the thread as a <thread> block; reply to its latest message.\n"
        f"In the reply: {guidance}.\n"
        "Write plain text in the owner's voice, without a subject line, without "
        "placeholders in square brackets, and do not invent facts or commitments. "
        "End with the owner's first name. Output only the body of the reply."
    )
