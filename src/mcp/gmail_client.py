"""Gmail MCP client — wraps workspace-mcp Gmail tools behind the MailProvider API."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from email.utils import getaddresses
from pathlib import PureWindowsPath
from typing import Any, Protocol, runtime_checkable

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.types import TextContent

from src.mcp.types import DraftSpec, LabelRef, Message, Participant, Thread
from src.pipeline.batch import run_bounded
from src.processing.types import TopicLabel

logger = logging.getLogger(__name__)

# Error texts meaning the OAuth grant is gone; retrying cannot help and the
# connection has to be re-authorised.
_FATAL_MARKERS = (
    "invalid_grant",
    "token has been expired or revoked",
    "unauthorized_client",
)

_LABEL_CHUNK_SIZE = 15
_LABEL_CHUNK_DELAY_SECONDS = 0.1

# JSON-decoded value from an MCP tool response
_JsonValue = dict[str, Any] | list[Any] | str | None


class MCPError(Exception):
    """Raised when a workspace-mcp tool call returns an error."""


class ProviderFatalError(MCPError):
    """Raised when the provider rejects the connection's credentials outright."""


def is_fatal_error_text(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _FATAL_MARKERS)


@runtime_checkable
class MailProvider(Protocol):
    """Thread, label and draft operations the pipeline needs from a mailbox."""

    async def get_thread(self, thread_id: str) -> Thread: ...

    async def get_user_labels(self) -> list[LabelRef]: ...

    async def get_user_topics(self) -> list[TopicLabel]: ...

    async def create_label(self, label_name: str) -> str: ...

    async def modify_labels(
        self, thread_ids: list[str], add: list[str], remove: list[str]
    ) -> None: ...

    async def create_draft(self, draft: DraftSpec) -> str | None: ...


class GmailClient:
    """Thin async wrapper around the workspace-mcp Gmail tools.

    Holds a single long-lived MCP session so the polling loop avoids
    spawning a new subprocess on every poll.  Use the `gmail_client()`
    context manager to construct and tear down correctly.

    ``topics`` is the connection's label taxonomy; Gmail has no notion of
    it, so it is supplied by configuration.
    """

    def __init__(
        self,
        session: ClientSession,
        user_email: str,
        topics: list[TopicLabel] | None = None,
        label_chunk_size: int = _LABEL_CHUNK_SIZE,
        label_chunk_delay: float = _LABEL_CHUNK_DELAY_SECONDS,
    ) -> None:
        self._session = session
        self._user_email = user_email
        self._topics = list(topics or [])
        self._label_chunk_size = label_chunk_size
        self._label_chunk_delay = label_chunk_delay
        self._label_cache: dict[str, str] = {}  # label name → label ID

    @property
    def user_email(self) -> str:
        return self._user_email

    # ── Public API ─────────────────────────────────────────────────────────────

    async def get_unread_message_refs(self, max_results: int = 50) -> list[tuple[str, str]]:
        """Return ``(message_id, thread_id)`` pairs for unread emails — no content fetch."""
        raw = await self._call(
            "search_gmail_messages",
            {"query": "is:unread", "page_size": max_results,
             "user_google_email": self._user_email},
        )
        return self._parse_search_refs(raw)

    async def get_thread(self, thread_id: str) -> Thread:
        """Return a thread with every message's full body and its current labels."""
        raw = await self._call(
            "get_gmail_thread_content",
            {"thread_id": thread_id, "user_google_email": self._user_email},
        )
        if isinstance(raw, dict):
            return self._parse_thread_dict(thread_id, raw)
        if isinstance(raw, str):
            return self._parse_thread_text(thread_id, raw)
        raise MCPError(f"Unexpected response type for thread {thread_id}: {type(raw)}")

    async def get_user_labels(self) -> list[LabelRef]:
        """Return every label defined on the account."""
        await self._refresh_label_cache()
        return [LabelRef(id=label_id, name=name) for name, label_id in self._label_cache.items()]

    async def get_user_topics(self) -> list[TopicLabel]:
        """Return the connection's configured taxonomy (may be empty)."""
        return list(self._topics)

    async def create_label(self, label_name: str) -> str:
        """Create a Gmail label and return its ID.

        If the label already exists (found in cache), returns the cached ID
        without making an MCP call.
        """
        cached = self._label_cache.get(label_name)
        if cached:
            return cached

        await self._call("manage_gmail_label", {"name": label_name, "action": "create",
                                                "user_google_email": self._user_email})
        await self._refresh_label_cache()

        label_id = self._label_cache.get(label_name)
        if label_id is None:
            raise MCPError(
                f"Label {label_name!r} was created but is missing from Gmail label list"
            )
        logger.info("Created Gmail label: %s (id=%s)", label_name, label_id)
        return label_id

    async def ensure_labels(self, label_names: list[str]) -> None:
        """Idempotently create every label in ``label_names``.

        Matching is case-insensitive, the same way label names are resolved
        when labels are applied.  Safe to call on every startup.
        """
        await self._refresh_label_cache()
        existing = {name.lower() for name in self._label_cache}
        for label_name in label_names:
            if label_name.lower() not in existing:
                await self.create_label(label_name)
                existing.add(label_name.lower())
            else:
                logger.debug("Label already exists: %s", label_name)

    async def modify_labels(
        self, thread_ids: list[str], add: list[str], remove: list[str]
    ) -> None:
        """Add/remove label IDs on every message of each thread.

        Threads are processed in chunks with a pause between chunks to stay
        under Gmail's per-user rate limit.  All threads are attempted; if any
        failed, the first failure is raised afterwards (a fatal credential
        error takes precedence).
        """
        if not thread_ids or (not add and not remove):
            return

        async def _modify(thread_id: str) -> None:
            await self._modify_thread(thread_id, add, remove)

        report = await run_bounded(
            thread_ids,
            _modify,
            concurrency=self._label_chunk_size,
            chunk_size=self._label_chunk_size,
            chunk_delay=self._label_chunk_delay,
        )
        for failure in report.failed:
            if isinstance(failure.reason, ProviderFatalError):
                raise failure.reason
        report.raise_for_failures()
        logger.debug(
            "Modified labels on %d thread(s): add=%s remove=%s", len(thread_ids), add, remove
        )

    async def create_draft(self, draft: DraftSpec) -> str | None:
        """Create a reply draft in the thread and return its draft ID if reported."""
        arguments: dict[str, Any] = {
            "to": draft.to,
            "subject": draft.subject,
            "body": draft.body,
            "thread_id": draft.thread_id,
            "user_google_email": self._user_email,
        }
        if draft.cc:
            arguments["cc"] = ", ".join(draft.cc)
        raw = await self._call("draft_gmail_message", arguments)

        draft_id: str | None = None
        if isinstance(raw, dict):
            draft_id = str(raw.get("draft_id") or raw.get("id") or "") or None
        elif isinstance(raw, str):
            m = re.search(r"Draft ID:\s*(\S+)", raw)
            draft_id = m.group(1) if m else None
        logger.info("Created draft in thread %s (draft_id=%s)", draft.thread_id, draft_id)
        return draft_id

    # ── Internal helpers ───────────────────────────────────────────────────────

    async def _modify_thread(self, thread_id: str, add: list[str], remove: list[str]) -> None:
        thread = await self.get_thread(thread_id)
        message_ids = [m.id for m in thread.messages]
        if not message_ids:
            raise MCPError(f"Thread {thread_id} has no messages to relabel")
        arguments: dict[str, Any] = {
            "message_ids": message_ids,
            "user_google_email": self._user_email,
        }
        if add:
            arguments["add_label_ids"] = list(add)
        if remove:
            arguments["remove_label_ids"] = list(remove)
        await self._call("batch_modify_gmail_message_labels", arguments)

    async def _refresh_label_cache(self) -> None:
        """Replace the name → ID cache with the account's current labels."""
        raw = await self._call("list_gmail_labels", {"user_google_email": self._user_email})
        labels = self._parse_label_list(raw)
        if labels is None:
            logger.warning("Unexpected response from list_gmail_labels: %r", raw)
            return
        self._label_cache = labels
        logger.debug("Label cache refreshed: %d labels", len(labels))

    @staticmethod
    def _parse_label_list(raw: _JsonValue) -> dict[str, str] | None:
        """Map label name → ID from a JSON list or the ``• Name (ID: id)`` text form."""
        if isinstance(raw, list):
            return {
                str(entry["name"]): str(entry["id"])
                for entry in raw
                if isinstance(entry, dict) and "name" in entry and "id" in entry
            }
        if isinstance(raw, str):
            return {
                m.group(1): m.group(2)
                for m in re.finditer(r"•\s+(.+?)\s+\(ID:\s+(.+?)\)", raw)
            }
        return None

    async def _call(self, tool_name: str, arguments: dict[str, Any]) -> _JsonValue:
        """Call a workspace-mcp tool and return the parsed JSON result.

        Raises ProviderFatalError if the error text shows the grant is invalid,
        MCPError for any other tool error.  Plain-string responses
        (e.g. "Draft created!") are returned as-is.
        """
        logger.debug("MCP → %s %s", tool_name, arguments)
        result = await self._session.call_tool(tool_name, arguments)

        text: str | None = None
        for item in result.content or []:
            if isinstance(item, TextContent):
                text = item.text
                break

        if result.isError:
            detail = text if text is not None else str(result.content)
            if is_fatal_error_text(detail):
                logger.critical("Gmail rejected credentials during %s: %s", tool_name, detail)
                raise ProviderFatalError(f"Tool {tool_name!r} failed: {detail}")
            raise MCPError(f"Tool {tool_name!r} returned error: {detail}")

        if text is None:
            return None

        try:
            parsed: _JsonValue = json.loads(text)
            return parsed
        except json.JSONDecodeError:
            return text  # some tools return plain confirmation strings

    def _label_refs(self, label_ids: list[Any]) -> list[LabelRef]:
        names = {label_id: name for name, label_id in self._label_cache.items()}
        return [LabelRef(id=str(i), name=names.get(str(i), str(i))) for i in label_ids]

    @staticmethod
    def _parse_search_refs(raw: _JsonValue) -> list[tuple[str, str]]:
        """Extract (message_id, thread_id) pairs from a search response."""
        if isinstance(raw, list):
            return [
                (str(m["message_id"]), str(m.get("thread_id") or m["message_id"]))
                for m in raw
                if isinstance(m, dict) and m.get("message_id")
            ]
        if isinstance(raw, str):
            message_ids = re.findall(r"Message ID:\s*(\S+)", raw)
            thread_ids = re.findall(r"Thread ID:\s*(\S+)", raw)
            if len(thread_ids) != len(message_ids):
                # Gmail uses the first message's ID as the thread ID
                thread_ids = list(message_ids)
            return list(zip(message_ids, thread_ids))
        return []

    @staticmethod
    def _participants(raw: Any) -> list[Participant]:
        if not raw:
            return []
        if isinstance(raw, list):
            raw = ", ".join(str(r) for r in raw)
        return [
            Participant(email=addr, name=name or None)
            for name, addr in getaddresses([str(raw)])
            if addr
        ]

    def _parse_thread_dict(self, thread_id: str, data: dict[str, Any]) -> Thread:
        """Map a JSON thread payload (legacy workspace-mcp) to a Thread."""
        messages = []
        for m in data.get("messages", []):
            if not isinstance(m, dict):
                continue
            senders = self._participants(m.get("from"))
            messages.append(Message(
                id=str(m.get("message_id", m.get("id", ""))),
                thread_id=thread_id,
                connection_id=self._user_email,
                sender=senders[0] if senders else None,
                to=self._participants(m.get("to")),
                cc=self._participants(m.get("cc")),
                subject=str(m.get("subject") or ""),
                received_on=str(m["date"]) if m.get("date") else None,
                decoded_body=str(m.get("body") or ""),
            ))
        return Thread(
            id=thread_id,
            connection_id=self._user_email,
            messages=messages,
            labels=self._label_refs(list(data.get("labels", []))),
        )

    def _parse_thread_text(self, thread_id: str, raw: str) -> Thread:
        """Parse workspace-mcp's text thread format::

            Thread ID: abc123
            Subject: Hello

            === Message 1 ===
            Message ID: 18f0...
            From: Alice <alice@example.com>
            To: bob@example.com
            Date: Mon, 1 Jan 2026 12:00:00 +0000
            Subject: Hello

            Body text follows after a blank line...

        Messages without a Message ID header get a positional ID
        (``<thread_id>:<n>``), which is stable because threads only grow.
        """
        preamble, *blocks = re.split(r"^=+\s*Message\s+\d+\s*=+\s*$", raw, flags=re.MULTILINE)
        labels_match = re.search(r"^Labels:\s*(.+)$", preamble, re.MULTILINE)
        label_ids = (
            [s.strip() for s in labels_match.group(1).split(",") if s.strip()]
            if labels_match else []
        )

        messages: list[Message] = []
        for index, block in enumerate(blocks, start=1):
            block = block.strip("\n")

            body = ""
            headers = block
            header_end = re.search(r"\n\s*\n", block)
            if header_end:
                headers = block[:header_end.start()]
                body = block[header_end.end():].strip()

            # Quoted replies in the body often carry their own From:/Cc: lines.
            def _header(name: str) -> str:
                m = re.search(rf"^{name}:\s*(.+)$", headers, re.MULTILINE)
                return m.group(1).strip() if m else ""

            senders = self._participants(_header("From"))
            messages.append(Message(
                id=_header("Message ID") or f"{thread_id}:{index}",
                thread_id=thread_id,
                connection_id=self._user_email,
                sender=senders[0] if senders else None,
                to=self._participants(_header("To")),
                cc=self._participants(_header("Cc")),
                subject=_header("Subject"),
                received_on=_header("Date") or None,
                decoded_body=body,
            ))
        return Thread(
            id=thread_id,
            connection_id=self._user_email,
            messages=messages,
            labels=self._label_refs(label_ids),
        )


def _unwrap_group(exc: BaseException) -> BaseException:
    """Return the leaf exception of the groups anyio task groups wrap errors in.

    A ProviderFatalError anywhere in the group wins so callers can match on it.
    """
    if not isinstance(exc, BaseExceptionGroup):
        return exc
    fatal = exc.subgroup(ProviderFatalError)
    leaf: BaseException = fatal if fatal is not None else exc
    while isinstance(leaf, BaseExceptionGroup) and len(leaf.exceptions) == 1:
        leaf = leaf.exceptions[0]
    return leaf


_MCP_CONNECT_RETRIES = 5
_MCP_RETRY_DELAY_SECONDS = 3


def _server_parameters(email: str, server_command: str | None) -> StdioServerParameters:
    """Launch settings for workspace-mcp, serving only the Gmail tools for ``email``."""
    command = server_command or os.environ.get("GMAIL_MCP_SERVER_PATH", "uvx")
    # uvx needs the package name; a direct workspace-mcp binary takes no args
    is_uvx = PureWindowsPath(command).name.lower().removesuffix(".exe") == "uvx"
    return StdioServerParameters(
        command=command,
        args=["workspace-mcp", "--tools", "gmail"] if is_uvx else [],
        env={
            **os.environ,
            "USER_GOOGLE_EMAIL": email,
            "MCP_SINGLE_USER_MODE": "1",
            "WORKSPACE_MCP_PORT": os.environ.get("WORKSPACE_MCP_PORT", "18741"),
            "PYTHONUTF8": "1",
        },
    )


@asynccontextmanager
async def gmail_client(
    *,
    user_email: str | None = None,
    server_command: str | None = None,
    topics: list[TopicLabel] | None = None,
    label_chunk_size: int = _LABEL_CHUNK_SIZE,
    label_chunk_delay: float = _LABEL_CHUNK_DELAY_SECONDS,
) -> AsyncIterator[GmailClient]:
    """Async context manager that yields a connected, ready-to-use GmailClient.

    Spawns `workspace-mcp` as a subprocess via the MCP stdio transport,
    initialises the session, warms the label cache, and tears everything
    down cleanly on exit.

    Retries up to ``_MCP_CONNECT_RETRIES`` times on startup failure because
    ``workspace-mcp`` binds a port for its internal OAuth server and will
    crash if a previous instance hasn't fully released it yet.

    Args:
        user_email: Google account email. Falls back to USER_GOOGLE_EMAIL env var.
        server_command: Command used to launch the MCP server.
                        Defaults to GMAIL_MCP_SERVER_PATH env var (or "uvx").
        topics: The connection's label taxonomy (empty → built-in defaults).
        label_chunk_size: Threads relabelled concurrently per chunk.
        label_chunk_delay: Seconds to pause between relabelling chunks.
    """
    email = user_email or os.environ.get("USER_GOOGLE_EMAIL", "")
    if not email:
        raise ValueError(
            "user_email must be provided or USER_GOOGLE_EMAIL env var must be set"
        )
    server_params = _server_parameters(email, server_command)

    last_err: BaseException | None = None
    for attempt in range(1, _MCP_CONNECT_RETRIES + 1):
        connected = False
        try:
            async with stdio_client(server_params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    client = GmailClient(
                        session,
                        email,
                        topics=topics,
                        label_chunk_size=label_chunk_size,
                        label_chunk_delay=label_chunk_delay,
                    )
                    await client._refresh_label_cache()
                    logger.info("Gmail MCP client connected (%s)", email)
                    connected = True
                    yield client
                    return  # clean exit from the context manager
        except Exception as exc:
            # Errors from the caller's block (or a revoked grant) are not
            # connection failures: re-raise them instead of reconnecting.
            leaf = _unwrap_group(exc)
            if connected or isinstance(leaf, ProviderFatalError):
                if leaf is exc:
                    raise
                raise leaf from exc
            last_err = exc
            if attempt < _MCP_CONNECT_RETRIES:
                logger.warning(
                    "MCP server connection failed (attempt %d/%d) — retrying in %ds",
                    attempt,
                    _MCP_CONNECT_RETRIES,
                    _MCP_RETRY_DELAY_SECONDS,
                )
                await asyncio.sleep(_MCP_RETRY_DELAY_SECONDS)
            else:
                raise

    raise MCPError(f"Failed to connect after {_MCP_CONNECT_RETRIES} attempts") from last_err
