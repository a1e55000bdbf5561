"""Core agent loop — polls Gmail for new mail and runs the thread pipelines."""

import asyncio
import logging
import signal
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from dotenv import load_dotenv

from src.mcp.gmail_client import GmailClient, MCPError, ProviderFatalError, gmail_client
from src.pipeline.config import PipelineConfig, load_topics
from src.processing.types import DEFAULT_TOPICS

logger = logging.getLogger(__name__)

# Backoff: 2^attempt seconds, capped at 5 minutes
_MAX_BACKOFF_SECONDS = 300
_DEFAULT_POLL_SECONDS = 60


# ── Processor interface ────────────────────────────────────────────────────────


@runtime_checkable
class ThreadHandler(Protocol):
    """Anything that can bring one thread's index, labels and draft up to date."""

    async def process(self, thread_id: str) -> object:
        """Process a thread.  May raise ProviderFatalError; other errors are logged."""
        ...


#: Factory that creates a fresh handler bound to a live GmailClient.
#: Called once per (re)connection so the handler always holds a valid client.
HandlerFactory = Callable[[GmailClient], ThreadHandler]


# ── Watcher ────────────────────────────────────────────────────────────────────


class ThreadWatcher:
    """Polls Gmail for unread mail and processes each thread that changed.

    New unread messages are grouped by thread and each thread is processed
    once per poll, strictly one thread at a time, so two runs never touch the
    same thread concurrently.

    Reconnects with exponential backoff on MCP failures.  A
    ``ProviderFatalError`` (revoked or expired grant) stops the watcher: the
    connection has to be re-authorised before polling makes sense again.

    Usage::

        watcher = ThreadWatcher(handler_factory=make_processor)
        await watcher.run()
    """

    def __init__(
        self,
        handler_factory: HandlerFactory,
        poll_interval: int | None = None,
        max_results_per_poll: int = 50,
        client_factory: Callable[[], object] | None = None,
        label_names: list[str] | None = None,
    ) -> None:
        self._handler_factory = handler_factory
        self._poll_interval = poll_interval or _DEFAULT_POLL_SECONDS
        self._max_results = max_results_per_poll
        self._client_factory = client_factory or gmail_client
        self._label_names = label_names if label_names is not None else [
            t.name for t in DEFAULT_TOPICS
        ]
        self._seen_message_ids: set[str] = set()
        self._seeded = False
        self._stop_event = asyncio.Event()
        self.fatal_error: ProviderFatalError | None = None

    def stop(self) -> None:
        """Signal the watcher to finish the current poll and shut down cleanly."""
        logger.info("Shutdown requested — finishing current poll then stopping")
        self._stop_event.set()

    async def run(self) -> None:
        """Run the watcher loop, reconnecting on MCP failures with backoff.

        Returns after stop() is called or the provider rejects the connection.
        """
        attempt = 0
        while not self._stop_event.is_set():
            try:
                async with self._client_factory() as gmail:
                    logger.info("Connected to Gmail MCP — ensuring taxonomy labels exist")
                    await gmail.ensure_labels(self._label_names)
                    attempt = 0  # reset backoff counter on successful connect
                    await self._loop(gmail)
            except ProviderFatalError as exc:
                logger.error(
                    "Provider rejected the connection (%s) — stopping; re-authorise to resume",
                    exc,
                )
                self.fatal_error = exc
                self._stop_event.set()
            except MCPError as exc:
                if self._stop_event.is_set():
                    break
                attempt += 1
                delay = min(2**attempt, _MAX_BACKOFF_SECONDS)
                logger.error(
                    "MCP error (attempt %d): %s — reconnecting in %ds",
                    attempt,
                    exc,
                    delay,
                )
                await self._interruptible_sleep(delay)
            except Exception as exc:  # noqa: BLE001
                if self._stop_event.is_set():
                    break
                attempt += 1
                delay = min(2**attempt, _MAX_BACKOFF_SECONDS)
                logger.error(
                    "Unexpected error (attempt %d): %s — reconnecting in %ds",
                    attempt,
                    exc,
                    delay,
                    exc_info=True,
                )
                await self._interruptible_sleep(delay)

        logger.info("Watcher stopped")

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _seed_seen_ids(self, gmail: GmailClient) -> None:
        """Mark all currently-unread messages as seen without processing them.

        Called once at startup so the agent doesn't work through the whole
        unread backlog; only mail arriving after this point is processed.
        Reconnects keep the seen set, so nothing that arrived while the
        connection was down is skipped.
        """
        refs = await gmail.get_unread_message_refs(max_results=500)
        self._seen_message_ids.update(message_id for message_id, _ in refs)
        self._seeded = True
        logger.info(
            "Startup: seeded %d pre-existing unread message(s) — they will not be processed",
            len(refs),
        )

    async def _loop(self, gmail: GmailClient) -> None:
        """Create a fresh handler, seed seen IDs once, then poll until stopped."""
        handler = self._handler_factory(gmail)
        if not self._seeded:
            await self._seed_seen_ids(gmail)
        while not self._stop_event.is_set():
            await self._poll(gmail, handler)
            await self._interruptible_sleep(self._poll_interval)

    async def _poll(self, gmail: GmailClient, handler: ThreadHandler) -> None:
        """Fetch unread refs, group unseen messages by thread, process each thread."""
        refs = await gmail.get_unread_message_refs(max_results=self._max_results)
        new = [(m, t) for m, t in refs if m not in self._seen_message_ids]

        if not new:
            logger.debug("Poll: 0 new messages (%d total unread)", len(refs))
            return

        # Group by thread, keeping first-seen order.
        threads: dict[str, list[str]] = {}
        for message_id, thread_id in new:
            threads.setdefault(thread_id, []).append(message_id)

        logger.info("Poll: %d new message(s) in %d thread(s)", len(new), len(threads))
        for thread_id, message_ids in threads.items():
            if self._stop_event.is_set():
                break
            try:
                await handler.process(thread_id)
            except ProviderFatalError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Processing failed for thread %s: %s",
                    thread_id,
                    exc,
                    exc_info=True,
                )
            finally:
                # Mark as seen even on failure to avoid a retry loop on a bad thread.
                self._seen_message_ids.update(message_ids)

    async def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep for `seconds` but wake immediately if stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


# ── Wiring ─────────────────────────────────────────────────────────────────────


def build_watcher(config: PipelineConfig) -> ThreadWatcher:
    """Wire the Gmail client, pipelines and watcher from ``config``."""
    from src.pipeline.processor import make_thread_processor

    topics = load_topics(config.topics_path)

    def _client():
        return gmail_client(
            topics=topics,
            label_chunk_size=config.label_batch_size,
            label_chunk_delay=config.label_batch_delay,
        )

    return ThreadWatcher(
        handler_factory=lambda gmail: make_thread_processor(gmail, config),
        poll_interval=config.poll_interval,
        client_factory=_client,
        label_names=[t.name for t in (topics or DEFAULT_TOPICS)],
    )


# ── Entry point ────────────────────────────────────────────────────────────────


def main() -> None:
    """Start the email agent from the command line."""
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        asyncio.run(serve(PipelineConfig.from_env()))
    except KeyboardInterrupt:
        # Ctrl+C on Windows (no add_signal_handler) arrives here
        logger.info("Interrupted — goodbye")


async def serve(config: PipelineConfig) -> None:
    """Async entry point: wire up signal handlers and run the watcher."""
    watcher = build_watcher(config)

    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, watcher.stop)
    except (NotImplementedError, AttributeError):
        pass

    await watcher.run()
