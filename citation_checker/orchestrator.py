"""
Batch verification of every citation in a text snapshot.

Each citation gets its own pipeline: reasoner first, then (for genuine
citations, when configured) the authority index, then reconciliation.
Pipelines run on a bounded thread pool and never wait on one another.

Starting a batch supersedes the previous one. Every write a pipeline makes
is checked against the current batch under the orchestrator lock, so a
superseded pipeline's late result is dropped instead of landing in a newer
batch's records.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterator

from .errors import InvalidPatternError, VerificationError
from .extraction import apply_replacement, extract_citations
from .reconciliation import reconcile
from .records import (
    EVENT_DONE,
    EVENT_NO_CITATIONS,
    EVENT_TRANSITION,
    BatchEvent,
    CitationRecord,
    CitationSpan,
    LifecycleStatus,
    VerificationOptions,
)
from .verifiers import AuthorityIndex, BackendResult, Err, Ok, Reasoner

logger = logging.getLogger(__name__)

Listener = Callable[[BatchEvent], None]

_CLOSED = object()


class BatchHandle:
    """One verification run over one text snapshot."""

    def __init__(
        self,
        batch_id: int,
        text: str,
        spans: list[CitationSpan],
        options: VerificationOptions,
    ):
        self.batch_id = batch_id
        self._source_text = text
        # Text after applied replacements; records' offsets still address _source_text
        self.edited_text: str | None = None
        self.spans = tuple(spans)
        self.options = options
        self._records = {span.id: CitationRecord.pending(span) for span in spans}
        self._events: queue.Queue = queue.Queue()
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self._remaining = len(spans)
        self._executor: ThreadPoolExecutor | None = None
        self._futures = []

    @property
    def text(self) -> str:
        """The snapshot the batch was extracted from. Never changes."""
        return self._source_text

    @property
    def no_citations(self) -> bool:
        return not self.spans

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def done(self) -> bool:
        return self._finished.is_set() and not self.cancelled

    def records(self) -> list[CitationRecord]:
        """Snapshot of the batch's records in extraction order."""
        return [
            self._records[span.id].snapshot()
            for span in self.spans
            if span.id in self._records
        ]

    def record(self, citation_id: str) -> CitationRecord:
        return self._records[citation_id].snapshot()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the batch completes or is cancelled."""
        return self._finished.wait(timeout)

    def events(self, poll_interval: float = 0.1) -> Iterator[BatchEvent]:
        """Yield this batch's events until it completes or is cancelled."""
        while not self.cancelled:
            try:
                event = self._events.get(timeout=poll_interval)
            except queue.Empty:
                if self._finished.is_set():
                    return
                continue
            if event is _CLOSED or self.cancelled:
                return
            yield event
            if event.kind == EVENT_DONE:
                return

    def __repr__(self):
        return (
            f"<BatchHandle {self.batch_id}: {len(self.spans)} citation(s)"
            f"{' cancelled' if self.cancelled else ''}{' done' if self.done else ''}>"
        )


class Orchestrator:
    """Runs verification batches against a reasoner and an optional authority index."""

    def __init__(
        self,
        reasoner: Reasoner,
        authority_index: AuthorityIndex | None = None,
        options: VerificationOptions | None = None,
    ):
        self.reasoner = reasoner
        self.authority_index = authority_index
        self.default_options = options or VerificationOptions()
        self._lock = threading.RLock()
        self._generation = 0
        self._current: BatchHandle | None = None
        self._listeners: list[Listener] = []

    @property
    def current_batch(self) -> BatchHandle | None:
        return self._current

    def records(self) -> list[CitationRecord]:
        with self._lock:
            return self._current.records() if self._current else []

    # -- subscription ------------------------------------------------------

    def subscribe(self, listener: Listener, replay: bool = False) -> None:
        """Call listener with every event from now on.

        With replay, the listener first receives the current batch's state:
        a transition for each record already past Pending, then the batch's
        closing event if it has finished.
        """
        with self._lock:
            self._listeners.append(listener)
            handle = self._current
            if not replay or handle is None or handle.cancelled:
                return
            for record in handle.records():
                if record.lifecycle_status != LifecycleStatus.PENDING:
                    listener(BatchEvent(EVENT_TRANSITION, handle.batch_id, record.id, record))
            if handle.no_citations:
                listener(BatchEvent(EVENT_NO_CITATIONS, handle.batch_id))
            elif handle.done:
                listener(BatchEvent(EVENT_DONE, handle.batch_id))

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # -- batches -----------------------------------------------------------

    def start_batch(self, text: str, options: VerificationOptions | None = None) -> BatchHandle:
        """Extract citations from text and start verifying them in the background.

        Raises InvalidPatternError before anything starts if the pattern is
        bad; the current batch is left running in that case.
        """
        options = options or self.default_options
        spans = extract_citations(text, options.pattern, options.min_length)

        with self._lock:
            if self._current is not None:
                self._cancel_locked(self._current)
            self._generation += 1
            handle = BatchHandle(self._generation, text, spans, options)
            self._current = handle
            logger.info("Batch %d started with %d citation(s)", handle.batch_id, len(spans))

            if not spans:
                self._publish_locked(handle, BatchEvent(EVENT_NO_CITATIONS, handle.batch_id))
                self._finish_locked(handle)
                return handle

            handle._executor = ThreadPoolExecutor(
                max_workers=min(options.max_concurrency, len(spans)),
                thread_name_prefix=f"citation-batch-{handle.batch_id}",
            )
            # The executor's queue is FIFO, so pipelines over the limit start in extraction order
            handle._futures = [
                handle._executor.submit(self._run_pipeline, handle, span) for span in spans
            ]
        return handle

    def run_batch(self, text: str, options: VerificationOptions | None = None) -> list[CitationRecord]:
        """Verify every citation in text and return the records once all are settled."""
        handle = self.start_batch(text, options)
        handle.wait()
        return handle.records()

    def cancel_batch(self, handle: BatchHandle) -> None:
        with self._lock:
            self._cancel_locked(handle)

    def close(self) -> None:
        with self._lock:
            if self._current is not None:
                self._cancel_locked(self._current)

    def apply_replacement(self, citation_id: str) -> str:
        """Replace a citation in the current batch's text with its controlling authority.

        The record leaves the active set and the updated text is returned.
        The batch keeps its source text, so the remaining records still
        describe it; start a new batch on the returned text to re-extract.
        A second replacement whose offsets were shifted by the first raises
        StaleCitationError.
        """
        with self._lock:
            handle = self._current
            if handle is None or citation_id not in handle._records:
                raise KeyError(citation_id)
            base = handle.edited_text if handle.edited_text is not None else handle.text
            updated = apply_replacement(base, handle._records[citation_id])
            handle.edited_text = updated
            del handle._records[citation_id]
            return updated

    # -- pipelines ---------------------------------------------------------

    def _run_pipeline(self, handle: BatchHandle, span: CitationSpan) -> None:
        try:
            record = self._verify_span(handle, span)
        except Exception as e:
            logger.exception("Verification pipeline for %r crashed", span.text)
            record = reconcile(span, Err(VerificationError(f"Internal error: {e}")))
        self._commit(handle, span, record)

    def _verify_span(self, handle: BatchHandle, span: CitationSpan) -> CitationRecord | None:
        if not self._mark_checking(handle, span):
            return None
        options = handle.options

        reasoner_result = self._call_backend(
            self.reasoner, self.reasoner.verify,
            span.text, options.mode, options.reasoner_call_timeout,
        )

        authority_result = None
        if self._should_consult_authority(reasoner_result, options):
            if handle.cancelled:
                return None
            authority_result = self._call_backend(
                self.authority_index, self.authority_index.lookup,
                span.text, options.authority_token, options.authority_timeout,
            )

        return reconcile(span, reasoner_result, authority_result)

    def _should_consult_authority(self, reasoner_result: BackendResult, options: VerificationOptions) -> bool:
        return (
            isinstance(reasoner_result, Ok)
            and reasoner_result.value.is_valid
            and self.authority_index is not None
            and options.authority_configured
        )

    def _call_backend(self, backend, call, *args) -> BackendResult:
        name = getattr(backend, "name", type(backend).__name__)
        try:
            return Ok(call(*args))
        except VerificationError as e:
            if not e.backend:
                e.backend = name
            logger.warning("%s call failed for %r: %s", name, args[0], e)
            return Err(e)
        except Exception as e:
            logger.exception("%s call raised unexpectedly for %r", name, args[0])
            return Err(VerificationError(f"Unexpected error: {e}", backend=name))

    # -- state writes (all under the lock) ---------------------------------

    def _is_live(self, handle: BatchHandle) -> bool:
        return handle is self._current and handle.batch_id == self._generation and not handle.cancelled

    def _mark_checking(self, handle: BatchHandle, span: CitationSpan) -> bool:
        with self._lock:
            if not self._is_live(handle):
                return False
            record = handle._records[span.id]
            record.lifecycle_status = LifecycleStatus.CHECKING
            self._publish_locked(
                handle, BatchEvent(EVENT_TRANSITION, handle.batch_id, span.id, record.snapshot())
            )
            return True

    def _commit(self, handle: BatchHandle, span: CitationSpan, record: CitationRecord | None) -> None:
        with self._lock:
            if not self._is_live(handle):
                logger.debug("Discarding result for %r from superseded batch %d", span.text, handle.batch_id)
                return
            if record is not None and span.id in handle._records:
                handle._records[span.id] = record
                self._publish_locked(
                    handle, BatchEvent(EVENT_TRANSITION, handle.batch_id, span.id, record.snapshot())
                )
            handle._remaining -= 1
            if handle._remaining == 0:
                self._publish_locked(handle, BatchEvent(EVENT_DONE, handle.batch_id))
                self._finish_locked(handle)
                logger.info("Batch %d finished", handle.batch_id)

    def _publish_locked(self, handle: BatchHandle, event: BatchEvent) -> None:
        handle._events.put(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Batch event listener failed")

    def _finish_locked(self, handle: BatchHandle) -> None:
        handle._finished.set()
        if handle._executor is not None:
            handle._executor.shutdown(wait=False)

    def _cancel_locked(self, handle: BatchHandle) -> None:
        if handle.cancelled or handle.done:
            return
        handle._cancelled.set()
        for future in handle._futures:
            future.cancel()
        if handle._executor is not None:
            handle._executor.shutdown(wait=False, cancel_futures=True)
        handle._events.put(_CLOSED)
        handle._finished.set()
        logger.info("Batch %d cancelled", handle.batch_id)


class LiveAnalyzer:
    """Starts a new batch once the text has stopped changing for a while."""

    def __init__(self, orchestrator: Orchestrator, options: VerificationOptions | None = None):
        self.orchestrator = orchestrator
        self.options = options or orchestrator.default_options
        self.last_error: InvalidPatternError | None = None
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._pending_text: str | None = None

    def text_changed(self, text: str) -> None:
        with self._lock:
            self._cancel_timer()
            self._pending_text = text
            self._timer = threading.Timer(self.options.debounce_seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> BatchHandle | None:
        """Start a batch for the pending text right away."""
        with self._lock:
            self._cancel_timer()
            text, self._pending_text = self._pending_text, None
        if text is None:
            return None
        return self._start(text)

    def close(self) -> None:
        with self._lock:
            self._cancel_timer()
            self._pending_text = None
        self.orchestrator.close()

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            text, self._pending_text = self._pending_text, None
        if text is not None:
            self._start(text)

    def _start(self, text: str) -> BatchHandle | None:
        current = self.orchestrator.current_batch
        if (
            current is not None
            and not current.cancelled
            and current.text == text
            and current.edited_text is None
            and current.options == self.options
        ):
            return current
        try:
            handle = self.orchestrator.start_batch(text, self.options)
        except InvalidPatternError as e:
            logger.warning("Live analysis skipped: %s", e)
            self.last_error = e
            return None
        self.last_error = None
        return handle

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
