"""Per-field analysis state: debounce, supersession, regenerate and follow-ups.

Every report field owns one :class:`AnalysisField`. A qualifying edit
supersedes any in-flight request for the field (its token invalidated and its
task cancelled) and restarts the field's debounce timer; when the timer fires
the new request is issued. Results are only applied while their token is still
current, so a late answer from a superseded request can never overwrite newer
state.

Once a field has been analyzed successfully, ordinary edits no longer trigger
analysis; only ``regenerate`` (or ``force=True``) does. Follow-up messages
bypass the debounce path entirely and are serialized per field.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from ..domain.errors import AnalysisValidationError
from ..observability.metrics import record_analysis_outcome
from ..observability.telemetry import LifecycleEvent, record_event
from ..providers.base import ProviderClient
from ..security.auth_gate import AuthGate, SessionExpiredError, ensure_authenticated
from . import analysis_pipeline
from .cancellation import CancellationToken, TokenSource

logger = logging.getLogger("report_ai.fields")

DEFAULT_DEBOUNCE_SECONDS = 0.1
DEFAULT_MIN_CONTENT_CHARS = 10
CONVERSATION_ERROR_PREFIX = "Sorry, an error occurred while answering: "


class FieldStatus(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    LOADING = "loading"
    STREAMING = "streaming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ConversationMessage:
    id: str
    role: str
    content: str
    timestamp: str = field(default_factory=_now)


@dataclass
class AnalysisField:
    field_name: str
    status: FieldStatus = FieldStatus.IDLE
    current_text: str = ""
    original_content: Optional[str] = None
    previous_report_content: Optional[str] = None
    has_run_once: bool = False
    last_analyzed_snapshot: Optional[str] = None
    analysis: Optional[str] = None
    partial: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    conversation: List[ConversationMessage] = field(default_factory=list)
    conversation_epoch: int = 0
    pending_follow_ups: int = 0
    timer: Optional[asyncio.Task] = None
    conversation_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def conversation_loading(self) -> bool:
        return self.pending_follow_ups > 0


@dataclass(frozen=True)
class FieldSnapshot:
    """Read-only view of a field handed to observers and queries."""

    field_name: str
    status: FieldStatus
    current_text: str
    has_run_once: bool
    last_analyzed_snapshot: Optional[str]
    analysis: Optional[str]
    partial: str
    error: Optional[str]
    error_kind: Optional[str]
    conversation: Tuple[ConversationMessage, ...]
    conversation_loading: bool


def snapshot(f: AnalysisField) -> FieldSnapshot:
    return FieldSnapshot(
        field_name=f.field_name,
        status=f.status,
        current_text=f.current_text,
        has_run_once=f.has_run_once,
        last_analyzed_snapshot=f.last_analyzed_snapshot,
        analysis=f.analysis,
        partial=f.partial,
        error=f.error,
        error_kind=f.error_kind,
        conversation=tuple(f.conversation),
        conversation_loading=f.conversation_loading,
    )


Listener = Callable[[FieldSnapshot], None]

_END = object()


class FieldSessionStore:
    def __init__(
        self,
        client_provider: Callable[[], ProviderClient],
        auth_gate: Optional[AuthGate] = None,
        streaming_enabled: Optional[Callable[[], bool]] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        min_content_chars: int = DEFAULT_MIN_CONTENT_CHARS,
        session_id: Optional[str] = None,
    ) -> None:
        self._client_provider = client_provider
        self.auth_gate = auth_gate
        self._streaming_enabled = streaming_enabled or (lambda: True)
        self.debounce_seconds = debounce_seconds
        self.min_content_chars = min_content_chars
        self.session_id = session_id
        self._fields: Dict[str, AnalysisField] = {}
        self._tokens = TokenSource()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Observers / queries
    # ------------------------------------------------------------------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, f: AnalysisField) -> None:
        view = snapshot(f)
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.exception("field_listener_failed", extra={"field_name": f.field_name})

    def _event(self, name: str, field_name: str, **properties) -> None:
        record_event(LifecycleEvent(name=name, field_name=field_name, session_id=self.session_id, properties=properties))

    def get_state(self, field_name: str) -> Optional[FieldSnapshot]:
        f = self._fields.get(field_name)
        return snapshot(f) if f else None

    def list_states(self) -> List[FieldSnapshot]:
        return [snapshot(f) for f in self._fields.values()]

    def status(self, field_name: str) -> FieldStatus:
        f = self._fields.get(field_name)
        return f.status if f else FieldStatus.IDLE

    # ------------------------------------------------------------------
    # Primary analysis
    # ------------------------------------------------------------------
    def qualifies(self, content: Optional[str]) -> bool:
        return len((content or "").strip()) >= self.min_content_chars

    def _prepare(
        self,
        field_name: str,
        content: str,
        original_content: Optional[str],
        previous_report_content: Optional[str],
        force: bool,
    ) -> Optional[AnalysisField]:
        if not self.qualifies(content):
            return None
        f = self._fields.get(field_name)
        if f is not None and f.has_run_once and not force:
            f.current_text = content
            logger.debug("analysis_skipped_already_run", extra={"field_name": field_name})
            return None
        if f is None:
            f = AnalysisField(field_name=field_name)
            self._fields[field_name] = f
        f.current_text = content
        f.original_content = original_content
        f.previous_report_content = previous_report_content
        return f

    async def _debounce(self, f: AnalysisField, force: bool) -> bool:
        """Restart the field's timer; False when a newer edit or a clear replaced it."""
        if f.timer is not None and not f.timer.done():
            f.timer.cancel()
        f.status = FieldStatus.DEBOUNCING
        self._notify(f)
        timer = asyncio.ensure_future(asyncio.sleep(0 if force else self.debounce_seconds))
        f.timer = timer
        try:
            await timer
        except asyncio.CancelledError:
            if f.timer is not timer:
                return False
            raise
        if f.timer is timer:
            f.timer = None
        return True

    def _supersede(self, f: AnalysisField, mode: str) -> CancellationToken:
        previous = self._tokens.current(f.field_name)
        if previous is not None and not previous.cancelled:
            record_analysis_outcome(mode, "superseded")
            self._event("superseded", f.field_name, generation=previous.generation)
        return self._tokens.issue(f.field_name)

    def _abandon(self, f: AnalysisField, token: CancellationToken, mode: str) -> None:
        """The caller went away mid-run: abort its request and settle the field."""
        if not self._tokens.is_current(token):
            return
        self._tokens.cancel(f.field_name)
        f.partial = ""
        if f.error is not None:
            f.status = FieldStatus.FAILED
        elif f.analysis is not None:
            f.status = FieldStatus.SUCCEEDED
        else:
            f.status = FieldStatus.IDLE
        record_analysis_outcome(mode, "abandoned")
        self._event("abandoned", f.field_name, mode=mode, generation=token.generation)
        self._notify(f)

    def _apply_success(self, f: AnalysisField, result: str, content: str, mode: str) -> None:
        f.analysis = result
        f.partial = ""
        f.status = FieldStatus.SUCCEEDED
        f.has_run_once = True
        f.last_analyzed_snapshot = content
        f.error = None
        f.error_kind = None
        f.conversation = []
        f.conversation_epoch += 1
        record_analysis_outcome(mode, "succeeded")
        self._event("succeeded", f.field_name, mode=mode, length=len(result))
        self._notify(f)

    def _apply_failure(self, f: AnalysisField, error: str, mode: str, kind: str = "provider") -> None:
        # analysis keeps the last good value
        f.partial = ""
        f.status = FieldStatus.FAILED
        f.error = error
        f.error_kind = kind
        record_analysis_outcome(mode, "fallback" if kind == "fallback" else "failed")
        self._event("failed", f.field_name, mode=mode, error_kind=kind)
        self._notify(f)

    async def _request(self, f: AnalysisField, token: CancellationToken, content: str) -> Optional[str]:
        try:
            await ensure_authenticated(self.auth_gate)
        except SessionExpiredError as exc:
            if self._tokens.is_current(token):
                self._apply_failure(f, str(exc), "single", kind="unauthenticated")
            raise
        client = self._client_provider()
        f.status = FieldStatus.LOADING
        self._notify(f)
        result = await analysis_pipeline.analyze_text(
            client,
            f.field_name,
            content,
            f.original_content,
            f.previous_report_content,
            caller_id=self.session_id,
        )
        if not self._tokens.is_current(token):
            logger.debug("analysis_result_discarded", extra={"field_name": f.field_name})
            return None
        if result == analysis_pipeline.FALLBACK_MESSAGE:
            self._apply_failure(f, result, "single", kind="fallback")
        else:
            self._apply_success(f, result, content, "single")
        return result

    async def analyze(
        self,
        field_name: str,
        content: str,
        original_content: Optional[str] = None,
        previous_report_content: Optional[str] = None,
        force: bool = False,
    ) -> Optional[str]:
        """Debounced two-stage analysis of one field.

        Returns the executive summary (or the fallback text), or None when the
        call was a no-op: content too short, gated by an earlier success, or
        superseded by a newer trigger or a clear.
        """
        f = self._prepare(field_name, content, original_content, previous_report_content, force)
        if f is None:
            return None
        self._event("scheduled", field_name, force=force)
        token = self._supersede(f, "single")
        try:
            if not await self._debounce(f, force) or not self._tokens.is_current(token):
                return None
            task = asyncio.ensure_future(self._request(f, token, content))
            token.attach(task)
            return await task
        except asyncio.CancelledError:
            if token.cancelled:
                return None
            self._abandon(f, token, "single")
            raise
        finally:
            self._tokens.retire(token)

    async def _produce_stream(
        self,
        f: AnalysisField,
        token: CancellationToken,
        content: str,
        queue: "asyncio.Queue[object]",
    ) -> None:
        try:
            await ensure_authenticated(self.auth_gate)
            client = self._client_provider()
            f.status = FieldStatus.STREAMING
            f.partial = ""
            self._notify(f)
            parts: List[str] = []
            async for fragment in analysis_pipeline.analyze_text_stream(
                client,
                f.field_name,
                content,
                f.original_content,
                f.previous_report_content,
                streaming_enabled=self._streaming_enabled(),
                caller_id=self.session_id,
            ):
                if not self._tokens.is_current(token):
                    return
                parts.append(fragment)
                f.partial = "".join(parts)
                await queue.put(fragment)
            if self._tokens.is_current(token):
                self._apply_success(f, client.clean_response("".join(parts)), content, "streaming")
        except SessionExpiredError as exc:
            if self._tokens.is_current(token):
                self._apply_failure(f, str(exc), "streaming", kind="unauthenticated")
                await queue.put(exc)
        except Exception as exc:
            if self._tokens.is_current(token):
                logger.warning("streaming_analysis_failed", extra={"field_name": f.field_name, "error": str(exc)})
                self._apply_failure(f, str(exc), "streaming")
                await queue.put(exc)
        finally:
            self._tokens.retire(token)
            queue.put_nowait(_END)

    async def analyze_streaming(
        self,
        field_name: str,
        content: str,
        original_content: Optional[str] = None,
        previous_report_content: Optional[str] = None,
        force: bool = False,
    ) -> AsyncIterator[str]:
        """Debounced streaming analysis; yields fragments as they arrive.

        Ends quietly when superseded. Backend failures mark the field failed
        and are re-raised to the consumer.
        """
        f = self._prepare(field_name, content, original_content, previous_report_content, force)
        if f is None:
            return
        self._event("scheduled", field_name, force=force, streaming=True)
        token = self._supersede(f, "streaming")
        try:
            if not await self._debounce(f, force) or not self._tokens.is_current(token):
                return
            queue: asyncio.Queue[object] = asyncio.Queue()
            task = asyncio.ensure_future(self._produce_stream(f, token, content, queue))
            token.attach(task)
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            # consumer closed early or was cancelled while the producer still runs
            self._abandon(f, token, "streaming")

    async def regenerate(self, field_name: str, streaming: bool = False) -> Optional[str]:
        """Re-run analysis for the field's current text regardless of earlier success."""
        f = self._fields.get(field_name)
        if f is None or not self.qualifies(f.current_text):
            raise AnalysisValidationError("nothing to regenerate", field_name)
        args = (field_name, f.current_text, f.original_content, f.previous_report_content)
        if not streaming:
            return await self.analyze(*args, force=True)
        parts: List[str] = []
        async for fragment in self.analyze_streaming(*args, force=True):
            parts.append(fragment)
        state = self._fields.get(field_name)
        return state.analysis if state and state.status == FieldStatus.SUCCEEDED else None

    # ------------------------------------------------------------------
    # Follow-up conversation
    # ------------------------------------------------------------------
    async def send_follow_up(self, field_name: str, message: str) -> Optional[str]:
        """Ask a follow-up question about the field's current analysis.

        The user message is appended immediately; the request waits for the
        previous turn of this field to finish. Returns None when the
        conversation was cleared (or replaced by a new analysis) meanwhile.
        """
        text = (message or "").strip()
        if not text:
            raise AnalysisValidationError("follow-up message is empty", field_name)
        f = self._fields.get(field_name)
        if f is None or not f.analysis:
            raise AnalysisValidationError("field has no analysis to discuss", field_name)

        user_msg = ConversationMessage(id=uuid.uuid4().hex, role="user", content=text)
        f.conversation.append(user_msg)
        epoch = f.conversation_epoch
        f.pending_follow_ups += 1
        self._notify(f)
        try:
            async with f.conversation_lock:
                if f.conversation_epoch != epoch or self._fields.get(field_name) is not f:
                    return None
                # earlier turns plus answers that arrived after this question was queued
                idx = f.conversation.index(user_msg)
                history = [
                    {"role": m.role, "content": m.content}
                    for i, m in enumerate(f.conversation)
                    if i < idx or (i > idx and m.role == "assistant")
                ]
                await ensure_authenticated(self.auth_gate)
                client = self._client_provider()
                try:
                    reply = await analysis_pipeline.follow_up(
                        client, field_name, f.current_text, f.analysis, history, text, caller_id=self.session_id
                    )
                except Exception as exc:
                    if f.conversation_epoch == epoch:
                        f.conversation.append(
                            ConversationMessage(
                                id=uuid.uuid4().hex, role="assistant", content=f"{CONVERSATION_ERROR_PREFIX}{exc}"
                            )
                        )
                    self._event("follow_up_failed", field_name, error=str(exc))
                    raise
                if f.conversation_epoch != epoch:
                    return None
                f.conversation.append(ConversationMessage(id=uuid.uuid4().hex, role="assistant", content=reply))
                self._event("follow_up_answered", field_name, turns=len(f.conversation))
                return reply
        finally:
            f.pending_follow_ups -= 1
            self._notify(f)

    def clear_conversation(self, field_name: str) -> None:
        f = self._fields.get(field_name)
        if f is None:
            return
        f.conversation = []
        f.conversation_epoch += 1
        self._notify(f)

    # ------------------------------------------------------------------
    # Clear / teardown
    # ------------------------------------------------------------------
    def clear(self, field_name: str) -> bool:
        """Drop the field: cancel its timer and in-flight request, forget its state."""
        f = self._fields.pop(field_name, None)
        self._tokens.cancel(field_name)
        if f is None:
            return False
        if f.timer is not None and not f.timer.done():
            timer, f.timer = f.timer, None
            timer.cancel()
        f.conversation_epoch += 1
        f.status = FieldStatus.IDLE
        self._event("cleared", field_name)
        self._notify(f)
        return True

    def teardown(self) -> None:
        for name in list(self._fields):
            self.clear(name)
        self._tokens.cancel_all()
