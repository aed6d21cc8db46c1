"""Session orchestrator: the single owner of voice session state.

Every command and every completion of background work is funnelled through
one asyncio queue and applied by one loop task, so session state is only
ever mutated from that task. Work that suspends (connecting, transcription,
tool execution, playback, backend reads) runs in background tasks that post
their results back to the queue tagged with the session id; results for a
session that has since ended are discarded.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import uuid4

from codewhisper.lib.config import CodeWhisperConfig
from codewhisper.lib.errors import (
    AlreadyActiveError,
    AuthError,
    BackendConnectionError,
    CancellationError,
    ConfigurationError,
    ConnectionLostError,
    SessionStateError,
    ToolExecutionError,
    VoiceSessionError,
)
from codewhisper.lib.logging_config import AuditLogger
from codewhisper.lib.metrics import MetricsCollector, SessionTimer
from codewhisper.lib.observability import session_span
from codewhisper.models.session import Mode, Session, SessionState
from codewhisper.models.tool_call import ToolCall, ToolCallStatus
from codewhisper.models.tool_spec import ToolSpec
from codewhisper.models.transcript import EntryKind, Role, TranscriptEntry
from codewhisper.services.interfaces.audio_pipeline import AudioPipeline, LevelObserver
from codewhisper.services.interfaces.chat_service import ChatMessage, ChatService
from codewhisper.services.interfaces.local_tool_handler import ToolContext
from codewhisper.services.interfaces.realtime_backend import RealtimeBackend, RealtimeConnection
from codewhisper.services.interfaces.transcription_service import TranscriptionResult, TranscriptionService
from codewhisper.services.local_tools import SCREENSHOT_FOLLOWUP_PROMPT, truncate
from codewhisper.services.prompt_enhancer import PromptEnhancer
from codewhisper.services.session_configurator import build_session_configuration
from codewhisper.services.tool_dispatcher import ToolDispatcher
from codewhisper.services.tool_registry import (
    EXTERNAL_TASK_TOOL_NAME,
    SCREENSHOT_TOOL_NAME,
    ToolRegistry,
    external_task_tool_spec,
    screenshot_tool_spec,
)
from codewhisper.services.transcript_store import TranscriptStore


logger = logging.getLogger(__name__)

FATAL_ERROR_CODES = frozenset({"invalid_api_key", "insufficient_quota", "authentication_error"})

TOOL_INTERRUPTED_MESSAGE = "Tool execution interrupted by user"

_DEFERRED = object()


@dataclass
class _Message:
    """A command or background completion waiting for the loop."""
    kind: str
    session_id: Optional[str] = None
    payload: Any = None
    future: Optional[asyncio.Future] = None


class SessionOrchestrator:
    """
    Drives one voice session at a time through its mode's state machine.

    Commands (start, stop, mute, cancel, ...) are coroutines that enqueue
    a message and wait for the loop to apply it. Commands that are not
    valid in the current state are no-ops returning False, except start,
    which raises.
    """

    def __init__(
        self,
        config: CodeWhisperConfig,
        audio: AudioPipeline,
        backend: Optional[RealtimeBackend] = None,
        transcription_service: Optional[TranscriptionService] = None,
        dispatcher: Optional[ToolDispatcher] = None,
        chat_service: Optional[ChatService] = None,
        transcript_store: Optional[TranscriptStore] = None,
        on_transcript: Optional[Callable[[str], Any]] = None,
        level_observer: Optional[LevelObserver] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics_collector: Optional[MetricsCollector] = None
    ):
        self.logger = logger
        self.config = config
        self.audio = audio
        self.backend = backend
        self.transcription_service = transcription_service
        self.chat_service = chat_service
        self.on_transcript = on_transcript
        self.level_observer = level_observer
        self.audit_logger = audit_logger or AuditLogger()
        self.metrics_collector = metrics_collector
        self.dispatcher = dispatcher or ToolDispatcher(
            approval_timeout=config.session.approval_timeout,
            audit_logger=self.audit_logger,
            metrics_collector=metrics_collector,
        )
        self.transcript = transcript_store or TranscriptStore()

        self._queue: "asyncio.Queue[_Message]" = asyncio.Queue()
        self._loop_task: Optional[asyncio.Task] = None
        self._state_waiters: List[tuple] = []
        self._state_listeners: List[Callable[[SessionState, SessionState], None]] = []
        self._detached: Set[asyncio.Task] = set()

        self._reset_session_fields()
        self._last_error: Optional[VoiceSessionError] = None
        self._last_session_transcript: List[TranscriptEntry] = []

    def _reset_session_fields(self) -> None:
        self._session: Optional[Session] = None
        self._snapshot: Optional[CodeWhisperConfig] = None
        self._connection: Optional[RealtimeConnection] = None
        self._tools: Dict[str, ToolSpec] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._start_future: Optional[asyncio.Future] = None
        self._timer: Optional[SessionTimer] = None
        self._active_call: Optional[ToolCall] = None
        self._tool_queue: List[ToolCall] = []
        self._tool_muted = False
        self._last_screenshot: Optional[bytes] = None
        self._session_configured = False
        self._seen_approval_requests: Set[str] = set()
        self._enhancer: Optional[PromptEnhancer] = None

    # Lifecycle

    async def initialize(self) -> None:
        """Start the command loop. Called implicitly by the first command."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self.logger.info("Starting session orchestrator")
        self._loop_task = asyncio.create_task(self._run(), name="codewhisper-orchestrator")

    async def shutdown(self) -> None:
        """Cancel any active session and stop the command loop."""
        if self._loop_task is None or self._loop_task.done():
            return
        await self.cancel()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Message("shutdown", future=future))
        await future
        await self._loop_task
        self._loop_task = None
        self.logger.info("Session orchestrator stopped")

    async def __aenter__(self) -> "SessionOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # Observable state

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.IDLE

    @property
    def mode(self) -> Optional[Mode]:
        return self._session.mode if self._session else None

    @property
    def session(self) -> Optional[Session]:
        """A copy of the current session, None when idle."""
        return self._session.model_copy(deep=True) if self._session else None

    @property
    def muted(self) -> bool:
        return bool(self._session and self._session.muted)

    @property
    def last_error(self) -> Optional[VoiceSessionError]:
        return self._last_error

    @property
    def last_session_transcript(self) -> List[TranscriptEntry]:
        """Entries of the most recently torn down session."""
        return list(self._last_session_transcript)

    def add_state_listener(self, listener: Callable[[SessionState, SessionState], None]) -> None:
        """Register a callback invoked with (previous, new) on every state change."""
        self._state_listeners.append(listener)

    async def wait_for_state(self, *states: SessionState, timeout: Optional[float] = None) -> SessionState:
        """Wait until the orchestrator reaches one of states."""
        if self.state in states:
            return self.state
        future = asyncio.get_running_loop().create_future()
        self._state_waiters.append((set(states), future))
        return await asyncio.wait_for(future, timeout=timeout)

    def update_config(self, config: CodeWhisperConfig) -> None:
        """Replace the configuration used by the next session.

        A running session keeps the snapshot taken when it started.
        """
        self.config = config

    # Commands

    async def start(self, mode: Mode) -> Optional[str]:
        """Start a session and wait until it is recording.

        A backend or audio device that cannot be reached leaves the
        orchestrator Idle with a warning entry and last_error set.

        Returns:
            The new session id, or None when the connection failed

        Raises:
            AlreadyActiveError: A session is already active
            SessionStateError: The last error has not been acknowledged
            ConfigurationError: Tools or collaborators are misconfigured
            AuthError: Credentials were rejected
            CancellationError: The start was cancelled while connecting
        """
        return await self._submit("start", Mode(mode))

    async def stop(self) -> bool:
        """End recording: transcribe in request/response modes, end the session in realtime."""
        return await self._submit("stop")

    async def mute(self) -> bool:
        return await self._submit("mute", True)

    async def unmute(self) -> bool:
        return await self._submit("mute", False)

    async def cancel(self) -> bool:
        """Abort whatever is in progress and return to Idle within the grace period."""
        return await self._submit("cancel")

    async def acknowledge(self) -> bool:
        """Clear a fatal error so a new session can start."""
        return await self._submit("acknowledge")

    async def submit_reply(self, reply_id: str, text: str) -> bool:
        """Speak an assistant reply in transcribe-and-speak mode.

        Each reply id is acted on at most once per session.
        """
        return await self._submit("reply", (reply_id, text))

    async def send_text(self, text: str) -> bool:
        """Send a typed user message into a realtime session."""
        return await self._submit("send_text", text)

    async def cancel_tool_call(self, call_id: str) -> bool:
        """Cancel one executing tool call without ending the session."""
        return await self._submit("cancel_tool_call", call_id)

    async def _submit(self, kind: str, payload: Any = None) -> Any:
        await self.initialize()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Message(kind, payload=payload, future=future))
        return await future

    def _post(self, kind: str, session_id: Optional[str], payload: Any = None) -> None:
        self._queue.put_nowait(_Message(kind, session_id=session_id, payload=payload))

    # Loop

    async def _run(self) -> None:
        handlers = {
            "start": self._handle_start,
            "stop": self._handle_stop,
            "mute": self._handle_mute,
            "cancel": self._handle_cancel,
            "acknowledge": self._handle_acknowledge,
            "reply": self._handle_reply,
            "send_text": self._handle_send_text,
            "cancel_tool_call": self._handle_cancel_tool_call,
            "connected": self._on_connected,
            "connect_failed": self._on_connect_failed,
            "transcribed": self._on_transcribed,
            "transcription_failed": self._on_transcription_failed,
            "auto_reply_failed": self._on_auto_reply_failed,
            "playback_done": self._on_playback_done,
            "backend_event": self._on_backend_event,
            "connection_lost": self._on_connection_lost,
            "audio_dropped": self._on_audio_dropped,
            "tool_started": self._on_tool_started,
            "tool_progress": self._on_tool_progress,
            "tool_resolved": self._on_tool_resolved,
            "mcp_approval": self._on_mcp_approval,
        }

        while True:
            message = await self._queue.get()

            if message.kind == "shutdown":
                if message.future and not message.future.done():
                    message.future.set_result(None)
                return

            if message.future is None and not self._is_current(message.session_id):
                self.logger.debug(f"Discarding stale {message.kind} for session {message.session_id}")
                if message.kind == "connected":
                    self._spawn_detached(self._close_quietly(message.payload))
                continue

            try:
                result = await handlers[message.kind](message)
            except Exception as e:
                if message.future is not None and not message.future.done():
                    message.future.set_exception(e)
                else:
                    self.logger.error(f"Unhandled error processing {message.kind}: {e}", exc_info=True)
                continue

            if message.future is not None and result is not _DEFERRED and not message.future.done():
                message.future.set_result(result)

    def _is_current(self, session_id: Optional[str]) -> bool:
        session = self._session
        return session is not None and session.session_id == session_id and session.is_active

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _spawn_detached(self, coro) -> None:
        """Run work that must outlive the session, such as transcript callbacks."""
        task = asyncio.create_task(coro)
        self._detached.add(task)
        task.add_done_callback(self._on_detached_done)

    def _on_detached_done(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.warning(f"Background task failed: {task.exception()}")

    # State

    def _set_state(self, new_state: SessionState, reason: Optional[str] = None) -> bool:
        session = self._session
        if session is None:
            return False

        previous = session.state
        if previous == new_state:
            return True
        if not session.transition_to(new_state, reason=reason):
            self.logger.warning(f"Rejected transition {previous.value} -> {new_state.value} in {session.mode.value} mode")
            return False

        self.logger.info(f"Session {session.session_id}: {previous.value} -> {new_state.value}" + (f" ({reason})" if reason else ""))
        if self.metrics_collector:
            self.metrics_collector.record_state_transition(session.mode.value, previous.value, new_state.value)
        self._notify_state(previous, new_state)
        return True

    def _notify_state(self, previous: SessionState, new_state: SessionState) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(previous, new_state)
            except Exception as e:
                self.logger.warning(f"State listener failed: {e}")

        remaining = []
        for states, future in self._state_waiters:
            if future.done():
                continue
            if new_state in states:
                future.set_result(new_state)
            else:
                remaining.append((states, future))
        self._state_waiters = remaining

    def _append(self, entry: TranscriptEntry) -> None:
        self.transcript.append(entry)

    def _warn(self, message: str, kind: EntryKind = EntryKind.TEXT, tool_call_id: Optional[str] = None) -> None:
        self.logger.warning(message)
        self._append(TranscriptEntry.system_warning(message, kind=kind, tool_call_id=tool_call_id))

    # Start / connect

    async def _handle_start(self, message: _Message) -> Any:
        mode: Mode = message.payload

        if self._session is not None:
            if self._session.state == SessionState.ERROR:
                raise SessionStateError("Acknowledge the last error before starting a new session", code="error_unacknowledged")
            raise AlreadyActiveError(f"A {self._session.mode.value} session is already active", code="already_active")

        snapshot = self.config.snapshot()
        tools: List[ToolSpec] = []

        if mode == Mode.REALTIME:
            if self.backend is None:
                raise ConfigurationError("Realtime mode requires a realtime backend")
            build = ToolRegistry.build(self._session_local_tools(snapshot), snapshot.mcp_servers)
            if build.errors:
                raise build.errors[0]
            tools = build.tools
        elif self.transcription_service is None:
            raise ConfigurationError(f"{mode.value} mode requires a transcription service")

        session = Session(mode=mode, tool_names=[tool.name for tool in tools])
        self._session = session
        self._snapshot = snapshot
        self._tools = {tool.name: tool for tool in tools}
        self._start_future = message.future
        self._last_error = None
        self.dispatcher.approval_timeout = snapshot.session.approval_timeout
        if mode == Mode.TRANSCRIBE_ONLY and snapshot.transcription.enhance_prompt and self.chat_service is not None:
            self._enhancer = PromptEnhancer(
                self.chat_service,
                model=snapshot.transcription.enhancer_model,
                max_tokens=snapshot.transcription.enhancer_max_tokens,
                temperature=snapshot.transcription.enhancer_temperature,
            )

        if self.metrics_collector:
            self.metrics_collector.record_session_started(mode.value)
            self._timer = SessionTimer(self.metrics_collector, mode.value)
        self.audit_logger.log_session_event("started", session.session_id, mode.value, SessionState.CONNECTING.value, "success",
                                            metadata={"tools": session.tool_names})

        self._set_state(SessionState.CONNECTING, reason="start")
        self._spawn(self._connect(session.session_id, mode, snapshot, tools), name=f"connect-{session.session_id}")
        return _DEFERRED

    def _session_local_tools(self, snapshot: CodeWhisperConfig) -> List[ToolSpec]:
        """Local tool specs for one session, with approval policies taken from its snapshot."""
        tools = []
        for spec in self.dispatcher.local_tools:
            if spec.name == SCREENSHOT_TOOL_NAME:
                if not snapshot.tools.screenshot_enabled:
                    continue
                spec = screenshot_tool_spec(snapshot.tools.screenshot_approval)
            elif spec.name == EXTERNAL_TASK_TOOL_NAME:
                if not snapshot.tools.external_task_enabled:
                    continue
                spec = external_task_tool_spec(snapshot.tools.external_task_approval)
            tools.append(spec)
        return tools

    async def _connect(self, session_id: str, mode: Mode, snapshot: CodeWhisperConfig, tools: List[ToolSpec]) -> None:
        connection: Optional[RealtimeConnection] = None
        try:
            with session_span(session_id, "connect", mode.value):
                if mode == Mode.REALTIME:
                    configuration = build_session_configuration(snapshot, self.dispatcher.descriptors(tools))
                    connection = await asyncio.wait_for(
                        self.backend.connect(configuration), timeout=snapshot.session.connect_timeout
                    )
                await self.audio.start(streaming=mode == Mode.REALTIME, level_observer=self.level_observer)
        except asyncio.CancelledError:
            if connection is not None:
                await self._close_quietly(connection)
            raise
        except asyncio.TimeoutError:
            self._post("connect_failed", session_id, BackendConnectionError(
                f"Timed out connecting after {snapshot.session.connect_timeout}s", code="connect_timeout"
            ))
        except VoiceSessionError as e:
            if connection is not None:
                await self._close_quietly(connection)
            self._post("connect_failed", session_id, e)
        except Exception as e:
            if connection is not None:
                await self._close_quietly(connection)
            self._post("connect_failed", session_id, BackendConnectionError(f"Failed to start session: {e}"))
        else:
            self._post("connected", session_id, connection)

    async def _on_connected(self, message: _Message) -> None:
        session = self._session
        self._connection = message.payload

        if session.mode == Mode.REALTIME:
            self._spawn(self._read_events(session.session_id, self._connection), name=f"events-{session.session_id}")
            self._spawn(self._pump_audio(session.session_id, self._connection), name=f"mic-{session.session_id}")

        self._set_state(SessionState.RECORDING, reason="connected")
        self.audit_logger.log_session_event("connected", session.session_id, session.mode.value, session.state.value, "success")
        self._resolve_start(result=session.session_id)

    async def _on_connect_failed(self, message: _Message) -> None:
        error: VoiceSessionError = message.payload
        if error.fatal:
            await self._fail(error)
            return

        self._warn(f"Could not start session: {error.message}")
        if self.metrics_collector:
            self.metrics_collector.record_session_error(type(error).__name__, False)
        await self._teardown(outcome="connect_failed")
        self._last_error = error
        self._resolve_start(result=None)

    def _resolve_start(self, result: Any = None, error: Optional[Exception] = None) -> None:
        future, self._start_future = self._start_future, None
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    # Stop / cancel / acknowledge

    async def _handle_stop(self, message: _Message) -> bool:
        session = self._session
        if session is None:
            return False

        if session.mode == Mode.REALTIME:
            if session.state not in (SessionState.RECORDING, SessionState.EXECUTING_TOOL):
                return False
            await self._teardown(outcome="stopped")
            return True

        if session.state != SessionState.RECORDING:
            return False
        self._set_state(SessionState.TRANSCRIBING, reason="stop")
        self._spawn(self._transcribe(session.session_id, self._snapshot), name=f"transcribe-{session.session_id}")
        return True

    async def _handle_cancel(self, message: _Message) -> bool:
        session = self._session
        if session is None:
            return False
        if session.state == SessionState.ERROR:
            return await self._handle_acknowledge(message)

        self.logger.info(f"Cancelling session {session.session_id} in state {session.state.value}")
        await self._teardown(outcome="cancelled")
        self._resolve_start(error=CancellationError("Session start was cancelled", code="cancelled"))
        return True

    async def _handle_acknowledge(self, message: _Message) -> bool:
        session = self._session
        if session is None or session.state != SessionState.ERROR:
            return False
        self._set_state(SessionState.IDLE, reason="acknowledged")
        self._session = None
        return True

    async def _fail(self, error: VoiceSessionError) -> None:
        """Tear the session down into the Error state."""
        session = self._session
        self.logger.error(f"Fatal error in session {session.session_id}: {error.message}")
        if self.metrics_collector:
            self.metrics_collector.record_session_error(type(error).__name__, True)
        await self._teardown(outcome="error", final_state=SessionState.ERROR, error=error)
        self._resolve_start(error=error)

    async def _teardown(self, outcome: str, final_state: SessionState = SessionState.IDLE,
                        error: Optional[VoiceSessionError] = None) -> None:
        """Release every session resource within the grace period."""
        session = self._session
        grace = self._snapshot.session.cancel_grace_period if self._snapshot else self.config.session.cancel_grace_period
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace

        def remaining() -> float:
            return max(deadline - loop.time(), 0.01)

        self._active_call = None
        for call in self._tool_queue:
            call.transition_status(ToolCallStatus.CANCELLED)
        self._tool_queue = []

        await self.dispatcher.cancel_all(remaining())

        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=remaining())
            if still_running:
                self.logger.warning(f"{len(still_running)} session task(s) still running after {grace}s grace period")

        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await asyncio.wait_for(connection.close(), timeout=remaining())
            except Exception as e:
                self.logger.warning(f"Error closing backend connection: {e}")

        try:
            await asyncio.wait_for(self.audio.release(), timeout=remaining())
        except Exception as e:
            self.logger.warning(f"Error releasing audio device: {e}")

        self.dispatcher.reset()
        self._last_session_transcript = list(self.transcript.clear())

        if self._timer is not None:
            self._timer.finish(outcome)

        session.last_error = error
        self._set_state(final_state, reason=outcome)
        self.audit_logger.log_session_event(
            "ended", session.session_id, session.mode.value, session.state.value, outcome,
            metadata={"error": error.to_dict()} if error else None
        )

        start_future = self._start_future
        self._reset_session_fields()
        self._start_future = start_future
        if final_state == SessionState.ERROR:
            self._session = session
            self._last_error = error

    # Mute / text input

    async def _handle_mute(self, message: _Message) -> bool:
        session = self._session
        if session is None or session.state not in (SessionState.RECORDING, SessionState.EXECUTING_TOOL):
            return False
        session.muted = bool(message.payload)
        self._apply_mute()
        self.logger.info(f"Microphone {'muted' if session.muted else 'unmuted'}")
        return True

    def _apply_mute(self) -> None:
        effective = bool(self._session and (self._session.muted or self._tool_muted))
        try:
            self.audio.set_muted(effective)
        except Exception as e:
            self.logger.warning(f"Failed to update microphone mute: {e}")

    @property
    def _input_muted(self) -> bool:
        return bool(self._session and (self._session.muted or self._tool_muted))

    async def _handle_send_text(self, message: _Message) -> bool:
        session = self._session
        text = (message.payload or "").strip()
        if session is None or session.mode != Mode.REALTIME or not text:
            return False
        if session.state not in (SessionState.RECORDING, SessionState.EXECUTING_TOOL):
            return False

        self._append(TranscriptEntry.user(text))
        sent = await self._send({
            "type": "conversation.item.create",
            "item": {"type": "message", "role": "user", "content": [{"type": "input_text", "text": text}]},
        })
        if sent:
            await self._send({"type": "response.create"})
        return sent

    # Transcribe modes

    async def _transcribe(self, session_id: str, snapshot: CodeWhisperConfig) -> None:
        try:
            with session_span(session_id, "transcribe", self._session.mode.value if self._session else None):
                audio_bytes = await self.audio.stop()
                if not audio_bytes:
                    self._post("transcribed", session_id, TranscriptionResult(text=""))
                    return
                result = await self.transcription_service.transcribe(
                    audio_bytes, filename=snapshot.transcription.filename, model=snapshot.transcription.model
                )
                if self._enhancer is not None and result.text.strip():
                    result = TranscriptionResult(text=await self._enhancer.enhance(result.text), language=result.language)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post("transcription_failed", session_id, e)
        else:
            self._post("transcribed", session_id, result)

    async def _on_transcribed(self, message: _Message) -> None:
        session = self._session
        if session.state != SessionState.TRANSCRIBING:
            return

        text = (message.payload.text or "").strip()
        if not text:
            self.logger.info("Transcription was empty")
            await self._teardown(outcome="empty")
            return

        self._append(TranscriptEntry.user(text))
        self._deliver_transcript(text)

        if session.mode == Mode.TRANSCRIBE_ONLY:
            await self._teardown(outcome="completed")
            return

        self._set_state(SessionState.AWAITING_REPLY, reason="transcribed")
        if self._snapshot.speech.auto_reply and self.chat_service is not None:
            self._spawn(self._auto_reply(session.session_id, text, self._snapshot), name=f"reply-{session.session_id}")

    def _deliver_transcript(self, text: str) -> None:
        if self.on_transcript is None:
            return
        try:
            result = self.on_transcript(text)
            if asyncio.iscoroutine(result):
                self._spawn_detached(result)
        except Exception as e:
            self.logger.warning(f"Transcript callback failed: {e}")

    async def _on_transcription_failed(self, message: _Message) -> None:
        error = message.payload
        if isinstance(error, VoiceSessionError) and error.fatal:
            await self._fail(error)
            return
        self._warn(f"Transcription failed: {error}")
        await self._teardown(outcome="transcription_failed")

    async def _auto_reply(self, session_id: str, text: str, snapshot: CodeWhisperConfig) -> None:
        speech = snapshot.speech
        try:
            reply = await self.chat_service.complete(
                [ChatMessage(role="system", content=speech.system_prompt), ChatMessage(role="user", content=text)],
                model=speech.chat_model,
                max_tokens=speech.max_tokens,
                temperature=speech.temperature,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post("auto_reply_failed", session_id, e)
            return
        self._post("reply", session_id, (str(uuid4()), reply))

    async def _on_auto_reply_failed(self, message: _Message) -> None:
        error = message.payload
        if isinstance(error, VoiceSessionError) and error.fatal:
            await self._fail(error)
            return
        self._warn(f"Could not generate a reply: {error}")

    async def _handle_reply(self, message: _Message) -> bool:
        session = self._session
        reply_id, text = message.payload
        if session is None or session.mode != Mode.TRANSCRIBE_AND_SPEAK:
            return False
        if session.state != SessionState.AWAITING_REPLY:
            return False
        if not session.mark_reply_handled(reply_id):
            self.logger.info(f"Ignoring duplicate reply {reply_id}")
            return False

        self._append(TranscriptEntry.assistant(text))
        self._set_state(SessionState.SPEAKING, reason="reply")
        self._spawn(self._speak(session.session_id, text, self._snapshot.speech.delay_after_completion),
                    name=f"speak-{session.session_id}")
        return True

    async def _speak(self, session_id: str, text: str, delay: float) -> None:
        try:
            await self.audio.speak(text)
            if delay:
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post("playback_done", session_id, e)
        else:
            self._post("playback_done", session_id, None)

    async def _on_playback_done(self, message: _Message) -> None:
        if self._session.state != SessionState.SPEAKING:
            return
        if message.payload is not None:
            self._warn(f"Playback failed: {message.payload}")
        await self._teardown(outcome="completed")

    # Realtime transport

    async def _read_events(self, session_id: str, connection: RealtimeConnection) -> None:
        try:
            async for event in connection.events():
                self._post("backend_event", session_id, event)
        except asyncio.CancelledError:
            raise
        except VoiceSessionError as e:
            self._post("connection_lost", session_id, e)
        except Exception as e:
            self._post("connection_lost", session_id, ConnectionLostError(f"Backend connection failed: {e}"))
        else:
            self._post("connection_lost", session_id, ConnectionLostError("Backend closed the connection"))

    async def _pump_audio(self, session_id: str, connection: RealtimeConnection) -> None:
        send_failed = False
        try:
            async for chunk in self.audio.chunks():
                if not self._is_current(session_id):
                    break
                if self._input_muted or not chunk:
                    continue
                try:
                    await connection.send({"type": "input_audio_buffer.append", "audio": base64.b64encode(chunk).decode("ascii")})
                    send_failed = False
                except VoiceSessionError as e:
                    if not send_failed:
                        self._post("audio_dropped", session_id, e)
                    send_failed = True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Microphone stream stopped: {e}", exc_info=True)

    async def _send(self, event: Dict[str, Any]) -> bool:
        if self._connection is None:
            return False
        try:
            await asyncio.wait_for(self._connection.send(event), timeout=self._snapshot.session.send_timeout)
        except asyncio.TimeoutError:
            self._warn(f"Timed out sending {event.get('type')} to the backend")
            return False
        except VoiceSessionError as e:
            self._warn(f"Failed to send {event.get('type')} to the backend: {e.message}")
            return False
        return True

    async def _on_audio_dropped(self, message: _Message) -> None:
        error: VoiceSessionError = message.payload
        self._warn(f"Dropped microphone audio: {error.message}")

    async def _on_connection_lost(self, message: _Message) -> None:
        error: VoiceSessionError = message.payload
        if not error.fatal:
            error = ConnectionLostError(error.message, code=error.code)
        await self._fail(error)

    async def _on_backend_event(self, message: _Message) -> None:
        event: Dict[str, Any] = message.payload
        event_type = event.get("type", "")

        if event_type == "session.updated":
            if not self._session_configured:
                self._session_configured = True
                if self._snapshot.realtime.assistant_speaks_first:
                    await self._send({"type": "response.create"})

        elif event_type == "response.created":
            self.logger.debug(f"Response {(event.get('response') or {}).get('id')} started")

        elif event_type == "input_audio_buffer.speech_started":
            self.audio.interrupt_playback()

        elif event_type in ("response.audio.delta", "response.output_audio.delta"):
            delta = event.get("delta")
            if delta:
                self.audio.play(base64.b64decode(delta))

        elif event_type == "conversation.item.input_audio_transcription.completed":
            text = (event.get("transcript") or "").strip()
            if text:
                self._append(TranscriptEntry.user(text))

        elif event_type in ("response.audio_transcript.done", "response.output_audio_transcript.done"):
            text = (event.get("transcript") or "").strip()
            if text:
                self._append(TranscriptEntry.assistant(text))

        elif event_type == "response.function_call_arguments.done":
            self._on_function_call(event)

        elif event_type == "response.done":
            error = ((event.get("response") or {}).get("status_details") or {}).get("error")
            if error:
                await self._on_backend_error(error)

        elif event_type == "error":
            await self._on_backend_error(event.get("error") or {})

        else:
            item = event.get("item") or {}
            if item.get("type") == "mcp_approval_request":
                self._on_mcp_approval_request(item)
                return
            entry = self.dispatcher.remote_event_entry(event)
            if entry is not None:
                self._append(entry)

    async def _on_backend_error(self, error: Dict[str, Any]) -> None:
        code = error.get("code")
        text = error.get("message") or code or "unknown error"
        if code in FATAL_ERROR_CODES:
            await self._fail(AuthError(text, code=code))
            return
        self._warn(f"Backend error: {text}")

    # Tool calls

    def _on_function_call(self, event: Dict[str, Any]) -> None:
        call_id = event.get("call_id")
        name = event.get("name")
        if not call_id or not name:
            self.logger.warning(f"Ignoring function call without id or name: {event}")
            return
        if self.dispatcher.get_call(call_id) is not None or any(call.call_id == call_id for call in self._tool_queue) \
                or (self._active_call is not None and self._active_call.call_id == call_id):
            self.logger.info(f"Ignoring duplicate tool call {call_id}")
            return

        call = ToolCall.from_backend(call_id, name, event.get("arguments"), session_id=self._session.session_id)
        if self._active_call is None:
            self._start_tool(call)
        else:
            self.logger.info(f"Queueing tool call {call_id} ({name}) behind {self._active_call.call_id}")
            self._tool_queue.append(call)

    def _start_tool(self, call: ToolCall) -> None:
        session_id = self._session.session_id
        self._active_call = call
        context = ToolContext(
            session_id=session_id,
            report_progress=lambda text: self._post("tool_progress", session_id, (call.call_id, text)),
            last_screenshot=self._last_screenshot,
            on_started=lambda started: self._post("tool_started", session_id, started.call_id),
        )
        self._spawn(self._run_tool(session_id, call, self._tools.get(call.name), context), name=f"tool-{call.call_id}")

    async def _run_tool(self, session_id: str, call: ToolCall, spec: Optional[ToolSpec], context: ToolContext) -> None:
        try:
            await self.dispatcher.invoke(call, spec, context)
        except ToolExecutionError as e:
            self.logger.warning(f"Tool call {call.call_id} rejected: {e.message}")
        finally:
            self._post("tool_resolved", session_id, call)

    async def _on_tool_started(self, message: _Message) -> None:
        # The call may already be terminal; its tool_resolved is still queued behind this message.
        call = self._active_call
        if call is None or call.call_id != message.payload or call.status == ToolCallStatus.CANCELLED:
            return

        self._set_state(SessionState.EXECUTING_TOOL, reason=f"executing {call.name}")
        if self._snapshot.session.mute_during_tool_execution:
            self._tool_muted = True
            self._apply_mute()
        self._append(TranscriptEntry.tool_event(EntryKind.TOOL_START, f"Running {call.name}", tool_call_id=call.call_id))

    async def _on_tool_progress(self, message: _Message) -> None:
        call_id, text = message.payload
        call = self._active_call
        if call is None or call.call_id != call_id or call.status == ToolCallStatus.CANCELLED:
            return
        self._append(TranscriptEntry.tool_event(EntryKind.TOOL_PROGRESS, truncate(text, 200), tool_call_id=call_id))

    async def _on_tool_resolved(self, message: _Message) -> None:
        call: ToolCall = message.payload
        if self._active_call is None or self._active_call.call_id != call.call_id:
            return

        self._record_tool_outcome(call)
        await self._send({
            "type": "conversation.item.create",
            "item": {"type": "function_call_output", "call_id": call.call_id, "output": call.result_text()},
        })

        image = call.outcome.image_png if call.status == ToolCallStatus.SUCCEEDED and call.outcome else None
        if image:
            self._last_screenshot = image
            await self._send({
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [
                        {"type": "input_image", "image_url": "data:image/png;base64," + base64.b64encode(image).decode("ascii")},
                        {"type": "input_text", "text": SCREENSHOT_FOLLOWUP_PROMPT},
                    ],
                },
            })
        await self._send({"type": "response.create"})

        self._active_call = None
        if self._tool_muted:
            self._tool_muted = False
            self._apply_mute()
        if self._session.state == SessionState.EXECUTING_TOOL:
            self._set_state(SessionState.RECORDING, reason=f"{call.name} {call.status.value}")

        if self._tool_queue:
            self._start_tool(self._tool_queue.pop(0))

    def _record_tool_outcome(self, call: ToolCall) -> None:
        if call.status == ToolCallStatus.SUCCEEDED:
            outcome = call.outcome
            summary = (outcome.summary or outcome.output) if outcome else f"{call.name} completed"
            self._append(TranscriptEntry.tool_event(
                EntryKind.TOOL_RESULT, summary or f"{call.name} completed",
                tool_call_id=call.call_id, attached_image=outcome.image_png if outcome else None
            ))
        elif call.status == ToolCallStatus.DENIED:
            self._append(TranscriptEntry(role=Role.SYSTEM, content=f"{call.name} was not approved", tool_call_id=call.call_id))
        elif call.status == ToolCallStatus.CANCELLED:
            self._append(TranscriptEntry.tool_event(EntryKind.TOOL_ERROR, TOOL_INTERRUPTED_MESSAGE, tool_call_id=call.call_id))
        else:
            self._append(TranscriptEntry.tool_event(
                EntryKind.TOOL_ERROR, f"{call.name} failed: {call.error or 'unknown error'}", tool_call_id=call.call_id
            ))

    async def _handle_cancel_tool_call(self, message: _Message) -> bool:
        if self._session is None or self._session.mode != Mode.REALTIME:
            return False
        return await self.dispatcher.cancel(message.payload)

    def _on_mcp_approval_request(self, item: Dict[str, Any]) -> None:
        request_id = item.get("id")
        if not request_id or request_id in self._seen_approval_requests:
            return
        self._seen_approval_requests.add(request_id)

        session_id = self._session.session_id
        tools = list(self._tools.values())

        async def review() -> None:
            approved = await self.dispatcher.review_mcp_approval(item, tools, session_id=session_id)
            self._post("mcp_approval", session_id, (request_id, item, approved))

        self._spawn(review(), name=f"mcp-approval-{request_id}")

    async def _on_mcp_approval(self, message: _Message) -> None:
        request_id, item, approved = message.payload
        label = item.get("name") or item.get("server_label") or "MCP tool"
        if not approved:
            self._append(TranscriptEntry(role=Role.SYSTEM, content=f"{label} was not approved", tool_call_id=request_id))
        await self._send({
            "type": "conversation.item.create",
            "item": {"type": "mcp_approval_response", "approval_request_id": request_id, "approve": approved},
        })

    @staticmethod
    async def _close_quietly(connection: Optional[RealtimeConnection]) -> None:
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"Error closing stale backend connection: {e}")
