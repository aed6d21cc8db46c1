"""
Shared fixtures and fake collaborators for CodeWhisper tests.

Every collaborator interface the orchestrator consumes has an in-memory
fake here, so state machine tests run without audio devices, network
access or subprocesses.
"""

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from codewhisper.lib.config import CodeWhisperConfig, SessionConfig, SpeechConfig, RealtimeConfig
from codewhisper.lib.errors import VoiceSessionError
from codewhisper.models.realtime_config import RealtimeSessionConfiguration
from codewhisper.models.tool_call import ToolCall
from codewhisper.models.tool_spec import ApprovalPolicy
from codewhisper.services.interfaces import (
    ApprovalPrompter,
    AudioPipeline,
    ChatMessage,
    ChatService,
    ScreenshotCapture,
    TaskContext,
    TaskExecutor,
    TaskResult,
    TranscriptionResult,
    TranscriptionService,
)
from codewhisper.services.interfaces.realtime_backend import RealtimeBackend, RealtimeConnection
from codewhisper.services.local_tools import ExternalTaskToolHandler, ScreenshotToolHandler
from codewhisper.services.session_orchestrator import SessionOrchestrator
from codewhisper.services.tool_dispatcher import ToolDispatcher


PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class FakeAudioPipeline(AudioPipeline):
    """Records every call; streams chunks pushed by the test."""

    def __init__(self, recording: bytes = b"RIFF-fake-wav"):
        self.recording = recording
        self.started = False
        self.streaming: Optional[bool] = None
        self.released = False
        self.release_count = 0
        self.stop_count = 0
        self.mute_history: List[bool] = []
        self.played: List[bytes] = []
        self.interrupts = 0
        self.spoken: List[str] = []
        self.speak_gate: Optional[asyncio.Event] = None
        self.start_error: Optional[Exception] = None
        self._chunks: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()

    async def start(self, streaming: bool, level_observer=None) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True
        self.released = False
        self.streaming = streaming
        self._chunks = asyncio.Queue()

    async def chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._chunks.get()
            if chunk is None:
                return
            yield chunk

    def push_chunk(self, chunk: bytes) -> None:
        self._chunks.put_nowait(chunk)

    def drained(self) -> bool:
        """True once every pushed chunk has been taken by the consumer."""
        return self._chunks.empty()

    async def stop(self) -> bytes:
        self.stop_count += 1
        return self.recording

    def set_muted(self, muted: bool) -> None:
        self.mute_history.append(muted)

    @property
    def muted(self) -> bool:
        return bool(self.mute_history and self.mute_history[-1])

    def play(self, audio: bytes) -> None:
        self.played.append(audio)

    def interrupt_playback(self) -> None:
        self.interrupts += 1

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        if self.speak_gate is not None:
            await self.speak_gate.wait()

    async def release(self) -> None:
        self.released = True
        self.release_count += 1
        self._chunks.put_nowait(None)


class FakeTranscriptionService(TranscriptionService):
    def __init__(self, text: str = "hello world"):
        self.text = text
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None

    async def transcribe(self, audio: bytes, filename: str, model: str) -> TranscriptionResult:
        self.calls.append({"audio": audio, "filename": filename, "model": model})
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return TranscriptionResult(text=self.text, language="en")


class FakeChatService(ChatService):
    def __init__(self, reply: str = "Sure, here you go."):
        self.reply = reply
        self.error: Optional[Exception] = None
        self.requests: List[List[ChatMessage]] = []

    async def complete(self, messages: List[ChatMessage], model: str, max_tokens: int, temperature: float) -> str:
        self.requests.append(list(messages))
        if self.error is not None:
            raise self.error
        return self.reply


class FakeScreenshotCapture(ScreenshotCapture):
    def __init__(self, image: bytes = PNG_BYTES):
        self.image = image
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    async def capture_full_screen(self) -> bytes:
        self.calls.append({"capture_type": "full_screen"})
        if self.error is not None:
            raise self.error
        return self.image

    async def capture_window(self, app_name: Optional[str] = None, window_title: Optional[str] = None) -> bytes:
        self.calls.append({"capture_type": "window", "app_name": app_name, "window_title": window_title})
        if self.error is not None:
            raise self.error
        return self.image


class FakeTaskExecutor(TaskExecutor):
    """Runs until released by the test, or returns immediately when not gated."""

    def __init__(self, content: str = "Task done", success: bool = True):
        self.content = content
        self.success = success
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.tasks: List[str] = []
        self.contexts: List[Optional[TaskContext]] = []
        self.cancel_count = 0
        self.progress_lines: List[str] = ["Reading main.py"]

    async def execute(self, task: str, context: Optional[TaskContext] = None, on_progress=None) -> TaskResult:
        self.tasks.append(task)
        self.contexts.append(context)
        self.started.set()
        if on_progress:
            for line in self.progress_lines:
                on_progress(line)
        if self.gate is not None:
            await self.gate.wait()
        return TaskResult(content=self.content, success=self.success)

    async def cancel(self) -> None:
        self.cancel_count += 1


class FakeApprovalPrompter(ApprovalPrompter):
    def __init__(self, answer: bool = True):
        self.answer = answer
        self.calls: List[ToolCall] = []
        self.gate: Optional[asyncio.Event] = None

    async def confirm(self, call: ToolCall) -> bool:
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        return self.answer


class FakeRealtimeConnection(RealtimeConnection):
    """Connection whose server events are pushed by the test."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.send_error: Optional[Exception] = None
        self._incoming: "asyncio.Queue[Any]" = asyncio.Queue()

    async def send(self, event: Dict[str, Any]) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(event)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self._incoming.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    def push(self, event: Dict[str, Any]) -> None:
        self._incoming.put_nowait(event)

    def drop(self, error: Exception) -> None:
        self._incoming.put_nowait(error)

    def end(self) -> None:
        """Server closes the stream cleanly."""
        self._incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def sent_of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [event for event in self.sent if event.get("type") == event_type]

    def sent_items(self, item_type: str) -> List[Dict[str, Any]]:
        return [
            event["item"] for event in self.sent
            if event.get("type") == "conversation.item.create" and event["item"].get("type") == item_type
        ]


class FakeRealtimeBackend(RealtimeBackend):
    def __init__(self):
        self.connection = FakeRealtimeConnection()
        self.configurations: List[RealtimeSessionConfiguration] = []
        self.error: Optional[VoiceSessionError] = None
        self.gate: Optional[asyncio.Event] = None

    async def connect(self, configuration: RealtimeSessionConfiguration) -> RealtimeConnection:
        self.configurations.append(configuration)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.connection


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until it holds, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def function_call_event(name: str, arguments: str = "{}", call_id: str = "call_1") -> Dict[str, Any]:
    return {"type": "response.function_call_arguments.done", "name": name, "arguments": arguments, "call_id": call_id}


@pytest.fixture
def config():
    """Configuration tuned for fast tests."""
    return CodeWhisperConfig(
        realtime=RealtimeConfig(assistant_speaks_first=False),
        speech=SpeechConfig(delay_after_completion=0.0),
        session=SessionConfig(cancel_grace_period=0.5, approval_timeout=1.0, connect_timeout=1.0, send_timeout=1.0),
    )


@pytest.fixture
def audio():
    return FakeAudioPipeline()


@pytest.fixture
def transcription():
    return FakeTranscriptionService()


@pytest.fixture
def chat():
    return FakeChatService()


@pytest.fixture
def screenshot_capture():
    return FakeScreenshotCapture()


@pytest.fixture
def task_executor():
    return FakeTaskExecutor()


@pytest.fixture
def prompter():
    return FakeApprovalPrompter(answer=True)


@pytest.fixture
def backend():
    return FakeRealtimeBackend()


@pytest.fixture
def make_dispatcher(screenshot_capture, task_executor, prompter):
    def factory(
        screenshot_policy: Optional[ApprovalPolicy] = None,
        external_task_policy: Optional[ApprovalPolicy] = None,
        approval_timeout: float = 1.0
    ) -> ToolDispatcher:
        return ToolDispatcher(
            handlers=[
                ScreenshotToolHandler(screenshot_capture, screenshot_policy),
                ExternalTaskToolHandler(task_executor, external_task_policy),
            ],
            approval_prompter=prompter,
            approval_timeout=approval_timeout,
        )
    return factory


@pytest_asyncio.fixture
async def make_orchestrator(config, audio, backend, transcription, make_dispatcher):
    """Factory for orchestrators wired to the fakes; shut down after the test."""
    created: List[SessionOrchestrator] = []

    def factory(dispatcher: Optional[ToolDispatcher] = None, configuration: Optional[CodeWhisperConfig] = None,
                **overrides) -> SessionOrchestrator:
        options = {
            "backend": backend,
            "transcription_service": transcription,
            "dispatcher": dispatcher or make_dispatcher(),
        }
        options.update(overrides)
        orchestrator = SessionOrchestrator(configuration or config, audio, **options)
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.shutdown()
