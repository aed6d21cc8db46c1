"""Tool dispatcher routing backend tool calls to their executors."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from codewhisper.lib.errors import ToolExecutionError
from codewhisper.lib.logging_config import AuditLogger
from codewhisper.lib.metrics import MetricsCollector
from codewhisper.lib.observability import tool_call_span
from codewhisper.models.realtime_config import FunctionToolDescriptor, MCPToolDescriptor, ToolDescriptor
from codewhisper.models.tool_call import ToolCall, ToolCallStatus, ToolOutcome
from codewhisper.models.tool_spec import ToolKind, ToolSpec
from codewhisper.models.transcript import EntryKind, TranscriptEntry
from codewhisper.services.approval_gate import ApprovalDecision, ApprovalGate
from codewhisper.services.interfaces.approval_prompter import ApprovalPrompter
from codewhisper.services.interfaces.local_tool_handler import LocalToolHandler, ToolContext


logger = logging.getLogger(__name__)


class ToolDispatcher:
    """
    Routes tool calls to local handlers and reports remote MCP activity.

    Local calls go through the approval gate, then run on the registered
    handler. MCP tools are only declared to the backend; the backend calls
    them itself and the dispatcher turns its progress events into
    transcript entries.
    """

    def __init__(
        self,
        handlers: Optional[List[LocalToolHandler]] = None,
        approval_gate: Optional[ApprovalGate] = None,
        approval_prompter: Optional[ApprovalPrompter] = None,
        approval_timeout: float = 30.0,
        audit_logger: Optional[AuditLogger] = None,
        metrics_collector: Optional[MetricsCollector] = None
    ):
        self.approval_gate = approval_gate or ApprovalGate()
        self.approval_prompter = approval_prompter
        self.approval_timeout = approval_timeout
        self.audit_logger = audit_logger or AuditLogger()
        self.metrics_collector = metrics_collector
        self.logger = logger

        self._handlers: Dict[str, LocalToolHandler] = {}
        for handler in handlers or []:
            self.register_handler(handler)

        self._calls: Dict[str, ToolCall] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._remote_items: Dict[str, str] = {}
        self._remote_finished: set = set()

    def register_handler(self, handler: LocalToolHandler) -> None:
        """Register the handler for a local function tool."""
        self._handlers[handler.spec.name] = handler

    @property
    def local_tools(self) -> List[ToolSpec]:
        """Specs of the registered local tools, in registration order."""
        return [handler.spec for handler in self._handlers.values()]

    def get_call(self, call_id: str) -> Optional[ToolCall]:
        return self._calls.get(call_id)

    def calls(self) -> List[ToolCall]:
        return list(self._calls.values())

    def executing_calls(self) -> List[ToolCall]:
        return [call for call in self._calls.values() if call.status == ToolCallStatus.EXECUTING]

    # Session setup

    def descriptors(self, tools: List[ToolSpec]) -> List[ToolDescriptor]:
        """Build the wire descriptors for a session's tool set."""
        descriptors: List[ToolDescriptor] = []
        for spec in tools:
            if spec.kind == ToolKind.LOCAL_FUNCTION:
                descriptors.append(FunctionToolDescriptor(
                    name=spec.name,
                    description=spec.description,
                    parameters=spec.parameters_schema,
                ))
            else:
                descriptors.append(MCPToolDescriptor(
                    server_label=spec.name,
                    server_url=spec.endpoint,
                    authorization=spec.auth_token,
                    require_approval=spec.approval_policy.wire_value,
                ))
        return descriptors

    # Local calls

    async def invoke(self, call: ToolCall, spec: Optional[ToolSpec], context: ToolContext) -> ToolCall:
        """Run a tool call through approval and execution.

        Args:
            call: Pending call issued by the backend
            spec: Spec of the named tool from the session's tool set, None if unknown
            context: Progress callback and session context for the handler

        Returns:
            The same call, in a terminal status

        Raises:
            ToolExecutionError: A call with the same id is already in flight
        """
        existing = self._calls.get(call.call_id)
        if existing is not None and not existing.is_terminal:
            raise ToolExecutionError(f"Tool call {call.call_id} is already in flight", tool_name=call.name)

        self._calls[call.call_id] = call
        current = asyncio.current_task()
        if current is not None:
            self._tasks[call.call_id] = current

        try:
            handler = self._handlers.get(call.name)
            if spec is None or spec.kind != ToolKind.LOCAL_FUNCTION or handler is None:
                self._resolve(call, ToolCallStatus.FAILED, error=f"Unknown tool: {call.name}")
                return call
            if "_raw" in call.arguments:
                self._resolve(call, ToolCallStatus.FAILED, error="Tool arguments were not valid JSON")
                return call

            if not await self._approve(call, spec):
                return call

            if not call.transition_status(ToolCallStatus.EXECUTING):
                return call
            self.audit_logger.log_tool_event("started", call.name, call.call_id, call.status.value, session_id=call.session_id)
            context.notify_started(call)

            try:
                with tool_call_span(call.name, call.call_id, call.session_id):
                    outcome = await handler.run(call, context)
            except ToolExecutionError as e:
                self._resolve(call, ToolCallStatus.FAILED, error=e.message)
            except asyncio.CancelledError:
                self._resolve(call, ToolCallStatus.CANCELLED)
                raise
            except Exception as e:
                self.logger.error(f"Tool {call.name} raised unexpectedly: {e}", exc_info=True)
                self._resolve(call, ToolCallStatus.FAILED, error=str(e) or type(e).__name__)
            else:
                if call.status == ToolCallStatus.EXECUTING:
                    call.outcome = outcome if isinstance(outcome, ToolOutcome) else ToolOutcome(output=str(outcome))
                self._resolve(call, ToolCallStatus.SUCCEEDED)

            return call

        except asyncio.CancelledError:
            self._resolve(call, ToolCallStatus.CANCELLED)
            raise
        finally:
            self._tasks.pop(call.call_id, None)

    async def _approve(self, call: ToolCall, spec: ToolSpec) -> bool:
        """Apply the approval gate, prompting the user when required."""
        decision = self.approval_gate.decide(call.name, spec.approval_policy, call.arguments)
        reason = "policy"

        if decision == ApprovalDecision.REQUIRES_PROMPT:
            approved, reason = await self.prompt(call)
            decision = ApprovalDecision.APPROVED if approved else ApprovalDecision.DENIED

        self.audit_logger.log_approval_event(
            call.name, call.call_id, spec.approval_policy.mode.value, decision.value,
            session_id=call.session_id, reason=reason
        )
        if self.metrics_collector:
            self.metrics_collector.record_approval_decision(call.name, spec.approval_policy.mode.value, decision.value)

        if decision == ApprovalDecision.APPROVED:
            return call.transition_status(ToolCallStatus.APPROVED)

        self._resolve(call, ToolCallStatus.DENIED)
        return False

    async def prompt(self, call: ToolCall) -> Tuple[bool, str]:
        """Ask the approval prompter about a call.

        Returns:
            (approved, reason); timeouts, dismissals and prompter errors deny
        """
        if self.approval_prompter is None:
            return False, "no approval prompter configured"

        try:
            approved = await asyncio.wait_for(self.approval_prompter.confirm(call), timeout=self.approval_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Approval prompt for {call.name} timed out after {self.approval_timeout}s")
            return False, "timeout"
        except Exception as e:
            self.logger.warning(f"Approval prompt for {call.name} failed: {e}")
            return False, "prompt error"

        return bool(approved), "user approved" if approved else "user denied"

    def _resolve(self, call: ToolCall, status: ToolCallStatus, error: Optional[str] = None) -> bool:
        """Move a call to a terminal status and record it."""
        if not call.transition_status(status, error=error):
            return False

        if status == ToolCallStatus.FAILED:
            self.logger.warning(f"Tool call {call.call_id} ({call.name}) failed: {error}")
        else:
            self.logger.info(f"Tool call {call.call_id} ({call.name}) {status.value}")

        self.audit_logger.log_tool_event(
            "resolved", call.name, call.call_id, status.value,
            session_id=call.session_id, execution_time_ms=call.duration_ms(), error=call.error
        )
        if self.metrics_collector:
            self.metrics_collector.record_tool_call(call.name, status.value, call.duration_ms())
        return True

    async def cancel(self, call_id: str) -> bool:
        """Cancel an executing call.

        Calls that are not executing are left alone.

        Returns:
            True if the call was executing and is now cancelled
        """
        call = self._calls.get(call_id)
        if call is None or call.status != ToolCallStatus.EXECUTING:
            return False

        self._resolve(call, ToolCallStatus.CANCELLED)
        await self._signal_cancel(call)
        return True

    async def cancel_all(self, grace_period: float) -> List[ToolCall]:
        """Cancel every non-terminal call and wait at most grace_period for them to stop.

        Handler cancel hooks and the running tasks share one deadline.

        Returns:
            The calls that were cancelled
        """
        cancelled = []
        for call in list(self._calls.values()):
            if call.is_terminal:
                continue
            self._resolve(call, ToolCallStatus.CANCELLED)
            cancelled.append(call)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace_period

        def remaining() -> float:
            return max(deadline - loop.time(), 0.01)

        for call in cancelled:
            await self._signal_cancel(call, remaining())

        pending = [task for task in self._tasks.values() if task is not asyncio.current_task() and not task.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=remaining())
            if still_running:
                self.logger.warning(f"{len(still_running)} tool task(s) ignored cancellation within {grace_period}s")

        return cancelled

    async def _signal_cancel(self, call: ToolCall, grace_period: float = 1.0) -> None:
        handler = self._handlers.get(call.name)
        if handler is not None:
            try:
                await asyncio.wait_for(handler.cancel(), timeout=grace_period)
            except asyncio.TimeoutError:
                self.logger.warning(f"Handler for {call.name} did not acknowledge cancellation")
            except Exception as e:
                self.logger.warning(f"Handler for {call.name} failed to cancel: {e}")

        task = self._tasks.get(call.call_id)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def reset(self) -> None:
        """Forget all calls of the finished session."""
        self._calls.clear()
        self._tasks.clear()
        self._remote_items.clear()
        self._remote_finished.clear()

    # Remote MCP calls

    async def review_mcp_approval(self, request: Dict[str, Any], tools: List[ToolSpec], session_id: Optional[str] = None) -> bool:
        """Answer a backend approval request for an MCP tool call.

        The backend asks whenever the server was declared with
        require_approval "always"; filtered policies are evaluated here
        against the MCP tool name.
        """
        server_label = request.get("server_label", "")
        tool_name = request.get("name", "")
        spec = next((tool for tool in tools if tool.is_remote and tool.name == server_label), None)

        call = ToolCall.from_backend(
            request.get("id") or f"{server_label}:{tool_name}",
            tool_name or server_label or "mcp_tool",
            request.get("arguments"),
            session_id=session_id,
        )

        if spec is None:
            decision, reason = ApprovalDecision.DENIED, "unknown MCP server"
        else:
            decision = self.approval_gate.decide(call.name, spec.approval_policy, call.arguments)
            reason = "policy"
            if decision == ApprovalDecision.REQUIRES_PROMPT:
                approved, reason = await self.prompt(call)
                decision = ApprovalDecision.APPROVED if approved else ApprovalDecision.DENIED

        policy = spec.approval_policy.mode.value if spec else "unknown"
        self.audit_logger.log_approval_event(call.name, call.call_id, policy, decision.value, session_id=session_id, reason=reason)
        if self.metrics_collector:
            self.metrics_collector.record_approval_decision(call.name, policy, decision.value)

        return decision == ApprovalDecision.APPROVED

    def remote_event_entry(self, event: Dict[str, Any]) -> Optional[TranscriptEntry]:
        """Translate a backend MCP event into a transcript entry, if it warrants one."""
        event_type = event.get("type", "")
        item = event.get("item") or {}

        if event_type == "response.output_item.added" and item.get("type") == "mcp_call":
            label = self._remote_label(item)
            self._remote_items[item.get("id", "")] = label
            return TranscriptEntry.tool_event(EntryKind.TOOL_START, f"Calling {label}", tool_call_id=item.get("id"))

        if event_type == "response.mcp_call.in_progress":
            item_id = event.get("item_id", "")
            label = self._remote_items.get(item_id, "MCP tool")
            return TranscriptEntry.tool_event(EntryKind.TOOL_PROGRESS, f"Running {label}", tool_call_id=item_id)

        if event_type == "response.output_item.done" and item.get("type") == "mcp_call":
            item_id = item.get("id", "")
            if item_id in self._remote_finished:
                return None
            self._remote_finished.add(item_id)
            label = self._remote_label(item)
            if item.get("error"):
                return TranscriptEntry.tool_event(EntryKind.TOOL_ERROR, f"{label} failed: {self._error_text(item['error'])}", tool_call_id=item_id)
            return TranscriptEntry.tool_event(EntryKind.TOOL_RESULT, f"{label} completed", tool_call_id=item_id)

        if event_type == "response.mcp_call.completed":
            item_id = event.get("item_id", "")
            if item_id in self._remote_finished:
                return None
            self._remote_finished.add(item_id)
            label = self._remote_items.get(item_id, "MCP tool")
            return TranscriptEntry.tool_event(EntryKind.TOOL_RESULT, f"{label} completed", tool_call_id=item_id)

        if event_type == "response.mcp_call.failed":
            item_id = event.get("item_id", "")
            if item_id in self._remote_finished:
                return None
            self._remote_finished.add(item_id)
            label = self._remote_items.get(item_id, "MCP tool")
            return TranscriptEntry.tool_event(EntryKind.TOOL_ERROR, f"{label} failed", tool_call_id=item_id)

        if event_type == "mcp_list_tools.failed":
            return TranscriptEntry.system_warning("Could not list tools from an MCP server", kind=EntryKind.TOOL_ERROR, tool_call_id=event.get("item_id"))

        return None

    @staticmethod
    def _remote_label(item: Dict[str, Any]) -> str:
        server_label = item.get("server_label")
        name = item.get("name")
        if server_label and name:
            return f"{server_label}.{name}"
        return name or server_label or "MCP tool"

    @staticmethod
    def _error_text(error: Any) -> str:
        if isinstance(error, dict):
            return error.get("message") or error.get("type") or "unknown error"
        return str(error)
