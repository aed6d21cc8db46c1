"""Built-in local function tools: screenshot capture and external coding tasks."""

import logging
from typing import Optional

from codewhisper.lib.errors import ToolExecutionError
from codewhisper.models.tool_call import ToolCall, ToolOutcome
from codewhisper.models.tool_spec import ApprovalPolicy, ToolSpec
from codewhisper.services.interfaces.local_tool_handler import LocalToolHandler, ToolContext
from codewhisper.services.interfaces.screenshot_capture import ScreenshotCapture
from codewhisper.services.interfaces.task_executor import ImageData, TaskContext, TaskExecutor
from codewhisper.services.tool_registry import external_task_tool_spec, screenshot_tool_spec


logger = logging.getLogger(__name__)

SCREENSHOT_FOLLOWUP_PROMPT = (
    "I've captured a screenshot as requested. Please analyze what's visible and "
    "help me with whatever I'm working on."
)


def truncate(text: str, max_chars: int = 80) -> str:
    if len(text) > max_chars:
        return text[:max_chars] + "..."
    return text


class ScreenshotToolHandler(LocalToolHandler):
    """Runs take_screenshot through the screenshot capture collaborator."""

    def __init__(self, capture: ScreenshotCapture, approval_policy: Optional[ApprovalPolicy] = None):
        self.capture = capture
        self._spec = screenshot_tool_spec(approval_policy)

    @property
    def spec(self) -> ToolSpec:
        return self._spec

    async def run(self, call: ToolCall, context: ToolContext) -> ToolOutcome:
        capture_type = call.arguments.get("capture_type", "full_screen")
        app_name = call.arguments.get("app_name")
        window_title = call.arguments.get("window_title")

        if capture_type not in ("full_screen", "window"):
            raise ToolExecutionError(f"Unsupported capture_type: {capture_type}", tool_name=call.name)

        try:
            if capture_type == "window":
                context.report_progress(f"Capturing window {app_name or window_title or '(frontmost)'}")
                image = await self.capture.capture_window(app_name=app_name, window_title=window_title)
                target = f"the {app_name or window_title or 'frontmost'} window"
            else:
                context.report_progress("Capturing full screen")
                image = await self.capture.capture_full_screen()
                target = "the full screen"
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(f"Screenshot capture failed: {e}", tool_name=call.name) from e

        if not image:
            raise ToolExecutionError("Screenshot capture returned no image", tool_name=call.name)

        logger.info(f"Captured screenshot of {target} ({len(image)} bytes)")
        return ToolOutcome(
            output=f"Screenshot of {target} captured and attached to the conversation.",
            summary=f"Captured screenshot of {target}",
            image_png=image,
            metadata={"capture_type": capture_type, "size_bytes": len(image)},
        )


class ExternalTaskToolHandler(LocalToolHandler):
    """Runs execute_external_task on the task executor collaborator.

    The most recent screenshot of the session, if any, goes along as
    image context.
    """

    def __init__(self, executor: TaskExecutor, approval_policy: Optional[ApprovalPolicy] = None):
        self.executor = executor
        self._spec = external_task_tool_spec(approval_policy)

    @property
    def spec(self) -> ToolSpec:
        return self._spec

    async def run(self, call: ToolCall, context: ToolContext) -> ToolOutcome:
        task = call.arguments.get("task")
        if not isinstance(task, str) or not task.strip():
            raise ToolExecutionError("Missing required argument: task", tool_name=call.name)

        task_context = TaskContext()
        if context.last_screenshot:
            task_context.images.append(ImageData(data=context.last_screenshot, media_type="image/png"))

        context.report_progress(f"Starting task: {truncate(task.strip(), 60)}")

        try:
            result = await self.executor.execute(task.strip(), task_context, on_progress=context.report_progress)
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(f"Task execution failed: {e}", tool_name=call.name) from e

        if not result.success:
            raise ToolExecutionError(result.content or "Task execution failed", tool_name=call.name)

        return ToolOutcome(
            output=result.content or "Task completed.",
            summary=truncate(result.content or "Task completed", 200),
            metadata=result.metadata,
        )

    async def cancel(self) -> None:
        await self.executor.cancel()
