"""Abstract interface for external task execution (coding agents)."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field


ProgressCallback = Callable[[str], None]


class ImageData(BaseModel):
    """Image passed to the executor as context."""

    data: bytes = Field(..., repr=False, description="Encoded image bytes")
    media_type: str = Field(default="image/png", description="MIME type of the image")


class TaskContext(BaseModel):
    """Context accompanying a task."""

    images: List[ImageData] = Field(default_factory=list, description="Screenshots or other images")
    additional_info: Optional[str] = Field(None, description="Extra text context")


class TaskResult(BaseModel):
    """Outcome of an external task."""

    content: str = Field(default="", description="Final text for the assistant to summarize")
    success: bool = Field(default=True, description="Whether the task completed successfully")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Cost, duration and other details")


class TaskExecutor(ABC):
    """Interface for executors that carry out coding tasks."""

    @abstractmethod
    async def execute(
        self,
        task: str,
        context: Optional[TaskContext] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> TaskResult:
        """Run a task to completion.

        Args:
            task: Task description
            context: Optional images and extra information
            on_progress: Receives short progress lines while the task runs

        Returns:
            TaskResult with the final content
        """
        pass

    @abstractmethod
    async def cancel(self) -> None:
        """Ask the running task to stop. No-op when nothing is running."""
        pass
