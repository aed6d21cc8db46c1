"""Abstract interface for asking the user to confirm a tool call."""

from abc import ABC, abstractmethod

from codewhisper.models.tool_call import ToolCall


class ApprovalPrompter(ABC):
    """Interface for user confirmation prompts."""

    @abstractmethod
    async def confirm(self, call: ToolCall) -> bool:
        """Ask the user whether the call may run.

        Returns True only on explicit approval. The dispatcher applies its
        own timeout and treats errors as a denial.
        """
        pass
