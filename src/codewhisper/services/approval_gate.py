"""Approval gate deciding whether a tool call may run without asking."""

import fnmatch
import logging
from enum import Enum
from typing import Any, Dict, Optional

from codewhisper.models.tool_spec import ApprovalMode, ApprovalPolicy


logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """Outcome of an approval check."""

    APPROVED = "approved"
    DENIED = "denied"
    REQUIRES_PROMPT = "requires_prompt"


class ApprovalGate:
    """
    Evaluates approval policies.

    Stateless: every call is decided from (tool name, policy) alone, so the
    same inputs always produce the same decision and nothing is cached.
    """

    def decide(
        self,
        tool_name: str,
        policy: ApprovalPolicy,
        arguments: Optional[Dict[str, Any]] = None
    ) -> ApprovalDecision:
        """Decide whether a tool call can proceed.

        Args:
            tool_name: Name of the tool being invoked
            policy: Approval policy attached to the tool
            arguments: Call arguments, accepted for argument-aware policies

        Returns:
            APPROVED, or REQUIRES_PROMPT when the user must confirm first
        """
        if policy.mode == ApprovalMode.NEVER:
            decision = ApprovalDecision.APPROVED
        elif policy.mode == ApprovalMode.ALWAYS:
            decision = ApprovalDecision.REQUIRES_PROMPT
        else:
            pattern = self.matching_pattern(tool_name, policy.patterns)
            decision = ApprovalDecision.REQUIRES_PROMPT if pattern else ApprovalDecision.APPROVED

        logger.debug(f"Approval decision for {tool_name}: {decision.value} (policy {policy.mode.value})")
        return decision

    @staticmethod
    def matching_pattern(tool_name: str, patterns) -> Optional[str]:
        """Return the first glob pattern matching tool_name, if any."""
        for pattern in patterns:
            if fnmatch.fnmatchcase(tool_name, pattern):
                return pattern
        return None
