"""Escalation to a human when automated recovery is exhausted.

The EscalationAdapter announces an escalation, opens an issue in the
configured repository, and posts the blocked-workflow webhook. Each
channel is gated by configuration and is best-effort: a failing channel
is logged and emitted as an ``escalation_failed`` event but never raised
into the pipeline.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from src.swarm.config import SwarmSettings
from src.swarm.escalation.client import GitHubClient, IssueReference
from src.swarm.escalation.webhook import WebhookNotifier
from src.swarm.events.emitter import EventEmitter, NullEventEmitter
from src.swarm.events.models import EventType, SwarmEvent


logger = logging.getLogger(__name__)


ISSUE_TITLE_PREFIX = "Swarm Workflow Blocked"


class EscalationOutcome(BaseModel):
    """What an escalation achieved.

    Attributes:
        reason: Escalation reason.
        issue: The created issue, if one was opened.
        webhook_delivered: Whether the blocked webhook was delivered.
        failed_channels: Channels that failed ("issue", "webhook").
    """

    reason: str
    issue: Optional[IssueReference] = None
    webhook_delivered: bool = False
    failed_channels: List[str] = Field(default_factory=list)


def format_issue_body(
    reason: str,
    details: Any,
    settings: SwarmSettings,
    execution_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> str:
    """Render the markdown body of an escalation issue."""
    timestamp = timestamp or datetime.now(timezone.utc)
    rendered = json.dumps(
        to_jsonable_python(details, fallback=str),
        indent=2,
    )

    context = [f"- Time: {timestamp.isoformat()}"]
    if execution_id is not None:
        context.append(f"- Execution ID: {execution_id}")
    context.append(f"- Agents: {settings.max_agents}")

    return "\n".join(
        [
            "## Workflow Blocked",
            "",
            f"**Reason:** {reason}",
            "",
            "**Details:**",
            "```json",
            rendered,
            "```",
            "",
            "**Execution Context:**",
            *context,
            "",
            "**Actions Required:**",
            "Please review the details and provide guidance or manual "
            "intervention as needed.",
            "",
            "---",
            "*This issue was automatically generated by the swarm orchestrator*",
        ]
    )


class EscalationAdapter:
    """Issue tracker and webhook notifier behind one ``escalate`` call.

    Attributes:
        settings: Swarm configuration (GitHub and webhook settings).
        issue_tracker: GitHub client, or None when issues are disabled.
        notifier: Webhook notifier, or None when webhooks are disabled.
    """

    def __init__(
        self,
        settings: SwarmSettings,
        issue_tracker: Optional[GitHubClient] = None,
        notifier: Optional[WebhookNotifier] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.settings = settings
        self.issue_tracker = issue_tracker
        self.notifier = notifier
        self._emitter = event_emitter or NullEventEmitter()

    @classmethod
    def from_settings(
        cls,
        settings: SwarmSettings,
        event_emitter: Optional[EventEmitter] = None,
    ) -> "EscalationAdapter":
        """Build the adapter with the channels the settings enable."""
        issue_tracker = None
        if settings.github_auto_create_issues and settings.github_token:
            issue_tracker = GitHubClient(
                token=settings.github_token,
                base_url=settings.github_base_url,
            )
        notifier = WebhookNotifier() if settings.blocked_webhook_url else None
        return cls(settings, issue_tracker, notifier, event_emitter)

    async def escalate(
        self,
        reason: str,
        details: Any,
        execution_id: Optional[str] = None,
    ) -> EscalationOutcome:
        """Notify humans that a workflow is blocked.

        Args:
            reason: Short reason, e.g. "QA Failed".
            details: Failure details (e.g. the failing test results).
            execution_id: Execution being escalated, if any.

        Returns:
            The outcome of each channel. Never raises for channel failures.
        """
        outcome = EscalationOutcome(reason=reason)
        timestamp = datetime.now(timezone.utc)

        logger.warning(
            "Escalating to human: %s",
            reason,
            extra={"execution_id": execution_id, "reason": reason},
        )
        await self._emit(EventType.ESCALATION, execution_id, {"reason": reason})

        if self._issues_enabled():
            try:
                outcome.issue = await self.issue_tracker.create_issue(
                    owner=self.settings.github_owner,
                    repo=self.settings.github_repo,
                    title=f"{ISSUE_TITLE_PREFIX}: {reason}",
                    body=format_issue_body(
                        reason,
                        details,
                        self.settings,
                        execution_id=execution_id,
                        timestamp=timestamp,
                    ),
                    assignees=self.settings.github_assignees,
                    labels=self.settings.github_labels,
                )
                await self._emit(
                    EventType.ISSUE_CREATED,
                    execution_id,
                    {"number": outcome.issue.number, "url": outcome.issue.url},
                )
            except Exception as e:
                await self._channel_failed(outcome, "issue", e, execution_id)

        if self.notifier is not None and self.settings.blocked_webhook_url:
            try:
                await self.notifier.send(
                    self.settings.blocked_webhook_url,
                    {
                        "reason": reason,
                        "details": to_jsonable_python(details, fallback=str),
                        "timestamp": timestamp.isoformat(),
                    },
                )
                outcome.webhook_delivered = True
            except Exception as e:
                await self._channel_failed(outcome, "webhook", e, execution_id)

        return outcome

    async def close(self) -> None:
        """Close the HTTP clients of both channels."""
        if self.issue_tracker is not None:
            await self.issue_tracker.close()
        if self.notifier is not None:
            await self.notifier.close()

    def _issues_enabled(self) -> bool:
        return (
            self.settings.github_auto_create_issues
            and self.issue_tracker is not None
            and self.settings.github_repository is not None
        )

    async def _channel_failed(
        self,
        outcome: EscalationOutcome,
        channel: str,
        error: Exception,
        execution_id: Optional[str],
    ) -> None:
        outcome.failed_channels.append(channel)
        logger.error(
            "Escalation channel failed: %s",
            str(error),
            extra={
                "execution_id": execution_id,
                "channel": channel,
                "error_type": type(error).__name__,
            },
        )
        await self._emit(
            EventType.ESCALATION_FAILED,
            execution_id,
            {
                "reason": outcome.reason,
                "channel": channel,
                "error": str(error),
            },
        )

    async def _emit(
        self,
        event_type: EventType,
        execution_id: Optional[str],
        details: dict,
    ) -> None:
        try:
            await self._emitter.emit(
                SwarmEvent(
                    event_type=event_type,
                    execution_id=execution_id,
                    details=details,
                )
            )
        except Exception as e:
            logger.error("Failed to emit %s event: %s", event_type.value, str(e))
