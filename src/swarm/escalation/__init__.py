"""Escalation to humans: GitHub issues and blocked-workflow webhooks."""

from src.swarm.escalation.adapter import (
    ISSUE_TITLE_PREFIX,
    EscalationAdapter,
    EscalationOutcome,
    format_issue_body,
)
from src.swarm.escalation.client import (
    GitHubAPIError,
    GitHubClient,
    IssueReference,
    RateLimitError,
)
from src.swarm.escalation.webhook import WebhookDeliveryError, WebhookNotifier

__all__ = [
    "ISSUE_TITLE_PREFIX",
    "EscalationAdapter",
    "EscalationOutcome",
    "format_issue_body",
    "GitHubAPIError",
    "GitHubClient",
    "IssueReference",
    "RateLimitError",
    "WebhookDeliveryError",
    "WebhookNotifier",
]
