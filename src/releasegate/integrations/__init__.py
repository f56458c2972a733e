"""External service integrations: the GitHub host and n8n notifications."""

from releasegate.integrations.github import GitHubHost
from releasegate.integrations.n8n import N8nClient, N8nConfig, N8nEventType, N8nPayload

__all__ = [
    "GitHubHost",
    "N8nClient",
    "N8nConfig",
    "N8nEventType",
    "N8nPayload",
]
