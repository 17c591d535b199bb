"""
Repositories Package

Remote message and conversation repository contracts and their REST
adapters.

Modules:
- base: Abstract repositories and the RepoResult success/error envelope
- http: httpx implementations against the messaging REST API
"""

from .base import ConversationRepository, MessageRepository, RepoResult
from .http import HttpConversationRepository, HttpMessageRepository

__all__ = [
    "ConversationRepository",
    "MessageRepository",
    "RepoResult",
    "HttpConversationRepository",
    "HttpMessageRepository",
]
