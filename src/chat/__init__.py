"""Conversation state: the branch forest, its models and save coordination."""

from src.chat.branches import BranchStore
from src.chat.errors import ApiError, AuthExpiredError, ChatError, TransportError
from src.chat.models import Branch, BranchState, ConversationMetadata, Message
from src.chat.persistence import ConversationBackend, SaveCoordinator

__all__ = [
    "ApiError",
    "AuthExpiredError",
    "Branch",
    "BranchState",
    "BranchStore",
    "ChatError",
    "ConversationBackend",
    "ConversationMetadata",
    "Message",
    "SaveCoordinator",
    "TransportError",
]
