"""Conversation turn engine for a terminal coding assistant."""

from parley.engine.session import ConversationSession, SessionCallbacks

__all__ = ["ConversationSession", "SessionCallbacks"]
