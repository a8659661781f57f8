from agentrun.session.history import ConversationHistory

__all__ = ["ConversationHistory"]
