from chat_core.store.conversation_store import ConversationStore, SessionFlag, Turn

__all__ = ["ConversationStore", "SessionFlag", "Turn"]
