from app.policies.chat_thread import CHAT_ACTIONS, ChatAction, ChatThreadPolicy

__all__ = ["CHAT_ACTIONS", "ChatAction", "ChatThreadPolicy"]
