from .lifecycle import DraftLifecycleManager, DraftNotFoundError, thread_timer

__all__ = ["DraftLifecycleManager", "DraftNotFoundError", "thread_timer"]
