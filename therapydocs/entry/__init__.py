from .flow import EntryFlow, EntryFlowError, InvalidTransition, Modal, TransitionBlocked

__all__ = ["EntryFlow", "EntryFlowError", "InvalidTransition", "Modal", "TransitionBlocked"]
