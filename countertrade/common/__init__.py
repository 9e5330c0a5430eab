from .async_utils import guarded_call
from .logging import log_event
from .notify import LogNotifier, Notifier

__all__ = [
    "LogNotifier",
    "Notifier",
    "guarded_call",
    "log_event",
]
