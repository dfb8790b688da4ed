from prdsched.state.session import (
    GroupProgress,
    ParallelSessionState,
    Session,
    TaskExecution,
    TaskExecutionInfo,
)
from prdsched.state.store import SessionStore, SessionStoreError

__all__ = [
    "GroupProgress",
    "ParallelSessionState",
    "Session",
    "SessionStore",
    "SessionStoreError",
    "TaskExecution",
    "TaskExecutionInfo",
]
