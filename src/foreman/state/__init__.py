from foreman.state.store import (
    ControlSignals,
    ForemanStateError,
    IssueState,
    IssueStateStore,
    LoopState,
    LoopStateStore,
    QueueEntry,
)

__all__ = [
    "ControlSignals",
    "ForemanStateError",
    "IssueState",
    "IssueStateStore",
    "LoopState",
    "LoopStateStore",
    "QueueEntry",
]
