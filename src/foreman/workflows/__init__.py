from foreman.workflows.develop import (
    DevelopLoop,
    LoopOptions,
    LoopSummary,
    reset_for_next_issue,
    run_develop_loop,
    run_develop_pipeline,
)
from foreman.workflows.queue import (
    DependencyResolution,
    Outcome,
    QueueRationale,
    build_issue_queue,
    resolve_dependency_branch,
)
from foreman.workflows.runner import (
    RunState,
    Step,
    StepRecord,
    WorkflowOutcome,
    WorkflowRunner,
    run_with_machine_retry,
)

__all__ = [
    "DependencyResolution",
    "DevelopLoop",
    "LoopOptions",
    "LoopSummary",
    "Outcome",
    "QueueRationale",
    "RunState",
    "Step",
    "StepRecord",
    "WorkflowOutcome",
    "WorkflowRunner",
    "build_issue_queue",
    "reset_for_next_issue",
    "resolve_dependency_branch",
    "run_develop_loop",
    "run_develop_pipeline",
    "run_with_machine_retry",
]
