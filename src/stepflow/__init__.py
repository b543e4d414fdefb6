from .runner import RunCoordinator, RunResult, RunStatus, run_workflow, load_workflow
from .model import Event, Job, MatrixSpec, Step, Trigger, Workflow
from .errors import ErrorKind, EvalError, ExecutionError, RunError, StepflowError, ValidationError
from .expressions import Context, evaluate, evaluate_condition, interpolate
from .matrix import expand
from .dag import build_graph

# last: importing the stepflow.matrix submodule rebinds the package attribute,
# so the dsl helper has to be bound after every submodule import
from .dsl import job, sh, uses, matrix, on, wf, workflow, JobBuilder, build

__all__ = [
    "job", "sh", "uses", "matrix", "on", "wf", "workflow", "JobBuilder", "build",
    "RunCoordinator", "RunResult", "RunStatus", "run_workflow", "load_workflow",
    "Event", "Job", "MatrixSpec", "Step", "Trigger", "Workflow",
    "ErrorKind", "EvalError", "ExecutionError", "RunError", "StepflowError", "ValidationError",
    "Context", "evaluate", "evaluate_condition", "interpolate",
    "expand", "build_graph",
]
