"""Package for compiling and running submitted programs under limits."""
from .errors import ProgramError, SandboxError, WorkspaceError
from .limiter import LimitViolation, RunLimits, RunResult, run_limited
from .sandbox import Artifact, CompileResult, Sandbox
