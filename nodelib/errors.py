"""
Exceptions raised by plumbing and tasks.

Every exception here derives from `NodeLibError`, so scripts can catch the whole family in one go.
"""

from typing import List, Optional


class NodeLibError(Exception):
    """
    Base class for all failures raised by this library.
    """


class ValidationError(NodeLibError):
    """
    Malformed input: a bad descriptor, an unknown service type, a generated file failing its
    schema, or an unresolved placeholder about to reach a destructive call.
    """


class ConflictError(NodeLibError):
    """
    An install would violate a singleton constraint, or a required dependency is missing.
    """


class ResourceBusyError(NodeLibError):
    """
    A network or volume is still referenced and can't be removed yet.
    """

    def __init__(self, kind: str, name: str, msg: Optional[str] = None):
        super().__init__(msg or "{} {!r} is still in use".format(kind, name))
        self.kind = kind
        self.name = name


class LockTimeoutError(NodeLibError):
    """
    A named lock could not be acquired within its timeout.
    """

    def __init__(self, name: str, timeout: float):
        super().__init__("Timed out after {}s waiting for lock {!r}".format(timeout, name))
        self.name = name
        self.timeout = timeout


class RuntimeCallFailure(NodeLibError):
    """
    A call to the container runtime (or another external command) failed.
    """

    def __init__(self, args: List[str], returncode: Optional[int] = None, stderr: str = ""):
        msg = "Command {!r} failed".format(args)
        if returncode is not None:
            msg = "{} with exit code {}".format(msg, returncode)
        if stderr:
            msg = "{}: {}".format(msg, stderr.strip())
        super().__init__(msg)
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr


class StepFailure(NodeLibError):
    """
    A lifecycle step raised an exception; `cause` holds the original error.
    """

    def __init__(self, step, cause: BaseException):
        super().__init__("Step {} failed: {}".format(getattr(step, "value", step), cause))
        self.step = step
        self.cause = cause


class CriticalStepFailure(StepFailure):
    """
    A critical step failed, and the run was aborted.
    """


class NonCriticalStepFailure(StepFailure):
    """
    A non-critical step failed; recorded on the run, never raised by the executor.
    """


class InstallError(NodeLibError):
    """
    An install failed before commit.  Staged files and runtime resources have already been rolled
    back by the time this is raised.
    """

    def __init__(self, name: str, cause: BaseException):
        super().__init__("Install of {!r} failed: {}".format(name, cause))
        self.name = name
        self.cause = cause
