"""Exceptions raised while preparing or running programs."""
from ..errors import InfrastructureError


class ProgramError(Exception):
    pass


class SandboxError(ProgramError, InfrastructureError):
    """The sandbox could not start or supervise a program."""
    pass


class WorkspaceError(SandboxError):
    """A working directory could not be created or populated."""
    pass
