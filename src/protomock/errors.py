"""Error taxonomy shared by every protomock stage.

Each error class carries the process exit code it maps to; ``main`` is the
only place that turns an exception into an exit status.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    OK = 0
    ERROR = 1
    USAGE = 2
    BUILD = 3
    RUNTIME = 4


class ProtomockError(Exception):
    """Base class for all errors raised by protomock."""

    exit_code = ExitCode.ERROR


class ArgumentError(ProtomockError):
    """Malformed or missing command-line input."""

    exit_code = ExitCode.USAGE


class BuildTimeError(ProtomockError):
    """Any failure before the generated server starts running."""

    exit_code = ExitCode.BUILD


class ResolutionError(BuildTimeError):
    pass


class EmptyInputError(ResolutionError):
    pass


class ProtoNotFoundError(ResolutionError):
    pass


class ProtoIsDirectoryError(ResolutionError):
    pass


class RewriteError(BuildTimeError):
    """A proto file could not be rewritten into the output tree."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class EmptyNamespaceError(RewriteError):
    pass


class MissingDeclarationError(RewriteError):
    pass


class MultipleDeclarationsError(RewriteError):
    pass


class GenerationError(BuildTimeError):
    pass


class UnknownTemplateError(GenerationError):
    pass


class TemplateRenderError(GenerationError):
    pass


class FormattingError(GenerationError):
    """Formatting the rendered server failed.

    The unformatted source is kept on ``source`` and appended to the message
    so the broken template output can be inspected without re-running.
    """

    def __init__(self, message: str, source: str):
        super().__init__(f"{message}\n{source}")
        self.source = source


class CompilerInvocationError(BuildTimeError):
    pass


class BuildError(BuildTimeError):
    pass


class ServerRuntimeError(ProtomockError):
    """The generated server could not be started or exited non-zero."""

    exit_code = ExitCode.RUNTIME

    def __init__(self, message: str, returncode: int = -1):
        super().__init__(message)
        self.returncode = returncode
