"""Drive one protomock run from proto references to a running server."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from protomock.build import ProtocParams, build_server, run_protoc
from protomock.errors import ExitCode, RewriteError, ServerRuntimeError
from protomock.models import ResolvedProto
from protomock.resolver import resolve_all
from protomock.rewriter import output_namespace, rewrite_proto
from protomock.supervisor import SignalReceived, Supervisor

log = logging.getLogger(__name__)


class Stage(Enum):
    INIT = "init"
    RESOLVING = "resolving"
    REWRITING = "rewriting"
    COMPILING = "compiling"
    BUILDING = "building"
    RUNNING = "running"
    EXITED = "exited"
    SIGNALED = "signaled"


_ORDER = list(Stage)
_TERMINAL = {Stage.EXITED, Stage.SIGNALED}


@dataclass(frozen=True)
class AdminOptions:
    """What an admin service needs to serve stubs next to the mock server."""

    stub_dir: str
    port: str
    address: str


@dataclass
class Options:
    protos: List[str]
    output: str = "generated"
    imports: List[str] = field(default_factory=list)
    template_dir: Optional[str] = None
    grpc_address: str = ""
    grpc_port: str = "4770"
    admin_address: str = ""
    admin_port: str = "4771"
    stub_dir: str = ""
    verbosity: int = 2

    @property
    def admin(self) -> AdminOptions:
        return AdminOptions(stub_dir=self.stub_dir, port=self.admin_port, address=self.admin_address)


class Orchestrator:
    """Resolve, rewrite, compile, build and serve, in that order.

    Each step moves ``stage`` forward; calling a step out of order is a
    programming error and raises RuntimeError.
    """

    def __init__(
        self,
        options: Options,
        start_admin: Optional[Callable[[AdminOptions], None]] = None,
        supervisor_factory: Callable[[List[str]], Supervisor] = Supervisor,
    ):
        self.options = options
        self.stage = Stage.INIT
        self.resolved: List[ResolvedProto] = []
        self.rewritten: List[str] = []
        self.implicit_roots: List[str] = []
        self.executable: Optional[Path] = None
        self.returncode: Optional[int] = None
        self._start_admin = start_admin
        self._supervisor_factory = supervisor_factory

    def _enter(self, stage: Stage) -> None:
        if self.stage in _TERMINAL or _ORDER.index(stage) <= _ORDER.index(self.stage):
            raise RuntimeError(f"cannot move from {self.stage.value} to {stage.value}")
        log.debug("stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage

    def resolve(self) -> List[ResolvedProto]:
        self._enter(Stage.RESOLVING)
        self.resolved = resolve_all(self.options.imports, self.options.protos)
        return self.resolved

    def rewrite(self) -> List[str]:
        """Copy every resolved proto into the output tree under its namespace.

        Returns the rewritten files as paths relative to the output directory.
        """
        self._enter(Stage.REWRITING)
        sources: Dict[str, str] = {}
        for resolved in self.resolved:
            rel_path = resolved.rel_path
            source = os.path.abspath(resolved.path)
            if rel_path in sources:
                if sources[rel_path] != source:
                    raise RewriteError(
                        f"{resolved.path} and {sources[rel_path]} would both be rewritten to {rel_path}",
                        resolved.path,
                    )
                continue
            sources[rel_path] = source

            namespace = output_namespace(resolved)
            destination = os.path.join(self.options.output, rel_path)
            rewrite_proto(resolved.path, namespace, destination)
            log.debug("rewrote %s to %s as %s", resolved.path, destination, namespace)

            self.rewritten.append(rel_path)
            if resolved.implicit and resolved.import_root not in self.implicit_roots:
                self.implicit_roots.append(resolved.import_root)
        return self.rewritten

    def protoc_params(self) -> ProtocParams:
        opts = self.options
        return ProtocParams(
            protos=[os.path.join(opts.output, p) for p in self.rewritten],
            output=opts.output,
            imports=[*opts.imports, *self.implicit_roots],
            admin_port=opts.admin_port,
            admin_address=opts.admin_address,
            grpc_address=opts.grpc_address,
            grpc_port=opts.grpc_port,
            template_dir=opts.template_dir,
            verbosity=opts.verbosity,
        )

    def compile(self) -> None:
        self._enter(Stage.COMPILING)
        run_protoc(self.protoc_params())

    def build(self) -> Path:
        self._enter(Stage.BUILDING)
        self.executable = build_server(self.options.output)
        return self.executable

    def serve(self) -> int:
        """Run the built server until it exits or we are signaled."""
        self._enter(Stage.RUNNING)
        supervisor = self._supervisor_factory([str(self.executable)])
        supervisor.start()
        event = supervisor.wait()

        if isinstance(event, SignalReceived):
            self._enter(Stage.SIGNALED)
            log.info("server stopped on %s", event.name)
            return ExitCode.OK

        self._enter(Stage.EXITED)
        self.returncode = event.returncode
        if event.returncode != 0:
            raise ServerRuntimeError(f"server exited with status {event.returncode}", event.returncode)
        log.info("server exited")
        return ExitCode.OK

    def run(self) -> int:
        self.resolve()
        self.rewrite()
        if self._start_admin is not None:
            self._start_admin(self.options.admin)
        self.compile()
        self.build()
        return self.serve()
