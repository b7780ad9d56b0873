"""Compile rewritten protos and build the generated server.

Everything here shells out the way a developer would by hand: protoc through
grpcio-tools, pip for the server's dependencies, compileall as the syntax
check, and finally a zipapp so the server ships as one executable file.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import sys
import tomllib
import zipapp
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from protomock.errors import BuildError, CompilerInvocationError

log = logging.getLogger(__name__)

# Identity written into the generated manifest. The server is never published
# or installed, so this name is never looked up on a package index.
GENERATED_MODULE_NAME = "protomock-generated"

PLUGIN_NAME = "protoc-gen-protomock"
MANIFEST = "pyproject.toml"
SERVER_MODULE = "server"
SERVER_BINARY = "server"

_TABLE_RE = re.compile(r"^\s*\[([^\[\]]+)\]\s*(?:#.*)?$")
_NAME_RE = re.compile(r"^\s*name\s*=")


@dataclass
class ProtocParams:
    protos: List[str]
    output: str
    imports: List[str] = field(default_factory=list)
    admin_port: str = "4771"
    admin_address: str = ""
    grpc_address: str = ""
    grpc_port: str = "4770"
    template_dir: Optional[str] = None
    verbosity: int = 1


def find_plugin() -> str:
    """Path of the protomock protoc plugin executable."""
    path = shutil.which(PLUGIN_NAME)
    if path:
        return path
    # Console scripts land next to the interpreter, which may not be on PATH
    # when a virtualenv is used without activating it.
    candidate = Path(sys.executable).parent / PLUGIN_NAME
    if candidate.is_file() and os.access(candidate, os.X_OK):
        return str(candidate)
    raise CompilerInvocationError(f"{PLUGIN_NAME} not found on PATH; is protomock installed?")


def protoc_command(params: ProtocParams, plugin_path: Optional[str] = None) -> List[str]:
    if plugin_path is None:
        plugin_path = find_plugin()
    output = params.output
    # The output tree goes first so the rewritten copies shadow the originals.
    args = [sys.executable, "-m", "grpc_tools.protoc", "-I", output]
    for imp in params.imports:
        args += ["-I", imp]
    args += params.protos
    args += [
        f"--python_out={output}",
        f"--grpc_python_out={output}",
        f"--plugin={PLUGIN_NAME}={plugin_path}",
        f"--protomock_out={output}",
    ]
    template_dir = os.path.abspath(params.template_dir) if params.template_dir else ""
    options = [
        ("admin-port", params.admin_port),
        ("admin-address", params.admin_address),
        ("grpc-address", params.grpc_address),
        ("grpc-port", params.grpc_port),
        ("template-dir", template_dir),
        ("verbosity", str(params.verbosity)),
    ]
    args += [f"--protomock_opt={key}={value}" for key, value in options]
    return args


def run_protoc(params: ProtocParams) -> None:
    log.info("generating server protocol %s to %s", params.protos, params.output)
    cmd = protoc_command(params)
    log.debug("invoking protoc: %s", cmd)
    try:
        # protoc output is passed straight through to our own streams.
        result = subprocess.run(cmd)
    except OSError as e:
        raise CompilerInvocationError(f"could not run protoc: {e}") from e
    if result.returncode != 0:
        raise CompilerInvocationError(f"protoc failed with exit status {result.returncode}")
    log.info("generated protocol")


def _run_step(step: str, cmd: List[str], cwd: str) -> None:
    log.info("%s", step)
    log.debug("running %s in %s", cmd, cwd)
    try:
        result = subprocess.run(cmd, cwd=cwd)
    except OSError as e:
        raise BuildError(f"{step}: {e}") from e
    if result.returncode != 0:
        raise BuildError(f"{step} failed with exit status {result.returncode}")


def set_module_identity(output: str, name: str = GENERATED_MODULE_NAME) -> None:
    """Rewrite the ``[project] name`` of the generated manifest to ``name``."""
    manifest = Path(output) / MANIFEST
    try:
        lines = manifest.read_text(encoding="utf-8").splitlines(keepends=True)
    except OSError as e:
        raise BuildError(f"setting module name: {e}") from e

    table = None
    project_header = None
    for i, line in enumerate(lines):
        m = _TABLE_RE.match(line)
        if m:
            table = m.group(1).strip()
            if table == "project":
                project_header = i
            continue
        if table == "project" and _NAME_RE.match(line):
            lines[i] = f'name = "{name}"\n'
            break
    else:
        if project_header is None:
            raise BuildError(f"setting module name: no [project] table in {manifest}")
        lines.insert(project_header + 1, f'name = "{name}"\n')

    manifest.write_text("".join(lines), encoding="utf-8")
    log.debug("set module name of %s to %s", manifest, name)


def manifest_dependencies(output: str) -> List[str]:
    manifest = Path(output) / MANIFEST
    try:
        with open(manifest, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise BuildError(f"reading {manifest}: {e}") from e
    return list(data.get("project", {}).get("dependencies", []))


def install_dependencies(output: str) -> None:
    deps = manifest_dependencies(output)
    if not deps:
        log.info("generated server declares no dependencies")
        return
    _run_step(
        f"resolving dependencies {deps}",
        [sys.executable, "-m", "pip", "install", "--quiet", "--disable-pip-version-check", *deps],
        cwd=output,
    )


def ensure_packages(output: str) -> List[Path]:
    """Add ``__init__.py`` to every directory holding generated modules.

    Namespace packages are not importable from every zip archive, regular
    packages always are. Returns the files created.
    """
    root = Path(output).resolve()
    created: List[Path] = []
    for module in sorted(root.rglob("*_pb2*.py")):
        parent = module.parent
        while parent != root and root in parent.parents:
            init = parent / "__init__.py"
            if not init.exists():
                init.touch()
                created.append(init)
            parent = parent.parent
    return created


def _archive_filter(path: Path) -> bool:
    return path.suffix == ".py" and "__pycache__" not in path.parts


def make_executable(output: str) -> Path:
    """Pack the generated sources into a single executable zip application."""
    target = Path(output) / SERVER_BINARY
    partial = target.with_name(SERVER_BINARY + ".partial")
    log.info("packing %s", target)
    try:
        zipapp.create_archive(
            output,
            target=partial,
            interpreter=sys.executable,
            main=f"{SERVER_MODULE}:main",
            filter=_archive_filter,
        )
    except (OSError, zipapp.ZipAppError) as e:
        if partial.exists():
            partial.unlink()
        raise BuildError(f"packing server: {e}") from e
    os.replace(partial, target)
    return target


def build_server(output: str) -> Path:
    """Turn the generated sources in ``output`` into the ``server`` executable."""
    log.info("building server...")
    if not (Path(output) / f"{SERVER_MODULE}.py").is_file():
        raise BuildError(f"no generated {SERVER_MODULE}.py in {output}")

    set_module_identity(output)
    install_dependencies(output)
    for init in ensure_packages(output):
        log.debug("created %s", init)
    _run_step("compiling sources", [sys.executable, "-m", "compileall", "-q", "."], cwd=output)
    target = make_executable(output)

    log.info("built %s", target)
    return target
