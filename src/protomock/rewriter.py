"""Rewrite proto files into the output tree under a protomock namespace.

Every copied proto gets a fresh ``option java_package`` naming the module it
is generated into. protoc has no Python namespace option; ``java_package`` is
a plain string file option that the Python and gRPC Python generators ignore,
so it is free to carry the namespace through to the protomock plugin, which
reads it back from the file descriptors.

This is a line-oriented rewrite, not a parse: the directive and the syntax
declaration must each sit on a line of their own.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Iterable, Iterator

from protomock.errors import (
    EmptyNamespaceError,
    MissingDeclarationError,
    MultipleDeclarationsError,
)
from protomock.models import ResolvedProto

log = logging.getLogger(__name__)

# Root of every namespace protomock hands out. Never derived from anything the
# proto author declared, so it cannot collide with their own packages.
GENERATED_ROOT = "protomock_generated"

NAMESPACE_OPTION = "java_package"

_NAMESPACE_RE = re.compile(r"^option[ \t]+" + NAMESPACE_OPTION + r"[ \t]*=")
_DECLARATION_RE = re.compile(r"^(?:syntax|edition)\b")


def output_namespace(resolved: ResolvedProto) -> str:
    """Namespace for a resolved proto: root, then its directory, then its stem."""
    parts = [GENERATED_ROOT]
    rel_dir = os.path.normpath(resolved.rel_dir)
    if rel_dir != ".":
        parts.extend(p for p in rel_dir.split(os.sep) if p)
    parts.append(Path(resolved.base_name).stem)
    return ".".join(parts)


def namespace_module(namespace: str) -> str:
    """The ``_pb2`` module protoc emits for a file rewritten under ``namespace``."""
    prefix = GENERATED_ROOT + "."
    if namespace.startswith(prefix):
        namespace = namespace[len(prefix):]
    # protoc's Python generator turns dashes in file names into underscores.
    return namespace.replace("-", "_") + "_pb2"


def namespace_directive(namespace: str) -> str:
    return f'option {NAMESPACE_OPTION} = "{namespace}";'


def rewrite_proto_stream(
    lines: Iterable[str],
    namespace: str,
    source_name: str = "<stream>",
) -> Iterator[str]:
    """Yield the rewritten lines of a proto file, each terminated by ``\\n``.

    Existing namespace directives are dropped and a new one is emitted right
    after the single syntax (or edition) declaration.
    """
    if not namespace:
        raise EmptyNamespaceError(f"empty package name for {source_name}", source_name)

    found_declaration = False
    for raw in lines:
        line = raw.rstrip("\r\n")
        if _NAMESPACE_RE.match(line):
            continue
        yield line + "\n"
        if _DECLARATION_RE.match(line):
            if found_declaration:
                raise MultipleDeclarationsError(
                    f'found more than one "syntax" statement in {source_name}', source_name
                )
            found_declaration = True
            yield namespace_directive(namespace) + "\n"

    if not found_declaration:
        raise MissingDeclarationError(
            f'failed to rewrite {source_name}: no "syntax" line found when scanning proto file',
            source_name,
        )


def rewrite_proto(source: str, namespace: str, destination: str) -> None:
    """Write a copy of ``source`` at ``destination`` with its namespace replaced.

    The copy is written next to the destination and moved into place only
    once the whole file has been rewritten, so a failure leaves nothing
    behind, even when the destination is the source itself.
    """
    os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
    partial = destination + ".partial"
    log.debug("rewriting %s to %s with namespace %s", source, destination, namespace)
    try:
        with open(source, "r", encoding="utf-8") as src, \
                open(partial, "w", encoding="utf-8", newline="\n") as dst:
            for line in rewrite_proto_stream(src, namespace, source_name=source):
                dst.write(line)
    except BaseException:
        if os.path.exists(partial):
            os.unlink(partial)
        raise
    os.replace(partial, destination)
