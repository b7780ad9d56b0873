"""Locate requested proto files on the import path.

protoc names files lexically relative to its include roots, so a proto has to
be split into the root it lives under and its path inside that root before it
can be copied into the output tree with cross-file imports still resolving.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

from protomock.errors import EmptyInputError, ProtoIsDirectoryError, ProtoNotFoundError
from protomock.models import ResolvedProto

log = logging.getLogger(__name__)


def _escapes_root(rel_path: str) -> bool:
    normalized = os.path.normpath(rel_path)
    return normalized == os.pardir or normalized.startswith(os.pardir + os.sep)


def _find_relative(imports: List[str], proto_path: str) -> Optional[ResolvedProto]:
    if _escapes_root(proto_path):
        return None
    rel_dir = os.path.dirname(proto_path) or "."
    base_name = os.path.basename(proto_path)
    for imp in imports:
        candidate = os.path.join(imp, proto_path)
        if os.path.isfile(candidate):
            log.debug("found %s in import root %s", proto_path, imp)
            return ResolvedProto(import_root=imp, rel_dir=rel_dir, base_name=base_name)
        log.debug("%s not found in import root %s", proto_path, imp)
    return None


def _find_absolute(imports: List[str], proto_path: str) -> Optional[ResolvedProto]:
    proto_dir = os.path.dirname(proto_path)
    base_name = os.path.basename(proto_path)
    for imp in imports:
        # abspath is purely lexical: symlinks are deliberately left alone and
        # the comparison stays case-sensitive on every filesystem.
        abs_imp = os.path.abspath(imp)
        if proto_dir == abs_imp:
            rel_dir = "."
        elif proto_dir.startswith(abs_imp.rstrip(os.sep) + os.sep):
            rel_dir = proto_dir[len(abs_imp.rstrip(os.sep)) + 1:]
        else:
            log.debug("import root %s is not a prefix of %s", abs_imp, proto_path)
            continue
        # A matching directory prefix says nothing about the file itself.
        if not os.path.isfile(os.path.join(abs_imp, rel_dir, base_name)):
            log.debug("%s not present under import root %s", proto_path, imp)
            continue
        return ResolvedProto(import_root=imp, rel_dir=rel_dir, base_name=base_name)
    return None


def find_proto_in_imports(imports: List[str], proto_path: str) -> ResolvedProto:
    """Resolve ``proto_path`` against the ``imports`` search path.

    Relative references are looked up under each entry in turn; absolute
    references are matched by directory prefix. The first entry that holds the
    file wins. A file that exists but is on no entry gets its own directory
    as an implicit import root, which works unless it imports siblings by a
    longer relative path.

    Raises:
        EmptyInputError: ``proto_path`` is empty.
        ProtoNotFoundError: the file is neither on the import path nor on disk.
        ProtoIsDirectoryError: the reference names a directory.
    """
    if not proto_path:
        raise EmptyInputError("empty input: no proto file path given")

    imports = [imp for imp in imports if imp]

    if os.path.isabs(proto_path):
        resolved = _find_absolute(imports, proto_path)
    else:
        resolved = _find_relative(imports, proto_path)

    if resolved is None:
        if not os.path.exists(proto_path):
            raise ProtoNotFoundError(
                f"could not find proto {proto_path!r} on import path {imports}"
            )
        resolved = ResolvedProto(
            import_root=os.path.dirname(proto_path) or ".",
            rel_dir=".",
            base_name=os.path.basename(proto_path),
            implicit=True,
        )
        log.warning(
            "proto %s is not on the import path %s; using %s as its import root, "
            "imports relative to any other root will not resolve",
            proto_path, imports, resolved.import_root,
        )

    if not os.path.exists(resolved.path):
        raise ProtoNotFoundError(
            f"could not find proto {proto_path!r} on import path {imports}: "
            f"{resolved.path} does not exist"
        )
    if os.path.isdir(resolved.path):
        raise ProtoIsDirectoryError(f"proto path {proto_path!r} is a directory")

    log.info("resolved %s to %s in import root %s", proto_path, resolved.rel_path, resolved.import_root)
    return resolved


def resolve_all(imports: List[str], proto_paths: List[str]) -> List[ResolvedProto]:
    return [find_proto_in_imports(imports, p) for p in proto_paths]
