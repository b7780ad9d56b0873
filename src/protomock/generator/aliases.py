from __future__ import annotations

import builtins
import keyword
import re
from typing import Dict, Set

# Names bound by templates/server.py.j2, at module level or inside its
# functions. An import alias shadowing one of them would break the
# generated server.
TEMPLATE_NAMES = frozenset({
    "futures",
    "grpc",
    "json_format",
    "logging",
    "requests",
    "signal",
    "log",
    "main",
    "find_stub",
    "lookup",
    "StubError",
    "StubNotFound",
    "ADMIN_URL",
    "GRPC_ADDRESS",
    "LOOKUP_TIMEOUT",
    # servicer methods
    "self",
    "_request",
    "_request_iterator",
    "_response",
    "_context",
    # find_stub, lookup and main
    "service",
    "method",
    "request",
    "output_type",
    "context",
    "payload",
    "resp",
    "body",
    "e",
    "server",
    "stop",
    "signum",
    "frame",
})

RESERVED = (
    frozenset(keyword.kwlist)
    | frozenset(keyword.softkwlist)
    | frozenset(dir(builtins))
    | TEMPLATE_NAMES
)


def is_reserved(word: str) -> bool:
    return word in RESERVED


def _candidate(namespace: str) -> str:
    last = namespace.rsplit(".", 1)[-1]
    alias = re.sub(r"\W", "_", last)
    if not alias or alias[0].isdigit():
        alias = "_" + alias
    return alias


class AliasTable:
    """Short import aliases for generated modules.

    One table belongs to one generator run. The same namespace always maps to
    the same alias; aliases never repeat and never shadow a reserved name.
    """

    def __init__(self) -> None:
        self._by_namespace: Dict[str, str] = {}
        self._taken: Set[str] = set()
        self._counter = 1

    def alias_for(self, namespace: str) -> str:
        if namespace in self._by_namespace:
            return self._by_namespace[namespace]

        alias = _candidate(namespace)
        if is_reserved(alias):
            alias = f"{alias}_pb"

        base = alias
        while alias in self._taken:
            alias = f"{base}{self._counter}"
            self._counter += 1

        self._by_namespace[namespace] = alias
        self._taken.add(alias)
        return alias

    def __contains__(self, namespace: str) -> bool:
        return namespace in self._by_namespace

    def items(self):
        return self._by_namespace.items()
