from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ResolvedProto:
    """Where a requested proto file was found on the import path.

    ``import_root`` is the search path entry as the user wrote it (or the
    file's own directory when ``implicit``), ``rel_dir`` the directory of the
    file relative to that root.
    """

    import_root: str
    rel_dir: str
    base_name: str
    implicit: bool = False

    @property
    def path(self) -> str:
        return os.path.join(self.import_root, self.rel_dir, self.base_name)

    @property
    def rel_path(self) -> str:
        """Path of the file relative to its import root, as protoc names it."""
        return os.path.normpath(os.path.join(self.rel_dir, self.base_name))


class StreamShape(Enum):
    UNARY = "unary"
    SERVER_STREAM = "server-stream"
    CLIENT_STREAM = "client-stream"
    BIDIRECTIONAL = "bidirectional"

    @classmethod
    def classify(cls, client_streaming: bool, server_streaming: bool) -> StreamShape:
        if client_streaming and server_streaming:
            return cls.BIDIRECTIONAL
        if client_streaming:
            return cls.CLIENT_STREAM
        if server_streaming:
            return cls.SERVER_STREAM
        return cls.UNARY


@dataclass
class MethodDesc:
    name: str
    shape: StreamShape
    input_type: str
    output_type: str


@dataclass
class ServiceDesc:
    name: str
    package: str
    alias: str
    grpc_alias: str
    methods: List[MethodDesc] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        if self.package:
            return f"{self.package}.{self.name}"
        return self.name

    @property
    def class_name(self) -> str:
        """Servicer class name in the generated server, unique per alias."""
        prefix = "".join(p.capitalize() for p in self.alias.split("_"))
        return f"{prefix}{self.name}Mock"


@dataclass(frozen=True)
class ImportDesc:
    module: str
    alias: str


@dataclass(frozen=True)
class TemplateParams:
    """Everything the server templates are rendered from."""

    services: Tuple[ServiceDesc, ...]
    imports: Tuple[ImportDesc, ...]
    grpc_imports: Tuple[ImportDesc, ...]
    grpc_address: str
    admin_host: str
    admin_port: str


@dataclass(frozen=True)
class GeneratorOptions:
    grpc_address: str = ""
    grpc_port: str = "4770"
    admin_address: str = ""
    admin_port: str = "4771"
    template_dir: Optional[str] = None

    @classmethod
    def from_parameter(cls, parameter: str) -> GeneratorOptions:
        """Build options from the protoc plugin parameter string.

        protoc joins every ``--<plugin>_opt`` with commas; each entry is split
        on its first ``=``. Keys this plugin does not know are ignored.
        """
        params = parse_parameter(parameter)
        return cls(
            grpc_address=params.get("grpc-address", ""),
            grpc_port=params.get("grpc-port") or cls.grpc_port,
            admin_address=params.get("admin-address", ""),
            admin_port=params.get("admin-port") or cls.admin_port,
            template_dir=params.get("template-dir") or None,
        )


def parse_parameter(parameter: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if not parameter:
        return params
    for chunk in parameter.split(","):
        if not chunk:
            continue
        key, _, value = chunk.partition("=")
        params[key] = value
    return params
