from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import black
import isort
from google.protobuf.descriptor_pb2 import DescriptorProto, FileDescriptorProto
from isort.exceptions import ISortError
from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template
from jinja2.exceptions import TemplateError, TemplateNotFound, TemplateSyntaxError

from protomock.errors import FormattingError, TemplateRenderError, UnknownTemplateError
from protomock.generator.aliases import AliasTable
from protomock.generator.sink import FileSink
from protomock.models import (
    GeneratorOptions,
    ImportDesc,
    MethodDesc,
    ServiceDesc,
    StreamShape,
    TemplateParams,
)
from protomock.rewriter import GENERATED_ROOT, namespace_module

log = logging.getLogger(__name__)

BUILTIN_TEMPLATE_DIR = Path(__file__).parent.parent / "templates"

# Template file -> generated file name.
SERVER_TEMPLATE = "server.py.j2"
MANIFEST_TEMPLATE = "pyproject.toml.j2"
TEMPLATE_OUTPUTS: Dict[str, str] = {
    SERVER_TEMPLATE: "server.py",
    MANIFEST_TEMPLATE: "pyproject.toml",
}

_WILDCARD_ADDRESSES = {"", "0.0.0.0", "::", "[::]"}


def _get_template_env(template_dir: Optional[str]) -> Environment:
    if template_dir:
        log.info("loading templates from %s", template_dir)
        loader = FileSystemLoader(template_dir)
    else:
        loader = FileSystemLoader(str(BUILTIN_TEMPLATE_DIR))
    return Environment(
        loader=loader,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )


def load_template(env: Environment, name: str, template_dir: Optional[str] = None) -> Template:
    """Fetch one template, from ``template_dir`` when set, else the built-in set."""
    if not template_dir and name not in TEMPLATE_OUTPUTS:
        raise UnknownTemplateError(f'no template file named "{name}" in built-in templates')
    try:
        return env.get_template(name)
    except TemplateNotFound as e:
        where = template_dir or "built-in templates"
        raise UnknownTemplateError(f'no template file named "{name}" in {where}') from e
    except TemplateSyntaxError as e:
        raise TemplateRenderError(f"template parse {name}: {e}") from e


def format_source(source: str, first_party: Iterable[str] = ()) -> str:
    """Sort imports and format generated Python source.

    Modules named in ``first_party`` are grouped in their own block after the
    third-party imports.
    """
    try:
        tidied = isort.code(source, profile="black", known_first_party=list(first_party))
        return black.format_str(tidied, mode=black.Mode())
    except (black.InvalidInput, ISortError) as e:
        raise FormattingError(f"formatting generated server: {e}", source) from e


def _module_for_file(file_name: str) -> str:
    """The ``_pb2`` module protoc's Python generator emits for a proto file."""
    stem = file_name[:-len(".proto")] if file_name.endswith(".proto") else file_name
    return stem.replace("-", "_").replace("/", ".") + "_pb2"


def _has_message(messages: Iterable[DescriptorProto], parts: List[str]) -> bool:
    for message in messages:
        if message.name == parts[0]:
            return len(parts) == 1 or _has_message(message.nested_type, parts[1:])
    return False


def _url_host(address: str) -> str:
    if address in _WILDCARD_ADDRESSES:
        return "localhost"
    if ":" in address and not address.startswith("["):
        return f"[{address}]"
    return address


class ServerGenerator:
    """Turns the file descriptors of one protoc run into a mock server.

    All alias and import bookkeeping lives on the instance, so separate runs
    never see each other's names.
    """

    def __init__(
        self,
        protos: Sequence[FileDescriptorProto],
        options: Optional[GeneratorOptions] = None,
        files_to_generate: Optional[Iterable[str]] = None,
    ):
        self.protos = list(protos)
        self.options = options or GeneratorOptions()
        if files_to_generate:
            self.files_to_generate = set(files_to_generate)
        else:
            self.files_to_generate = {p.name for p in self.protos}
        self.aliases = AliasTable()
        self._imports: Dict[str, str] = {}
        self._grpc_imports: Dict[str, str] = {}

    @staticmethod
    def namespace(proto: FileDescriptorProto) -> str:
        """The protomock namespace a file was rewritten under, or ``""``."""
        namespace = proto.options.java_package
        if namespace == GENERATED_ROOT or namespace.startswith(GENERATED_ROOT + "."):
            return namespace
        return ""

    def module_alias(self, proto: FileDescriptorProto) -> Tuple[str, str]:
        """Return the ``_pb2`` module of ``proto`` and the alias it is imported as."""
        namespace = self.namespace(proto)
        if namespace:
            module = namespace_module(namespace)
            alias = self.aliases.alias_for(namespace)
        else:
            # Well-known types and dependencies that were not rewritten are
            # imported from wherever protoc's own generator puts them.
            module = _module_for_file(proto.name)
            alias = self.aliases.alias_for(module)
        self._imports.setdefault(module, alias)
        return module, alias

    def _grpc_module_alias(self, proto: FileDescriptorProto) -> Tuple[str, str]:
        module, _ = self.module_alias(proto)
        grpc_module = f"{module}_grpc"
        alias = self.aliases.alias_for((self.namespace(proto) or module) + "_grpc")
        self._grpc_imports.setdefault(grpc_module, alias)
        return grpc_module, alias

    def message_type(self, type_ref: str) -> str:
        """Qualify a fully qualified proto type reference for the server source."""
        name = type_ref.lstrip(".")
        for proto in self.protos:
            if proto.package:
                if not name.startswith(proto.package + "."):
                    continue
                local = name[len(proto.package) + 1:]
            else:
                local = name
            if _has_message(proto.message_type, local.split(".")):
                _, alias = self.module_alias(proto)
                return f"{alias}.{local}"
        log.warning("message type %s is not defined by any known proto, using bare name", type_ref)
        return name.rsplit(".", 1)[-1]

    def extract_services(self) -> List[ServiceDesc]:
        services: List[ServiceDesc] = []
        for proto in self.protos:
            if proto.name not in self.files_to_generate or not proto.service:
                continue
            if not self.namespace(proto):
                log.debug("%s has no protomock namespace, importing it by file name", proto.name)
            _, alias = self.module_alias(proto)
            _, grpc_alias = self._grpc_module_alias(proto)
            for svc in proto.service:
                methods = [
                    MethodDesc(
                        name=method.name,
                        shape=StreamShape.classify(method.client_streaming, method.server_streaming),
                        input_type=self.message_type(method.input_type),
                        output_type=self.message_type(method.output_type),
                    )
                    for method in svc.method
                ]
                service = ServiceDesc(
                    name=svc.name,
                    package=proto.package,
                    alias=alias,
                    grpc_alias=grpc_alias,
                    methods=methods,
                )
                log.debug("service %s: %d method(s)", service.full_name, len(methods))
                services.append(service)
        return services

    def template_params(self) -> TemplateParams:
        services = self.extract_services()
        opts = self.options
        return TemplateParams(
            services=tuple(services),
            imports=tuple(ImportDesc(module=m, alias=a) for m, a in self._imports.items()),
            grpc_imports=tuple(ImportDesc(module=m, alias=a) for m, a in self._grpc_imports.items()),
            grpc_address=f"{opts.grpc_address or 'localhost'}:{opts.grpc_port}",
            admin_host=_url_host(opts.admin_address),
            admin_port=opts.admin_port,
        )

    def generate(self, sink: FileSink) -> None:
        """Render the server and its manifest into ``sink``."""
        params = self.template_params()
        env = _get_template_env(self.options.template_dir)
        self._generate_file(sink, env, params, SERVER_TEMPLATE, format_output=True)
        self._generate_file(sink, env, params, MANIFEST_TEMPLATE, format_output=False)

    def _generate_file(
        self,
        sink: FileSink,
        env: Environment,
        params: TemplateParams,
        template_name: str,
        format_output: bool,
    ) -> None:
        template = load_template(env, template_name, self.options.template_dir)
        try:
            content = template.render(
                services=params.services,
                imports=params.imports,
                grpc_imports=params.grpc_imports,
                grpc_address=params.grpc_address,
                admin_host=params.admin_host,
                admin_port=params.admin_port,
            )
        except TemplateError as e:
            raise TemplateRenderError(f"template execute {template_name}: {e}") from e

        if format_output:
            first_party = [imp.module for imp in params.imports + params.grpc_imports]
            content = format_source(content, first_party)

        out_name = TEMPLATE_OUTPUTS.get(template_name, template_name[:-len(".j2")])
        log.info("generated %s", out_name)
        sink.add_generated_file(out_name, content)


def generate_server(
    sink: FileSink,
    protos: Sequence[FileDescriptorProto],
    options: Optional[GeneratorOptions] = None,
    files_to_generate: Optional[Iterable[str]] = None,
) -> None:
    ServerGenerator(protos, options, files_to_generate).generate(sink)
