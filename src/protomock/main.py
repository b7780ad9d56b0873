from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Callable, List, Optional

from protomock.errors import ArgumentError, BuildError, ProtomockError
from protomock.logs import DEFAULT_VERBOSITY, VERBOSITY_LEVELS, init_logging
from protomock.orchestrator import AdminOptions, Options, Orchestrator

log = logging.getLogger(__name__)

PROG = "protomock"


def _split_imports(value: str) -> List[str]:
    return [p for p in value.split(",") if p]


def build_parser() -> argparse.ArgumentParser:
    # Every long flag is also accepted with a single dash.
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Generate, build and run a mock gRPC server from proto files",
        allow_abbrev=False,
    )
    parser.add_argument("protos", nargs="*", metavar="proto", help="proto files to serve")
    parser.add_argument(
        "-o", "-output", "--output",
        dest="output",
        default="generated",
        help="directory for rewritten protos and generated sources (default: %(default)s)",
    )
    parser.add_argument(
        "-template-dir", "--template-dir",
        dest="template_dir",
        default=None,
        help="directory with templates overriding the built-in ones",
    )
    parser.add_argument("-grpc-port", "--grpc-port", dest="grpc_port", default="4770", help="gRPC port")
    parser.add_argument(
        "-grpc-listen", "--grpc-listen", dest="grpc_listen", default="", help="gRPC bind address"
    )
    parser.add_argument("-admin-port", "--admin-port", dest="admin_port", default="4771", help="admin port")
    parser.add_argument(
        "-admin-listen", "--admin-listen",
        dest="admin_listen",
        default="",
        help="admin address the generated server calls, also passed to the start_admin hook",
    )
    parser.add_argument(
        "-stub", "--stub",
        dest="stub",
        default="",
        help="directory of stub files, only passed to the start_admin hook of an embedding program",
    )
    parser.add_argument(
        "-imports", "--imports",
        dest="imports",
        default="",
        help="comma separated proto import roots",
    )
    parser.add_argument(
        "-v", "-verbosity", "--verbosity",
        dest="verbosity",
        type=int,
        choices=sorted(VERBOSITY_LEVELS),
        default=DEFAULT_VERBOSITY,
        help="0=error 1=warning 2=info 3=debug 4=trace (default: %(default)s)",
    )
    return parser


def options_from_args(args: argparse.Namespace) -> Options:
    if not args.protos:
        raise ArgumentError("no proto files given")
    if not args.output:
        raise ArgumentError("output directory must not be empty")
    return Options(
        protos=list(args.protos),
        output=args.output,
        imports=_split_imports(args.imports),
        template_dir=args.template_dir or None,
        grpc_address=args.grpc_listen,
        grpc_port=args.grpc_port,
        admin_address=args.admin_listen,
        admin_port=args.admin_port,
        stub_dir=args.stub,
        verbosity=args.verbosity,
    )


def run(options: Options, start_admin: Optional[Callable[[AdminOptions], None]] = None) -> int:
    """Full pipeline: resolve, rewrite, compile, build, serve."""
    try:
        os.makedirs(options.output, exist_ok=True)
    except OSError as e:
        raise BuildError(f"creating output directory {options.output}: {e}") from e
    return Orchestrator(options, start_admin=start_admin).run()


def main(
    argv: Optional[List[str]] = None,
    start_admin: Optional[Callable[[AdminOptions], None]] = None,
) -> int:
    """Command-line entry point.

    protomock does not run an admin service itself. Programs that embed it
    pass ``start_admin`` to start one from the ``-stub`` and ``-admin-*``
    settings before the server is compiled.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    # Old invocations repeat the program name as the first argument.
    if argv and argv[0] == PROG:
        argv = argv[1:]

    args = build_parser().parse_args(argv)
    init_logging(args.verbosity)

    try:
        return run(options_from_args(args), start_admin)
    except ProtomockError as e:
        log.error("%s", e)
        return int(e.exit_code)


if __name__ == "__main__":
    sys.exit(main())
