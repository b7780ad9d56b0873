"""protoc plugin that renders the protomock server.

protoc runs this as ``protoc-gen-protomock``: a serialized CodeGeneratorRequest
arrives on stdin and the CodeGeneratorResponse goes to stdout, so all logging
must stay on stderr.
"""

from __future__ import annotations

import logging
import sys

from google.protobuf.compiler import plugin_pb2 as plugin

from protomock.errors import GenerationError
from protomock.generator.server_generator import generate_server
from protomock.generator.sink import ResponseSink
from protomock.logs import init_logging
from protomock.models import GeneratorOptions, parse_parameter

log = logging.getLogger(__name__)


def handle_request(request: plugin.CodeGeneratorRequest) -> plugin.CodeGeneratorResponse:
    response = plugin.CodeGeneratorResponse()
    # Nothing special is done for proto3 "optional", but protoc refuses to run
    # plugins that do not declare support for it on files that use it.
    response.supported_features = plugin.CodeGeneratorResponse.FEATURE_PROTO3_OPTIONAL

    options = GeneratorOptions.from_parameter(request.parameter)
    log.debug("plugin options: %s", options)
    try:
        generate_server(
            ResponseSink(response),
            request.proto_file,
            options,
            files_to_generate=request.file_to_generate,
        )
    except GenerationError as e:
        # protoc reports the error and exits non-zero; no partial output.
        response.ClearField("file")
        response.error = f"failed to generate server: {e}"
    return response


def main() -> None:
    request = plugin.CodeGeneratorRequest.FromString(sys.stdin.buffer.read())

    params = parse_parameter(request.parameter)
    try:
        verbosity = int(params.get("verbosity", 1))
    except ValueError:
        verbosity = 1
    init_logging(verbosity, prefix="protoc-gen-protomock")

    response = handle_request(request)
    sys.stdout.buffer.write(response.SerializeToString())


if __name__ == "__main__":
    main()
