"""Destinations for generated files.

The generator never writes files itself; it hands each rendered artifact to a
sink. Inside protoc that is the plugin response, in tests a dict.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict

from google.protobuf.compiler import plugin_pb2


class FileSink(ABC):
    @abstractmethod
    def add_generated_file(self, name: str, content: str) -> None:
        ...


class ResponseSink(FileSink):
    """Adds generated files to a CodeGeneratorResponse for protoc to write."""

    def __init__(self, response: plugin_pb2.CodeGeneratorResponse):
        self.response = response

    def add_generated_file(self, name: str, content: str) -> None:
        out = self.response.file.add()
        out.name = name
        out.content = content


class MemorySink(FileSink):
    """Keeps generated files in memory, keyed by file name."""

    def __init__(self) -> None:
        self.files: Dict[str, str] = {}

    def add_generated_file(self, name: str, content: str) -> None:
        self.files[name] = content
