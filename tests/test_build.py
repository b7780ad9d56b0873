import os
import subprocess
import sys
import zipfile

import pytest

from protomock import build
from protomock.build import (
    GENERATED_MODULE_NAME,
    ProtocParams,
    build_server,
    ensure_packages,
    install_dependencies,
    make_executable,
    manifest_dependencies,
    protoc_command,
    run_protoc,
    set_module_identity,
)
from protomock.errors import BuildError, CompilerInvocationError

MANIFEST = """\
# Manifest of a protomock generated server. Do not edit.
[build-system]
requires = ["setuptools>=61"]

[project]
name = "protomock-server"
version = "0.0.0"
dependencies = [
    "grpcio>=1.50",
    "requests>=2.28",
]
"""

SERVER = """\
def main():
    print("serving")
"""


class FakeRun:
    """Stands in for subprocess.run, recording every command."""

    def __init__(self, returncodes=None):
        self.calls = []
        self.returncodes = returncodes or {}

    def __call__(self, cmd, cwd=None):
        self.calls.append((list(cmd), cwd))
        for marker, code in self.returncodes.items():
            if marker in cmd:
                return subprocess.CompletedProcess(cmd, code)
        return subprocess.CompletedProcess(cmd, 0)


@pytest.fixture
def fake_run(monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr(build.subprocess, "run", fake)
    return fake


@pytest.fixture
def generated(tmp_path):
    (tmp_path / "server.py").write_text(SERVER)
    (tmp_path / "pyproject.toml").write_text(MANIFEST)
    (tmp_path / "bar").mkdir()
    (tmp_path / "bar" / "bar_pb2.py").write_text("")
    (tmp_path / "hello_pb2.py").write_text("")
    return tmp_path


class TestProtocCommand:
    def test_output_tree_is_first_root(self):
        params = ProtocParams(protos=["gen/hello.proto"], output="gen", imports=["protos", "/abs"])
        cmd = protoc_command(params, plugin_path="/bin/protoc-gen-protomock")

        assert cmd[:5] == [sys.executable, "-m", "grpc_tools.protoc", "-I", "gen"]
        assert cmd[5:9] == ["-I", "protos", "-I", "/abs"]
        assert cmd[9] == "gen/hello.proto"

    def test_outputs_and_plugin(self):
        params = ProtocParams(protos=["gen/hello.proto"], output="gen")
        cmd = protoc_command(params, plugin_path="/bin/protoc-gen-protomock")

        assert "--python_out=gen" in cmd
        assert "--grpc_python_out=gen" in cmd
        assert "--plugin=protoc-gen-protomock=/bin/protoc-gen-protomock" in cmd
        assert "--protomock_out=gen" in cmd

    def test_generator_options(self, tmp_path):
        params = ProtocParams(
            protos=["gen/hello.proto"],
            output="gen",
            admin_port="6000",
            admin_address="0.0.0.0",
            grpc_port="5000",
            template_dir=str(tmp_path),
            verbosity=3,
        )
        opts = [a for a in protoc_command(params, plugin_path="p") if a.startswith("--protomock_opt=")]

        assert opts == [
            "--protomock_opt=admin-port=6000",
            "--protomock_opt=admin-address=0.0.0.0",
            "--protomock_opt=grpc-address=",
            "--protomock_opt=grpc-port=5000",
            f"--protomock_opt=template-dir={tmp_path}",
            "--protomock_opt=verbosity=3",
        ]

    def test_relative_template_dir_made_absolute(self):
        params = ProtocParams(protos=[], output="gen", template_dir="tpl")
        cmd = protoc_command(params, plugin_path="p")
        assert f"--protomock_opt=template-dir={os.path.abspath('tpl')}" in cmd


class TestRunProtoc:
    def test_success(self, fake_run, monkeypatch):
        monkeypatch.setattr(build, "find_plugin", lambda: "/bin/protoc-gen-protomock")
        run_protoc(ProtocParams(protos=["gen/hello.proto"], output="gen"))
        assert fake_run.calls[0][0][:3] == [sys.executable, "-m", "grpc_tools.protoc"]

    def test_non_zero_exit(self, monkeypatch):
        monkeypatch.setattr(build, "find_plugin", lambda: "/bin/protoc-gen-protomock")
        monkeypatch.setattr(build.subprocess, "run", FakeRun({"grpc_tools.protoc": 1}))
        with pytest.raises(CompilerInvocationError, match="exit status 1"):
            run_protoc(ProtocParams(protos=["gen/hello.proto"], output="gen"))

    def test_cannot_start(self, monkeypatch):
        def broken(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(build, "find_plugin", lambda: "/bin/protoc-gen-protomock")
        monkeypatch.setattr(build.subprocess, "run", broken)
        with pytest.raises(CompilerInvocationError, match="could not run protoc"):
            run_protoc(ProtocParams(protos=["gen/hello.proto"], output="gen"))

    def test_plugin_missing(self, monkeypatch, tmp_path):
        monkeypatch.setattr(build.shutil, "which", lambda name: None)
        monkeypatch.setattr(build.sys, "executable", str(tmp_path / "python"))
        with pytest.raises(CompilerInvocationError, match="protoc-gen-protomock not found"):
            run_protoc(ProtocParams(protos=["gen/hello.proto"], output="gen"))

    def test_plugin_next_to_interpreter(self, monkeypatch, tmp_path):
        plugin = tmp_path / "protoc-gen-protomock"
        plugin.write_text("#!/bin/sh\n")
        plugin.chmod(0o755)
        monkeypatch.setattr(build.shutil, "which", lambda name: None)
        monkeypatch.setattr(build.sys, "executable", str(tmp_path / "python"))
        assert build.find_plugin() == str(plugin)


class TestModuleIdentity:
    def test_replaces_project_name(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text(MANIFEST)
        set_module_identity(str(tmp_path))

        text = (tmp_path / "pyproject.toml").read_text()
        assert f'name = "{GENERATED_MODULE_NAME}"\n' in text
        assert "protomock-server" not in text
        assert 'requires = ["setuptools>=61"]' in text

    def test_inserts_missing_name(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text('[project]\nversion = "1"\n')
        set_module_identity(str(tmp_path))
        assert (tmp_path / "pyproject.toml").read_text() == f'[project]\nname = "{GENERATED_MODULE_NAME}"\nversion = "1"\n'

    def test_name_in_other_table_untouched(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text('[tool.x]\nname = "keep"\n\n[project]\nname = "old"\n')
        set_module_identity(str(tmp_path))
        text = (tmp_path / "pyproject.toml").read_text()
        assert 'name = "keep"' in text
        assert 'name = "old"' not in text

    def test_no_project_table(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text('[tool.x]\nname = "keep"\n')
        with pytest.raises(BuildError, match="no \\[project\\] table"):
            set_module_identity(str(tmp_path))

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(BuildError, match="setting module name"):
            set_module_identity(str(tmp_path))


class TestDependencies:
    def test_reads_manifest(self, generated):
        assert manifest_dependencies(str(generated)) == ["grpcio>=1.50", "requests>=2.28"]

    def test_invalid_manifest(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project\n")
        with pytest.raises(BuildError, match="reading"):
            manifest_dependencies(str(tmp_path))

    def test_installs_with_pip(self, generated, fake_run):
        install_dependencies(str(generated))
        cmd, cwd = fake_run.calls[0]
        assert cmd[:4] == [sys.executable, "-m", "pip", "install"]
        assert cmd[-2:] == ["grpcio>=1.50", "requests>=2.28"]
        assert cwd == str(generated)

    def test_nothing_to_install(self, tmp_path, fake_run):
        (tmp_path / "pyproject.toml").write_text('[project]\nname = "x"\n')
        install_dependencies(str(tmp_path))
        assert fake_run.calls == []

    def test_pip_failure(self, generated, monkeypatch):
        monkeypatch.setattr(build.subprocess, "run", FakeRun({"pip": 1}))
        with pytest.raises(BuildError, match="resolving dependencies"):
            install_dependencies(str(generated))


class TestPackages:
    def test_adds_init_files(self, tmp_path):
        (tmp_path / "a" / "b").mkdir(parents=True)
        (tmp_path / "a" / "b" / "c_pb2_grpc.py").write_text("")
        (tmp_path / "top_pb2.py").write_text("")

        created = ensure_packages(str(tmp_path))

        assert (tmp_path / "a" / "__init__.py").exists()
        assert (tmp_path / "a" / "b" / "__init__.py").exists()
        assert not (tmp_path / "__init__.py").exists()
        assert len(created) == 2

    def test_keeps_existing_init(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "__init__.py").write_text("X = 1\n")
        (tmp_path / "a" / "m_pb2.py").write_text("")

        assert ensure_packages(str(tmp_path)) == []
        assert (tmp_path / "a" / "__init__.py").read_text() == "X = 1\n"


class TestExecutable:
    def test_archive_contents(self, generated):
        (generated / "bar" / "__init__.py").write_text("")
        (generated / "__pycache__").mkdir()
        (generated / "__pycache__" / "server.cpython-311.pyc").write_bytes(b"")
        (generated / "hello.proto").write_text('syntax = "proto3";\n')

        target = make_executable(str(generated))

        assert target == generated / "server"
        assert os.access(target, os.X_OK)
        with open(target, "rb") as f:
            assert f.readline() == f"#!{sys.executable}\n".encode()
        with zipfile.ZipFile(target) as zf:
            names = set(zf.namelist())
        assert {"__main__.py", "server.py", "hello_pb2.py", "bar/bar_pb2.py", "bar/__init__.py"} <= names
        assert "pyproject.toml" not in names
        assert "hello.proto" not in names
        assert not any("__pycache__" in n for n in names)

    def test_rebuild_replaces_archive(self, generated):
        make_executable(str(generated))
        target = make_executable(str(generated))
        with zipfile.ZipFile(target) as zf:
            assert "server" not in zf.namelist()
        assert not (generated / "server.partial").exists()


class TestBuildServer:
    def test_steps(self, generated, fake_run):
        target = build_server(str(generated))

        assert target == generated / "server"
        assert f'name = "{GENERATED_MODULE_NAME}"' in (generated / "pyproject.toml").read_text()
        assert (generated / "bar" / "__init__.py").exists()
        commands = [cmd for cmd, _ in fake_run.calls]
        assert commands[0][:4] == [sys.executable, "-m", "pip", "install"]
        assert commands[1] == [sys.executable, "-m", "compileall", "-q", "."]

    def test_no_server_source(self, tmp_path, fake_run):
        with pytest.raises(BuildError, match="no generated server.py"):
            build_server(str(tmp_path))

    def test_compile_failure(self, generated, monkeypatch):
        monkeypatch.setattr(build.subprocess, "run", FakeRun({"compileall": 1}))
        with pytest.raises(BuildError, match="compiling sources failed") as exc:
            build_server(str(generated))
        assert exc.value.exit_code == 3
        assert not (generated / "server").exists()
