"""Tests for Java selection and launch script generation."""

import os
import stat

import pytest

from zyper_daemon.core.models import InstanceConfig, ServerKind
from zyper_daemon.startup import (
    generate_startup_script,
    required_java_version,
    write_server_files,
    write_startup_script,
)
from zyper_daemon.startup.script import initial_heap_mb


def config_for(kind, tmp_path=None, **fields):
    directory = str(tmp_path) if tmp_path else "/srv/test"
    return InstanceConfig(id="abc", name="Lobby", type=kind, directory=directory, **fields)


class TestRuntimeMatrix:
    """Test the version prefix table."""

    @pytest.mark.parametrize(
        "version,java",
        [
            ("1.21", 21),
            ("1.21.4", 21),
            ("1.20.6", 17),
            ("1.20.5", 21),
            ("1.20.4", 17),
            ("1.20.1", 17),
            ("1.19.4", 17),
            ("1.17.1", 17),
            ("1.16.5", 11),
            ("1.13.2", 11),
            ("1.12.2", 8),
            ("1.8.8", 17),
            ("snapshot", 17),
        ],
    )
    def test_required_java(self, version, java):
        assert required_java_version(version) == java

    def test_longest_prefix_wins(self):
        # "1.20" also matches, but "1.20.5" is longer
        assert required_java_version("1.20.5") == 21


class TestScript:
    """Test generated launch scripts."""

    def test_vanilla_script(self):
        script = generate_startup_script(config_for(ServerKind.VANILLA, version="1.20.1", memory=2048, port=25570))

        assert script.startswith("#!/bin/bash\n")
        assert "REQUIRED_JAVA=17" in script
        assert 'export VERSION="1.20.1"' in script
        assert "export PORT=25570" in script
        assert "launchermeta.mojang.com" in script
        assert "-Xms1024M -Xmx2048M" in script
        assert "-XX:+UseG1GC" in script
        assert "-jar server.jar nogui" in script
        assert "@" not in script

    def test_paper_uses_requested_build(self):
        script = generate_startup_script(config_for(ServerKind.PAPER, version="1.21", build="42"))

        assert "REQUIRED_JAVA=21" in script
        assert 'BUILD="42"' in script
        assert "api.papermc.io/v2/projects/paper" in script

    def test_spigot_uses_buildtools(self):
        script = generate_startup_script(config_for(ServerKind.SPIGOT))
        assert "BuildTools.jar" in script

    def test_purpur(self):
        script = generate_startup_script(config_for(ServerKind.PURPUR))
        assert "api.purpurmc.org" in script

    @pytest.mark.parametrize("kind", [ServerKind.BUNGEE, ServerKind.VELOCITY])
    def test_proxies_run_without_nogui(self, kind):
        script = generate_startup_script(config_for(kind))
        assert "nogui" not in script
        assert script.rstrip().endswith("-jar server.jar")

    def test_initial_heap_floor(self):
        assert initial_heap_mb(512) == 512
        assert initial_heap_mb(1024) == 512
        assert initial_heap_mb(4096) == 2048

    def test_write_startup_script_is_executable(self, tmp_path):
        path = write_startup_script(config_for(ServerKind.VANILLA, tmp_path))

        assert path == tmp_path / "start.sh"
        assert os.stat(path).st_mode & stat.S_IXUSR


class TestServerFiles:
    """Test eula.txt and server.properties."""

    def test_game_server_files(self, tmp_path):
        write_server_files(config_for(ServerKind.PAPER, tmp_path, port=25566))

        assert (tmp_path / "eula.txt").read_text() == "eula=true\n"
        properties = (tmp_path / "server.properties").read_text()
        assert "server-port=25566" in properties
        assert "motd=Lobby" in properties

    def test_proxy_has_no_server_properties(self, tmp_path):
        write_server_files(config_for(ServerKind.VELOCITY, tmp_path))

        assert (tmp_path / "eula.txt").exists()
        assert not (tmp_path / "server.properties").exists()
