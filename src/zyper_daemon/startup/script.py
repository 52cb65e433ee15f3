"""Launch script and server file generation for new instances."""

import os
from datetime import datetime, timezone
from pathlib import Path
from string import Template
from typing import List, Optional, Tuple

import structlog

from zyper_daemon.core.models import InstanceConfig, ServerKind

logger = structlog.get_logger()

DEFAULT_JAVA_VERSION = 17

# Minecraft version prefix -> minimum Java release
JAVA_VERSION_MATRIX: List[Tuple[str, int]] = [
    ("1.21", 21),
    ("1.20.5", 21),
    ("1.20.4", 17),
    ("1.20", 17),
    ("1.19", 17),
    ("1.18", 17),
    ("1.17", 17),
    ("1.16", 11),
    ("1.15", 11),
    ("1.14", 11),
    ("1.13", 11),
    ("1.12", 8),
]

# Aikar's G1 flags
JVM_FLAGS = [
    "-XX:+UseG1GC",
    "-XX:+ParallelRefProcEnabled",
    "-XX:MaxGCPauseMillis=200",
    "-XX:+UnlockExperimentalVMOptions",
    "-XX:+DisableExplicitGC",
    "-XX:+AlwaysPreTouch",
    "-XX:G1NewSizePercent=30",
    "-XX:G1MaxNewSizePercent=40",
    "-XX:G1HeapRegionSize=8M",
    "-XX:G1ReservePercent=20",
    "-XX:G1HeapWastePercent=5",
    "-XX:G1MixedGCCountTarget=4",
    "-XX:InitiatingHeapOccupancyPercent=15",
    "-XX:G1MixedGCLiveThresholdPercent=90",
    "-XX:G1RSetUpdatingPauseTimePercent=5",
    "-XX:SurvivorRatio=32",
    "-XX:+PerfDisableSharedMem",
    "-XX:MaxTenuringThreshold=1",
]


def required_java_version(minecraft_version: str) -> int:
    """Minimum Java release for a Minecraft version; longest prefix wins."""
    best: Optional[Tuple[str, int]] = None
    for prefix, java in JAVA_VERSION_MATRIX:
        if minecraft_version.startswith(prefix) and (best is None or len(prefix) > len(best[0])):
            best = (prefix, java)
    return best[1] if best else DEFAULT_JAVA_VERSION


def initial_heap_mb(memory_mb: int) -> int:
    return max(512, memory_mb // 2)


class _ScriptTemplate(Template):
    # bash already owns "$"
    delimiter = "@"


_HEADER = _ScriptTemplate("""#!/bin/bash
set -e

# Zyper game server startup
# Generated: @generated
# Server ID: @server_id
# Server Type: @kind
# Version: @version
# Required Java: @java

SERVER_DIR="@directory"
export VERSION="@version"
export PORT=@port
export MEMORY=@memory
export EULA="true"

cd "$SERVER_DIR" || { echo "Failed to enter server directory"; exit 1; }

echo "Starting @kind @version on port @port (@{memory}MB)"

if ! command -v curl &>/dev/null; then
  echo "❌ ERROR: curl is required but not installed"
  exit 1
fi

REQUIRED_JAVA=@java
JAVA_BIN=""
DETECTED_VERSION=0

get_java_version() {
  local out
  out=$("$1" -version 2>&1 | head -1)
  local v
  v=$(echo "$out" | grep -oP 'version "\\K[0-9]+' | head -1)
  if [ "$v" = "1" ]; then
    v=$(echo "$out" | grep -oP 'version "1\\.\\K[0-9]+' | head -1)
  fi
  echo "${v:-0}"
}

echo "🔎 Searching for Java ${REQUIRED_JAVA}..."
if command -v java &>/dev/null; then
  DETECTED_VERSION=$(get_java_version java)
  if [ "$DETECTED_VERSION" -ge "$REQUIRED_JAVA" ]; then
    JAVA_BIN="java"
  fi
fi

if [ -z "$JAVA_BIN" ] && [ -d "/usr/lib/jvm" ]; then
  for candidate in /usr/lib/jvm/*/bin/java; do
    [ -x "$candidate" ] || continue
    VERSION_FOUND=$(get_java_version "$candidate")
    if [ "$VERSION_FOUND" -ge "$REQUIRED_JAVA" ]; then
      JAVA_BIN="$candidate"
      DETECTED_VERSION=$VERSION_FOUND
      break
    fi
  done
fi

if [ -z "$JAVA_BIN" ]; then
  echo "❌ JAVA VERSION ERROR: Minecraft @version requires Java ${REQUIRED_JAVA}+"
  exit 1
fi

echo "✅ Using Java $DETECTED_VERSION: $JAVA_BIN"

""")

_DOWNLOADS = {
    ServerKind.PAPER: _ScriptTemplate("""# PaperMC
if [ ! -s server.jar ]; then
  PAPER_API="https://api.papermc.io/v2/projects/paper/versions/${VERSION}"
  BUILD="@build"
  if [ -z "$BUILD" ] || [ "$BUILD" = "latest" ]; then
    BUILD=$(curl -fsSL "${PAPER_API}" | grep -oP '"builds":\\[.*?\\K[0-9]+(?=\\])' | tail -1)
  fi
  if [ -z "$BUILD" ]; then
    echo "❌ ERROR: Failed to fetch Paper builds for version ${VERSION}"
    exit 1
  fi
  JAR_NAME="paper-${VERSION}-${BUILD}.jar"
  echo "⬇️  Downloading ${JAR_NAME}"
  curl -fsSL -o server.jar "${PAPER_API}/builds/${BUILD}/downloads/${JAR_NAME}" || {
    echo "❌ Failed to download PaperMC"
    exit 1
  }
fi
"""),
    ServerKind.PURPUR: _ScriptTemplate("""# Purpur
if [ ! -s server.jar ]; then
  PURPUR_API="https://api.purpurmc.org/v2/purpur/${VERSION}"
  LATEST_BUILD=$(curl -fsSL "${PURPUR_API}" | grep -oP '"latest":"?\\K[0-9]+')
  if [ -z "$LATEST_BUILD" ]; then
    echo "❌ ERROR: Failed to fetch Purpur version ${VERSION}"
    exit 1
  fi
  echo "⬇️  Downloading Purpur ${VERSION} build ${LATEST_BUILD}"
  curl -fsSL -o server.jar "${PURPUR_API}/${LATEST_BUILD}/download" || {
    echo "❌ Failed to download Purpur"
    exit 1
  }
fi
"""),
    ServerKind.SPIGOT: _ScriptTemplate("""# Spigot via BuildTools
if [ ! -s server.jar ]; then
  echo "⬇️  Downloading BuildTools..."
  curl -fsSL -o BuildTools.jar "https://hub.spigotmc.org/jenkins/job/BuildTools/lastSuccessfulBuild/artifact/target/BuildTools.jar" || {
    echo "❌ Failed to download BuildTools"
    exit 1
  }
  echo "🏗️  Building Spigot ${VERSION} (this may take 5-10 minutes)..."
  "$JAVA_BIN" -jar BuildTools.jar --rev "${VERSION}" --output-dir "${SERVER_DIR}" || {
    echo "❌ Failed to build Spigot"
    exit 1
  }
  SPIGOT_JAR=$(ls "${SERVER_DIR}"/spigot-*.jar 2>/dev/null | head -1)
  if [ -z "$SPIGOT_JAR" ]; then
    echo "❌ ERROR: No Spigot JAR found after build"
    exit 1
  fi
  mv "$SPIGOT_JAR" server.jar
  rm -f BuildTools.jar BuildTools.log.txt
fi
"""),
    ServerKind.BUNGEE: _ScriptTemplate("""# BungeeCord
if [ ! -s server.jar ]; then
  echo "⬇️  Downloading BungeeCord..."
  curl -fsSL -o server.jar "https://ci.md-5.net/job/BungeeCord/lastSuccessfulBuild/artifact/bootstrap/target/BungeeCord.jar" || {
    echo "❌ Failed to download BungeeCord"
    exit 1
  }
fi
"""),
    ServerKind.VELOCITY: _ScriptTemplate("""# Velocity
if [ ! -s server.jar ]; then
  VELOCITY_API="https://api.papermc.io/v2/projects/velocity"
  LATEST_VERSION=$(curl -fsSL "${VELOCITY_API}" | grep -oP '"versions":\\[.*?"\\K[^"]+(?="\\])' | tail -1)
  LATEST_VERSION=${LATEST_VERSION:-3.3.0-SNAPSHOT}
  LATEST_BUILD=$(curl -fsSL "${VELOCITY_API}/versions/${LATEST_VERSION}" | grep -oP '"builds":\\[.*?\\K[0-9]+(?=\\])' | tail -1)
  echo "⬇️  Downloading Velocity ${LATEST_VERSION}..."
  curl -fsSL -o server.jar "${VELOCITY_API}/versions/${LATEST_VERSION}/builds/${LATEST_BUILD}/downloads/velocity-${LATEST_VERSION}-${LATEST_BUILD}.jar" || {
    echo "❌ Failed to download Velocity"
    exit 1
  }
fi
"""),
    ServerKind.VANILLA: _ScriptTemplate("""# Vanilla
if [ ! -s server.jar ]; then
  MC_MANIFEST="https://launchermeta.mojang.com/mc/game/version_manifest.json"
  VERSION_URL=$(curl -fsSL "${MC_MANIFEST}" | grep -oP '"id":\\s*"'"${VERSION}"'".*?"url":\\s*"\\K[^"]+' | head -1)
  if [ -z "$VERSION_URL" ]; then
    echo "❌ ERROR: Version ${VERSION} not found in Minecraft manifest"
    exit 1
  fi
  SERVER_URL=$(curl -fsSL "$VERSION_URL" | grep -oP '"server":.*?"url":\\s*"\\K[^"]+' | head -1)
  echo "⬇️  Downloading Minecraft ${VERSION}..."
  curl -fsSL -o server.jar "${SERVER_URL}" || {
    echo "❌ Failed to download Minecraft server"
    exit 1
  }
fi
"""),
}

_LAUNCH = _ScriptTemplate("""
if [ ! -f eula.txt ]; then
  echo "eula=true" > eula.txt
fi

JAVA_ARGS="-Xms@{xms}M -Xmx@{xmx}M @flags"

echo "🚀 Starting @kind server (Java $DETECTED_VERSION)"
exec "$JAVA_BIN" ${JAVA_ARGS} -jar server.jar@nogui
""")


def generate_startup_script(config: InstanceConfig, generated: Optional[datetime] = None) -> str:
    """Render the bash launch script for an instance.

    The script locates a Java runtime that satisfies
    :func:`required_java_version`, downloads the server jar on first run and
    then ``exec``s the JVM so the server replaces the shell.
    """
    kind = ServerKind(config.type)
    values = {
        "generated": (generated or datetime.now(timezone.utc)).isoformat(),
        "server_id": config.id,
        "kind": kind.value,
        "version": config.version,
        "build": config.build,
        "java": required_java_version(config.version),
        "directory": config.directory,
        "port": config.port,
        "memory": config.memory,
        "xms": initial_heap_mb(config.memory),
        "xmx": config.memory,
        "flags": " ".join(JVM_FLAGS),
        "nogui": "" if kind.is_proxy else " nogui",
    }
    return "".join(
        template.substitute(values)
        for template in (_HEADER, _DOWNLOADS[kind], _LAUNCH)
    )


def server_properties(config: InstanceConfig) -> str:
    lines = [
        f"server-port={config.port}",
        "max-players=20",
        "view-distance=10",
        "online-mode=false",
        "level-name=world",
        f"motd={config.name}",
        "pvp=true",
        "difficulty=normal",
        "gamemode=survival",
        "enable-command-block=true",
    ]
    return "\n".join(lines) + "\n"


def write_startup_script(config: InstanceConfig) -> Path:
    path = Path(config.directory) / config.startup_script
    path.write_text(generate_startup_script(config), encoding="utf-8")
    os.chmod(path, 0o755)
    logger.info(
        "Wrote startup script",
        instance_id=config.id,
        kind=ServerKind(config.type).value,
        java=required_java_version(config.version),
        path=str(path),
    )
    return path


def write_server_files(config: InstanceConfig) -> None:
    """Write eula.txt and, for non-proxy kinds, server.properties."""
    directory = Path(config.directory)
    if not ServerKind(config.type).is_proxy:
        (directory / "server.properties").write_text(server_properties(config), encoding="utf-8")
    (directory / "eula.txt").write_text("eula=true\n", encoding="utf-8")
