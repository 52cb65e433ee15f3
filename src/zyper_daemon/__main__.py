"""CLI entrypoints (zyper-daemon run, zyper-daemon configure)."""

import argparse
import sys
from pathlib import Path


def main():
    parser = argparse.ArgumentParser(prog="zyper-daemon", description="Zyper game server node agent")
    sub = parser.add_subparsers(dest="cmd")

    cmd_run = sub.add_parser("run", help="Run the daemon")
    cmd_run.add_argument("--host", help="Bind address")
    cmd_run.add_argument("--port", type=int, help="Listen port")

    cmd_configure = sub.add_parser("configure", help="Register this node with a panel")
    cmd_configure.add_argument("--panel", required=True, help="Panel URL")
    cmd_configure.add_argument("--key", required=True, help="Panel key")
    cmd_configure.add_argument("--name", help="Node name")
    cmd_configure.add_argument("--location", help="Node location")

    args = parser.parse_args()

    from zyper_daemon.core.config import Settings

    if args.cmd == "configure":
        from zyper_daemon.store import InstanceStore, configure_node
        from zyper_daemon.utils.logging import setup_logging

        settings = Settings()
        setup_logging(settings.log_level, "console")
        store = InstanceStore(Path(settings.config_path))
        document = configure_node(store, args.panel, args.key, name=args.name, location=args.location)

        print("✅ Configuration saved to", store.path)
        print("📡 Panel URL:", document["panelUrl"])
        print("🏷️  Node Name:", document["nodeName"])
        print("📍 Location:", document["location"])
        print("🆔 Node ID:", document["nodeId"])
        print("🔐 Node Key:", document["nodeKey"])
        print("🔌 Port:", document["port"])
        return

    if args.cmd in (None, "run"):
        from zyper_daemon.main import run

        overrides = {}
        if getattr(args, "host", None):
            overrides["host"] = args.host
        if getattr(args, "port", None):
            overrides["port"] = args.port
        run(Settings(**overrides))
        return

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
