"""Process tree signalling and resource statistics."""

import os
import platform
import signal
import time
from typing import Any, Dict, List, Optional

import psutil
import structlog

logger = structlog.get_logger()


class ResourceManager:
    """Signals and inspects instance process trees."""

    @staticmethod
    def signal_tree(pid: int, sig: int = signal.SIGTERM) -> List[int]:
        """Send ``sig`` to ``pid`` and all of its descendants.

        The launcher script is itself a child that spawns the real server,
        so signalling only ``pid`` could leave the server orphaned. Children
        are signalled first. Returns the pids that were signalled.
        """
        try:
            parent = psutil.Process(pid)
        except psutil.NoSuchProcess:
            logger.debug("Process already gone", pid=pid)
            return []

        try:
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        signalled = []
        for proc in children + [parent]:
            try:
                proc.send_signal(sig)
                signalled.append(proc.pid)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning("Not permitted to signal process", pid=proc.pid, signal=int(sig))

        logger.info("Signalled process tree", pid=pid, signal=signal.Signals(sig).name, pids=signalled)
        return signalled

    @staticmethod
    def prime_cpu(pid: int, probes: Dict[int, psutil.Process]) -> None:
        """Take the first CPU sample so the next stats call has a baseline."""
        try:
            process = psutil.Process(pid)
            process.cpu_percent(interval=None)
        except psutil.Error:
            return
        probes[pid] = process

    @staticmethod
    def get_process_stats(pid: int, probes: Optional[Dict[int, psutil.Process]] = None) -> Dict[str, Any]:
        """Get aggregated resource usage for a process tree.

        CPU percent is measured since the previous call on the same
        ``psutil.Process`` object, so callers keep ``probes`` (pid to
        Process) alive between calls. Without it the CPU reading is 0.
        """
        if probes is None:
            probes = {}
        try:
            process = probes.get(pid) or psutil.Process(pid)
            probes[pid] = process
            tree = [process]
            try:
                for child in process.children(recursive=True):
                    tree.append(probes.setdefault(child.pid, child))
            except psutil.NoSuchProcess:
                pass

            live = {proc.pid for proc in tree}
            for stale in [p for p in probes if p not in live]:
                del probes[stale]

            rss = 0
            cpu = 0.0
            threads = 0
            for proc in tree:
                try:
                    with proc.oneshot():
                        rss += proc.memory_info().rss
                        cpu += proc.cpu_percent(interval=None)
                        threads += proc.num_threads()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue

            return {
                "pid": pid,
                "status": process.status(),
                "processes": len(tree),
                "memory": {
                    "rss_bytes": rss,
                    "rss_mb": round(rss / (1024 * 1024), 2),
                },
                "cpu": {"percent": cpu},
                "num_threads": threads,
            }

        except psutil.NoSuchProcess:
            return {"error": "Process not found"}
        except Exception as e:
            return {"error": str(e)}

    @staticmethod
    def get_system_stats(active_servers: int = 0) -> Dict[str, Any]:
        """Host-level statistics reported by /stats."""
        memory = psutil.virtual_memory()
        try:
            load = os.getloadavg()[0]
        except (AttributeError, OSError):
            load = psutil.cpu_percent(interval=None)

        return {
            "cpu": load,
            "memory": {
                "total": memory.total,
                "used": memory.used,
                "free": memory.available,
                "percent": round(memory.percent, 2),
            },
            "uptime": time.time() - psutil.Process().create_time(),
            "platform": platform.system().lower(),
            "arch": platform.machine(),
            "pythonVersion": platform.python_version(),
            "activeServers": active_servers,
        }
