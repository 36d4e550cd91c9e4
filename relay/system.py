"""Health and host-resource reports for the status endpoints."""

import logging
import os
import platform
import threading
import time
from typing import Any, Dict, Iterable, Optional

import psutil

logger = logging.getLogger(__name__)

_STARTED_AT = time.time()

# psutil.Process objects kept across requests; cpu_percent() measures from the previous call on the same object
_processes: Dict[int, psutil.Process] = {}
_processes_lock = threading.Lock()


def _round_mb(value: float) -> float:
    return round(value / (1024 ** 2), 1)


def get_health(ffmpeg_available: Optional[bool] = None) -> Dict[str, Any]:
    """Uptime and memory of this server process."""
    process = psutil.Process()
    memory = process.memory_info()
    result = {
        "healthy": True,
        "uptime": round(time.time() - _STARTED_AT, 1),
        "memory": {
            "rss_mb": _round_mb(memory.rss),
            "vms_mb": _round_mb(memory.vms),
        },
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
    }
    if ffmpeg_available is not None:
        result["ffmpeg_available"] = ffmpeg_available
        result["healthy"] = ffmpeg_available
    return result


def _track_processes(pids: Iterable[int]) -> Dict[int, psutil.Process]:
    """Return cached Process objects for ``pids``, priming CPU sampling on new ones.

    Entries for pids that are gone or no longer requested are dropped.
    """
    wanted = set(pids)
    with _processes_lock:
        for pid in list(_processes):
            if pid not in wanted or not _processes[pid].is_running():
                del _processes[pid]
        for pid in wanted - set(_processes):
            try:
                proc = psutil.Process(pid)
                proc.cpu_percent(interval=None)
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug(f"Cannot track PID {pid}: {e}")
                continue
            _processes[pid] = proc
        return dict(_processes)


def _process_usage(proc: psutil.Process) -> Optional[Dict[str, Any]]:
    try:
        with proc.oneshot():
            return {
                "pid": proc.pid,
                "cpu": round(proc.cpu_percent(interval=None), 1),
                "memory_mb": _round_mb(proc.memory_info().rss),
                "memory_percent": round(proc.memory_percent(), 2),
            }
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        logger.debug(f"Cannot read usage for PID {proc.pid}: {e}")
        return None


def get_system_resources(active_pids: Dict[str, int], states: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Host CPU/memory plus per-slot ffmpeg usage.

    Per-process CPU is measured over the host sampling interval on the first
    request for a pid and since the previous request afterwards.

    Args:
        active_pids: slot id -> ffmpeg pid for live processes
        states: slot id -> state, attached to each process entry
    """
    tracked = _track_processes(active_pids.values())

    memory = psutil.virtual_memory()
    system_info = {
        "platform": platform.system().lower(),
        "arch": platform.machine(),
        "cpus": psutil.cpu_count(logical=True),
        "cpuUsage": psutil.cpu_percent(interval=0.1),
        "totalMemory": memory.total,
        "freeMemory": memory.available,
        "memoryUsage": memory.percent,
    }
    try:
        la1, la5, la15 = os.getloadavg()
        system_info["loadAverage"] = [round(la1, 2), round(la5, 2), round(la15, 2)]
    except (AttributeError, OSError):
        system_info["loadAverage"] = []

    ffmpeg_processes = []
    for slot_id, pid in sorted(active_pids.items()):
        proc = tracked.get(pid)
        usage = _process_usage(proc) if proc is not None else None
        if usage is None:
            continue
        usage["id"] = slot_id
        usage["status"] = (states or {}).get(slot_id, "unknown")
        ffmpeg_processes.append(usage)

    return {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
        "server": {"pid": os.getpid(), "uptime": round(time.time() - _STARTED_AT, 1)},
        "system": system_info,
        "processes": {
            "active_ffmpeg": len(ffmpeg_processes),
            "ffmpeg_processes": ffmpeg_processes,
        },
    }
