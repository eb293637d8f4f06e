"""
Resource sampling helpers.

Process trees are measured with psutil; container usage is parsed from
``docker stats`` output; disk usage is the size of the host workspace.
"""

from __future__ import annotations

import logging
import os
import platform
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

import psutil

from agent_fabric.models import ResourceSnapshot

logger = logging.getLogger("fabric.resources")

_SIZE_UNITS = {
    "b": 1,
    "kb": 1000,
    "kib": 1024,
    "mb": 1000**2,
    "mib": 1024**2,
    "gb": 1000**3,
    "gib": 1024**3,
    "tb": 1000**4,
    "tib": 1024**4,
}
_SIZE_RE = re.compile(r"^\s*([0-9.]+)\s*([a-zA-Z]*)\s*$")


def parse_size(value: str) -> float:
    """Parse a docker-style size ("12.5MiB", "1.2GB", "512B") into bytes."""
    match = _SIZE_RE.match(value)
    if not match:
        return 0.0
    number, unit = match.groups()
    return float(number) * _SIZE_UNITS.get(unit.lower() or "b", 1)


def parse_percent(value: str) -> float:
    try:
        return float(value.strip().rstrip("%"))
    except ValueError:
        return 0.0


def parse_docker_stats(stats: dict[str, Any]) -> tuple[float, float]:
    """
    Extract (cpu_percent, memory_mb) from one ``docker stats`` JSON line.

    MemUsage looks like "12.5MiB / 7.6GiB"; only the usage half counts.
    """
    cpu = parse_percent(str(stats.get("CPUPerc", "0%")))
    mem_usage = str(stats.get("MemUsage", "0B")).split("/")[0]
    return cpu, parse_size(mem_usage) / (1024 * 1024)


def directory_size_mb(path: str | Path) -> float:
    """Total size of regular files under a directory, in MB."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total / (1024 * 1024)


def list_files(path: str | Path, exclude: Iterable[str] = ()) -> list[str]:
    """
    Relative paths of every file under a directory, sorted.

    Files under any of the ``exclude`` subdirectories are skipped.
    """
    base = Path(path)
    if not base.is_dir():
        return []
    skipped = [base / sub for sub in exclude]
    return sorted(
        str(p.relative_to(base))
        for p in base.rglob("*")
        if p.is_file() and not any(p.is_relative_to(s) for s in skipped)
    )


def process_tree_usage(pids: Iterable[int]) -> tuple[float, float]:
    """
    Sum CPU percent and RSS (MB) over the given processes and their children.

    Processes that vanish while being measured are skipped.
    """
    cpu = 0.0
    rss = 0
    seen: set[int] = set()
    for pid in pids:
        try:
            root = psutil.Process(pid)
            procs = [root] + root.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        for proc in procs:
            if proc.pid in seen:
                continue
            seen.add(proc.pid)
            try:
                cpu += proc.cpu_percent(interval=None)
                rss += proc.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
    return cpu, rss / (1024 * 1024)


def snapshot_for_tree(pids: Iterable[int], workspace: str | Path) -> ResourceSnapshot:
    cpu, memory = process_tree_usage(pids)
    return ResourceSnapshot(
        cpu_percent=cpu,
        memory_mb=memory,
        disk_mb=directory_size_mb(workspace),
    )


def host_info() -> dict[str, Any]:
    """Host and current process information for status reports."""
    proc = psutil.Process()
    memory = psutil.virtual_memory()
    return {
        "platform": platform.system().lower(),
        "python_version": platform.python_version(),
        "cpu_count": psutil.cpu_count() or 1,
        "cpu_percent": psutil.cpu_percent(interval=None),
        "memory_percent": memory.percent,
        "process_rss_mb": round(proc.memory_info().rss / (1024 * 1024), 1),
        "process_uptime_s": round(datetime.now().timestamp() - proc.create_time(), 1),
    }
