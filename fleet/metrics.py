from __future__ import annotations

import time

import psutil

from .api_models import CpuStats, MetricsSnapshot


def collect_metrics() -> MetricsSnapshot:
    """Host and daemon-process metrics reported on register and heartbeat.

    Disk fields are part of the wire format but are not measured yet.
    """
    vm = psutil.virtual_memory()
    mem = psutil.Process().memory_info()
    return MetricsSnapshot(
        cpu=CpuStats(cores=psutil.cpu_count() or 0, usage=psutil.cpu_percent(interval=None)),
        ram_available=vm.total,
        ram_used=vm.total - vm.available,
        disk_available=0,
        disk_used=0,
        heap_available=mem.vms,
        heap_used=mem.rss,
        last_update=int(time.time() * 1000),
    )
