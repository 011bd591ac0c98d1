# Host introspection handle shared by the snapshot collector and the check executor
import logging
import platform
import socket
from datetime import datetime
from typing import List, Optional, Tuple

import psutil  # Process, memory and disk introspection

from shared.models import ProcessInfo, utc_now

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """
    Probe a local TCP port by trying to bind it.

    If the bind fails something else already holds the port. The probe socket
    is released immediately, so the answer is only valid for the instant it
    was taken: a concurrent binder can change it right after.

    Args:
        port (int): TCP port to probe
        host (str): Local address to bind on

    Returns:
        bool: True if the port could not be bound
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        # Ignore TIME_WAIT leftovers; on Windows the same option would allow stealing the port
        if platform.system() != "Windows":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        return True
    finally:
        sock.close()
    return False


class HostInspector:
    """
    Explicit, refreshable view of the local machine.

    One instance is created at agent startup and handed to both the
    SystemCollector and the CheckExecutor. Nothing is read implicitly: callers
    invoke refresh() (or refresh_processes()) and then read the cached values.

    Attributes:
        processes: Process table as of the last refresh
        cpu_usage: System-wide CPU utilisation percentage since the previous refresh
        memory_total / memory_used: Physical memory in bytes
        disk_total / disk_used: Summed over distinct mounted partitions, in bytes
        refreshed_at: Time of the last full refresh, None before the first
    """

    def __init__(self):
        self.processes: List[ProcessInfo] = []
        self.cpu_usage: float = 0.0
        self.memory_total: int = 0
        self.memory_used: int = 0
        self.disk_total: int = 0
        self.disk_used: int = 0
        self.refreshed_at: Optional[datetime] = None

        # The first non-blocking sample is always 0.0; take it now so the first snapshot is meaningful
        psutil.cpu_percent(interval=None)

    def refresh(self) -> None:
        """Re-read CPU, memory, disk and the process table."""
        self.cpu_usage = psutil.cpu_percent(interval=None)

        memory = psutil.virtual_memory()
        self.memory_total = memory.total
        self.memory_used = memory.used

        self.disk_total, self.disk_used = self._read_disk_totals()
        self.refresh_processes()
        self.refreshed_at = utc_now()

    def refresh_processes(self) -> List[ProcessInfo]:
        """Re-read only the process table and return it."""
        processes = []
        for proc in psutil.process_iter(["pid", "name", "cpu_percent", "memory_info"]):
            info = proc.info  # Attributes we may not read come back as None
            memory_info = info.get("memory_info")
            processes.append(
                ProcessInfo(
                    pid=info["pid"],
                    name=info.get("name") or "",
                    cpu_usage=info.get("cpu_percent") or 0.0,
                    memory_bytes=memory_info.rss if memory_info else 0,
                )
            )
        self.processes = processes
        return processes

    def _read_disk_totals(self) -> Tuple[int, int]:
        total = used = 0
        seen_devices = set()

        for partition in psutil.disk_partitions(all=False):
            if partition.device in seen_devices:
                continue  # Bind mounts report the same device several times
            seen_devices.add(partition.device)

            try:
                usage = psutil.disk_usage(partition.mountpoint)
            except OSError as e:
                # Empty optical drives, revoked permissions, stale network mounts
                logger.debug(f"Skipping partition {partition.mountpoint}: {e}")
                continue
            total += usage.total
            used += usage.used

        return total, used
