# System snapshot collection for heartbeats
import ipaddress
import logging
import platform
import socket
from typing import List, Tuple

import psutil

from agent.core.host import HostInspector, is_port_in_use
from shared.models import SoftwareInfo, utc_now
from shared.protocol import SystemSnapshotData

logger = logging.getLogger(__name__)

# Processes beyond this count are dropped to bound the heartbeat payload
MAX_PROCESSES = 100

# Sampled with the bind probe; this is not a port scan
COMMON_PORTS = [22, 80, 443, 3306, 5432, 8080, 8443, 3000, 5000, 6379, 27017]


class SystemCollector:
    """
    Gathers host identity and point-in-time telemetry.

    Identity (hostname, OS, addresses) is read on demand for registration;
    telemetry goes through the shared HostInspector, which is refreshed at the
    start of every snapshot.
    """

    def __init__(self, host: HostInspector):
        self.host = host

    def get_hostname(self) -> str:
        return socket.gethostname() or "unknown"

    def get_os(self) -> str:
        return self._os_identity()[0]

    def get_os_version(self) -> str:
        return self._os_identity()[1]

    def _os_identity(self) -> Tuple[str, str]:
        """
        Determine a human-friendly OS name and version.

        Linux reports the distribution from os-release (e.g. "Ubuntu", "22.04")
        rather than the kernel; macOS reports the product version.

        Returns:
            Tuple[str, str]: (os name, os version), "unknown" where undeterminable
        """
        system = platform.system()

        if system == "Linux":
            try:
                release = platform.freedesktop_os_release()
                return release.get("NAME", "Linux"), release.get("VERSION_ID", platform.release())
            except OSError:
                return "Linux", platform.release() or "unknown"
        if system == "Darwin":
            return "macOS", platform.mac_ver()[0] or platform.release() or "unknown"
        if system == "Windows":
            return "Windows", platform.version() or "unknown"

        return system or "unknown", platform.release() or "unknown"

    def get_ip_addresses(self) -> List[str]:
        """
        List the machine's addresses, excluding loopback and link-local ranges.

        Returns:
            List[str]: Sorted, de-duplicated IPv4 and IPv6 addresses
        """
        addresses = set()

        for _interface, interface_addresses in psutil.net_if_addrs().items():
            for address in interface_addresses:
                if address.family not in (socket.AF_INET, socket.AF_INET6):
                    continue
                try:
                    # IPv6 link-local addresses carry a zone suffix such as "%eth0"
                    ip = ipaddress.ip_address(address.address.split("%")[0])
                except ValueError:
                    continue
                if ip.is_loopback or ip.is_link_local:
                    continue
                addresses.add(str(ip))

        return sorted(addresses)

    def collect_snapshot(self) -> SystemSnapshotData:
        """
        Refresh the host view and build a heartbeat snapshot.

        Returns:
            SystemSnapshotData: CPU, memory, disk, up to MAX_PROCESSES processes and open common ports
        """
        self.host.refresh()

        return SystemSnapshotData(
            collected_at=utc_now(),
            cpu_usage=self.host.cpu_usage,
            memory_total=self.host.memory_total,
            memory_used=self.host.memory_used,
            disk_total=self.host.disk_total,
            disk_used=self.host.disk_used,
            processes=self.host.processes[:MAX_PROCESSES],
            open_ports=self.collect_open_ports(),
            installed_software=self.collect_installed_software(),
        )

    def collect_open_ports(self) -> List[int]:
        return [port for port in COMMON_PORTS if is_port_in_use(port)]

    def collect_installed_software(self) -> List[SoftwareInfo]:
        # TODO: per-platform package inventory (dpkg/rpm, Windows uninstall registry keys, pkgutil)
        return []
