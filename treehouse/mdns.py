"""mDNS hostname announcement.

Uses the macOS ``dns-sd`` command in proxy mode (``-P``), which publishes
an A record so ``<name>.<domain>`` resolves to the allocated address for
as long as the process runs.
"""

import shutil
import subprocess
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from treehouse.errors import AnnounceError
from treehouse.logging import get_logger

logger = get_logger(__name__)


class Announcement(BaseModel):
    """A running mDNS registration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    hostname: str
    ip: str
    port: int
    process: subprocess.Popen | None = None


class Announcer(Protocol):
    """Publishes and withdraws hostname→address mappings."""

    def announce(self, name: str, ip: str, port: int) -> Announcement: ...

    def withdraw(self, announcement: Announcement) -> None: ...


class DnsSdAnnouncer:
    """Announcer backed by ``dns-sd -P``."""

    def __init__(
        self,
        domain: str = "local",
        service_type: str = "_http._tcp",
        executable: str = "dns-sd",
    ) -> None:
        self.domain = domain
        self.service_type = service_type
        self.executable = executable

    def build_command(self, name: str, ip: str, port: int) -> list[str]:
        """Build the proxy registration command line."""
        return [
            self.executable,
            "-P",
            name,
            self.service_type,
            self.domain,
            str(port),
            f"{name}.{self.domain}",
            ip,
        ]

    def announce(self, name: str, ip: str, port: int) -> Announcement:
        """Start announcing ``name`` at ``ip:port``.

        Raises:
            AnnounceError: dns-sd is missing or fails to start.
        """
        command = self.build_command(name, ip, port)
        executable = shutil.which(self.executable)
        if executable is None:
            raise AnnounceError(f"{self.executable} not found on PATH")
        command[0] = executable

        hostname = f"{name}.{self.domain}"
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise AnnounceError(f"Failed to start {self.executable}: {exc}") from exc

        logger.info("mdns_registered", hostname=hostname, ip=ip, port=port, pid=process.pid)
        return Announcement(name=name, hostname=hostname, ip=ip, port=port, process=process)

    def withdraw(self, announcement: Announcement) -> None:
        """Stop announcing. Safe to call more than once."""
        process = announcement.process
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        logger.info("mdns_unregistered", hostname=announcement.hostname)
