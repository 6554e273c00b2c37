"""
Node service control and quiesce checking.

The node runs as a systemd unit. Stopping and starting it are privileged
operations driven through systemctl. After a stop, the data directory is
probed for processes that still hold files open inside it; the archive step
must never run while anything does.

Invariants:
    - stop()/start() return only after systemctl has exited
    - A non-zero systemctl exit is always a ServiceControlError
    - The probe reports every process with an open file or cwd under the path

How to change safely:
    - New supervisors (OpenRC, docker) implement ServiceController
    - Keep the probe conservative: a false "locked" is safer than a false "free"
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import psutil

from ..config import NodeConfig
from ..errors import ServiceControlError

logger = logging.getLogger(__name__)


@runtime_checkable
class ServiceController(Protocol):
    """Protocol for the node's process supervisor."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the node service.

        Raises:
            ServiceControlError: If the supervisor reports failure
        """
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the node service.

        Raises:
            ServiceControlError: If the supervisor reports failure
        """
        ...

    @abstractmethod
    async def is_active(self) -> bool:
        """Whether the service is currently running."""
        ...


class SystemdServiceController:
    """ServiceController backed by systemctl.

    Attributes:
        service_name: systemd unit name
        use_sudo: Prefix commands with sudo
    """

    def __init__(self, service_name: str, use_sudo: bool = True) -> None:
        self.service_name = service_name
        self.use_sudo = use_sudo

    @classmethod
    def from_config(cls, config: NodeConfig) -> SystemdServiceController:
        return cls(config.service_name, use_sudo=config.use_sudo)

    def _command(self, action: str) -> list[str]:
        cmd = ["systemctl", action, self.service_name]
        if self.use_sudo and action != "is-active":
            cmd = ["sudo", "-n", *cmd]
        return cmd

    async def _run(self, action: str) -> tuple[int, str]:
        cmd = self._command(action)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ServiceControlError(
                f"Cannot run {' '.join(cmd)}: {e}",
                service=self.service_name,
                action=action,
            )
        stdout, stderr = await proc.communicate()
        output = (stdout + stderr).decode("utf-8", errors="replace").strip()
        return proc.returncode or 0, output

    async def stop(self) -> None:
        returncode, output = await self._run("stop")
        if returncode != 0:
            raise ServiceControlError(
                f"systemctl stop {self.service_name} failed ({returncode}): {output}",
                service=self.service_name,
                action="stop",
            )
        logger.info("Service stopped", extra={"service": self.service_name})

    async def start(self) -> None:
        returncode, output = await self._run("start")
        if returncode != 0:
            raise ServiceControlError(
                f"systemctl start {self.service_name} failed ({returncode}): {output}",
                service=self.service_name,
                action="start",
            )
        logger.info("Service started", extra={"service": self.service_name})

    async def is_active(self) -> bool:
        returncode, _ = await self._run("is-active")
        return returncode == 0


@dataclass(frozen=True)
class HandleHolder:
    """A process holding a file or cwd inside the probed directory."""

    pid: int
    name: str
    path: str

    def __str__(self) -> str:
        return f"{self.name}[{self.pid}] {self.path}"


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root + os.sep)


class OpenHandleProbe:
    """Finds processes with open handles under a directory (lsof +D equivalent)."""

    def find_holders(self, directory: str | Path) -> list[HandleHolder]:
        """List processes holding files or a cwd under directory.

        Processes that vanish or deny inspection are skipped, as lsof does.
        """
        root = os.path.realpath(directory)
        holders: list[HandleHolder] = []
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                for opened in proc.open_files():
                    if _is_within(os.path.realpath(opened.path), root):
                        holders.append(HandleHolder(proc.pid, proc.info["name"], opened.path))
                cwd = proc.cwd()
                if _is_within(os.path.realpath(cwd), root):
                    holders.append(HandleHolder(proc.pid, proc.info["name"], cwd))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return holders

    async def check(self, directory: str | Path) -> list[HandleHolder]:
        """Async wrapper running the scan in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.find_holders, directory)
