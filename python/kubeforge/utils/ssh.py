"""
kubeforge/utils/ssh.py

The remote execution channel: runs commands and scripts on one host and moves
file content to and from it, via the local `ssh` client. This includes:
  - resolve_ssh_auth: pick a private key file or an agent socket for a host.
  - SSHChannel: run / run_script / upload / download on one host, optionally
    through a bastion host.
  - RemoteChannel: the protocol the orchestrator depends on.

A channel never retries. ssh itself exits with 255 on connection failures,
which we surface as SSHConnectError so callers can decide to retry; any other
non-zero exit is a RemoteCommandError from the remote command.
"""

from __future__ import annotations

import os
import posixpath
import shlex
from typing import Dict, List, Optional, Tuple, Type, Union

from typing_extensions import Protocol

from kubeforge.models.cluster import HostConfig
from kubeforge.utils.async_command_runner import CommandError, run_command

SSH_CONNECTION_FAILURE = 255

RemoteCommand = Union[str, List[str]]


class SSHAuthError(Exception):
    """Neither a private key file nor an agent socket is usable for the host."""


class SSHConnectError(CommandError):
    """ssh could not reach or authenticate to the host (exit code 255)."""


class RemoteCommandError(CommandError):
    """The remote command ran and exited with a non-zero code."""


class RemoteChannel(Protocol):
    """Anything that can execute commands on, and copy content to/from, one host."""

    host: HostConfig

    async def run(
        self,
        command: RemoteCommand,
        *,
        env: Optional[Dict[str, str]] = None,
        sensitive: bool = True,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    async def run_script(
        self,
        script: str,
        *,
        sudo: bool = True,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    async def upload(self, content: str, remote_path: str, *, mode: str = "0600") -> None:
        ...

    async def download(self, remote_path: str) -> str:
        ...


def resolve_agent_socket(reference: str) -> Optional[str]:
    """
    Resolve an agent socket reference. 'env:NAME' reads the NAME environment
    variable; anything else is taken as a literal path. Returns None if the
    reference resolves to nothing.
    """
    if not reference:
        return None
    if reference.startswith("env:"):
        value = os.environ.get(reference[len("env:") :], "")
        return value or None
    return reference


def resolve_ssh_auth(host: HostConfig) -> Tuple[Optional[str], Optional[str]]:
    """
    Determine SSH auth material for a host.

    Returns:
        (private_key_file, agent_socket); exactly one of them is set.

    Raises:
        SSHAuthError: If neither is usable.
    """
    if host.ssh_private_key_file:
        key_file = os.path.expanduser(host.ssh_private_key_file)
        if os.path.isfile(key_file):
            return key_file, None

    socket = resolve_agent_socket(host.ssh_agent_socket)
    if socket:
        return None, socket

    raise SSHAuthError(
        f"No usable SSH credentials for host {host.id} ({host.public_address}): "
        f"private key file {host.ssh_private_key_file!r} not found and agent socket "
        f"{host.ssh_agent_socket!r} did not resolve."
    )


def _classify_ssh_failure(return_code: int, stderr: str) -> Type[CommandError]:
    if return_code == SSH_CONNECTION_FAILURE:
        return SSHConnectError
    return RemoteCommandError


class SSHChannel:
    """
    SSH access to one host for the duration of a phase step.

    Args:
        host: A defaulted HostConfig.
        connect_timeout: Seconds for ssh's ConnectTimeout (also used for the bastion).
        command_timeout: Default per-command timeout, None for no limit.

    Raises:
        SSHAuthError: If the host has no usable key file or agent socket.
    """

    def __init__(
        self,
        host: HostConfig,
        *,
        connect_timeout: int = 10,
        command_timeout: Optional[float] = None,
    ) -> None:
        self.host = host
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._key_file, self._agent_socket = resolve_ssh_auth(host)
        self._sudo = "" if host.ssh_username == "root" else "sudo "

    def _common_options(self) -> List[str]:
        opts = [
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
        ]
        if self._key_file:
            opts += ["-i", self._key_file, "-o", "IdentitiesOnly=yes"]
        return opts

    def _proxy_command(self) -> Optional[str]:
        if not self.host.bastion:
            return None
        tokens = (
            ["ssh", "-W", "%h:%p", "-p", str(self.host.bastion_port)]
            + self._common_options()
            + [f"{self.host.bastion_user}@{self.host.bastion}"]
        )
        return shlex.join(tokens)

    def build_ssh_command(self, remote_command: str) -> List[str]:
        """Full local argv for running `remote_command` on the host."""
        cmd = ["ssh", "-p", str(self.host.ssh_port)] + self._common_options()
        proxy = self._proxy_command()
        if proxy:
            cmd += ["-o", f"ProxyCommand={proxy}"]
        cmd += [f"{self.host.ssh_username}@{self.host.public_address}", remote_command]
        return cmd

    def _local_env(self) -> Optional[Dict[str, str]]:
        if self._agent_socket:
            return {"SSH_AUTH_SOCK": self._agent_socket}
        return None

    async def _exec(
        self,
        remote_command: str,
        *,
        input_data: Optional[str] = None,
        sensitive: bool = True,
        timeout: Optional[float] = None,
    ) -> str:
        return await run_command(
            self.build_ssh_command(remote_command),
            sensitive=sensitive,
            env=self._local_env(),
            input_data=input_data,
            retries=1,
            timeout=timeout if timeout is not None else self.command_timeout,
            error_factory=_classify_ssh_failure,
        )

    async def run(
        self,
        command: RemoteCommand,
        *,
        env: Optional[Dict[str, str]] = None,
        sensitive: bool = True,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run a command on the host and return its stdout.

        A list is quoted token by token; a string is passed to the remote shell
        as-is. `env` is applied with `env KEY=VAL sh -c ...`.
        """
        cmd_str = command if isinstance(command, str) else shlex.join(command)
        if env:
            env_tokens = ["env"] + [f"{k}={v}" for k, v in env.items()]
            cmd_str = shlex.join(env_tokens + ["sh", "-c", cmd_str])
        return await self._exec(cmd_str, sensitive=sensitive, timeout=timeout)

    async def run_script(
        self,
        script: str,
        *,
        sudo: bool = True,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Stream `script` to `bash -s` on the host over stdin."""
        tokens = ["bash", "-s"]
        if env:
            tokens = ["env"] + [f"{k}={v}" for k, v in env.items()] + tokens
        cmd_str = shlex.join(tokens)
        if sudo:
            cmd_str = self._sudo + cmd_str
        return await self._exec(cmd_str, input_data=script, timeout=timeout)

    async def upload(self, content: str, remote_path: str, *, mode: str = "0600") -> None:
        """Write `content` to `remote_path`, creating parent directories."""
        directory = posixpath.dirname(remote_path) or "/"
        inner = (
            f"mkdir -p {shlex.quote(directory)} && "
            f"cat > {shlex.quote(remote_path)} && "
            f"chmod {shlex.quote(mode)} {shlex.quote(remote_path)}"
        )
        await self._exec(
            self._sudo + shlex.join(["sh", "-c", inner]), input_data=content
        )

    async def download(self, remote_path: str) -> str:
        """Return the content of `remote_path`."""
        return await self._exec(self._sudo + shlex.join(["cat", remote_path]))


__all__ = [
    "SSHAuthError",
    "SSHConnectError",
    "RemoteCommandError",
    "RemoteChannel",
    "SSHChannel",
    "resolve_agent_socket",
    "resolve_ssh_auth",
]
