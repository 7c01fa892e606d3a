"""
kubeforge/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic. Used for the
local `ssh` and `kubectl` processes that carry every remote operation.

We also keep an optional argument for `successful_return_codes`, which indicates
which return codes won't be treated as errors (defaults to [0]).

Usage example:
    from kubeforge.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["kubectl", "version", "--client"], retries=1)
        print(output)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import asyncio
import os
from typing import Callable, Dict, List, Optional, Type

from kubeforge.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        """
        Initialize a CommandError.

        Args:
            message (str): The error message describing the command failure.
            return_code (Optional[int]): The exit code if known.
        """
        super().__init__(message)
        self.return_code = return_code


class CommandTimeoutError(CommandError):
    """The command did not finish within its timeout. Considered transient."""


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
    error_factory: Optional[Callable[[int, str], Type[CommandError]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError, or the subclass chosen by `error_factory` for that return code
    and stderr. When `sensitive=True`, we omit the command, stdout, and stderr
    from the final error message.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            Total attempts. Values below 1 mean a single attempt. Defaults to 3.
        retry_delay (float):
            Delay in seconds between retries. Defaults to 1.0.
        timeout (Optional[float]):
            Seconds to wait for the process before killing it and raising
            CommandTimeoutError.
        error_factory (Optional[Callable[[int, str], Type[CommandError]]]):
            Maps (return code, stderr) to the CommandError subclass to raise.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all retries or returns a code not in
            `successful_return_codes`.
        CommandTimeoutError: If the command exceeds `timeout`.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    @async_retry(retries=retries, delay=retry_delay)
    async def _inner_run_command() -> str:
        # Build environment
        if env is None:
            proc_env = None
        else:
            proc_env = os.environ.copy()
            proc_env.update(env)

        # Decide how we pass stdin
        stdin = (
            asyncio.subprocess.PIPE
            if input_data is not None
            else asyncio.subprocess.DEVNULL
        )

        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
        )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(
                    input=input_data.encode() if input_data is not None else None
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandTimeoutError(
                f"Command timed out after {timeout}s.", proc.returncode
            ) from exc

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        # Check return code
        if proc.returncode not in ok_codes:
            return_code = proc.returncode if proc.returncode is not None else -1
            error_cls = (
                error_factory(return_code, stderr_str) if error_factory else CommandError
            )

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )

            raise error_cls(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
            )

        return stdout_str

    return await _inner_run_command()
