"""
kubeforge/deployment/orchestrator.py

Runs an ordered list of phases against the hosts of a cluster.

Each phase targets a host subset and runs one idempotent operation per host:
  - phases run strictly one after another; a phase starts only when the
    previous one succeeded on every host it targeted;
  - within a phase hosts fan out concurrently, bounded by a semaphore;
    leader-first phases finish the leader before releasing the others;
  - transient SSH failures are retried by the injected RetryPolicy;
  - the first fatal host failure stops new host operations (in-flight ones
    finish) and ends the run FAILED, unless the phase is best-effort;
  - cancellation is cooperative: once State.cancel_event is set no new phase,
    host operation or retry attempt starts and the run ends CANCELLED.

Nothing is rolled back. Every operation is idempotent, so a failed run is
fixed by remediating the host and running again.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from kubeforge.deployment.state import HostResult, HostStatus, State
from kubeforge.models.cluster import HostConfig
from kubeforge.models.defaults import validate_cluster
from kubeforge.models.settings import TRANSIENT_ERRORS
from kubeforge.utils.async_retry import RetryAborted, RetryPolicy
from kubeforge.utils.ssh import RemoteChannel

logger = logging.getLogger(__name__)

# An operation returns optional output that is recorded in the host's result slot.
Operation = Callable[[State, HostConfig, RemoteChannel], Awaitable[Optional[str]]]


class PhaseTarget(str, Enum):
    leader = "leader"
    control_plane = "control_plane"
    followers = "followers"
    workers = "workers"
    all = "all"


class RunStatus(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class Phase:
    """
    One named stage of a run.

    Args:
        name: Phase name used in logs and failure reports.
        target: Which hosts the operation runs on.
        operation: The idempotent per-host operation.
        leader_first: Run the leader (if targeted) before everyone else.
        best_effort: Log host failures instead of failing the run.
        max_concurrency: Per-phase cap below the orchestrator's limit
            (1 serializes the phase).
    """

    def __init__(
        self,
        name: str,
        target: PhaseTarget,
        operation: Operation,
        *,
        leader_first: bool = False,
        best_effort: bool = False,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.name = name
        self.target = target
        self.operation = operation
        self.leader_first = leader_first
        self.best_effort = best_effort
        self.max_concurrency = max_concurrency

    def select_hosts(self, state: State) -> List[HostConfig]:
        cluster = state.cluster
        if self.target == PhaseTarget.leader:
            return [cluster.leader()]
        if self.target == PhaseTarget.control_plane:
            return cluster.control_plane_hosts()
        if self.target == PhaseTarget.followers:
            return cluster.followers()
        if self.target == PhaseTarget.workers:
            return cluster.worker_hosts()
        return cluster.all_hosts()

    def __repr__(self) -> str:
        return f"Phase({self.name!r}, target={self.target.value})"


class PhaseError(Exception):
    """A host operation failed fatally; carries the phase and host for diagnostics."""

    def __init__(self, phase: str, host: HostConfig, cause: BaseException) -> None:
        super().__init__(
            f"phase '{phase}' failed on host {host.id} ({host.public_address}): {cause}"
        )
        self.phase = phase
        self.host_id = host.id
        self.cause = cause


class RunResult(BaseModel):
    status: RunStatus
    completed_phases: List[str] = Field(default_factory=list)
    failed_phase: Optional[str] = None
    failed_host_id: Optional[int] = None
    error: Optional[str] = None


class Orchestrator:
    """
    Args:
        phases: Ordered phases to run.
        retry_policy: Applied around every host operation. Defaults to retrying
            only transient SSH failures.
        max_concurrency: Upper bound on concurrent host operations in a phase.
    """

    def __init__(
        self,
        phases: Sequence[Phase],
        *,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: int = 10,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.phases = list(phases)
        self.retry_policy = (
            retry_policy
            if retry_policy is not None
            else RetryPolicy(retry_on=TRANSIENT_ERRORS)
        )
        self.max_concurrency = max_concurrency

    @classmethod
    def from_settings(cls, phases: Sequence[Phase], state: State) -> "Orchestrator":
        return cls(
            phases,
            retry_policy=state.settings.retry_policy(),
            max_concurrency=state.settings.max_concurrency,
        )

    async def run(self, state: State) -> RunResult:
        """
        Drive every phase to completion, failure or cancellation.

        Raises:
            ConfigurationError: Before any remote call, if the cluster is invalid.
        """
        validate_cluster(state.cluster)

        timer: Optional[asyncio.TimerHandle] = None
        if state.settings.run_timeout is not None:
            timer = asyncio.get_running_loop().call_later(
                state.settings.run_timeout, state.cancel
            )

        completed: List[str] = []
        try:
            for phase in self.phases:
                if state.cancelled:
                    logger.warning("Run cancelled before phase '%s'", phase.name)
                    return RunResult(status=RunStatus.cancelled, completed_phases=completed)

                logger.info("Starting phase '%s'", phase.name)
                failure, interrupted = await self._run_phase(phase, state)
                if failure is not None:
                    logger.error("%s", failure)
                    return RunResult(
                        status=RunStatus.failed,
                        completed_phases=completed,
                        failed_phase=failure.phase,
                        failed_host_id=failure.host_id,
                        error=str(failure),
                    )
                if interrupted:
                    # hosts were skipped after the signal: the phase did not complete
                    logger.warning("Run cancelled during phase '%s'", phase.name)
                    return RunResult(status=RunStatus.cancelled, completed_phases=completed)

                completed.append(phase.name)
                logger.info("Finished phase '%s'", phase.name)
        finally:
            if timer is not None:
                timer.cancel()

        return RunResult(status=RunStatus.succeeded, completed_phases=completed)

    async def _run_phase(
        self, phase: Phase, state: State
    ) -> Tuple[Optional[PhaseError], bool]:
        """Returns (first fatal failure, whether cancellation skipped any host)."""
        hosts = phase.select_hosts(state)
        limit = min(self.max_concurrency, phase.max_concurrency or self.max_concurrency)
        semaphore = asyncio.Semaphore(limit)
        abort = asyncio.Event()
        failures: List[PhaseError] = []
        skipped_for_cancel: List[int] = []

        async def _guarded(host: HostConfig) -> None:
            async with semaphore:
                if abort.is_set() or state.cancelled:
                    if state.cancelled:
                        skipped_for_cancel.append(host.id)
                    state.host_results[host.id] = HostResult(
                        host_id=host.id, phase=phase.name, status=HostStatus.skipped
                    )
                    return
                try:
                    await self._run_host(phase, state, host)
                except RetryAborted:
                    skipped_for_cancel.append(host.id)
                except PhaseError as err:
                    if phase.best_effort:
                        logger.warning("Ignoring failure in best-effort phase: %s", err)
                        return
                    failures.append(err)
                    abort.set()

        first: List[HostConfig] = []
        rest = hosts
        if phase.leader_first:
            first = [h for h in hosts if h.is_leader]
            rest = [h for h in hosts if not h.is_leader]

        for host in first:
            await _guarded(host)
        if not failures:
            await asyncio.gather(*(_guarded(h) for h in rest))

        return (failures[0] if failures else None), bool(skipped_for_cancel)

    async def _run_host(self, phase: Phase, state: State, host: HostConfig) -> None:
        attempts = 0

        async def _attempt() -> Optional[str]:
            nonlocal attempts
            attempts += 1
            channel = state.channel(host)
            return await phase.operation(state, host, channel)

        logger.info("[%s] host %d (%s)", phase.name, host.id, host.display_name())
        try:
            output = await self.retry_policy.call(
                _attempt,
                description=f"{phase.name} on host {host.id}",
                should_stop=lambda: state.cancelled,
            )
        except RetryAborted as aborted:
            logger.warning(
                "[%s] host %d: run cancelled, not retrying after: %s",
                phase.name,
                host.id,
                aborted.cause,
            )
            state.host_results[host.id] = HostResult(
                host_id=host.id,
                phase=phase.name,
                status=HostStatus.skipped,
                attempts=attempts,
                error=str(aborted.cause),
            )
            raise
        except Exception as exc:
            state.host_results[host.id] = HostResult(
                host_id=host.id,
                phase=phase.name,
                status=HostStatus.failed,
                attempts=attempts,
                error=str(exc),
            )
            raise PhaseError(phase.name, host, exc) from exc

        state.host_results[host.id] = HostResult(
            host_id=host.id,
            phase=phase.name,
            status=HostStatus.succeeded,
            attempts=attempts,
            output=output or "",
        )
