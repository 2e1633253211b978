"""
Local pipeline runner.

Executes the steps of one pipeline in order, each in Docker, recording step
results and events in the run repository. Manual steps hold the run at a
gate until an approval is recorded, either by the approval service (which
writes to the same store) or by an approver callback.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path

from pipeline_common.errors import DefinitionError, StepExecutionError
from pipeline_common.models import (
    PipeCall,
    PipelineDefinition,
    Run,
    RunEvent,
    ScriptItem,
    StepDefinition,
    StepResult,
    Variable,
    utcnow,
)
from pipeline_common.repository import RunRepository
from pipeline_definition.variables import (
    CLONE_DIR,
    build_environment,
    builtin_environment,
    expand_variables,
    mask_secrets,
    secured_values,
)

from .container_manager import ContainerManager

logger = logging.getLogger(__name__)

# Cache name -> path inside the step container, for the engine's predefined
# caches. "docker" is absent: the docker service uses the host daemon.
PREDEFINED_CACHE_PATHS = {
    "composer": "~/.composer/cache",
    "dotnetcore": "~/.nuget/packages",
    "gradle": "~/.gradle/caches",
    "ivy2": "~/.ivy2/cache",
    "maven": "~/.m2/repository",
    "node": "node_modules",
    "pip": "~/.cache/pip",
    "sbt": "~/.sbt",
}

Approver = Callable[[Run, StepResult], Awaitable[str | None]]


def cache_mounts(
    definition: PipelineDefinition, step: StepDefinition, prefix: str = ""
) -> dict[str, str]:
    """Volume name -> container path for the caches a step uses."""
    mounts = {}
    for name in step.caches:
        path = definition.caches.get(name) or PREDEFINED_CACHE_PATHS.get(name)
        if path is None:
            continue
        if path.startswith("~/"):
            path = "/root/" + path[2:]
        elif not path.startswith("/"):
            path = f"{CLONE_DIR}/{path}"
        mounts[f"{prefix}pipeline-cache-{name}"] = path
    return mounts


def _segments(items: list[ScriptItem]) -> list[list[str] | PipeCall]:
    """Group consecutive commands; every pipe is a segment of its own."""
    segments: list[list[str] | PipeCall] = []
    for item in items:
        if isinstance(item, PipeCall):
            segments.append(item)
        elif segments and isinstance(segments[-1], list):
            segments[-1].append(item)
        else:
            segments.append([item])
    return segments


class PipelineRunner:
    """
    Runs pipelines locally, one step at a time.

    A run moves through: pending -> running [-> paused -> running]* ->
    completed | failed | stopped. The first failing step ends the run and
    the remaining steps are skipped.
    """

    def __init__(
        self,
        repository: RunRepository,
        container_manager: ContainerManager | None = None,
        approval_poll_interval: float = 2.0,
        approval_timeout: float | None = None,
        approver: Approver | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        """
        Initialize the runner.

        Args:
            repository: Store for runs, step results, events and variables
            container_manager: Container manager for Docker operations
            approval_poll_interval: Seconds between checks of the store while
                a manual step waits for approval (also used to notice stop
                requests made through the approval service)
            approval_timeout: Seconds to wait for an approval before the run
                is stopped; None waits forever
            approver: Optional callback deciding manual gates in-process.
                Returns the approver's user ID, or None to refuse.
            environ: Process environment offered to steps (defaults to os.environ)
        """
        self.repository = repository
        self.container_manager = container_manager or ContainerManager()
        self.approval_poll_interval = approval_poll_interval
        self.approval_timeout = approval_timeout
        self.approver = approver
        self.environ = environ

        self.active_runs: set[str] = set()
        self.active_containers: dict[str, str] = {}  # run_id -> container_id
        self._stopping: set[str] = set()

    async def run(
        self,
        definition: PipelineDefinition,
        pipeline_key: str,
        workspace: str,
        branch: str | None = None,
        commit: str | None = None,
        user_id: str | None = None,
    ) -> Run:
        """
        Execute one pipeline of a definition.

        Args:
            definition: Parsed definition
            pipeline_key: Selector of the pipeline to run, e.g. "default"
            workspace: Repository checkout mounted into every step
            branch: Branch name exposed as BITBUCKET_BRANCH
            commit: Commit hash exposed as BITBUCKET_COMMIT
            user_id: User who started the run, if known

        Returns:
            The finished Run with its step results

        Raises:
            DefinitionError: If the pipeline does not exist or has no steps
        """
        pipeline = definition.pipelines.get(pipeline_key)
        if pipeline is None:
            raise DefinitionError(f"Unknown pipeline: {pipeline_key}", definition.source)
        if not pipeline.steps:
            raise DefinitionError(f"Pipeline {pipeline_key} has no steps", definition.source)

        run_id = str(uuid.uuid4())
        run = Run(
            id=run_id,
            pipeline=pipeline_key,
            status="pending",
            build_number=await self.repository.next_build_number(),
            branch=branch,
            commit=commit,
            workspace=str(Path(workspace).resolve()),
            user_id=user_id,
            steps=[
                StepResult(
                    run_id=run_id,
                    index=index,
                    name=step.name,
                    suppressed=bool(step.suppressed_commands()),
                )
                for index, step in enumerate(pipeline.steps)
            ],
        )
        await self.repository.create_run(run)
        logger.info(
            f"Run {run_id} (build #{run.build_number}) created for pipeline {pipeline_key}"
        )

        variables = await self.repository.list_all_variables()

        run.status = "running"
        run.start_time = utcnow()
        await self.repository.update_run_status(run_id, "running", start_time=run.start_time)

        self.active_runs.add(run_id)
        watcher = asyncio.create_task(self._watch_stop_requests(run_id))
        outcome = "completed"
        try:
            for index, step in enumerate(pipeline.steps):
                result = run.steps[index]

                if run_id in self._stopping:
                    outcome = "stopped"
                    break

                if step.is_manual and not await self._await_approval(run, result):
                    outcome = "stopped"
                    break

                succeeded = await self._execute_step(run, definition, step, result, variables)

                if run_id in self._stopping:
                    outcome = "stopped"
                    break
                if not succeeded:
                    outcome = "failed"
                    break
        finally:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
            self._stopping.discard(run_id)
            self.active_runs.discard(run_id)

        await self._finish(run, outcome)
        return run

    async def stop(self, run_id: str) -> None:
        """
        Request cancellation of a run.

        The step container currently running (if any) is stopped; no further
        steps are started.
        """
        logger.info(f"Stop requested for run {run_id}")
        self._stopping.add(run_id)
        await self.repository.request_stop(run_id)
        await self._stop_active_container(run_id)

    async def stop_all(self) -> None:
        """Request cancellation of every run this runner is executing."""
        for run_id in list(self.active_runs):
            await self.stop(run_id)

    async def recover(self) -> None:
        """
        Clean up after a runner that exited without finishing its runs.

        Runs left pending, running or paused by a previous process are marked
        stopped, and labelled containers of runs this runner is not executing
        are removed. Call once on startup, before starting a run.
        """
        try:
            containers = await self.container_manager.list_run_containers()
        except RuntimeError as e:
            logger.warning(f"Could not list leftover containers: {e}")
            containers = []

        for container in containers:
            if container.run_id not in self.active_runs:
                logger.warning(
                    f"Removing leftover container {container.container_id} "
                    f"(name: {container.name})"
                )
                await self.container_manager.cleanup_container(container.container_id)

        for summary in await self.repository.list_runs():
            if summary.is_terminal or summary.id in self.active_runs:
                continue
            run = await self.repository.get_run(summary.id)
            if run is None:
                continue
            logger.warning(f"Run {run.id} (build #{run.build_number}) was interrupted, marking it stopped")
            for result in run.steps:
                if result.status == "running":
                    result.status = "stopped"
                    result.end_time = utcnow()
                    await self.repository.update_step(result)
            await self._emit(
                run.id, RunEvent(type="log", data="Runner exited before the run finished\n")
            )
            await self._finish(run, "stopped")

    async def _stop_active_container(self, run_id: str) -> None:
        container_id = self.active_containers.get(run_id)
        if container_id is None:
            return
        try:
            await self.container_manager.stop_container(container_id)
        except RuntimeError as e:
            logger.warning(f"Could not stop container {container_id} of run {run_id}: {e}")

    async def _watch_stop_requests(self, run_id: str) -> None:
        """Pick up stop requests recorded in the store by another process."""
        while True:
            await asyncio.sleep(self.approval_poll_interval)
            try:
                stored = await self.repository.get_run(run_id)
            except Exception as e:
                logger.error(f"Error checking stop request for run {run_id}: {e}", exc_info=True)
                continue
            if stored is not None and stored.stop_requested and run_id not in self._stopping:
                logger.info(f"Run {run_id} stop requested through the store")
                self._stopping.add(run_id)
                await self._stop_active_container(run_id)

    async def _emit(self, run_id: str, event: RunEvent) -> None:
        if event.timestamp is None:
            event.timestamp = utcnow()
        await self.repository.add_event(run_id, event)

    async def _log(self, run_id: str, index: int, text: str) -> None:
        await self._emit(run_id, RunEvent(type="log", data=text, step=index))

    async def _await_approval(self, run: Run, result: StepResult) -> bool:
        """
        Hold the run at a manual gate.

        Returns:
            True once the step is approved; False on refusal, timeout or stop
        """
        result.status = "awaiting_approval"
        await self.repository.update_step(result)
        run.status = "paused"
        await self.repository.update_run_status(run.id, "paused")
        await self._emit(
            run.id,
            RunEvent(
                type="awaiting_approval",
                data=f"Step '{result.name}' is waiting for manual approval\n",
                step=result.index,
            ),
        )
        logger.info(f"Run {run.id} paused before manual step '{result.name}'")

        if self.approver is not None:
            approved = await self._approve_in_process(run, result)
        else:
            approved = await self._poll_for_approval(run, result)

        if not approved:
            return False

        run.status = "running"
        await self.repository.update_run_status(run.id, "running")
        logger.info(f"Step '{result.name}' of run {run.id} approved by {result.approved_by}")
        return True

    async def _approve_in_process(self, run: Run, result: StepResult) -> bool:
        user_id = await self.approver(run, result)
        if user_id is None:
            logger.info(f"Step '{result.name}' of run {run.id} was not approved")
            return False

        approved_at = utcnow()
        if not await self.repository.approve_step(run.id, result.index, user_id, approved_at):
            # Approved through the service in the meantime
            stored = await self.repository.get_run(run.id)
            step = stored.steps[result.index] if stored else None
            if step is None or step.approved_by is None:
                return False
            user_id, approved_at = step.approved_by, step.approved_at
        else:
            await self._emit(
                run.id,
                RunEvent(type="approved", data=f"Approved by {user_id}\n", step=result.index),
            )

        result.approved_by = user_id
        result.approved_at = approved_at
        return True

    async def _poll_for_approval(self, run: Run, result: StepResult) -> bool:
        loop = asyncio.get_running_loop()
        deadline = (
            loop.time() + self.approval_timeout if self.approval_timeout is not None else None
        )

        while True:
            stored = await self.repository.get_run(run.id)
            if stored is None:
                logger.error(f"Run {run.id} disappeared while waiting for approval")
                return False
            if stored.stop_requested or run.id in self._stopping:
                logger.info(f"Run {run.id} stopped while waiting for approval")
                return False

            step = stored.steps[result.index]
            if step.approved_by is not None:
                result.approved_by = step.approved_by
                result.approved_at = step.approved_at
                return True

            if deadline is not None and loop.time() >= deadline:
                logger.warning(
                    f"Approval of step '{result.name}' timed out after {self.approval_timeout}s"
                )
                await self._log(
                    run.id, result.index, "Timed out waiting for manual approval\n"
                )
                return False

            await asyncio.sleep(self.approval_poll_interval)

    async def _execute_step(
        self,
        run: Run,
        definition: PipelineDefinition,
        step: StepDefinition,
        result: StepResult,
        variables: list[Variable],
    ) -> bool:
        """
        Run a step's script and after-script.

        Returns:
            True if the main script exited with 0
        """
        result.status = "running"
        result.start_time = utcnow()
        await self.repository.update_step(result)
        await self._emit(
            run.id, RunEvent(type="step_started", data=step.name, step=result.index)
        )
        logger.info(f"Run {run.id}: starting step {result.index + 1} '{step.name}'")

        builtins = builtin_environment(
            build_number=run.build_number,
            commit=run.commit,
            branch=run.branch,
            run_id=run.id,
            repo_slug=Path(run.workspace or ".").name,
            deployment=step.deployment,
        )
        env = build_environment(step, variables, builtins, self.environ)
        secrets = secured_values(variables, step.deployment)
        image = definition.step_image(step)
        timeout = step.max_time * 60 if step.max_time else None
        sequence = 0

        exit_code: int | None
        try:
            exit_code, sequence = await self._run_script(
                run, definition, step, result.index, step.script, image, env, secrets, timeout, sequence
            )
        except StepExecutionError as e:
            logger.warning(f"Run {run.id}: step '{step.name}' {e}")
            await self._log(run.id, result.index, f"{e}\n")
            exit_code = None
        except Exception as e:
            logger.error(f"Run {run.id}: step '{step.name}' could not run: {e}", exc_info=True)
            await self._log(run.id, result.index, f"Error: {e}\n")
            exit_code = None

        if step.after_script and run.id not in self._stopping:
            after_env = {**env, "BITBUCKET_EXIT_CODE": str(exit_code if exit_code is not None else 1)}
            await self._log(run.id, result.index, "Running after-script\n")
            try:
                await self._run_script(
                    run, definition, step, result.index, step.after_script, image, after_env, secrets, None, sequence
                )
            except Exception as e:
                logger.warning(f"Run {run.id}: after-script of '{step.name}' failed: {e}")
                await self._log(run.id, result.index, f"After-script error: {e}\n")

        if run.id in self._stopping:
            result.status = "stopped"
        elif exit_code == 0:
            result.status = "successful"
        else:
            result.status = "failed"
        result.exit_code = exit_code
        result.end_time = utcnow()
        await self.repository.update_step(result)

        succeeded = result.status == "successful"
        await self._emit(
            run.id,
            RunEvent(
                type="step_completed", data=step.name, step=result.index, success=succeeded
            ),
        )
        logger.info(f"Run {run.id}: step '{step.name}' {result.status} (exit code {exit_code})")
        return succeeded

    async def _run_script(
        self,
        run: Run,
        definition: PipelineDefinition,
        step: StepDefinition,
        index: int,
        items: list[ScriptItem],
        image: str,
        env: dict[str, str],
        secrets: dict[str, str],
        timeout: float | None,
        sequence: int,
    ) -> tuple[int, int]:
        """
        Run script items, one container per command group or pipe.

        Returns:
            (exit code of the last container, next container sequence number)

        Raises:
            StepExecutionError: If the step exceeds its max-time
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        docker_service = "docker" in step.services
        exit_code = 0

        for segment in _segments(items):
            if isinstance(segment, PipeCall):
                pipe_env = dict(env)
                for name, value in segment.variables.items():
                    pipe_env[name] = expand_variables(value, env)
                await self._log(run.id, index, f"+ pipe: {segment.pipe}\n")
                container_id = await self.container_manager.create_pipe_container(
                    run.id, index, sequence, segment.docker_image, pipe_env, run.workspace, docker_service
                )
            else:
                container_id = await self.container_manager.create_step_container(
                    run.id,
                    index,
                    sequence,
                    image,
                    segment,
                    env,
                    run.workspace,
                    docker_service=docker_service,
                    caches=cache_mounts(
                        definition, step, self.container_manager.container_name_prefix
                    ),
                )
            run.steps[index].container_id = container_id
            sequence += 1

            remaining = deadline - loop.time() if deadline is not None else None
            exit_code = await self._run_container(run.id, index, container_id, secrets, remaining, step)
            if exit_code != 0 or run.id in self._stopping:
                break

        return exit_code, sequence

    async def _run_container(
        self,
        run_id: str,
        index: int,
        container_id: str,
        secrets: dict[str, str],
        timeout: float | None,
        step: StepDefinition,
    ) -> int:
        self.active_containers[run_id] = container_id
        try:
            await self.container_manager.start_container(container_id)

            async def follow() -> int:
                async for line in self.container_manager.stream_logs(container_id):
                    await self._log(run_id, index, mask_secrets(line, secrets))
                return await self.container_manager.wait_container(container_id)

            try:
                return await asyncio.wait_for(follow(), timeout)
            except TimeoutError:
                await self.container_manager.stop_container(container_id)
                raise StepExecutionError(
                    f"Step exceeded its max-time of {step.max_time} minutes"
                ) from None
        finally:
            self.active_containers.pop(run_id, None)
            await self.container_manager.cleanup_container(container_id)

    async def _finish(self, run: Run, outcome: str) -> None:
        for result in run.steps:
            if result.status == "pending":
                result.status = "skipped"
            elif result.status == "awaiting_approval":
                result.status = "stopped"
            else:
                continue
            await self.repository.update_step(result)

        success = outcome == "completed"
        run.status = outcome
        run.success = success
        run.end_time = utcnow()
        await self.repository.complete_run(run.id, outcome, success, run.end_time)
        await self._emit(run.id, RunEvent(type="complete", data=outcome, success=success))
        logger.info(f"Run {run.id} finished: {outcome}")
