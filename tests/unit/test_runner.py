"""
Unit tests for PipelineRunner.

The runner works against a real SQLite repository and a fake container
manager that records the containers it was asked to create.
"""

import asyncio
import os
import tempfile

import pytest

from pipeline_common.errors import DefinitionError
from pipeline_common.models import (
    PipeCall,
    Pipeline,
    PipelineDefinition,
    Run,
    StepDefinition,
    StepResult,
    Variable,
    utcnow,
)
from pipeline_persistence.sqlite_repository import SQLiteRunRepository
from pipeline_runner.container_manager import ContainerInfo
from pipeline_runner.runner import PipelineRunner, _segments, cache_mounts


class FakeContainerManager:
    """Stands in for ContainerManager; every container "runs" instantly."""

    def __init__(self, exit_codes=None, logs=None, hang=False):
        self.container_name_prefix = ""
        self.exit_codes = list(exit_codes or [])
        self.logs = logs or {}
        self.hang = hang
        self.created = []
        self.stopped = []
        self.removed = []
        self.leftover = []

    def _add(self, **kwargs):
        container_id = f"c{len(self.created)}"
        self.created.append({"id": container_id, **kwargs})
        return container_id

    async def create_step_container(
        self, run_id, index, sequence, image, commands, env, workspace, docker_service=False, caches=None
    ):
        return self._add(
            kind="script", index=index, sequence=sequence, image=image, commands=list(commands),
            env=dict(env), docker_service=docker_service, caches=caches,
        )

    async def create_pipe_container(self, run_id, index, sequence, image, env, workspace, docker_service=False):
        return self._add(kind="pipe", index=index, sequence=sequence, image=image, env=dict(env))

    async def start_container(self, container_id):
        pass

    async def stream_logs(self, container_id, follow=True):
        for line in self.logs.get(container_id, []):
            yield line

    async def wait_container(self, container_id):
        if self.hang:
            await asyncio.sleep(10)
        return self.exit_codes.pop(0) if self.exit_codes else 0

    async def stop_container(self, container_id, timeout=10):
        self.stopped.append(container_id)

    async def cleanup_container(self, container_id):
        self.removed.append(container_id)

    async def list_run_containers(self):
        return list(self.leftover)


@pytest.fixture
async def repo():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repository = SQLiteRunRepository(path)
    await repository.initialize()

    yield repository

    await repository.close()
    if os.path.exists(path):
        os.unlink(path)


def definition_with(*steps, key="default"):
    return PipelineDefinition(
        image="node:20",
        pipelines={key: Pipeline(name=key, steps=list(steps))},
        caches={"sonar": "~/.sonar/cache"},
    )


def make_runner(repo, manager, **kwargs):
    kwargs.setdefault("approval_poll_interval", 0.01)
    kwargs.setdefault("environ", {})
    return PipelineRunner(repo, manager, **kwargs)


class TestHelpers:
    """Module-level helpers."""

    def test_segments(self):
        pipe = PipeCall(pipe="atlassian/aws-ecs-deploy:1.12.1")
        assert _segments(["a", "b", pipe, "c"]) == [["a", "b"], pipe, ["c"]]
        assert _segments([]) == []

    def test_cache_mounts(self):
        definition = definition_with()
        step = StepDefinition(name="Lint", script=["x"], caches=["node", "sonar", "pip", "unknown"])

        assert cache_mounts(definition, step, "ci-") == {
            "ci-pipeline-cache-node": "/opt/atlassian/pipelines/agent/build/node_modules",
            "ci-pipeline-cache-sonar": "/root/.sonar/cache",
            "ci-pipeline-cache-pip": "/root/.cache/pip",
        }


class TestRun:
    """Running pipelines end to end."""

    async def test_successful_run(self, repo, tmp_path):
        manager = FakeContainerManager(logs={"c0": ["+ npm ci\n", "added 12 packages\n"]})
        definition = definition_with(
            StepDefinition(name="Lint", script=["npm ci", "npx eslint ."], caches=["node"]),
            StepDefinition(name="Test", script=["npm test"], image="node:18"),
        )

        run = await make_runner(repo, manager).run(
            definition, "default", str(tmp_path), branch="main", commit="abc123"
        )

        assert run.status == "completed"
        assert run.success is True
        assert [s.status for s in run.steps] == ["successful", "successful"]

        assert manager.created[0]["commands"] == ["npm ci", "npx eslint ."]
        assert manager.created[0]["image"] == "node:20"
        assert manager.created[1]["image"] == "node:18"
        env = manager.created[0]["env"]
        assert env["BITBUCKET_BRANCH"] == "main"
        assert env["BITBUCKET_COMMIT"] == "abc123"
        assert env["BITBUCKET_BUILD_NUMBER"] == "1"
        assert manager.removed == ["c0", "c1"]
        assert [s.container_id for s in run.steps] == ["c0", "c1"]

        stored = await repo.get_run(run.id)
        assert stored.status == "completed"
        assert stored.success is True
        assert [s.container_id for s in stored.steps] == ["c0", "c1"]

        events = await repo.get_events(run.id)
        assert [e.type for e in events] == [
            "step_started",
            "log",
            "log",
            "step_completed",
            "step_started",
            "step_completed",
            "complete",
        ]
        assert events[2].data == "added 12 packages\n"
        assert events[-1].success is True

    async def test_build_numbers_increase(self, repo, tmp_path):
        definition = definition_with(StepDefinition(name="Lint", script=["true"]))
        runner = make_runner(repo, FakeContainerManager())

        first = await runner.run(definition, "default", str(tmp_path))
        second = await runner.run(definition, "default", str(tmp_path))

        assert (first.build_number, second.build_number) == (1, 2)

    async def test_failure_skips_remaining_steps(self, repo, tmp_path):
        manager = FakeContainerManager(exit_codes=[1])
        definition = definition_with(
            StepDefinition(name="Lint", script=["npx eslint ."]),
            StepDefinition(name="Test", script=["npm test"]),
        )

        run = await make_runner(repo, manager).run(definition, "default", str(tmp_path))

        assert run.status == "failed"
        assert run.success is False
        assert [(s.status, s.exit_code) for s in run.steps] == [("failed", 1), ("skipped", None)]
        assert len(manager.created) == 1

        stored = await repo.get_run(run.id)
        assert [s.status for s in stored.steps] == ["failed", "skipped"]

    async def test_unknown_pipeline(self, repo, tmp_path):
        runner = make_runner(repo, FakeContainerManager())
        with pytest.raises(DefinitionError):
            await runner.run(definition_with(), "custom/nope", str(tmp_path))

    async def test_empty_pipeline(self, repo, tmp_path):
        runner = make_runner(repo, FakeContainerManager())
        with pytest.raises(DefinitionError):
            await runner.run(definition_with(), "default", str(tmp_path))

    async def test_secrets_are_masked(self, repo, tmp_path):
        await repo.set_variable(Variable(name="SONAR_TOKEN", value="s3cret-token", secured=True))
        manager = FakeContainerManager(logs={"c0": ["using s3cret-token\n"]})
        definition = definition_with(
            StepDefinition(name="SAST", script=["sonar-scanner -Dsonar.token=$SONAR_TOKEN"])
        )

        run = await make_runner(repo, manager).run(definition, "default", str(tmp_path))

        logs = [e.data for e in await repo.get_events(run.id) if e.type == "log"]
        assert logs == ["using $SONAR_TOKEN\n"]
        assert manager.created[0]["env"]["SONAR_TOKEN"] == "s3cret-token"

    async def test_deployment_variables_override(self, repo, tmp_path):
        await repo.set_variable(Variable(name="ECS_CLUSTER_NAME", value="shared"))
        await repo.set_variable(
            Variable(name="ECS_CLUSTER_NAME", value="prod-cluster", deployment="production")
        )
        manager = FakeContainerManager()
        pipe = PipeCall(
            pipe="atlassian/aws-ecs-deploy:1.12.1",
            variables={"CLUSTER_NAME": "$ECS_CLUSTER_NAME", "REGION": "${AWS_DEFAULT_REGION}"},
        )
        definition = definition_with(
            StepDefinition(name="Deploy to Staging", script=["echo staging"], deployment="staging"),
            StepDefinition(name="Deploy to Production", script=[pipe], deployment="production"),
        )

        await make_runner(repo, manager).run(definition, "default", str(tmp_path))

        staging, production = manager.created
        assert staging["env"]["ECS_CLUSTER_NAME"] == "shared"
        assert production["kind"] == "pipe"
        assert production["image"] == "bitbucketpipelines/aws-ecs-deploy:1.12.1"
        assert production["env"]["CLUSTER_NAME"] == "prod-cluster"
        assert production["env"]["REGION"] == ""
        assert production["env"]["BITBUCKET_DEPLOYMENT_ENVIRONMENT"] == "production"

    async def test_pipe_splits_script(self, repo, tmp_path):
        manager = FakeContainerManager()
        pipe = PipeCall(pipe="docker://alpine:3")
        definition = definition_with(
            StepDefinition(name="Mixed", script=["echo one", "echo two", pipe, "echo three"])
        )

        await make_runner(repo, manager).run(definition, "default", str(tmp_path))

        assert [c["kind"] for c in manager.created] == ["script", "pipe", "script"]
        assert [c["sequence"] for c in manager.created] == [0, 1, 2]
        assert manager.created[1]["image"] == "alpine:3"

    async def test_after_script_sees_exit_code(self, repo, tmp_path):
        manager = FakeContainerManager(exit_codes=[2, 0])
        definition = definition_with(
            StepDefinition(name="Test", script=["npm test"], after_script=["./report.sh"])
        )

        run = await make_runner(repo, manager).run(definition, "default", str(tmp_path))

        assert run.steps[0].status == "failed"
        after = manager.created[1]
        assert after["commands"] == ["./report.sh"]
        assert after["env"]["BITBUCKET_EXIT_CODE"] == "2"

    async def test_max_time_exceeded(self, repo, tmp_path):
        manager = FakeContainerManager(hang=True)
        definition = definition_with(
            StepDefinition(name="Slow", script=["sleep 1000"], max_time=0.001)
        )

        run = await make_runner(repo, manager).run(definition, "default", str(tmp_path))

        assert run.status == "failed"
        assert run.steps[0].exit_code is None
        assert manager.stopped == ["c0"]
        logs = [e.data for e in await repo.get_events(run.id) if e.type == "log"]
        assert any("max-time" in line for line in logs)


class TestManualGate:
    """Manual steps and approvals."""

    def _definition(self):
        return definition_with(
            StepDefinition(name="Deploy to Staging", script=["echo staging"], deployment="staging"),
            StepDefinition(
                name="Deploy to Production",
                script=["echo production"],
                deployment="production",
                trigger="manual",
            ),
        )

    async def test_in_process_approval(self, repo, tmp_path):
        seen = []

        async def approver(run, step):
            seen.append((run.status, step.name, step.status))
            return "user-1"

        manager = FakeContainerManager()
        run = await make_runner(repo, manager, approver=approver).run(
            self._definition(), "default", str(tmp_path)
        )

        assert seen == [("paused", "Deploy to Production", "awaiting_approval")]
        assert run.status == "completed"
        assert run.steps[1].approved_by == "user-1"
        assert len(manager.created) == 2

        types = [e.type for e in await repo.get_events(run.id)]
        assert types.index("awaiting_approval") < types.index("approved")
        assert types.index("approved") < len(types) - 3

        stored = await repo.get_run(run.id)
        assert stored.steps[1].approved_by == "user-1"
        assert stored.steps[1].status == "successful"

    async def test_refusal_stops_run(self, repo, tmp_path):
        async def approver(run, step):
            return None

        manager = FakeContainerManager()
        run = await make_runner(repo, manager, approver=approver).run(
            self._definition(), "default", str(tmp_path)
        )

        assert run.status == "stopped"
        assert run.success is False
        assert [s.status for s in run.steps] == ["successful", "stopped"]
        assert len(manager.created) == 1

    async def test_approval_recorded_in_store(self, repo, tmp_path):
        manager = FakeContainerManager()
        runner = make_runner(repo, manager)

        async def approve_when_paused():
            while True:
                await asyncio.sleep(0.01)
                runs = await repo.list_runs()
                if not runs:
                    continue
                current = await repo.get_run(runs[0].id)
                step = current.awaiting_step()
                if step is not None:
                    await repo.approve_step(current.id, step.index, "user-2", utcnow())
                    return

        approval = asyncio.create_task(approve_when_paused())
        run = await asyncio.wait_for(runner.run(self._definition(), "default", str(tmp_path)), 5)
        await approval

        assert run.status == "completed"
        assert run.steps[1].approved_by == "user-2"

    async def test_approval_timeout(self, repo, tmp_path):
        manager = FakeContainerManager()
        runner = make_runner(repo, manager, approval_timeout=0.05)

        run = await runner.run(self._definition(), "default", str(tmp_path))

        assert run.status == "stopped"
        assert run.steps[1].status == "stopped"
        logs = [e.data for e in await repo.get_events(run.id) if e.type == "log"]
        assert "Timed out waiting for manual approval\n" in logs

    async def test_stop_request_while_waiting(self, repo, tmp_path):
        manager = FakeContainerManager()
        runner = make_runner(repo, manager)

        async def stop_when_paused():
            while True:
                await asyncio.sleep(0.01)
                runs = await repo.list_runs()
                if runs and runs[0].status == "paused":
                    await repo.request_stop(runs[0].id)
                    return

        stopper = asyncio.create_task(stop_when_paused())
        run = await asyncio.wait_for(runner.run(self._definition(), "default", str(tmp_path)), 5)
        await stopper

        assert run.status == "stopped"
        assert (await repo.get_run(run.id)).status == "stopped"


class TestRecovery:
    """Startup cleanup after a runner exited mid-run."""

    async def test_interrupted_runs_are_stopped(self, repo):
        await repo.create_run(
            Run(
                id="old",
                pipeline="branches/main",
                status="paused",
                build_number=1,
                steps=[
                    StepResult(run_id="old", index=0, name="Build", status="successful"),
                    StepResult(run_id="old", index=1, name="Deploy", status="awaiting_approval"),
                    StepResult(run_id="old", index=2, name="Notify"),
                ],
            )
        )
        await repo.create_run(
            Run(
                id="done",
                pipeline="default",
                status="completed",
                build_number=2,
                steps=[StepResult(run_id="done", index=0, name="Lint", status="successful")],
            )
        )

        await make_runner(repo, FakeContainerManager()).recover()

        stored = await repo.get_run("old")
        assert stored.status == "stopped"
        assert stored.success is False
        assert [s.status for s in stored.steps] == ["successful", "stopped", "skipped"]
        events = await repo.get_events("old")
        assert events[0].data == "Runner exited before the run finished\n"
        assert events[-1].type == "complete"

        assert (await repo.get_run("done")).status == "completed"
        assert await repo.get_events("done") == []

    async def test_running_step_is_stopped(self, repo):
        await repo.create_run(
            Run(
                id="old",
                pipeline="default",
                status="running",
                build_number=1,
                steps=[StepResult(run_id="old", index=0, name="Lint", status="running")],
            )
        )

        await make_runner(repo, FakeContainerManager()).recover()

        (step,) = (await repo.get_run("old")).steps
        assert step.status == "stopped"
        assert step.end_time is not None

    async def test_leftover_containers_are_removed(self, repo):
        manager = FakeContainerManager()
        manager.leftover = [
            ContainerInfo(
                container_id="abc123",
                name="old-1-0",
                run_id="old",
                status="exited",
                exit_code=137,
                started_at=None,
                finished_at=None,
            )
        ]

        await make_runner(repo, manager).recover()

        assert manager.removed == ["abc123"]
