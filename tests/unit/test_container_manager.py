"""
Unit tests for ContainerManager.

Docker is never invoked: asyncio.create_subprocess_exec is patched and the
recorded argument lists are checked instead.
"""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pipeline_definition.variables import CLONE_DIR
from pipeline_runner.container_manager import (
    RUN_LABEL,
    ContainerManager,
    _parse_docker_time,
    build_step_script,
)

RUN_ID = "0b5a3c1e-1d2f-4a6b-9c8d-7e6f5a4b3c2d"


def fake_process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    return process


@pytest.fixture
def exec_mock():
    with patch(
        "pipeline_runner.container_manager.asyncio.create_subprocess_exec",
        new_callable=AsyncMock,
    ) as mock:
        mock.return_value = fake_process(stdout=b"abc123\n")
        yield mock


class TestHelpers:
    """Module-level helpers."""

    def test_build_step_script(self):
        script = build_step_script(["npm ci", "echo 'done'"])

        assert script.splitlines() == [
            "set -e",
            "printf '+ %s\\n' 'npm ci'",
            "npm ci",
            "printf '+ %s\\n' 'echo '\"'\"'done'\"'\"''",
            "echo 'done'",
        ]

    def test_parse_docker_time(self):
        parsed = _parse_docker_time("2024-05-01T10:00:00.123456789Z")
        assert parsed == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "0001-01-01T00:00:00Z", "yesterday"])
    def test_parse_docker_time_empty(self, value):
        assert _parse_docker_time(value) is None

    def test_container_names(self):
        manager = ContainerManager("test-")
        name = manager._get_container_name(RUN_ID, 2, 0)

        assert name == f"test-{RUN_ID}-2-0"
        assert manager._extract_run_id(name) == RUN_ID
        assert manager._extract_run_id(f"{RUN_ID}-2-0") is None
        assert manager._extract_run_id("test-web-1") is None


class TestCreate:
    """Container creation."""

    async def test_step_container_args(self, exec_mock, tmp_path):
        manager = ContainerManager()

        container_id = await manager.create_step_container(
            RUN_ID,
            0,
            1,
            "node:20",
            ["npm ci"],
            {"SONAR_TOKEN": "s3cret", "CI": "true"},
            str(tmp_path),
            caches={"pipeline-cache-node": f"{CLONE_DIR}/node_modules"},
        )

        assert container_id == "abc123"
        args = exec_mock.call_args.args
        assert args[:4] == ("docker", "create", "--name", f"{RUN_ID}-0-1")
        assert f"{RUN_LABEL}={RUN_ID}" in args
        assert f"{tmp_path.resolve()}:{CLONE_DIR}" in args
        assert f"pipeline-cache-node:{CLONE_DIR}/node_modules" in args
        # Variables are passed by name only
        assert "SONAR_TOKEN" in args
        assert not any("s3cret" in arg for arg in args)
        assert exec_mock.call_args.kwargs["env"]["SONAR_TOKEN"] == "s3cret"

        image_at = args.index("node:20")
        assert args[image_at - 2 : image_at] == ("--entrypoint", "")
        assert args[image_at + 1 : image_at + 3] == ("/bin/sh", "-c")
        assert args[-1] == build_step_script(["npm ci"])

    async def test_docker_service_mounts_socket(self, exec_mock, tmp_path):
        manager = ContainerManager()

        with patch("pipeline_runner.container_manager.shutil.which", return_value="/usr/bin/docker"):
            await manager.create_step_container(
                RUN_ID, 3, 0, "node:20", ["docker build ."], {}, str(tmp_path), docker_service=True
            )

        args = exec_mock.call_args.args
        assert "/var/run/docker.sock:/var/run/docker.sock" in args
        assert "/usr/bin/docker:/usr/local/bin/docker:ro" in args

    async def test_pipe_container_uses_image_entrypoint(self, exec_mock, tmp_path):
        manager = ContainerManager()

        await manager.create_pipe_container(
            RUN_ID, 8, 0, "bitbucketpipelines/aws-ecs-deploy:1.12.1", {"CLUSTER_NAME": "prod"}, str(tmp_path)
        )

        args = exec_mock.call_args.args
        assert args[-1] == "bitbucketpipelines/aws-ecs-deploy:1.12.1"
        assert "--entrypoint" not in args
        assert "CLUSTER_NAME" in args

    async def test_create_failure(self, exec_mock, tmp_path):
        exec_mock.return_value = fake_process(returncode=125, stderr=b"no such image")
        manager = ContainerManager()

        with pytest.raises(RuntimeError, match="no such image"):
            await manager.create_step_container(RUN_ID, 0, 0, "nope", ["true"], {}, str(tmp_path))


class TestLifecycle:
    """Start, wait, stop and remove."""

    async def test_wait_returns_exit_code(self, exec_mock):
        exec_mock.return_value = fake_process(stdout=b"3\n")
        assert await ContainerManager().wait_container("abc") == 3
        assert exec_mock.call_args.args == ("docker", "wait", "abc")

    async def test_wait_with_garbage_output(self, exec_mock):
        exec_mock.return_value = fake_process(stdout=b"")
        with pytest.raises(RuntimeError):
            await ContainerManager().wait_container("abc")

    async def test_stop(self, exec_mock):
        await ContainerManager().stop_container("abc", timeout=5)
        assert exec_mock.call_args.args == ("docker", "stop", "--time", "5", "abc")

    async def test_remove_ignores_missing_container(self, exec_mock):
        exec_mock.return_value = fake_process(returncode=1, stderr=b"Error: No such container: abc")
        await ContainerManager().remove_container("abc")

    async def test_remove_failure(self, exec_mock):
        exec_mock.return_value = fake_process(returncode=1, stderr=b"permission denied")
        with pytest.raises(RuntimeError):
            await ContainerManager().remove_container("abc")

    async def test_cleanup_swallows_errors(self, exec_mock):
        exec_mock.return_value = fake_process(returncode=1, stderr=b"permission denied")
        await ContainerManager().cleanup_container("abc")
        assert exec_mock.call_args.args == ("docker", "rm", "--force", "abc")


class TestInspect:
    """Container inspection."""

    async def test_get_container_info(self, exec_mock):
        inspect = [
            {
                "Id": "abc123",
                "Name": f"/ci-{RUN_ID}-0-0",
                "Config": {"Labels": {RUN_LABEL: RUN_ID}},
                "State": {
                    "Status": "exited",
                    "ExitCode": 1,
                    "StartedAt": "2024-05-01T10:00:00.500000Z",
                    "FinishedAt": "2024-05-01T10:01:00Z",
                },
            }
        ]
        exec_mock.return_value = fake_process(stdout=json.dumps(inspect).encode())

        info = await ContainerManager("ci-").get_container_info("abc123")

        assert info.name == f"{RUN_ID}-0-0"
        assert info.run_id == RUN_ID
        assert info.status == "exited"
        assert info.exit_code == 1
        assert info.finished_at == datetime(2024, 5, 1, 10, 1, tzinfo=UTC)

    async def test_missing_container(self, exec_mock):
        exec_mock.return_value = fake_process(returncode=1, stderr=b"No such object")
        assert await ContainerManager().get_container_info("abc") is None

    async def test_list_run_containers(self, exec_mock):
        inspect = [
            {
                "Id": "abc123",
                "Name": f"/ci-{RUN_ID}-1-0",
                "Config": {"Labels": {RUN_LABEL: RUN_ID}},
                "State": {"Status": "running", "ExitCode": 0, "StartedAt": "2024-05-01T10:00:00Z"},
            }
        ]
        exec_mock.side_effect = [
            fake_process(stdout=f"ci-{RUN_ID}-1-0\nother-web-1\n".encode()),
            fake_process(stdout=json.dumps(inspect).encode()),
        ]

        containers = await ContainerManager("ci-").list_run_containers()

        assert [(c.container_id, c.run_id, c.status) for c in containers] == [
            ("abc123", RUN_ID, "running")
        ]
        assert exec_mock.call_args_list[1].args[1:] == ("inspect", f"ci-{RUN_ID}-1-0")

    async def test_list_failure(self, exec_mock):
        exec_mock.return_value = fake_process(returncode=1, stderr=b"daemon not running")

        with pytest.raises(RuntimeError, match="Failed to list containers"):
            await ContainerManager().list_run_containers()
