"""
Unit tests for the pipeline-runner entrypoint.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pipeline_common.models import Run, StepResult
from pipeline_persistence.sqlite_repository import SQLiteRunRepository
from pipeline_runner.__main__ import (
    EXIT_DEFINITION_ERROR,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    get_approval_timeout,
    get_container_prefix,
    get_database_path,
    main,
    parse_args,
)

FIXTURES = Path(__file__).parent.parent / "fixtures"


def fake_container_manager(exit_code=0):
    async def no_logs(container_id, follow=True):
        for line in []:
            yield line

    manager = MagicMock()
    manager.container_name_prefix = ""
    manager.list_run_containers = AsyncMock(return_value=[])
    manager.create_step_container = AsyncMock(return_value="c0")
    manager.create_pipe_container = AsyncMock(return_value="c1")
    manager.start_container = AsyncMock()
    manager.wait_container = AsyncMock(return_value=exit_code)
    manager.stop_container = AsyncMock()
    manager.cleanup_container = AsyncMock()
    manager.stream_logs = no_logs
    return manager


class TestConfiguration:
    """CLI flags win over environment variables."""

    def test_database_path(self, monkeypatch):
        monkeypatch.delenv("PIPELINE_DB_PATH", raising=False)
        assert get_database_path(parse_args([])) == "pipeline.db"

        monkeypatch.setenv("PIPELINE_DB_PATH", "/tmp/env.db")
        assert get_database_path(parse_args([])) == "/tmp/env.db"
        assert get_database_path(parse_args(["--db-path", "cli.db"])) == "cli.db"

    def test_container_prefix(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_CONTAINER_PREFIX", "ci-")
        assert get_container_prefix(parse_args([])) == "ci-"
        assert get_container_prefix(parse_args(["--container-prefix", ""])) == ""

    @pytest.mark.parametrize(
        "raw, expected",
        [(None, None), ("", None), ("30", 30.0), ("abc", None), ("-5", None)],
    )
    def test_approval_timeout_from_env(self, monkeypatch, raw, expected):
        if raw is None:
            monkeypatch.delenv("PIPELINE_APPROVAL_TIMEOUT", raising=False)
        else:
            monkeypatch.setenv("PIPELINE_APPROVAL_TIMEOUT", raw)
        assert get_approval_timeout(parse_args([])) == expected

    def test_approval_timeout_flag(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_APPROVAL_TIMEOUT", "30")
        assert get_approval_timeout(parse_args(["--approval-timeout", "5"])) == 5.0
        assert get_approval_timeout(parse_args(["--approval-timeout", "0"])) is None


class TestMain:
    """End-to-end runs through main() with Docker patched out."""

    def test_missing_definition(self, tmp_path):
        assert main(["--file", str(tmp_path / "missing.yml")]) == EXIT_DEFINITION_ERROR

    def test_unknown_custom_pipeline(self, tmp_path):
        args = ["--file", str(FIXTURES / "minimal.yml"), "--custom", "nope", "--db-path", str(tmp_path / "p.db")]
        assert main(args) == EXIT_DEFINITION_ERROR

    def test_successful_run_is_recorded(self, tmp_path):
        db_path = tmp_path / "p.db"

        with patch("pipeline_runner.__main__.ContainerManager", return_value=fake_container_manager()):
            code = main(
                [
                    "--file",
                    str(FIXTURES / "minimal.yml"),
                    "--branch",
                    "feature/x",
                    "--workspace",
                    str(tmp_path),
                    "--db-path",
                    str(db_path),
                ]
            )

        assert code == EXIT_SUCCESS

        async def stored_runs():
            repo = SQLiteRunRepository(str(db_path))
            try:
                await repo.initialize()
                return [await repo.get_run(run.id) for run in await repo.list_runs()]
            finally:
                await repo.close()

        (run,) = asyncio.run(stored_runs())
        assert run.pipeline == "default"
        assert run.branch == "feature/x"
        assert [s.status for s in run.steps] == ["successful"]

    def test_failed_step_exits_nonzero(self, tmp_path):
        with patch(
            "pipeline_runner.__main__.ContainerManager",
            return_value=fake_container_manager(exit_code=1),
        ):
            code = main(
                [
                    "--file",
                    str(FIXTURES / "minimal.yml"),
                    "--workspace",
                    str(tmp_path),
                    "--db-path",
                    str(tmp_path / "p.db"),
                ]
            )

        assert code == EXIT_FAILURE

    def test_auto_approve_runs_manual_step(self, tmp_path):
        manager = fake_container_manager()

        with patch("pipeline_runner.__main__.ContainerManager", return_value=manager):
            code = main(
                [
                    "--file",
                    str(FIXTURES / "minimal.yml"),
                    "--branch",
                    "main",
                    "--auto-approve",
                    "--workspace",
                    str(tmp_path),
                    "--db-path",
                    str(tmp_path / "p.db"),
                ]
            )

        assert code == EXIT_SUCCESS
        pipe_call = manager.create_pipe_container.call_args
        assert pipe_call.args[3] == "bitbucketpipelines/aws-ecs-deploy:1.12.1"

    def test_interrupted_run_is_stopped_on_startup(self, tmp_path):
        db_path = str(tmp_path / "p.db")

        async def seed():
            repo = SQLiteRunRepository(db_path)
            try:
                await repo.initialize()
                await repo.create_run(
                    Run(
                        id="old",
                        pipeline="branches/main",
                        status="paused",
                        build_number=1,
                        steps=[StepResult(run_id="old", index=0, name="Deploy", status="awaiting_approval")],
                    )
                )
            finally:
                await repo.close()

        async def stored(run_id):
            repo = SQLiteRunRepository(db_path)
            try:
                await repo.initialize()
                return await repo.get_run(run_id)
            finally:
                await repo.close()

        asyncio.run(seed())
        manager = fake_container_manager()

        with patch("pipeline_runner.__main__.ContainerManager", return_value=manager):
            code = main(
                ["--file", str(FIXTURES / "minimal.yml"), "--workspace", str(tmp_path), "--db-path", db_path]
            )

        assert code == EXIT_SUCCESS
        assert asyncio.run(stored("old")).status == "stopped"
        manager.list_run_containers.assert_awaited_once()
