"""
Unit tests for the SQLite run repository.

Tests run, step, event, variable, user and API key persistence against a
temporary database file.
"""

import os
import tempfile
from datetime import UTC, datetime

import aiosqlite
import pytest

from pipeline_common.models import APIKey, Run, RunEvent, StepResult, User, Variable
from pipeline_persistence.sqlite_repository import SQLiteRunRepository


@pytest.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteRunRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


def make_run(run_id="run-1", build_number=1, steps=("Lint", "Deploy")):
    return Run(
        id=run_id,
        pipeline="branches/main",
        status="pending",
        build_number=build_number,
        branch="main",
        commit="abc123",
        workspace="/src/shop",
        steps=[
            StepResult(run_id=run_id, index=index, name=name)
            for index, name in enumerate(steps)
        ],
    )


class TestRuns:
    """Run and step persistence."""

    async def test_create_and_get_run(self, temp_db):
        await temp_db.create_run(make_run())

        run = await temp_db.get_run("run-1")

        assert run is not None
        assert run.pipeline == "branches/main"
        assert run.commit == "abc123"
        assert run.success is None
        assert run.stop_requested is False
        assert [(s.index, s.name, s.status) for s in run.steps] == [
            (0, "Lint", "pending"),
            (1, "Deploy", "pending"),
        ]

    async def test_get_nonexistent_run(self, temp_db):
        assert await temp_db.get_run("missing") is None

    async def test_build_numbers(self, temp_db):
        assert await temp_db.next_build_number() == 1

        await temp_db.create_run(make_run("run-1", 1))
        await temp_db.create_run(make_run("run-2", 2))

        assert await temp_db.next_build_number() == 3
        assert [r.id for r in await temp_db.list_runs()] == ["run-2", "run-1"]

    async def test_status_and_completion(self, temp_db):
        await temp_db.create_run(make_run())
        start = datetime(2024, 5, 1, 10, 0, 0)
        end = datetime(2024, 5, 1, 10, 5, 0)

        await temp_db.update_run_status("run-1", "running", start_time=start)
        await temp_db.complete_run("run-1", "failed", False, end)

        run = await temp_db.get_run("run-1")
        assert run.status == "failed"
        assert run.success is False
        assert run.start_time == start
        assert run.end_time == end

    async def test_request_stop(self, temp_db):
        await temp_db.create_run(make_run())
        await temp_db.request_stop("run-1")
        assert (await temp_db.get_run("run-1")).stop_requested is True

    async def test_update_step(self, temp_db):
        await temp_db.create_run(make_run())
        step = StepResult(
            run_id="run-1",
            index=0,
            name="Lint",
            status="successful",
            exit_code=0,
            start_time=datetime(2024, 5, 1, 10, 0, 0),
            end_time=datetime(2024, 5, 1, 10, 1, 0),
            suppressed=True,
        )

        await temp_db.update_step(step)

        stored = (await temp_db.get_run("run-1")).steps[0]
        assert stored.status == "successful"
        assert stored.exit_code == 0
        assert stored.suppressed is True
        assert stored.end_time == datetime(2024, 5, 1, 10, 1, 0)

    async def test_update_missing_step(self, temp_db):
        await temp_db.create_run(make_run())
        with pytest.raises(KeyError):
            await temp_db.update_step(StepResult(run_id="run-1", index=5, name="Ghost"))

    async def test_approve_step_only_when_awaiting(self, temp_db):
        await temp_db.create_run(make_run())
        approved_at = datetime(2024, 5, 1, 11, 0, 0)

        # Still pending: nothing to approve
        assert not await temp_db.approve_step("run-1", 1, "user-1", approved_at)

        await temp_db.update_step(
            StepResult(run_id="run-1", index=1, name="Deploy", status="awaiting_approval")
        )
        assert await temp_db.approve_step("run-1", 1, "user-1", approved_at)
        # Second approval is rejected
        assert not await temp_db.approve_step("run-1", 1, "user-2", approved_at)

        step = (await temp_db.get_run("run-1")).steps[1]
        assert step.approved_by == "user-1"
        assert step.approved_at == approved_at


class TestEvents:
    """Event persistence."""

    async def test_events_in_order_with_offset(self, temp_db):
        await temp_db.create_run(make_run())

        await temp_db.add_event("run-1", RunEvent(type="step_started", data="Lint", step=0))
        await temp_db.add_event("run-1", RunEvent(type="log", data="+ npm ci\n", step=0))
        await temp_db.add_event("run-1", RunEvent(type="complete", success=True))

        events = await temp_db.get_events("run-1")
        assert [e.type for e in events] == ["step_started", "log", "complete"]
        assert events[2].success is True
        assert events[1].timestamp is not None

        later = await temp_db.get_events("run-1", from_index=2)
        assert [e.type for e in later] == ["complete"]

    async def test_events_of_unknown_run(self, temp_db):
        assert await temp_db.get_events("missing") == []


class TestVariables:
    """Variable persistence."""

    async def test_set_overwrites_within_scope(self, temp_db):
        await temp_db.set_variable(Variable(name="IMAGE_NAME", value="shop"))
        await temp_db.set_variable(Variable(name="IMAGE_NAME", value="shop-web"))
        await temp_db.set_variable(
            Variable(name="ECS_CLUSTER_NAME", value="prod", deployment="production")
        )

        repository_vars = await temp_db.list_variables()
        assert [(v.name, v.value) for v in repository_vars] == [("IMAGE_NAME", "shop-web")]

        production = await temp_db.list_variables("production")
        assert [(v.name, v.deployment) for v in production] == [("ECS_CLUSTER_NAME", "production")]

        assert len(await temp_db.list_all_variables()) == 2

    async def test_same_name_in_different_scopes(self, temp_db):
        await temp_db.set_variable(Variable(name="CLUSTER", value="repo"))
        await temp_db.set_variable(Variable(name="CLUSTER", value="stage", deployment="staging"))

        values = {v.deployment: v.value for v in await temp_db.list_all_variables()}
        assert values == {None: "repo", "staging": "stage"}

    async def test_secured_flag_round_trips(self, temp_db):
        await temp_db.set_variable(Variable(name="SONAR_TOKEN", value="s3cret", secured=True))
        (variable,) = await temp_db.list_variables()
        assert variable.secured is True
        assert variable.value == "s3cret"

    async def test_delete_variable(self, temp_db):
        await temp_db.set_variable(Variable(name="X", value="1", deployment="staging"))

        assert not await temp_db.delete_variable("X")
        assert await temp_db.delete_variable("X", "staging")
        assert await temp_db.list_all_variables() == []


class TestUsersAndKeys:
    """User and API key persistence."""

    @pytest.fixture
    async def user(self, temp_db):
        user = User(
            id="user-1",
            name="Alice",
            email="alice@example.com",
            created_at=datetime.now(UTC),
        )
        await temp_db.create_user(user)
        return user

    async def test_get_user_by_id_and_email(self, temp_db, user):
        assert (await temp_db.get_user("user-1")).email == "alice@example.com"
        assert (await temp_db.get_user_by_email("alice@example.com")).id == "user-1"
        assert await temp_db.get_user("missing") is None

    async def test_duplicate_email_rejected(self, temp_db, user):
        duplicate = User(
            id="user-2", name="Alice 2", email="alice@example.com", created_at=datetime.now(UTC)
        )
        with pytest.raises(aiosqlite.IntegrityError):
            await temp_db.create_user(duplicate)

    async def test_deactivate_user(self, temp_db, user):
        await temp_db.update_user_active_status("user-1", False)
        assert (await temp_db.get_user("user-1")).is_active is False

    async def test_api_key_lifecycle(self, temp_db, user):
        api_key = APIKey(id="key-1", user_id="user-1", key_hash="hash-1", name="laptop")
        await temp_db.create_api_key(api_key)

        assert (await temp_db.get_api_key_by_hash("hash-1")).id == "key-1"
        assert (await temp_db.get_api_key("key-1")).name == "laptop"
        assert [k.id for k in await temp_db.list_user_api_keys("user-1")] == ["key-1"]

        used_at = datetime(2024, 5, 1, tzinfo=UTC)
        await temp_db.update_api_key_last_used("key-1", used_at)
        await temp_db.revoke_api_key("key-1")

        stored = await temp_db.get_api_key("key-1")
        assert stored.is_active is False
        assert stored.last_used_at == used_at
