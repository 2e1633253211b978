"""
SQLite implementation of the run repository.

Uses aiosqlite for async operations. One database file is shared by the
local runner, the approval service and the admin CLI.
"""

from datetime import datetime

import aiosqlite

from pipeline_common.models import APIKey, Run, RunEvent, StepResult, User, Variable, utcnow
from pipeline_common.repository import RunRepository

# Repository-scoped variables are stored with an empty deployment so the
# (name, deployment) uniqueness constraint also applies to them.
REPOSITORY_SCOPE = ""

RUN_COLUMNS = (
    "id, pipeline, status, build_number, branch, commit_sha, workspace, user_id,"
    " success, start_time, end_time, stop_requested"
)
STEP_COLUMNS = (
    "run_id, idx, name, status, exit_code, container_id, start_time, end_time,"
    " approved_by, approved_at, suppressed"
)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_flag(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _from_flag(value: int | None) -> bool | None:
    return bool(value) if value is not None else None


class SQLiteRunRepository(RunRepository):
    """
    SQLite-based run storage implementation.

    Tables:
    - users: User accounts
    - api_keys: API keys (hashed) with foreign key to users
    - runs: Run metadata
    - steps: One row per step of a run
    - events: Sequential events for each run
    - variables: Repository and deployment variables
    """

    def __init__(self, db_path: str = "pipeline.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist."""
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                created_at TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS api_keys (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                key_hash TEXT UNIQUE NOT NULL,
                name TEXT,
                created_at TEXT NOT NULL,
                last_used_at TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_api_keys_key_hash
            ON api_keys(key_hash)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                pipeline TEXT NOT NULL,
                status TEXT NOT NULL,
                build_number INTEGER NOT NULL,
                branch TEXT,
                commit_sha TEXT,
                workspace TEXT,
                user_id TEXT,
                success INTEGER,
                start_time TEXT,
                end_time TEXT,
                stop_requested INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS steps (
                run_id TEXT NOT NULL,
                idx INTEGER NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                exit_code INTEGER,
                container_id TEXT,
                start_time TEXT,
                end_time TEXT,
                approved_by TEXT,
                approved_at TEXT,
                suppressed INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (run_id, idx),
                FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                type TEXT NOT NULL,
                data TEXT,
                step INTEGER,
                success INTEGER,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_run_id
            ON events(run_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS variables (
                name TEXT NOT NULL,
                value TEXT NOT NULL,
                secured INTEGER NOT NULL DEFAULT 0,
                deployment TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (name, deployment)
            )
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # Runs

    async def create_run(self, run: Run) -> None:
        """Insert a run and its step rows in one transaction."""
        conn = await self._get_connection()

        await conn.execute(
            f"INSERT INTO runs ({RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run.id,
                run.pipeline,
                run.status,
                run.build_number,
                run.branch,
                run.commit,
                run.workspace,
                run.user_id,
                _to_flag(run.success),
                _to_iso(run.start_time),
                _to_iso(run.end_time),
                1 if run.stop_requested else 0,
            ),
        )
        for step in run.steps:
            await conn.execute(
                f"INSERT INTO steps ({STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._step_params(step),
            )
        await conn.commit()

    @staticmethod
    def _step_params(step: StepResult) -> tuple:
        return (
            step.run_id,
            step.index,
            step.name,
            step.status,
            step.exit_code,
            step.container_id,
            _to_iso(step.start_time),
            _to_iso(step.end_time),
            step.approved_by,
            _to_iso(step.approved_at),
            1 if step.suppressed else 0,
        )

    @staticmethod
    def _run_from_row(row) -> Run:
        (
            run_id,
            pipeline,
            status,
            build_number,
            branch,
            commit,
            workspace,
            user_id,
            success,
            start_time,
            end_time,
            stop_requested,
        ) = row
        return Run(
            id=run_id,
            pipeline=pipeline,
            status=status,
            build_number=build_number,
            branch=branch,
            commit=commit,
            workspace=workspace,
            user_id=user_id,
            success=_from_flag(success),
            start_time=_from_iso(start_time),
            end_time=_from_iso(end_time),
            stop_requested=bool(stop_requested),
        )

    @staticmethod
    def _step_from_row(row) -> StepResult:
        (
            run_id,
            index,
            name,
            status,
            exit_code,
            container_id,
            start_time,
            end_time,
            approved_by,
            approved_at,
            suppressed,
        ) = row
        return StepResult(
            run_id=run_id,
            index=index,
            name=name,
            status=status,
            exit_code=exit_code,
            container_id=container_id,
            start_time=_from_iso(start_time),
            end_time=_from_iso(end_time),
            approved_by=approved_by,
            approved_at=_from_iso(approved_at),
            suppressed=bool(suppressed),
        )

    async def get_run(self, run_id: str) -> Run | None:
        """
        Retrieve a run with its step results.

        Args:
            run_id: UUID of the run

        Returns:
            Run object if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {RUN_COLUMNS} FROM runs WHERE id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        run = self._run_from_row(row)

        cursor = await conn.execute(
            f"SELECT {STEP_COLUMNS} FROM steps WHERE run_id = ? ORDER BY idx",
            (run_id,),
        )
        run.steps = [self._step_from_row(step_row) for step_row in await cursor.fetchall()]
        return run

    async def list_runs(self) -> list[Run]:
        """List runs, most recent build first (steps and events not loaded)."""
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {RUN_COLUMNS} FROM runs ORDER BY build_number DESC"
        )
        return [self._run_from_row(row) for row in await cursor.fetchall()]

    async def next_build_number(self) -> int:
        conn = await self._get_connection()

        cursor = await conn.execute("SELECT MAX(build_number) FROM runs")
        row = await cursor.fetchone()
        current = row[0] if row and row[0] is not None else 0
        return current + 1

    async def update_run_status(
        self,
        run_id: str,
        status: str,
        start_time: datetime | None = None,
    ) -> None:
        """Update a run's status and optionally its start time."""
        conn = await self._get_connection()

        updates = ["status = ?"]
        params: list = [status]

        if start_time is not None:
            updates.append("start_time = ?")
            params.append(start_time.isoformat())

        params.append(run_id)

        await conn.execute(f"UPDATE runs SET {', '.join(updates)} WHERE id = ?", params)
        await conn.commit()

    async def complete_run(
        self, run_id: str, status: str, success: bool, end_time: datetime
    ) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE runs SET status = ?, success = ?, end_time = ? WHERE id = ?",
            (status, 1 if success else 0, end_time.isoformat(), run_id),
        )
        await conn.commit()

    async def request_stop(self, run_id: str) -> None:
        conn = await self._get_connection()

        await conn.execute("UPDATE runs SET stop_requested = 1 WHERE id = ?", (run_id,))
        await conn.commit()

    # Steps

    async def update_step(self, step: StepResult) -> None:
        """
        Persist the mutable fields of a step result.

        Raises:
            KeyError: If the step row does not exist
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            UPDATE steps
            SET status = ?, exit_code = ?, container_id = ?, start_time = ?,
                end_time = ?, approved_by = ?, approved_at = ?, suppressed = ?
            WHERE run_id = ? AND idx = ?
            """,
            (
                step.status,
                step.exit_code,
                step.container_id,
                _to_iso(step.start_time),
                _to_iso(step.end_time),
                step.approved_by,
                _to_iso(step.approved_at),
                1 if step.suppressed else 0,
                step.run_id,
                step.index,
            ),
        )
        await conn.commit()

        if cursor.rowcount == 0:
            raise KeyError(f"Step {step.index} of run {step.run_id} not found")

    async def approve_step(
        self, run_id: str, index: int, user_id: str, approved_at: datetime
    ) -> bool:
        """Approve a step only if it is still awaiting approval."""
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            UPDATE steps
            SET approved_by = ?, approved_at = ?
            WHERE run_id = ? AND idx = ? AND status = 'awaiting_approval'
              AND approved_by IS NULL
            """,
            (user_id, approved_at.isoformat(), run_id, index),
        )
        await conn.commit()
        return cursor.rowcount > 0

    # Events

    async def add_event(self, run_id: str, event: RunEvent) -> None:
        conn = await self._get_connection()

        timestamp = event.timestamp or utcnow()

        await conn.execute(
            """
            INSERT INTO events (run_id, type, data, step, success, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                event.type,
                event.data,
                event.step,
                _to_flag(event.success),
                timestamp.isoformat(),
            ),
        )
        await conn.commit()

    async def get_events(self, run_id: str, from_index: int = 0) -> list[RunEvent]:
        """
        Get events for a run, optionally from a specific index.

        Args:
            run_id: UUID of the run
            from_index: Starting index (0-based) for event retrieval

        Returns:
            List of events from the specified index onward
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT type, data, step, success, timestamp
            FROM events
            WHERE run_id = ?
            ORDER BY id
            LIMIT -1 OFFSET ?
            """,
            (run_id, from_index),
        )

        events = []
        for event_type, data, step, success, timestamp in await cursor.fetchall():
            events.append(
                RunEvent(
                    type=event_type,
                    data=data,
                    step=step,
                    success=_from_flag(success),
                    timestamp=datetime.fromisoformat(timestamp),
                )
            )
        return events

    # Variables

    async def set_variable(self, variable: Variable) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO variables (name, value, secured, deployment)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (name, deployment)
            DO UPDATE SET value = excluded.value, secured = excluded.secured
            """,
            (
                variable.name,
                variable.value,
                1 if variable.secured else 0,
                variable.deployment or REPOSITORY_SCOPE,
            ),
        )
        await conn.commit()

    @staticmethod
    def _variable_from_row(row) -> Variable:
        name, value, secured, deployment = row
        return Variable(
            name=name,
            value=value,
            secured=bool(secured),
            deployment=deployment or None,
        )

    async def list_variables(self, deployment: str | None = None) -> list[Variable]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT name, value, secured, deployment
            FROM variables
            WHERE deployment = ?
            ORDER BY name
            """,
            (deployment or REPOSITORY_SCOPE,),
        )
        return [self._variable_from_row(row) for row in await cursor.fetchall()]

    async def list_all_variables(self) -> list[Variable]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT name, value, secured, deployment FROM variables ORDER BY deployment, name"
        )
        return [self._variable_from_row(row) for row in await cursor.fetchall()]

    async def delete_variable(self, name: str, deployment: str | None = None) -> bool:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "DELETE FROM variables WHERE name = ? AND deployment = ?",
            (name, deployment or REPOSITORY_SCOPE),
        )
        await conn.commit()
        return cursor.rowcount > 0

    # Users

    async def create_user(self, user: User) -> None:
        """
        Create a new user.

        Raises:
            aiosqlite.IntegrityError: If a user with the same email exists
        """
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO users (id, name, email, created_at, is_active)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                user.id,
                user.name,
                user.email,
                user.created_at.isoformat(),
                1 if user.is_active else 0,
            ),
        )
        await conn.commit()

    @staticmethod
    def _user_from_row(row) -> User:
        user_id, name, email, created_at, is_active = row
        return User(
            id=user_id,
            name=name,
            email=email,
            created_at=datetime.fromisoformat(created_at),
            is_active=bool(is_active),
        )

    async def get_user(self, user_id: str) -> User | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, name, email, created_at, is_active FROM users WHERE id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()
        return self._user_from_row(row) if row else None

    async def get_user_by_email(self, email: str) -> User | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, name, email, created_at, is_active FROM users WHERE email = ?",
            (email,),
        )
        row = await cursor.fetchone()
        return self._user_from_row(row) if row else None

    async def list_users(self) -> list[User]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, name, email, created_at, is_active FROM users ORDER BY created_at DESC"
        )
        return [self._user_from_row(row) for row in await cursor.fetchall()]

    async def update_user_active_status(self, user_id: str, is_active: bool) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE users SET is_active = ? WHERE id = ?",
            (1 if is_active else 0, user_id),
        )
        await conn.commit()

    # API keys

    async def create_api_key(self, api_key: APIKey) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO api_keys (id, user_id, key_hash, name, created_at, last_used_at, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                api_key.id,
                api_key.user_id,
                api_key.key_hash,
                api_key.name,
                api_key.created_at.isoformat(),
                _to_iso(api_key.last_used_at),
                1 if api_key.is_active else 0,
            ),
        )
        await conn.commit()

    @staticmethod
    def _api_key_from_row(row) -> APIKey:
        key_id, user_id, key_hash, name, created_at, last_used_at, is_active = row
        return APIKey(
            id=key_id,
            user_id=user_id,
            key_hash=key_hash,
            name=name,
            created_at=datetime.fromisoformat(created_at),
            last_used_at=_from_iso(last_used_at),
            is_active=bool(is_active),
        )

    async def get_api_key_by_hash(self, key_hash: str) -> APIKey | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, user_id, key_hash, name, created_at, last_used_at, is_active
            FROM api_keys
            WHERE key_hash = ?
            """,
            (key_hash,),
        )
        row = await cursor.fetchone()
        return self._api_key_from_row(row) if row else None

    async def get_api_key(self, key_id: str) -> APIKey | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, user_id, key_hash, name, created_at, last_used_at, is_active
            FROM api_keys
            WHERE id = ?
            """,
            (key_id,),
        )
        row = await cursor.fetchone()
        return self._api_key_from_row(row) if row else None

    async def list_user_api_keys(self, user_id: str) -> list[APIKey]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, user_id, key_hash, name, created_at, last_used_at, is_active
            FROM api_keys
            WHERE user_id = ?
            ORDER BY created_at DESC
            """,
            (user_id,),
        )
        return [self._api_key_from_row(row) for row in await cursor.fetchall()]

    async def revoke_api_key(self, key_id: str) -> None:
        conn = await self._get_connection()

        await conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
        await conn.commit()

    async def update_api_key_last_used(self, key_id: str, timestamp: datetime) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
            (timestamp.isoformat(), key_id),
        )
        await conn.commit()
