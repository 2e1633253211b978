"""
Abstract repository interface for run persistence.

This module defines the contract that any database implementation must follow,
so the runner, the approval service and the admin CLI share one store.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import APIKey, Run, RunEvent, StepResult, User, Variable


class RunRepository(ABC):
    """
    Abstract base class for run storage operations.

    Implementations must provide async-safe access and handle their own
    connection management.
    """

    # Run methods

    @abstractmethod
    async def create_run(self, run: Run) -> None:
        """
        Create a run together with its step results.

        Raises:
            Exception: If a run with the same ID already exists
        """

    @abstractmethod
    async def get_run(self, run_id: str) -> Run | None:
        """
        Retrieve a run with its step results (events are not loaded).

        Returns:
            Run object if found, None otherwise
        """

    @abstractmethod
    async def list_runs(self) -> list[Run]:
        """List all runs, most recent build first, without steps or events."""

    @abstractmethod
    async def next_build_number(self) -> int:
        """Return the build number for the next run (1 for an empty store)."""

    @abstractmethod
    async def update_run_status(
        self,
        run_id: str,
        status: str,
        start_time: datetime | None = None,
    ) -> None:
        """Update a run's status and optionally its start time."""

    @abstractmethod
    async def complete_run(
        self, run_id: str, status: str, success: bool, end_time: datetime
    ) -> None:
        """Mark a run as finished ("completed", "failed" or "stopped")."""

    @abstractmethod
    async def request_stop(self, run_id: str) -> None:
        """Flag a run so the runner stops it at the next opportunity."""

    # Step methods

    @abstractmethod
    async def update_step(self, step: StepResult) -> None:
        """
        Persist every mutable field of a step result.

        Raises:
            Exception: If the step does not exist
        """

    @abstractmethod
    async def approve_step(
        self, run_id: str, index: int, user_id: str, approved_at: datetime
    ) -> bool:
        """
        Record an approval for a step awaiting approval.

        Returns:
            True if the step was awaiting approval and is now approved,
            False otherwise (nothing is changed)
        """

    # Event methods

    @abstractmethod
    async def add_event(self, run_id: str, event: RunEvent) -> None:
        """Append an event to a run's history."""

    @abstractmethod
    async def get_events(self, run_id: str, from_index: int = 0) -> list[RunEvent]:
        """Get events for a run starting at a 0-based index."""

    # Variable methods

    @abstractmethod
    async def set_variable(self, variable: Variable) -> None:
        """Create or replace a variable (unique per name and deployment)."""

    @abstractmethod
    async def list_variables(self, deployment: str | None = None) -> list[Variable]:
        """
        List variables.

        Args:
            deployment: None lists repository variables only; an environment
                name lists that environment's deployment variables only
        """

    @abstractmethod
    async def list_all_variables(self) -> list[Variable]:
        """List repository and deployment variables together."""

    @abstractmethod
    async def delete_variable(self, name: str, deployment: str | None = None) -> bool:
        """Delete a variable; returns False when it did not exist."""

    # User management methods

    @abstractmethod
    async def create_user(self, user: User) -> None:
        """
        Create a new user.

        Raises:
            Exception: If a user with the same email already exists
        """

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        """Retrieve a user by ID."""

    @abstractmethod
    async def get_user_by_email(self, email: str) -> User | None:
        """Retrieve a user by email address."""

    @abstractmethod
    async def list_users(self) -> list[User]:
        """List all users."""

    @abstractmethod
    async def update_user_active_status(self, user_id: str, is_active: bool) -> None:
        """Deactivate or reactivate a user."""

    # API Key management methods

    @abstractmethod
    async def create_api_key(self, api_key: APIKey) -> None:
        """Create a new API key (hash only)."""

    @abstractmethod
    async def get_api_key_by_hash(self, key_hash: str) -> APIKey | None:
        """Retrieve an API key by its SHA-256 hash."""

    @abstractmethod
    async def get_api_key(self, key_id: str) -> APIKey | None:
        """Retrieve an API key by its ID."""

    @abstractmethod
    async def list_user_api_keys(self, user_id: str) -> list[APIKey]:
        """List all API keys belonging to a user."""

    @abstractmethod
    async def revoke_api_key(self, key_id: str) -> None:
        """Revoke an API key (set is_active to False)."""

    @abstractmethod
    async def update_api_key_last_used(self, key_id: str, timestamp: datetime) -> None:
        """Update the last_used_at timestamp for an API key."""

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at startup.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close connections and release resources."""
