"""
Admin CLI for the pipeline store.

Manages the users allowed to approve and stop runs, their API keys, and the
repository and deployment variables handed to pipeline steps.
"""

import asyncio
import json
import os
import re
import sys
import uuid

import click

from pipeline_common.models import APIKey, User, Variable, utcnow
from pipeline_definition.validator import DEPLOYMENT_ENVIRONMENTS
from pipeline_persistence.sqlite_repository import SQLiteRunRepository
from pipeline_server.auth import generate_api_key, hash_api_key

VARIABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("PIPELINE_DB_PATH", "pipeline.db")


def get_repository() -> SQLiteRunRepository:
    return SQLiteRunRepository(get_db_path())


def validate_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return re.match(pattern, email) is not None


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


async def _resolve_user(repo: SQLiteRunRepository, user_id: str | None, email: str | None) -> User:
    if email:
        user_obj = await repo.get_user_by_email(email)
        if not user_obj:
            fail(f"User not found with email: {email}")
    else:
        user_obj = await repo.get_user(user_id)
        if not user_obj:
            fail(f"User not found: {user_id}")
    return user_obj


def _require_one(user_id: str | None, email: str | None, id_label: str) -> None:
    if not user_id and not email:
        fail(f"Must provide either {id_label} or --email")
    if user_id and email:
        fail(f"Provide either {id_label} or --email, not both")


@click.group()
def cli():
    """Pipeline Admin - Manage users, API keys and pipeline variables."""
    pass


@cli.group()
def user():
    """Manage users."""
    pass


@cli.group()
def key():
    """Manage API keys."""
    pass


@cli.group()
def var():
    """Manage repository and deployment variables."""
    pass


# ============================================================================
# User Commands
# ============================================================================


@user.command("create")
@click.option("--name", required=True, help="User's display name")
@click.option("--email", required=True, help="User's email address")
def user_create(name: str, email: str):
    """Create a new user."""
    if not validate_email(email):
        fail(f"Invalid email format: {email}")

    async def create():
        repo = get_repository()
        await repo.initialize()

        try:
            if await repo.get_user_by_email(email):
                fail(f"User with email {email} already exists")

            user_obj = User(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                created_at=utcnow(),
            )
            await repo.create_user(user_obj)

            click.echo("✓ User created successfully")
            click.echo(f"  ID:    {user_obj.id}")
            click.echo(f"  Name:  {user_obj.name}")
            click.echo(f"  Email: {user_obj.email}")

        finally:
            await repo.close()

    run_async(create())


@user.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def user_list(json_output: bool):
    """List all users."""

    async def list_users():
        repo = get_repository()
        await repo.initialize()

        try:
            users = await repo.list_users()

            if json_output:
                click.echo(json.dumps([u.to_dict() for u in users], indent=2))
                return

            if not users:
                click.echo("No users found.")
                return

            click.echo(f"\n{'ID':<38} {'Name':<20} {'Email':<30} {'Status':<10}")
            click.echo("-" * 100)
            for u in users:
                status = "Active" if u.is_active else "Inactive"
                click.echo(f"{u.id:<38} {u.name:<20} {u.email:<30} {status:<10}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_users())


@user.command("get")
@click.argument("user_id", required=False)
@click.option("--email", help="Get user by email instead of ID")
def user_get(user_id: str | None, email: str | None):
    """Get user details by ID or email."""
    _require_one(user_id, email, "USER_ID")

    async def get_user():
        repo = get_repository()
        await repo.initialize()

        try:
            user_obj = await _resolve_user(repo, user_id, email)
            keys = await repo.list_user_api_keys(user_obj.id)

            click.echo("\nUser Details:")
            click.echo(f"  ID:         {user_obj.id}")
            click.echo(f"  Name:       {user_obj.name}")
            click.echo(f"  Email:      {user_obj.email}")
            click.echo(f"  Created:    {user_obj.created_at.isoformat()}")
            click.echo(f"  Status:     {'Active' if user_obj.is_active else 'Inactive'}")
            click.echo(f"  API keys:   {sum(1 for k in keys if k.is_active)} active")
            click.echo()

        finally:
            await repo.close()

    run_async(get_user())


def _set_user_active(user_id: str, is_active: bool) -> None:
    async def update():
        repo = get_repository()
        await repo.initialize()

        try:
            user_obj = await repo.get_user(user_id)
            if not user_obj:
                fail(f"User not found: {user_id}")

            await repo.update_user_active_status(user_id, is_active)
            click.echo(f"✓ User {'activated' if is_active else 'deactivated'}: {user_obj.email}")

        finally:
            await repo.close()

    run_async(update())


@user.command("deactivate")
@click.argument("user_id")
def user_deactivate(user_id: str):
    """Deactivate a user. Their keys stop working immediately."""
    _set_user_active(user_id, False)


@user.command("activate")
@click.argument("user_id")
def user_activate(user_id: str):
    """Activate a user."""
    _set_user_active(user_id, True)


# ============================================================================
# API Key Commands
# ============================================================================


@key.command("create")
@click.option("--user-id", help="User ID (UUID)")
@click.option("--email", help="User email (alternative to --user-id)")
@click.option("--name", required=True, help="Descriptive name for this API key")
def key_create(user_id: str | None, email: str | None, name: str):
    """Create a new API key for a user."""
    _require_one(user_id, email, "--user-id")

    async def create():
        repo = get_repository()
        await repo.initialize()

        try:
            user_obj = await _resolve_user(repo, user_id, email)

            plaintext = generate_api_key()
            api_key = APIKey(
                id=str(uuid.uuid4()),
                user_id=user_obj.id,
                key_hash=hash_api_key(plaintext),
                name=name,
                created_at=utcnow(),
            )
            await repo.create_api_key(api_key)

            click.echo("\n✓ API key created successfully")
            click.echo(f"\n  API Key: {plaintext}")
            click.echo(f"  Name:    {name}")
            click.echo(f"  User:    {user_obj.email}")
            click.echo("\n  ⚠️  IMPORTANT: This is the only time you'll see this key!")
            click.echo("     Save it securely now (e.g. api_key=... in ~/.pipeline/config).\n")

        finally:
            await repo.close()

    run_async(create())


@key.command("list")
@click.option("--user-id", help="Filter by user ID")
@click.option("--email", help="Filter by user email")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def key_list(user_id: str | None, email: str | None, json_output: bool):
    """List API keys (optionally filtered by user)."""

    async def list_keys():
        repo = get_repository()
        await repo.initialize()

        try:
            if user_id or email:
                owners = [await _resolve_user(repo, user_id, email)]
            else:
                owners = await repo.list_users()

            user_map = {u.id: u for u in owners}
            keys = []
            for owner in owners:
                keys.extend(await repo.list_user_api_keys(owner.id))

            if json_output:
                click.echo(json.dumps([k.to_dict() for k in keys], indent=2))
                return

            if not keys:
                click.echo("No API keys found.")
                return

            click.echo(f"\n{'ID':<38} {'Name':<25} {'User':<25} {'Status':<10}")
            click.echo("-" * 100)
            for k in keys:
                status = "Active" if k.is_active else "Revoked"
                click.echo(
                    f"{k.id:<38} {(k.name or '(unnamed)'):<25} {user_map[k.user_id].email:<25} {status:<10}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_keys())


@key.command("revoke")
@click.argument("key_id")
def key_revoke(key_id: str):
    """Revoke an API key."""

    async def revoke():
        repo = get_repository()
        await repo.initialize()

        try:
            api_key = await repo.get_api_key(key_id)
            if not api_key:
                fail(f"API key not found: {key_id}")

            await repo.revoke_api_key(key_id)
            click.echo(f"✓ API key revoked: {api_key.name or '(unnamed)'}")

        finally:
            await repo.close()

    run_async(revoke())


# ============================================================================
# Variable Commands
# ============================================================================

deployment_option = click.option(
    "--deployment",
    type=click.Choice(DEPLOYMENT_ENVIRONMENTS),
    default=None,
    help="Deployment environment (default: repository variable)",
)


@var.command("set")
@click.argument("name")
@click.argument("value")
@click.option("--secured", is_flag=True, help="Mask the value in logs and listings")
@deployment_option
def var_set(name: str, value: str, secured: bool, deployment: str | None):
    """Create or update a variable."""
    if not VARIABLE_NAME.match(name):
        fail(f"Invalid variable name: {name}")

    async def set_variable():
        repo = get_repository()
        await repo.initialize()

        try:
            await repo.set_variable(
                Variable(name=name, value=value, secured=secured, deployment=deployment)
            )
            scope = f"deployment {deployment}" if deployment else "repository"
            shown = "********" if secured else value
            click.echo(f"✓ Variable set ({scope}): {name}={shown}")

        finally:
            await repo.close()

    run_async(set_variable())


@var.command("list")
@deployment_option
@click.option("--all", "show_all", is_flag=True, help="List variables of every scope")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def var_list(deployment: str | None, show_all: bool, json_output: bool):
    """List variables. Secured values are never shown."""

    async def list_variables():
        repo = get_repository()
        await repo.initialize()

        try:
            if show_all:
                variables = await repo.list_all_variables()
            else:
                variables = await repo.list_variables(deployment)

            if json_output:
                click.echo(json.dumps([v.to_dict() for v in variables], indent=2))
                return

            if not variables:
                click.echo("No variables found.")
                return

            click.echo(f"\n{'Name':<30} {'Scope':<12} {'Value':<50}")
            click.echo("-" * 94)
            for v in variables:
                shown = "********" if v.secured else v.value
                click.echo(f"{v.name:<30} {(v.deployment or 'repository'):<12} {shown:<50}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_variables())


@var.command("delete")
@click.argument("name")
@deployment_option
def var_delete(name: str, deployment: str | None):
    """Delete a variable."""

    async def delete():
        repo = get_repository()
        await repo.initialize()

        try:
            if not await repo.delete_variable(name, deployment):
                fail(f"Variable not found: {name}")
            click.echo(f"✓ Variable deleted: {name}")

        finally:
            await repo.close()

    run_async(delete())


if __name__ == "__main__":
    cli()
