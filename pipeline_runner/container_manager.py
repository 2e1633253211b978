"""
Container manager for Docker-based step execution.

This module provides an abstraction over Docker operations for running
pipeline steps locally. Every script segment and every pipe of a step runs
in its own container with the repository mounted at the clone directory,
so files written by one container are visible to the next.
"""

import asyncio
import json
import os
import re
import shlex
import shutil
from collections.abc import AsyncGenerator, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from pipeline_definition.variables import CLONE_DIR

RUN_LABEL = "pipeline.run"
DOCKER_SOCKET = "/var/run/docker.sock"

_UUID_PATTERN = re.compile(
    r"^([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})-\d+-\d+$"
)


@dataclass
class ContainerInfo:
    """
    Information about a Docker container.

    Represents the current state of a container from Docker's perspective.
    """

    container_id: str
    name: str  # Container name without the prefix
    run_id: str | None
    status: Literal[
        "created", "running", "exited", "paused", "restarting", "removing", "dead"
    ]
    exit_code: int | None
    started_at: datetime | None
    finished_at: datetime | None


def build_step_script(commands: list[str]) -> str:
    """
    Build the shell script for a list of step commands.

    The script stops at the first failing command and echoes every command
    with a "+ " prefix before running it.
    """
    lines = ["set -e"]
    for command in commands:
        lines.append(f"printf '+ %s\\n' {shlex.quote(command)}")
        lines.append(command)
    return "\n".join(lines)


def _parse_docker_time(value: str | None) -> datetime | None:
    # Docker reports "0001-01-01T00:00:00Z" for containers that never ran
    if not value or value.startswith("0001-"):
        return None
    try:
        # Docker uses nanosecond precision; fromisoformat accepts microseconds
        value = re.sub(r"(\.\d{6})\d+", r"\1", value)
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class ContainerManager:
    """
    Manages Docker containers for pipeline steps.

    This class provides high-level operations for creating, monitoring,
    and cleaning up the containers that run step scripts and pipes.
    Variables are handed to Docker through its own environment (-e NAME),
    so secured values never appear on a command line.
    """

    def __init__(self, container_name_prefix: str = ""):
        """
        Initialize the container manager.

        Args:
            container_name_prefix: Optional prefix for container names.
                Containers are named "{prefix}{run_id}-{step}-{sequence}".
        """
        self.container_name_prefix = container_name_prefix

    def _get_container_name(self, run_id: str, index: int, sequence: int) -> str:
        return f"{self.container_name_prefix}{run_id}-{index}-{sequence}"

    def _extract_run_id(self, container_name: str) -> str | None:
        """Run ID encoded in a container name, None for foreign containers."""
        if not container_name.startswith(self.container_name_prefix):
            return None
        match = _UUID_PATTERN.match(container_name[len(self.container_name_prefix) :])
        return match.group(1) if match else None

    async def _docker(
        self, *args: str, env: Mapping[str, str] | None = None
    ) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            "docker",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
        )
        stdout, stderr = await process.communicate()
        return process.returncode, stdout.decode(), stderr.decode()

    def _common_args(
        self,
        name: str,
        run_id: str,
        env: Mapping[str, str],
        workspace: str,
        docker_service: bool,
    ) -> list[str]:
        args = [
            "create",
            "--name",
            name,
            "--label",
            f"{RUN_LABEL}={run_id}",
            "-v",
            f"{Path(workspace).resolve()}:{CLONE_DIR}",
            "-w",
            CLONE_DIR,
        ]
        if docker_service:
            args += ["-v", f"{DOCKER_SOCKET}:{DOCKER_SOCKET}"]
            # The engine injects a docker CLI into steps using the service
            docker_cli = shutil.which("docker")
            if docker_cli:
                args += ["-v", f"{docker_cli}:/usr/local/bin/docker:ro"]
        for variable in sorted(env):
            args += ["-e", variable]
        return args

    async def create_step_container(
        self,
        run_id: str,
        index: int,
        sequence: int,
        image: str,
        commands: list[str],
        env: Mapping[str, str],
        workspace: str,
        docker_service: bool = False,
        caches: Mapping[str, str] | None = None,
    ) -> str:
        """
        Create a container that runs a list of step commands.

        Args:
            run_id: Run the step belongs to
            index: Step index within the pipeline
            sequence: Position of this container within the step
            image: Docker image to run in
            commands: Shell commands, run in order, stopping at the first failure
            env: Environment of the step
            workspace: Host directory mounted as the clone directory
            docker_service: Give the step access to the host Docker daemon
            caches: Volume name -> container path for cache volumes

        Returns:
            Container ID

        Raises:
            RuntimeError: If container creation fails
        """
        name = self._get_container_name(run_id, index, sequence)
        args = self._common_args(name, run_id, env, workspace, docker_service)
        for volume, path in (caches or {}).items():
            args += ["-v", f"{volume}:{path}"]
        args += [
            "--entrypoint",
            "",
            image,
            "/bin/sh",
            "-c",
            build_step_script(commands),
        ]

        returncode, stdout, stderr = await self._docker(*args, env=env)
        if returncode != 0:
            raise RuntimeError(f"Failed to create container: {stderr}")
        return stdout.strip()

    async def create_pipe_container(
        self,
        run_id: str,
        index: int,
        sequence: int,
        image: str,
        env: Mapping[str, str],
        workspace: str,
        docker_service: bool = False,
    ) -> str:
        """
        Create a container that runs a pipe with its default entrypoint.

        Raises:
            RuntimeError: If container creation fails
        """
        name = self._get_container_name(run_id, index, sequence)
        args = self._common_args(name, run_id, env, workspace, docker_service)
        args.append(image)

        returncode, stdout, stderr = await self._docker(*args, env=env)
        if returncode != 0:
            raise RuntimeError(f"Failed to create pipe container: {stderr}")
        return stdout.strip()

    async def start_container(self, container_id: str) -> None:
        """
        Start a created container.

        Raises:
            RuntimeError: If container start fails
        """
        returncode, _, stderr = await self._docker("start", container_id)
        if returncode != 0:
            raise RuntimeError(f"Failed to start container: {stderr}")

    async def wait_container(self, container_id: str) -> int:
        """
        Block until a container exits.

        Returns:
            The container's exit code

        Raises:
            RuntimeError: If the wait fails
        """
        returncode, stdout, stderr = await self._docker("wait", container_id)
        if returncode != 0:
            raise RuntimeError(f"Failed to wait for container: {stderr}")
        try:
            return int(stdout.strip().splitlines()[-1])
        except (ValueError, IndexError) as e:
            raise RuntimeError(f"Unexpected output from docker wait: {stdout!r}") from e

    async def get_container_info(self, container_id: str) -> ContainerInfo | None:
        """
        Get information about a container.

        Args:
            container_id: Docker container ID or name

        Returns:
            ContainerInfo if container exists, None otherwise
        """
        returncode, stdout, _ = await self._docker("inspect", container_id)
        if returncode != 0:
            # Container doesn't exist
            return None

        try:
            data = json.loads(stdout)
            if not data:
                return None

            container = data[0]
            state = container["State"]
            name = container.get("Name", "").lstrip("/")
            labels = (container.get("Config") or {}).get("Labels") or {}

            return ContainerInfo(
                container_id=container["Id"],
                name=name[len(self.container_name_prefix) :]
                if name.startswith(self.container_name_prefix)
                else name,
                run_id=labels.get(RUN_LABEL),
                status=state["Status"].lower(),
                exit_code=state.get("ExitCode"),
                started_at=_parse_docker_time(state.get("StartedAt")),
                finished_at=_parse_docker_time(state.get("FinishedAt")),
            )
        except (json.JSONDecodeError, KeyError, IndexError) as e:
            raise RuntimeError(f"Failed to parse container info: {e}") from e

    async def stream_logs(
        self, container_id: str, follow: bool = True
    ) -> AsyncGenerator[str, None]:
        """
        Stream logs from a container.

        Args:
            container_id: Docker container ID or name
            follow: If True, stream until the container exits

        Yields:
            Log lines as strings (stdout and stderr interleaved)
        """
        args = ["docker", "logs"]
        if follow:
            args.append("--follow")
        args.append(container_id)

        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        assert process.stdout is not None

        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                yield line.decode(errors="replace")
        finally:
            if process.returncode is None:
                process.terminate()
                await process.wait()

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """
        Stop a running container.

        Raises:
            RuntimeError: If stop operation fails
        """
        returncode, _, stderr = await self._docker(
            "stop", "--time", str(timeout), container_id
        )
        if returncode != 0:
            raise RuntimeError(f"Failed to stop container: {stderr}")

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        """
        Remove a container.

        Raises:
            RuntimeError: If removal fails for any reason other than the
                container already being gone
        """
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(container_id)

        returncode, _, stderr = await self._docker(*args)
        if returncode != 0 and "No such container" not in stderr:
            raise RuntimeError(f"Failed to remove container: {stderr}")

    async def list_run_containers(self) -> list[ContainerInfo]:
        """
        List all step containers with our prefix (running and stopped).

        Returns:
            ContainerInfo for every container created by this manager
        """
        returncode, stdout, stderr = await self._docker(
            "ps", "-a", "--filter", f"label={RUN_LABEL}", "--format", "{{.Names}}"
        )
        if returncode != 0:
            raise RuntimeError(f"Failed to list containers: {stderr}")

        containers = []
        for name in stdout.strip().split("\n"):
            if not name or self._extract_run_id(name) is None:
                continue
            info = await self.get_container_info(name)
            if info:
                containers.append(info)
        return containers

    async def cleanup_container(self, container_id: str) -> None:
        """
        Remove a container, ignoring failures.

        This is a best-effort operation that won't raise exceptions.
        """
        try:
            await self.remove_container(container_id, force=True)
        except Exception:
            pass
