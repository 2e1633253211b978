"""
Data models for pipeline definitions and pipeline runs.

Definition models describe the declarative surface consumed by the CI/CD
engine (steps, images, scripts, deployments, triggers). Run models record
what happened when the pipeline was executed locally, independent of the
underlying storage mechanism.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .errors import DefinitionError

# Managed pipes published as "atlassian/<name>" are distributed as
# "bitbucketpipelines/<name>" images on Docker Hub.
PIPE_NAMESPACE = "atlassian/"
PIPE_IMAGE_NAMESPACE = "bitbucketpipelines/"

SUPPRESS_SUFFIX = "|| true"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(UTC).replace(tzinfo=None)


def branch_matches(pattern: str, branch: str) -> bool:
    """
    Match a branch name against a branch selector glob.

    "*" and "?" stay within one path segment, "**" also crosses "/" and
    "{a,b}" matches either alternative.
    """
    regex = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**", i):
            regex.append(".*")
            i += 2
            continue
        if char == "*":
            regex.append("[^/]*")
        elif char == "?":
            regex.append("[^/]")
        elif char == "{":
            end = pattern.find("}", i)
            if end == -1:
                regex.append(re.escape(char))
            else:
                options = pattern[i + 1 : end].split(",")
                regex.append("(?:" + "|".join(re.escape(o) for o in options) + ")")
                i = end + 1
                continue
        else:
            regex.append(re.escape(char))
        i += 1
    return re.fullmatch("".join(regex), branch) is not None


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return value.isoformat() + "Z"


@dataclass
class PipeCall:
    """
    A managed CI/CD pipe invoked from a step script.

    Pipes are opaque vendor containers configured only through variables.
    """

    pipe: str  # e.g. "atlassian/aws-ecs-deploy:1.12.1"
    variables: dict[str, str] = field(default_factory=dict)

    @property
    def docker_image(self) -> str:
        """Docker image that implements this pipe."""
        if self.pipe.startswith(PIPE_NAMESPACE):
            return PIPE_IMAGE_NAMESPACE + self.pipe[len(PIPE_NAMESPACE) :]
        if self.pipe.startswith("docker://"):
            return self.pipe[len("docker://") :]
        return self.pipe

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"pipe": self.pipe}
        if self.variables:
            result["variables"] = dict(self.variables)
        return result


ScriptItem = str | PipeCall


@dataclass
class StepDefinition:
    """
    A single pipeline step: one external tool invocation in one container.

    trigger is "automatic" or "manual"; a manual step is only started once
    somebody approves it.
    """

    name: str
    script: list[ScriptItem] = field(default_factory=list)
    image: str | None = None  # Falls back to the definition's default image
    caches: list[str] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    deployment: str | None = None  # "test", "staging" or "production"
    trigger: str = "automatic"
    after_script: list[ScriptItem] = field(default_factory=list)
    max_time: int | None = None  # Minutes

    @property
    def is_manual(self) -> bool:
        return self.trigger == "manual"

    def commands(self) -> list[str]:
        """Shell commands of the main script (pipes excluded)."""
        return [item for item in self.script if isinstance(item, str)]

    def pipes(self) -> list[PipeCall]:
        return [item for item in self.script if isinstance(item, PipeCall)]

    def suppressed_commands(self) -> list[str]:
        """Commands whose failure is deliberately ignored with '|| true'."""
        return [
            command
            for command in self.commands()
            if command.rstrip().endswith(SUPPRESS_SUFFIX)
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to the Bitbucket Pipelines step mapping."""
        result: dict[str, Any] = {"name": self.name}
        if self.image:
            result["image"] = self.image
        if self.deployment:
            result["deployment"] = self.deployment
        if self.trigger != "automatic":
            result["trigger"] = self.trigger
        if self.max_time is not None:
            result["max-time"] = self.max_time
        if self.caches:
            result["caches"] = list(self.caches)
        if self.services:
            result["services"] = list(self.services)
        result["script"] = [
            item.to_dict() if isinstance(item, PipeCall) else item
            for item in self.script
        ]
        if self.after_script:
            result["after-script"] = [
                item.to_dict() if isinstance(item, PipeCall) else item
                for item in self.after_script
            ]
        if self.artifacts:
            result["artifacts"] = list(self.artifacts)
        return result


@dataclass
class Pipeline:
    """An ordered list of steps selected by branch, custom name or default."""

    name: str  # Selector key, e.g. "default", "branches/main", "custom/deploy"
    steps: list[StepDefinition] = field(default_factory=list)
    variables: list[str] = field(default_factory=list)  # Custom pipeline inputs


@dataclass
class PipelineDefinition:
    """
    A parsed bitbucket-pipelines.yml.

    pipelines is keyed by selector: "default", "branches/<glob>",
    "pull-requests/<glob>" or "custom/<name>".
    """

    image: str | None = None
    pipelines: dict[str, Pipeline] = field(default_factory=dict)
    caches: dict[str, str] = field(default_factory=dict)
    services: dict[str, dict[str, Any]] = field(default_factory=dict)
    source: str | None = None  # File the definition was loaded from

    def select(self, branch: str | None = None, custom: str | None = None) -> Pipeline:
        """
        Pick the pipeline that runs for a branch or custom trigger.

        Args:
            branch: Branch name matched against "branches/<glob>" selectors
            custom: Name of a custom pipeline (takes precedence)

        Returns:
            The selected Pipeline

        Raises:
            DefinitionError: If no pipeline matches
        """
        if custom is not None:
            key = f"custom/{custom}"
            if key not in self.pipelines:
                raise DefinitionError(f"Unknown custom pipeline: {custom}", self.source)
            return self.pipelines[key]

        if branch is not None:
            # Exact names win over glob patterns
            exact = self.pipelines.get(f"branches/{branch}")
            if exact is not None:
                return exact
            for key, pipeline in self.pipelines.items():
                if key.startswith("branches/") and branch_matches(key[len("branches/") :], branch):
                    return pipeline

        if "default" in self.pipelines:
            return self.pipelines["default"]

        raise DefinitionError(
            f"No pipeline matches branch {branch!r} and no default pipeline is defined",
            self.source,
        )

    def step_image(self, step: StepDefinition) -> str:
        """Image a step runs in; the engine's own default when none is set."""
        return step.image or self.image or "atlassian/default-image:4"


@dataclass
class RunEvent:
    """
    Represents a single event in a run's lifecycle.

    Events are emitted while steps execute (logs, step boundaries, gate
    approvals and the final result).
    """

    type: str  # "log", "step_started", "step_completed", "awaiting_approval", "approved", "complete"
    data: str | None = None
    step: int | None = None  # Index of the step the event belongs to
    success: bool | None = None
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format (for JSON serialization)."""
        result: dict[str, Any] = {"type": self.type}
        if self.data is not None:
            result["data"] = self.data
        if self.step is not None:
            result["step"] = self.step
        if self.success is not None:
            result["success"] = self.success
        return result

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], timestamp: datetime | None = None
    ) -> "RunEvent":
        """Create event from dictionary format."""
        return cls(
            type=data["type"],
            data=data.get("data"),
            step=data.get("step"),
            success=data.get("success"),
            timestamp=timestamp,
        )


@dataclass
class StepResult:
    """
    Outcome of one step within a run.

    Steps progress: pending -> running -> successful | failed
    Manual steps pass through awaiting_approval first; steps after a failure
    are skipped, steps interrupted by a stop request are stopped.
    """

    run_id: str
    index: int
    name: str
    status: str = "pending"
    exit_code: int | None = None
    container_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    approved_by: str | None = None  # User ID of the approver for manual steps
    approved_at: datetime | None = None
    suppressed: bool = False  # Step contains failure-suppressed commands

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "status": self.status,
            "exit_code": self.exit_code,
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
            "approved_by": self.approved_by,
            "approved_at": _isoformat(self.approved_at),
            "suppressed": self.suppressed,
        }


@dataclass
class Run:
    """
    Represents one local execution of a pipeline.

    Runs progress through states: pending -> running -> completed | failed
    A run waiting on a manual gate is paused; a run interrupted on request
    is stopped.
    """

    id: str
    pipeline: str  # Selector key of the executed pipeline
    status: str  # "pending", "running", "paused", "completed", "failed" or "stopped"
    build_number: int = 0
    branch: str | None = None
    commit: str | None = None
    workspace: str | None = None
    user_id: str | None = None
    steps: list[StepResult] = field(default_factory=list)
    events: list[RunEvent] = field(default_factory=list)
    success: bool | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    stop_requested: bool = False

    TERMINAL_STATUSES = ("completed", "failed", "stopped")

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def awaiting_step(self) -> StepResult | None:
        """The step currently held at the manual gate, if any."""
        for step in self.steps:
            if step.status == "awaiting_approval":
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert run to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "pipeline": self.pipeline,
            "status": self.status,
            "build_number": self.build_number,
            "branch": self.branch,
            "commit": self.commit,
            "success": self.success,
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
            "steps": [step.to_dict() for step in self.steps],
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert run to summary format (without steps, for listings)."""
        return {
            "run_id": self.id,
            "build_number": self.build_number,
            "pipeline": self.pipeline,
            "status": self.status,
            "branch": self.branch,
            "success": self.success,
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
        }


@dataclass
class Variable:
    """
    A repository or deployment variable consumed by the external tools.

    Deployment variables (deployment set) override repository variables of
    the same name for steps deploying to that environment. Secured values are
    masked in logs and never returned by the API.
    """

    name: str
    value: str
    secured: bool = False
    deployment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": None if self.secured else self.value,
            "secured": self.secured,
            "deployment": self.deployment,
        }


@dataclass
class User:
    """
    Represents a user account allowed to act on runs.

    Users own API keys and are recorded as approvers of manual steps.
    """

    id: str  # UUID
    name: str
    email: str  # Unique
    created_at: datetime
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "created_at": _isoformat(self.created_at),
            "is_active": self.is_active,
        }


@dataclass
class APIKey:
    """
    Represents an API key for authentication.

    API keys are hashed before storage (SHA-256). The plaintext key is only
    shown once during creation and must be saved by the user.
    """

    id: str  # UUID (internal ID, not the actual key)
    user_id: str
    key_hash: str
    name: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "created_at": _isoformat(self.created_at),
            "last_used_at": _isoformat(self.last_used_at),
            "is_active": self.is_active,
        }
