"""
Variable references, environment resolution and secret masking.

Steps consume configuration only through environment variables. This module
finds which names a step references, builds the environment a step runs
with, and masks secured values before output is stored or shown.
"""

import os
import re
from collections.abc import Iterable, Mapping

from pipeline_common.models import PipeCall, StepDefinition, Variable

# Names the CI/CD engine provides to every step
BUILTIN_VARIABLES = frozenset(
    {
        "BITBUCKET_BRANCH",
        "BITBUCKET_BUILD_NUMBER",
        "BITBUCKET_CLONE_DIR",
        "BITBUCKET_COMMIT",
        "BITBUCKET_DEPLOYMENT_ENVIRONMENT",
        "BITBUCKET_DOCKER_HOST_INTERNAL",
        "BITBUCKET_PIPELINE_UUID",
        "BITBUCKET_PROJECT_KEY",
        "BITBUCKET_REPO_FULL_NAME",
        "BITBUCKET_REPO_SLUG",
        "BITBUCKET_REPO_UUID",
        "BITBUCKET_STEP_UUID",
        "BITBUCKET_TAG",
        "BITBUCKET_WORKSPACE",
        "CI",
        "HOME",
        "PATH",
        "PWD",
    }
)

CLONE_DIR = "/opt/atlassian/pipelines/agent/build"

# Secured values shorter than this are not masked (too many false hits)
MIN_MASK_LENGTH = 3

_SINGLE_QUOTED = re.compile(r"'[^']*'")
_REFERENCE = re.compile(r"(?<!\\)\$(?:\{([A-Za-z_][A-Za-z0-9_]*)[^}]*\}|([A-Za-z_][A-Za-z0-9_]*))")
_ASSIGNMENT = re.compile(
    r"(?:^|[;&|]\s*|\s)(?:export\s+|readonly\s+|local\s+)?([A-Za-z_][A-Za-z0-9_]*)="
)


def referenced_variables(command: str) -> set[str]:
    """
    Names referenced as $NAME or ${NAME...} in a shell command.

    Single-quoted spans and escaped dollars are not expanded by the shell,
    so references inside them are ignored.
    """
    unquoted = _SINGLE_QUOTED.sub("", command)
    return {braced or bare for braced, bare in _REFERENCE.findall(unquoted)}


def assigned_variables(command: str) -> set[str]:
    """Names assigned by NAME=... or export NAME=... in a shell command."""
    unquoted = _SINGLE_QUOTED.sub("''", command)
    return set(_ASSIGNMENT.findall(unquoted))


def step_references(step: StepDefinition) -> set[str]:
    """All variable names a step references (script, after-script, pipes)."""
    names: set[str] = set()
    for item in [*step.script, *step.after_script]:
        if isinstance(item, PipeCall):
            for value in item.variables.values():
                names |= referenced_variables(value)
        else:
            names |= referenced_variables(item)
    return names


def undeclared_references(
    step: StepDefinition, declared: Iterable[str]
) -> list[tuple[str, str]]:
    """
    References that are neither declared, built in, nor assigned earlier.

    Returns:
        (name, command) pairs in script order, each name reported once
    """
    known = set(BUILTIN_VARIABLES) | set(declared)
    reported: set[str] = set()
    missing: list[tuple[str, str]] = []

    for item in [*step.script, *step.after_script]:
        if isinstance(item, PipeCall):
            texts = list(item.variables.values())
            label = f"pipe {item.pipe}"
        else:
            texts = [item]
            label = item
        for text in texts:
            for name in sorted(referenced_variables(text)):
                if name not in known and name not in reported:
                    missing.append((name, label))
                    reported.add(name)
            if not isinstance(item, PipeCall):
                known |= assigned_variables(text)
    return missing


def builtin_environment(
    *,
    build_number: int,
    commit: str | None,
    branch: str | None,
    run_id: str,
    repo_slug: str,
    deployment: str | None = None,
) -> dict[str, str]:
    """Values for the engine-provided variables of one step."""
    env = {
        "CI": "true",
        "BITBUCKET_BUILD_NUMBER": str(build_number),
        "BITBUCKET_CLONE_DIR": CLONE_DIR,
        "BITBUCKET_PIPELINE_UUID": "{" + run_id + "}",
        "BITBUCKET_REPO_SLUG": repo_slug,
    }
    if commit:
        env["BITBUCKET_COMMIT"] = commit
    if branch:
        env["BITBUCKET_BRANCH"] = branch
    if deployment:
        env["BITBUCKET_DEPLOYMENT_ENVIRONMENT"] = deployment
    return env


def build_environment(
    step: StepDefinition,
    variables: Iterable[Variable],
    builtins: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Build the environment one step runs with.

    Resolution order, highest first: deployment variable for the step's
    environment, repository variable, process environment. The process
    environment only contributes names the step actually references, so
    unrelated host variables never leak into containers.

    Args:
        step: The step to build the environment for
        variables: Stored repository and deployment variables
        builtins: Engine-provided values (see builtin_environment)
        environ: Process environment (defaults to os.environ)

    Returns:
        Mapping of name to value
    """
    if environ is None:
        environ = os.environ

    env: dict[str, str] = {}
    for name in step_references(step):
        if name in environ and name not in BUILTIN_VARIABLES:
            env[name] = environ[name]

    variables = list(variables)
    for variable in variables:
        if variable.deployment is None:
            env[variable.name] = variable.value
    if step.deployment:
        for variable in variables:
            if variable.deployment == step.deployment:
                env[variable.name] = variable.value

    env.update(builtins)
    return env


def secured_values(
    variables: Iterable[Variable], deployment: str | None = None
) -> dict[str, str]:
    """Secured values visible to a step, keyed by variable name."""
    secrets: dict[str, str] = {}
    for variable in variables:
        if not variable.secured:
            continue
        if variable.deployment is None or variable.deployment == deployment:
            secrets[variable.name] = variable.value
    return secrets


def mask_secrets(text: str, secrets: Mapping[str, str]) -> str:
    """
    Replace every secured value in text with $NAME.

    Longer values are replaced first so a secret containing another secret
    is masked as a whole.
    """
    ordered = sorted(
        ((name, value) for name, value in secrets.items() if len(value) >= MIN_MASK_LENGTH),
        key=lambda pair: len(pair[1]),
        reverse=True,
    )
    for name, value in ordered:
        text = text.replace(value, f"${name}")
    return text


def expand_variables(text: str, env: Mapping[str, str]) -> str:
    """
    Substitute $NAME and ${NAME} references the way the engine does for pipe
    variables. Unknown names expand to an empty string.
    """

    def substitute(match: re.Match) -> str:
        return env.get(match.group(1) or match.group(2), "")

    return _REFERENCE.sub(substitute, text)
