"""
Configuration linter for pipeline definitions.

Checks that a definition is something the CI/CD engine will accept and that
it follows the shift-left policy: every referenced variable is declared,
production deploys sit behind a manual gate, scanner flags are sane and
suppressed failures are visible.
"""

import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pipeline_common.models import Pipeline, PipelineDefinition, StepDefinition

from .variables import undeclared_references

ERROR = "error"
WARNING = "warning"
INFO = "info"

DEPLOYMENT_ENVIRONMENTS = ("test", "staging", "production")
TRIGGERS = ("automatic", "manual")
PREDEFINED_CACHES = frozenset(
    {
        "composer",
        "dotnetcore",
        "docker",
        "gradle",
        "ivy2",
        "maven",
        "node",
        "pip",
        "sbt",
    }
)
TRIVY_SEVERITIES = frozenset({"UNKNOWN", "LOW", "MEDIUM", "HIGH", "CRITICAL"})
MAX_TIME_RANGE = (1, 120)

_LATEST_OR_UNTAGGED = re.compile(r"^[^:@]+(?::latest)?$")


@dataclass
class Finding:
    """One problem (or notable fact) found in a definition or its docs."""

    code: str
    severity: str  # "error", "warning" or "info"
    message: str
    pipeline: str | None = None
    step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "severity": self.severity,
            "message": self.message,
            "pipeline": self.pipeline,
            "step": self.step,
        }

    def __str__(self) -> str:
        location = ""
        if self.pipeline:
            location = f" [{self.pipeline}"
            location += f" > {self.step}]" if self.step else "]"
        return f"{self.severity.upper()} {self.code}{location}: {self.message}"


def has_errors(findings: Iterable[Finding]) -> bool:
    return any(finding.severity == ERROR for finding in findings)


def validate(definition: PipelineDefinition, declared: Iterable[str] = ()) -> list[Finding]:
    """
    Lint a pipeline definition.

    Args:
        definition: Parsed definition
        declared: Variable names declared outside the file (repository and
            deployment variables, names supplied on the command line)

    Returns:
        Findings in pipeline and step order
    """
    declared = set(declared)
    findings: list[Finding] = []

    if not definition.pipelines:
        findings.append(Finding("E002", ERROR, "No pipelines are defined"))
        return findings

    for pipeline in definition.pipelines.values():
        findings.extend(
            _validate_pipeline(definition, pipeline, declared | set(pipeline.variables))
        )

    return findings


def _validate_pipeline(
    definition: PipelineDefinition, pipeline: Pipeline, declared: set[str]
) -> list[Finding]:
    key = pipeline.name
    findings: list[Finding] = []

    if not pipeline.steps:
        findings.append(Finding("E002", ERROR, "Pipeline has no steps", key))
        return findings

    seen_names: set[str] = set()
    deployments: dict[str, int] = {}

    for position, step in enumerate(pipeline.steps):
        label = step.name or f"step {position + 1}"

        if not step.name:
            findings.append(Finding("E003", ERROR, "Step has no name", key, label))
        elif step.name in seen_names:
            findings.append(
                Finding("E004", ERROR, f"Duplicate step name '{step.name}'", key, label)
            )
        seen_names.add(step.name)

        if not step.script:
            findings.append(Finding("E003", ERROR, "Step has no script", key, label))

        for name, where in undeclared_references(step, declared):
            findings.append(
                Finding(
                    "E005",
                    ERROR,
                    f"Variable ${name} is not declared (used in: {where})",
                    key,
                    label,
                )
            )

        if step.deployment is not None:
            if step.deployment not in DEPLOYMENT_ENVIRONMENTS:
                findings.append(
                    Finding(
                        "E009",
                        ERROR,
                        f"Unknown deployment environment '{step.deployment}'"
                        f" (expected one of: {', '.join(DEPLOYMENT_ENVIRONMENTS)})",
                        key,
                        label,
                    )
                )
            elif step.deployment in deployments:
                findings.append(
                    Finding(
                        "E006",
                        ERROR,
                        f"Deployment environment '{step.deployment}' is used by more than one step",
                        key,
                        label,
                    )
                )
            else:
                deployments[step.deployment] = position

            if step.deployment == "production" and not step.is_manual:
                findings.append(
                    Finding(
                        "E007",
                        ERROR,
                        "Production deployment must use 'trigger: manual'",
                        key,
                        label,
                    )
                )

        if step.trigger not in TRIGGERS:
            findings.append(
                Finding("E016", ERROR, f"Invalid trigger '{step.trigger}'", key, label)
            )

        if step.max_time is not None and not (
            MAX_TIME_RANGE[0] <= step.max_time <= MAX_TIME_RANGE[1]
        ):
            findings.append(
                Finding(
                    "E017",
                    ERROR,
                    f"max-time {step.max_time} is outside {MAX_TIME_RANGE[0]}..{MAX_TIME_RANGE[1]} minutes",
                    key,
                    label,
                )
            )

        findings.extend(_check_image(definition, step, key, label))
        findings.extend(_check_caches_and_services(definition, step, key, label))
        findings.extend(_check_tool_flags(step, key, label))

        for command in step.suppressed_commands():
            findings.append(
                Finding(
                    "I010",
                    INFO,
                    f"Failure is suppressed, findings will not block the pipeline: {command}",
                    key,
                    label,
                )
            )

    if "production" in deployments and "staging" in deployments:
        if deployments["production"] < deployments["staging"]:
            findings.append(
                Finding(
                    "W008",
                    WARNING,
                    "Production is deployed before staging",
                    key,
                    pipeline.steps[deployments["production"]].name,
                )
            )

    return findings


def _check_image(
    definition: PipelineDefinition, step: StepDefinition, key: str, label: str
) -> list[Finding]:
    image = step.image or definition.image
    if image is None or not _LATEST_OR_UNTAGGED.match(image):
        return []
    return [
        Finding(
            "W011",
            WARNING,
            f"Image '{image}' is not pinned to a version tag",
            key,
            label,
        )
    ]


def _check_caches_and_services(
    definition: PipelineDefinition, step: StepDefinition, key: str, label: str
) -> list[Finding]:
    findings = []
    for cache in step.caches:
        if cache not in PREDEFINED_CACHES and cache not in definition.caches:
            findings.append(
                Finding("E012", ERROR, f"Cache '{cache}' is not defined", key, label)
            )
    for service in step.services:
        if service != "docker" and service not in definition.services:
            findings.append(
                Finding("E013", ERROR, f"Service '{service}' is not defined", key, label)
            )
    return findings


def _check_tool_flags(step: StepDefinition, key: str, label: str) -> list[Finding]:
    findings = []
    for command in step.commands():
        try:
            words = shlex.split(command)
        except ValueError:
            words = command.split()

        for position, word in enumerate(words):
            if word == "trivy":
                findings.extend(_check_trivy(words[position + 1 :], command, key, label))
            elif word == "gitleaks":
                if not any(w == "--redact" or w.startswith("--redact=") for w in words[position + 1 :]):
                    findings.append(
                        Finding(
                            "W015",
                            WARNING,
                            f"gitleaks runs without --redact; secrets may appear in logs: {command}",
                            key,
                            label,
                        )
                    )
    return findings


def _check_trivy(args: list[str], command: str, key: str, label: str) -> list[Finding]:
    severity = None
    for position, word in enumerate(args):
        if word in ("|", "||", "&&", ";"):
            break
        if word.startswith("--severity="):
            severity = word.split("=", 1)[1]
        elif word in ("--severity", "-s") and position + 1 < len(args):
            severity = args[position + 1]

    if severity is None:
        return [
            Finding(
                "W014",
                WARNING,
                f"trivy runs without --severity: {command}",
                key,
                label,
            )
        ]

    unknown = [s for s in severity.split(",") if s not in TRIVY_SEVERITIES]
    if unknown:
        return [
            Finding(
                "W014",
                WARNING,
                f"trivy --severity has unknown values {', '.join(unknown)}: {command}",
                key,
                label,
            )
        ]
    return []
