"""
README generation and documentation consistency checks.

The pipeline is documented in the project README between two HTML comment
markers. The block is generated from the definition so the documented stages
can never drift from the configured ones; check_docs reports when they do.
"""

from pipeline_common.models import PipeCall, PipelineDefinition, StepDefinition

from .devsecops import REQUIRED_VARIABLES
from .validator import ERROR, Finding
from .variables import BUILTIN_VARIABLES, step_references

START_MARKER = "<!-- pipeline-docs:start -->"
END_MARKER = "<!-- pipeline-docs:end -->"

# Executable name -> tool shown in the docs
KNOWN_TOOLS = {
    "eslint": "ESLint",
    "sonar-scanner": "SonarQube",
    "gitleaks": "Gitleaks",
    "trivy": "Trivy",
    "aws": "AWS CLI",
    "docker": "Docker",
    "npm": "npm",
}


def describe_tools(step: StepDefinition) -> list[str]:
    """Names of the external tools a step invokes, in first-use order."""
    tools: list[str] = []
    for item in step.script:
        if isinstance(item, PipeCall):
            candidates = [f"pipe `{item.pipe}`"]
        else:
            candidates = [
                tool for word, tool in KNOWN_TOOLS.items() if word in item.split()
            ]
        for tool in candidates:
            if tool not in tools:
                tools.append(tool)
    return tools


def render_pipeline_docs(definition: PipelineDefinition, pipeline_key: str) -> str:
    """
    Render the Markdown block describing one pipeline.

    Args:
        definition: Parsed or generated definition
        pipeline_key: Selector of the pipeline to document, e.g. "branches/main"

    Returns:
        Markdown text including the start/end markers
    """
    pipeline = definition.pipelines[pipeline_key]
    lines = [
        START_MARKER,
        f"### Pipeline stages (`{pipeline_key}`)",
        "",
        "| # | Stage | Tools | Image | Trigger |",
        "|---|-------|-------|-------|---------|",
    ]
    for number, step in enumerate(pipeline.steps, start=1):
        tools = ", ".join(describe_tools(step)) or "-"
        trigger = "manual approval" if step.is_manual else "automatic"
        if step.deployment:
            trigger += f" (deploys to {step.deployment})"
        lines.append(
            f"| {number} | {step.name} | {tools} | `{definition.step_image(step)}` | {trigger} |"
        )

    referenced: set[str] = set()
    for step in pipeline.steps:
        referenced |= step_references(step)
    names = [name for name in REQUIRED_VARIABLES if name in referenced]
    names += sorted(referenced - set(REQUIRED_VARIABLES) - BUILTIN_VARIABLES)
    if names:
        lines += [
            "",
            "### Variables",
            "",
            "| Variable | Purpose |",
            "|----------|---------|",
        ]
        for name in names:
            lines.append(f"| `{name}` | {REQUIRED_VARIABLES.get(name, 'Pipeline variable')} |")

    suppressed = [step for step in pipeline.steps if step.suppressed_commands()]
    if suppressed:
        lines += ["", "### Failure policy", ""]
        for step in suppressed:
            lines.append(
                f"- **{step.name}** ends with `|| true`: findings are logged but do not block the pipeline."
            )

    gated = [step for step in pipeline.steps if step.is_manual]
    for step in gated:
        lines += [
            "",
            f"> **{step.name}** waits for manual approval before it runs.",
        ]

    lines.append(END_MARKER)
    return "\n".join(lines) + "\n"


def _split(text: str) -> tuple[str, str, str] | None:
    start = text.find(START_MARKER)
    end = text.find(END_MARKER, start + len(START_MARKER)) if start != -1 else -1
    if start == -1 or end == -1:
        return None
    end += len(END_MARKER)
    # Swallow the newline after the end marker so the block round-trips
    if text[end : end + 1] == "\n":
        end += 1
    return text[:start], text[start:end], text[end:]


def update_readme(text: str, rendered: str) -> str:
    """
    Replace the generated block in a README, or append it when absent.
    """
    parts = _split(text)
    if parts is None:
        separator = "" if not text or text.endswith("\n\n") else ("\n" if text.endswith("\n") else "\n\n")
        return text + separator + rendered
    before, _, after = parts
    return before + rendered + after


def check_docs(text: str, definition: PipelineDefinition, pipeline_key: str) -> list[Finding]:
    """
    Check that a README documents the configured pipeline.

    Returns:
        D001 when the markers are missing, D002 when the generated block is
        out of date, D003 for each step name not mentioned anywhere
    """
    findings: list[Finding] = []
    parts = _split(text)
    if parts is None:
        findings.append(
            Finding(
                "D001",
                ERROR,
                f"README has no generated pipeline block ({START_MARKER} ... {END_MARKER})",
                pipeline_key,
            )
        )
    elif parts[1] != render_pipeline_docs(definition, pipeline_key):
        findings.append(
            Finding(
                "D002",
                ERROR,
                "Generated pipeline block is out of date; regenerate it with 'pipeline docs'",
                pipeline_key,
            )
        )

    for step in definition.pipelines[pipeline_key].steps:
        if step.name and step.name not in text:
            findings.append(
                Finding(
                    "D003",
                    ERROR,
                    f"Step '{step.name}' is not mentioned in the README",
                    pipeline_key,
                    step.name,
                )
            )
    return findings
