"""
Loader for bitbucket-pipelines.yml files.

Parses the YAML with PyYAML (anchors and aliases resolve natively) and turns
it into PipelineDefinition objects. Only the sequential subset of the format
is accepted: parallel blocks and stages are rejected.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from pipeline_common.errors import DefinitionError
from pipeline_common.models import PipeCall, Pipeline, PipelineDefinition, StepDefinition

logger = logging.getLogger(__name__)

DEFAULT_DEFINITION_FILE = "bitbucket-pipelines.yml"

# Selector groups that hold a mapping of name/glob -> step list
KEYED_SELECTORS = ("branches", "tags", "bookmarks", "pull-requests", "custom")


def load_definition(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline definition from a file.

    Args:
        path: Path to a bitbucket-pipelines.yml file

    Returns:
        Parsed PipelineDefinition

    Raises:
        DefinitionError: If the file is missing or does not describe pipelines
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise DefinitionError(f"Cannot read definition: {e}", str(path)) from e
    return parse_definition(text, source=str(path))


def parse_definition(text: str, source: str | None = None) -> PipelineDefinition:
    """
    Parse pipeline definition YAML text.

    Args:
        text: YAML document
        source: Optional file name used in error messages

    Returns:
        Parsed PipelineDefinition

    Raises:
        DefinitionError: If the YAML is invalid or has an unexpected shape
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML: {e}", source) from e

    if not isinstance(data, dict):
        raise DefinitionError("Top level must be a mapping", source)

    definitions = data.get("definitions") or {}
    if not isinstance(definitions, dict):
        raise DefinitionError("'definitions' must be a mapping", source)

    caches = definitions.get("caches") or {}
    services = definitions.get("services") or {}
    if not isinstance(caches, dict) or not isinstance(services, dict):
        raise DefinitionError(
            "'definitions.caches' and 'definitions.services' must be mappings", source
        )

    raw_pipelines = data.get("pipelines")
    if not isinstance(raw_pipelines, dict):
        raise DefinitionError("'pipelines' section is missing or not a mapping", source)

    pipelines: dict[str, Pipeline] = {}
    for group, value in raw_pipelines.items():
        if group == "default":
            pipelines["default"] = _parse_pipeline("default", value, source)
        elif group in KEYED_SELECTORS:
            if not isinstance(value, dict):
                raise DefinitionError(f"'pipelines.{group}' must be a mapping", source)
            for name, steps in value.items():
                key = f"{group}/{name}"
                pipelines[key] = _parse_pipeline(key, steps, source)
        else:
            raise DefinitionError(f"Unknown pipelines section: {group}", source)

    definition = PipelineDefinition(
        image=_parse_image(data.get("image"), source),
        pipelines=pipelines,
        caches={str(k): _parse_cache(str(k), v, source) for k, v in caches.items()},
        services={str(k): _parse_service(str(k), v, source) for k, v in services.items()},
        source=source,
    )
    logger.debug(
        f"Parsed definition {source or '<string>'} with pipelines: {list(pipelines)}"
    )
    return definition


def _parse_cache(name: str, value: Any, source: str | None) -> str:
    """Caches are a path, or a mapping with a 'path' and an optional 'key'."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("path"), str):
        return value["path"]
    raise DefinitionError(f"Invalid cache '{name}': expected a path, got {value!r}", source)


def _parse_service(name: str, value: Any, source: str | None) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionError(f"Service '{name}' must be a mapping", source)
    return dict(value)


def _parse_image(value: Any, source: str | None) -> str | None:
    """Images may be a plain reference or a mapping with a 'name' key."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("name"), str):
        return value["name"]
    raise DefinitionError(f"Invalid image: {value!r}", source)


def _parse_pipeline(key: str, items: Any, source: str | None) -> Pipeline:
    if items is None:
        return Pipeline(name=key)
    if not isinstance(items, list):
        raise DefinitionError(f"Pipeline '{key}' must be a list of steps", source)

    pipeline = Pipeline(name=key)
    for position, item in enumerate(items):
        if not isinstance(item, dict) or len(item) != 1:
            raise DefinitionError(
                f"Pipeline '{key}' item {position} must be a single-key mapping", source
            )
        kind, body = next(iter(item.items()))
        if kind == "step":
            pipeline.steps.append(_parse_step(body, key, source))
        elif kind == "variables":
            if not key.startswith("custom/"):
                raise DefinitionError(
                    f"Pipeline '{key}' declares variables but is not a custom pipeline",
                    source,
                )
            pipeline.variables.extend(_parse_custom_variables(body, key, source))
        elif kind in ("parallel", "stage"):
            raise DefinitionError(
                f"Pipeline '{key}' uses '{kind}'; only sequential steps are supported",
                source,
            )
        else:
            raise DefinitionError(f"Pipeline '{key}' has unknown item '{kind}'", source)
    return pipeline


def _parse_custom_variables(body: Any, key: str, source: str | None) -> list[str]:
    if not isinstance(body, list):
        raise DefinitionError(f"Variables of '{key}' must be a list", source)
    names = []
    for entry in body:
        if isinstance(entry, dict) and isinstance(entry.get("name"), str):
            names.append(entry["name"])
        else:
            raise DefinitionError(f"Invalid variable entry in '{key}': {entry!r}", source)
    return names


def _parse_step(body: Any, key: str, source: str | None) -> StepDefinition:
    if not isinstance(body, dict):
        raise DefinitionError(f"A step in '{key}' is not a mapping", source)

    max_time = body.get("max-time")
    if max_time is not None and not isinstance(max_time, int):
        raise DefinitionError(f"max-time must be an integer: {max_time!r}", source)

    return StepDefinition(
        name=str(body.get("name") or ""),
        script=_parse_script(body.get("script"), key, source),
        image=_parse_image(body.get("image"), source),
        caches=_string_list(body.get("caches"), "caches", source),
        services=_string_list(body.get("services"), "services", source),
        artifacts=_parse_artifacts(body.get("artifacts"), source),
        deployment=body.get("deployment"),
        trigger=str(body.get("trigger", "automatic")),
        after_script=_parse_script(body.get("after-script"), key, source),
        max_time=max_time,
    )


def _parse_script(items: Any, key: str, source: str | None) -> list:
    if items is None:
        return []
    if not isinstance(items, list):
        raise DefinitionError(f"Script in '{key}' must be a list", source)

    script: list = []
    for item in items:
        if isinstance(item, str):
            script.append(item)
        elif isinstance(item, dict) and "pipe" in item:
            variables = item.get("variables") or {}
            if not isinstance(variables, dict):
                raise DefinitionError(
                    f"Variables of pipe {item['pipe']} must be a mapping", source
                )
            script.append(
                PipeCall(
                    pipe=str(item["pipe"]),
                    variables={str(k): _scalar(v) for k, v in variables.items()},
                )
            )
        else:
            raise DefinitionError(f"Invalid script item in '{key}': {item!r}", source)
    return script


def _parse_artifacts(value: Any, source: str | None) -> list[str]:
    # Artifacts are either a list of globs or a mapping with a 'paths' list
    if isinstance(value, dict):
        value = value.get("paths")
    return _string_list(value, "artifacts", source)


def _string_list(value: Any, field_name: str, source: str | None) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DefinitionError(f"'{field_name}' must be a list of strings", source)
    return list(value)


def _scalar(value: Any) -> str:
    """Pipe variables are strings for the container environment."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return " ".join(str(v) for v in value)
    return str(value)
