"""
Serialize PipelineDefinition objects back to bitbucket-pipelines.yml.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from pipeline_common.models import Pipeline, PipelineDefinition

from .loader import KEYED_SELECTORS

logger = logging.getLogger(__name__)


def definition_to_dict(definition: PipelineDefinition) -> dict[str, Any]:
    """Convert a definition into the mapping layout of bitbucket-pipelines.yml."""
    result: dict[str, Any] = {}
    if definition.image:
        result["image"] = definition.image

    definitions: dict[str, Any] = {}
    if definition.caches:
        definitions["caches"] = dict(definition.caches)
    if definition.services:
        definitions["services"] = {k: dict(v) for k, v in definition.services.items()}
    if definitions:
        result["definitions"] = definitions

    pipelines: dict[str, Any] = {}
    if "default" in definition.pipelines:
        pipelines["default"] = _pipeline_items(definition.pipelines["default"])
    for group in KEYED_SELECTORS:
        prefix = f"{group}/"
        entries = {
            key[len(prefix) :]: _pipeline_items(pipeline)
            for key, pipeline in definition.pipelines.items()
            if key.startswith(prefix)
        }
        if entries:
            pipelines[group] = entries
    result["pipelines"] = pipelines
    return result


def _pipeline_items(pipeline: Pipeline) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    if pipeline.variables:
        items.append({"variables": [{"name": name} for name in pipeline.variables]})
    items.extend({"step": step.to_dict()} for step in pipeline.steps)
    return items


def dump_definition(definition: PipelineDefinition) -> str:
    """
    Render a definition as YAML text.

    Key order follows the Bitbucket documentation layout; long commands are
    never wrapped.
    """
    return yaml.safe_dump(
        definition_to_dict(definition),
        sort_keys=False,
        default_flow_style=False,
        width=1000,
    )


def write_definition(definition: PipelineDefinition, path: str | Path) -> Path:
    """Write a definition to disk and return the path written."""
    path = Path(path)
    path.write_text(dump_definition(definition))
    logger.info(f"Wrote pipeline definition to {path}")
    return path
