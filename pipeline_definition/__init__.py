"""
Pipeline Definition module.

Loads, generates, writes, lints and documents bitbucket-pipelines.yml files.
Depends only on pipeline_common, so the client CLI can validate a definition
without a database or Docker.
"""

from .devsecops import (
    REQUIRED_VARIABLES,
    STAGE_NAMES,
    DevSecOpsSettings,
    build_devsecops_pipeline,
    build_stages,
)
from .docs import check_docs, render_pipeline_docs, update_readme
from .loader import DEFAULT_DEFINITION_FILE, load_definition, parse_definition
from .validator import Finding, has_errors, validate
from .writer import dump_definition, write_definition

__all__ = [
    "DEFAULT_DEFINITION_FILE",
    "REQUIRED_VARIABLES",
    "STAGE_NAMES",
    "DevSecOpsSettings",
    "Finding",
    "build_devsecops_pipeline",
    "build_stages",
    "check_docs",
    "dump_definition",
    "has_errors",
    "load_definition",
    "parse_definition",
    "render_pipeline_docs",
    "update_readme",
    "validate",
    "write_definition",
]
