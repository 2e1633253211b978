"""
Pipeline Common module.

Shared domain models, errors and the repository contract used across the
pipeline packages (definition, persistence, runner, server, client, admin).

This module has no dependencies on other pipeline_* modules, making it a pure
domain layer that can be imported by any component.
"""

from .errors import DefinitionError, PipelineError, StepExecutionError
from .models import (
    APIKey,
    PipeCall,
    Pipeline,
    PipelineDefinition,
    Run,
    RunEvent,
    StepDefinition,
    StepResult,
    User,
    Variable,
)
from .repository import RunRepository

__all__ = [
    "APIKey",
    "DefinitionError",
    "PipeCall",
    "Pipeline",
    "PipelineDefinition",
    "PipelineError",
    "Run",
    "RunEvent",
    "RunRepository",
    "StepDefinition",
    "StepExecutionError",
    "StepResult",
    "User",
    "Variable",
]
