"""
Pipeline Runner module.

Runs a pipeline on the local machine: each step in Docker, in order, with
manual steps held until approved. Results and events go to the run
repository, where the approval service and the client can see them.
"""

from .container_manager import ContainerInfo, ContainerManager
from .runner import PipelineRunner

__all__ = ["PipelineRunner", "ContainerManager", "ContainerInfo"]
