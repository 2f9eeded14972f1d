"""push-deployer - Push-triggered container deployment with automatic rollback."""

__version__ = "1.0.0"

from .pipeline import DeploymentPipeline
from .models import PipelineOutcome, PipelineRun, Revision

__all__ = ["DeploymentPipeline", "PipelineOutcome", "PipelineRun", "Revision"]
