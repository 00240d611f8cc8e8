"""SQLAlchemy ORM models."""

from nbpipeline.models.artifact import Artifact, Synthesis
from nbpipeline.models.company import Company
from nbpipeline.models.job import Job
from nbpipeline.models.nb_result import NBResult
from nbpipeline.models.run import Run
from nbpipeline.models.telemetry import Diagnostic, Telemetry

__all__ = [
    "Artifact",
    "Company",
    "Diagnostic",
    "Job",
    "NBResult",
    "Run",
    "Synthesis",
    "Telemetry",
]
