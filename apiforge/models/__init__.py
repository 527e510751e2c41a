from apiforge.models.user import User
from apiforge.models.project import Project
from apiforge.models.project_file import ProjectFile
from apiforge.models.generation_job import GenerationJob
from apiforge.models.job_event import JobEvent
from apiforge.models.version import Version
from apiforge.models.code_modification import CodeModification
from apiforge.models.sandbox import Sandbox

__all__ = [
    "User", "Project", "ProjectFile", "GenerationJob",
    "JobEvent", "Version", "CodeModification", "Sandbox",
]
