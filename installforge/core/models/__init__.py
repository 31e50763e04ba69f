"""
Domain models — catalog records (Pydantic) and transient pipeline types.

All models are re-exported here for convenient access:

    from installforge.core.models import Module, ModuleVersion, Project, Build
"""

from installforge.core.models.build import TERMINAL_STATES, Build, BuildStatus, can_transition
from installforge.core.models.compose import ComposeDocument, Reference, Resource, Service
from installforge.core.models.installer import (
    INSTALLER_SCHEMA_VERSION,
    FileEntry,
    ImageEntry,
    InstallerManifest,
    ModuleEntry,
)
from installforge.core.models.module import Module, ModuleDependency, ModuleVersion, is_semver
from installforge.core.models.project import Project, ProjectModule

__all__ = [
    # build.py
    "Build",
    "BuildStatus",
    "TERMINAL_STATES",
    "can_transition",
    # compose.py
    "ComposeDocument",
    "Reference",
    "Resource",
    "Service",
    # installer.py
    "FileEntry",
    "INSTALLER_SCHEMA_VERSION",
    "ImageEntry",
    "InstallerManifest",
    "ModuleEntry",
    # module.py
    "Module",
    "ModuleDependency",
    "ModuleVersion",
    "is_semver",
    # project.py
    "Project",
    "ProjectModule",
]
