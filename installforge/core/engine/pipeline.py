"""
Build pipeline — the stages one build runs through.

Flow:
    load inputs → merge (10) → lint (20) → images (20→70) → assemble (95)

The orchestrator owns state transitions and persistence of the final
record; the pipeline only computes and reports progress.  Every stage
records its name on the context first, so an unexpected exception can
still be attributed to a stage.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from installforge.core.errors import BuildCancelled, ConfigurationError, LintFailed
from installforge.core.models.build import Build
from installforge.core.persistence.record_store import RecordStore
from installforge.core.services.assembler import (
    AssemblyInput,
    AssemblyResult,
    InstallerAssembler,
    ModuleResources,
)
from installforge.core.services.image_packager import ImagePackage, ImagePackager
from installforge.core.services.linter import LintContext, LintReport, PolicyLinter
from installforge.core.services.merger import (
    MergeResult,
    ModuleInstance,
    derive_namespaces,
    merge_modules,
    slugify,
)
from installforge.core.services.variables import coerce_variable_map, resolve_variables

logger = logging.getLogger(__name__)

# Progress checkpoints (percent)
PROGRESS_MERGED = 10
PROGRESS_LINTED = 20
PROGRESS_IMAGES_DONE = 70
PROGRESS_ASSEMBLED = 95

ProgressReporter = Callable[[int], None]


@dataclass
class BuildContext:
    """Working state of one build."""

    build: Build
    work_dir: Path
    output_dir: Path
    cancel: threading.Event = field(default_factory=threading.Event)
    stage: str = "configuration"

    instances: list[ModuleInstance] = field(default_factory=list)
    resources: list[ModuleResources] = field(default_factory=list)
    env_vars: dict[str, str] = field(default_factory=dict)
    required_env: list[str] = field(default_factory=list)

    merge: MergeResult | None = None
    report: LintReport | None = None
    images: ImagePackage | None = None
    assembly: AssemblyResult | None = None

    @property
    def blob_dir(self) -> Path:
        return self.work_dir / "images"

    def warnings(self) -> list[dict[str, Any]]:
        """Lint warnings plus packaging warnings, in that order."""
        items: list[dict[str, Any]] = []
        if self.report:
            items.extend(f.to_dict() for f in self.report.warnings)
        if self.images:
            items.extend(
                {"severity": "warning", "rule": "optional-image", "location": "images", "message": w}
                for w in self.images.warnings
            )
        return items


# ── Input loading ───────────────────────────────────────────────


def load_project_inputs(store: RecordStore, ctx: BuildContext) -> None:
    """Fill *ctx* with the enabled module instances of the build's project.

    Effective variables per instance, later wins:
        version defaults → project variables → pin overrides → submit variables
    """
    build = ctx.build
    project = store.get_project(build.project_id)
    links = store.list_project_modules(project.id, enabled_only=True)
    if not links:
        raise ConfigurationError(
            f"Project '{project.name}' has no enabled modules", entity=project.id,
        )

    rows = []
    for link in links:
        module = store.get_module(link.module_id)
        version = store.get_version(link.module_version_id)
        if not version.published:
            raise ConfigurationError(
                f"Module '{module.name}' {version.version} is not published",
                entity=f"{module.name}@{version.version}",
            )
        rows.append((link, module, version))

    namespaces = derive_namespaces([module.name for _, module, _ in rows])
    for (link, module, version), namespace in zip(rows, namespaces, strict=True):
        ctx.instances.append(ModuleInstance(
            name=module.name,
            version=version.version,
            namespace=namespace,
            compose=version.compose,
            variables=resolve_variables(
                version.variables, project.variables, link.override_vars, build.variables,
            ),
            resources=list(version.resources),
            resource_root=version.resource_root,
            dependencies=list(version.dependencies),
            order=link.order,
        ))
        if version.resources:
            ctx.resources.append(ModuleResources(
                module=module.name,
                version=version.version,
                root=Path(version.resource_root or "."),
                paths=list(version.resources),
            ))

    ctx.env_vars = dict(project.env_vars)
    ctx.required_env = project.required_env()


def load_manifest_inputs(ctx: BuildContext) -> None:
    """Fill *ctx* with the single ad-hoc manifest of the build (no namespace)."""
    build = ctx.build
    if not build.manifest.strip():
        raise ConfigurationError("Ad-hoc build without a manifest", entity=build.id)
    ctx.instances.append(ModuleInstance(
        name=slugify(build.name) if build.name else "manifest",
        version="",
        namespace="",
        compose=build.manifest,
        variables=coerce_variable_map(build.variables),
    ))


# ── Pipeline ────────────────────────────────────────────────────


class BuildPipeline:
    """Runs merge → lint → images → assemble for one build context."""

    def __init__(
        self,
        store: RecordStore,
        packager: ImagePackager,
        assembler: InstallerAssembler,
        linter: PolicyLinter | None = None,
    ):
        self.store = store
        self.packager = packager
        self.assembler = assembler
        self.linter = linter or PolicyLinter()

    @staticmethod
    def check_cancel(ctx: BuildContext) -> None:
        if ctx.cancel.is_set():
            raise BuildCancelled(f"Build {ctx.build.id} cancelled during {ctx.stage}", entity=ctx.build.id)

    def run(self, ctx: BuildContext, report: ProgressReporter) -> BuildContext:
        build = ctx.build

        ctx.stage = "configuration"
        if build.project_id is not None:
            load_project_inputs(self.store, ctx)
        else:
            load_manifest_inputs(ctx)
        self.check_cancel(ctx)

        ctx.stage = "merge"
        ctx.merge = merge_modules(ctx.instances)
        report(PROGRESS_MERGED)
        self.check_cancel(ctx)

        ctx.stage = "lint"
        ctx.report = self.linter.lint(LintContext.from_merge(ctx.merge))
        if ctx.report.has_errors:
            raise LintFailed(ctx.report)
        report(PROGRESS_LINTED)
        self.check_cancel(ctx)

        ctx.stage = "images"
        span = PROGRESS_IMAGES_DONE - PROGRESS_LINTED

        def _image_progress(done: int, total: int) -> None:
            report(PROGRESS_LINTED + (span * done // total if total else span))

        ctx.images = self.packager.package(
            ctx.merge.document,
            ctx.blob_dir,
            service_modules=ctx.merge.service_modules,
            cancel=ctx.cancel,
            on_progress=_image_progress,
        )
        ctx.images.apply(ctx.merge.document)
        report(PROGRESS_IMAGES_DONE)
        self.check_cancel(ctx)

        ctx.stage = "assemble"
        ctx.assembly = self.assembler.assemble(
            AssemblyInput(
                build_id=build.id,
                build_name=build.name,
                created_at=build.created_at,
                compose_yaml=ctx.merge.to_yaml(),
                modules=ctx.merge.modules,
                resources=ctx.resources,
                images=ctx.images,
                env_vars=ctx.env_vars,
                required_env=ctx.required_env,
                warnings=ctx.warnings(),
            ),
            ctx.output_dir,
        )
        report(PROGRESS_ASSEMBLED)
        return ctx
