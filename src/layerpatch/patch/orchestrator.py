"""
Patch Pipeline Orchestrator

This module drives one reconciliation pass over the ordered component list:
classify every component, apply the patches that are due strictly in list
order, and propagate the cascade to downstream components once an upstream
layer changed.
"""

import time
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from layerpatch.exceptions import ArchivePasswordRequiredError
from layerpatch.log_utils import logger

from .archive import ArchiveReader, open_archive
from .artifacts import ScratchPaths, scratch_artifacts
from .extractor import ChangeAwareExtractor
from .interfaces import (
    ArchiveFormat,
    Component,
    ComponentState,
    ExtractionStats,
    Pathish,
)
from .version import VersionCheck, VersionResolver, VersionStatus

ProgressCallback = Callable[[float], None]
ProgressFactory = Callable[[str], AbstractContextManager]
PasswordPrompt = Callable[[Component], str]


@dataclass
class ComponentResult:
    """What happened to one component during a run."""

    name: str
    state: ComponentState
    status: VersionStatus
    previous_version: Optional[str] = None
    new_version: Optional[str] = None
    forced: bool = False
    """Applied because of the cascade or missing version tracking"""

    installed: bool = False
    """The full install archive was applied before the patch"""

    stats: Optional[ExtractionStats] = None


@dataclass
class RunReport:
    """Result of a successful reconciliation pass."""

    components: List[Component]
    """Updated component records, in the original order"""

    results: List[ComponentResult] = field(default_factory=list)
    changed: bool = False
    """Whether any component record differs from what was loaded"""

    @property
    def applied(self) -> List[ComponentResult]:
        return [r for r in self.results if r.state is ComponentState.APPLIED]

    @property
    def skipped(self) -> List[ComponentResult]:
        return [r for r in self.results if r.state is ComponentState.SKIPPED]


class PatchOrchestrator:
    """
    Applies component patches in order against one installation directory.

    The cascade flag is threaded through the fold over the component list as
    an explicit accumulator. Once any component's content changed, every later
    component is re-applied, because version equality alone cannot prove its
    files were not overwritten by the upstream change.

    Tracked components are always classified first: an incompatible remote
    version aborts the run even while the cascade is active. Nothing is rolled
    back when a run aborts.
    """

    def __init__(
        self,
        transport,
        destination_root: Pathish,
        password_prompt: Optional[PasswordPrompt] = None,
        progress_factory: Optional[ProgressFactory] = None,
        install_marker: Optional[str] = None,
    ):
        """
        Create an orchestrator for one destination root.

        Parameters:
            transport: Object providing download(locator, destination, progress=None).
            destination_root: Installation directory that archives are extracted into.
            password_prompt: Called with the component when an encrypted archive has no
                password on record; its answer is persisted into the component.
            progress_factory: Called with a description; returns a context manager that
                yields a progress callback receiving fractions in [0, 1].
            install_marker: Relative path of a file whose absence means the installation
                has not been bootstrapped from full install archives yet.
        """
        self.transport = transport
        self.destination_root = Path(destination_root)
        self.password_prompt = password_prompt
        self.progress_factory = progress_factory
        self.install_marker = install_marker
        self.extractor = ChangeAwareExtractor(self.destination_root)

        # Results of the current (or last) run, kept for reporting after a failure
        self.results: List[ComponentResult] = []
        self._scratch: Optional[ScratchPaths] = None

    def needs_bootstrap(self) -> bool:
        """Whether the install marker is configured and missing."""
        if not self.install_marker:
            return False
        return not (self.destination_root / self.install_marker).exists()

    def run(self, components: Sequence[Component]) -> RunReport:
        """
        Reconcile every component in list order.

        Returns:
            RunReport: Updated component records and per-component results.

        Raises:
            IncompatibleVersionError: A tracked component crossed a base-version boundary.
            TransportError: A version or archive could not be fetched.
            ArchiveError: An archive was corrupt or could not be decrypted.
            OSError: The destination tree could not be written.
        """
        self.results = []
        start_time = time.time()
        logger.info(
            f"Reconciling {len(components)} component(s) in {self.destination_root}"
        )

        bootstrap = self.needs_bootstrap()
        if bootstrap:
            logger.info(
                f"Install marker {self.install_marker} not found; "
                "installing full archives first"
            )

        updated: List[Component] = []
        with scratch_artifacts(self.destination_root) as scratch:
            self._scratch = scratch
            resolver = VersionResolver(self.transport, scratch.version)
            cascade = False
            try:
                for component in components:
                    component, result, cascade = self._process_component(
                        component, cascade, resolver, bootstrap
                    )
                    updated.append(component)
                    self.results.append(result)
            finally:
                self._scratch = None

        report = RunReport(
            components=updated,
            results=list(self.results),
            changed=updated != list(components),
        )
        logger.info(
            f"Completed in {time.time() - start_time:.1f}s: "
            f"{len(report.applied)} applied, {len(report.skipped)} up to date"
        )
        return report

    def check(self, components: Sequence[Component]) -> List[Tuple[Component, VersionCheck]]:
        """
        Classify every component without downloading or applying any archive.

        Untracked components report FORCED_DUE. Incompatible components are
        reported, not raised. Nothing is written to the destination root.
        """
        resolver = VersionResolver(self.transport)
        return [(component, resolver.resolve(component)) for component in components]

    def _process_component(
        self,
        component: Component,
        cascade: bool,
        resolver: VersionResolver,
        bootstrap: bool,
    ) -> Tuple[Component, ComponentResult, bool]:
        """
        Run the state machine for one component.

        Returns:
            Tuple of the updated component, its result, and the cascade flag for
            the next component.
        """
        logger.info(f"Updating {component.name}...")
        previous = component.version
        check = resolver.resolve(component)
        resolver.ensure_compatible(component, check)

        forced = cascade or not component.has_version_tracking
        stats = ExtractionStats()
        installed = False

        if bootstrap and component.install_url:
            logger.info(f"Downloading full install of {component.name}...")
            component, install_stats = self._apply_archive(
                component, component.install_url
            )
            stats = stats.merge(install_stats)
            installed = True

        if forced:
            if component.has_version_tracking:
                logger.info(f"Reapplying {component.name} {check.remote} on top of updated layers")
            else:
                logger.info(f"Downloading latest patch for {component.name}...")
            component, patch_stats = self._apply_archive(component, component.patch_url)
            stats = stats.merge(patch_stats)
            new_version = check.remote if component.has_version_tracking else None
            state = ComponentState.APPLIED
            cascade = True
        elif check.status is VersionStatus.OUTDATED:
            logger.info(f"Version {previous or '(none)'} is outdated")
            logger.info(f"Latest version is {check.remote}")
            component, patch_stats = self._apply_archive(component, component.patch_url)
            stats = stats.merge(patch_stats)
            new_version = check.remote
            state = ComponentState.APPLIED
            if new_version != previous:
                cascade = True
        else:
            logger.info(f"Version {previous} is up to date")
            new_version = previous
            state = ComponentState.APPLIED if installed else ComponentState.SKIPPED

        if installed:
            cascade = True

        component = replace(component, version=new_version)
        result = ComponentResult(
            name=component.name,
            state=state,
            status=check.status,
            previous_version=previous,
            new_version=new_version,
            forced=forced,
            installed=installed,
            stats=stats if state is ComponentState.APPLIED else None,
        )
        return component, result, cascade

    def _progress(self, description: str) -> AbstractContextManager:
        if self.progress_factory is None:
            return nullcontext(None)
        return self.progress_factory(description)

    def _apply_archive(
        self, component: Component, locator: str
    ) -> Tuple[Component, ExtractionStats]:
        """
        Download the archive at locator and extract it into the destination root.

        Returns:
            The component (with a newly supplied password, if one was prompted
            for) and the extraction statistics.
        """
        scratch = self._scratch
        if scratch is None:
            raise RuntimeError("archives can only be applied during run()")

        guessed = ArchiveFormat.from_locator(locator) or ArchiveFormat.ZIP
        archive_path = scratch.root / guessed.artifact_name

        with self._progress(component.name) as progress:
            self.transport.download(locator, archive_path, progress=progress)

        try:
            archive_format = ArchiveFormat.resolve(locator, archive_path)
            logger.info("Extracting archive...")
            reader, component = self._open_reader(
                component, archive_path, archive_format, scratch.staging
            )
            with reader:
                stats = self.extractor.apply_archive(reader)
        finally:
            archive_path.unlink(missing_ok=True)
        return component, stats

    def _open_reader(
        self,
        component: Component,
        archive_path: Path,
        archive_format: ArchiveFormat,
        staging_dir: Path,
    ) -> Tuple[ArchiveReader, Component]:
        try:
            reader = open_archive(
                archive_path, archive_format, component.password, staging_dir
            )
        except ArchivePasswordRequiredError:
            if component.password is not None or self.password_prompt is None:
                raise
            logger.info(f"The archive for {component.name} is password protected")
            password = self.password_prompt(component)
            component = replace(component, password=password)
            reader = open_archive(archive_path, archive_format, password, staging_dir)
        return reader, component
