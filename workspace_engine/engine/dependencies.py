"""
Dependency resolver.

Reads the ``dependencies`` section of an artifact's ``workflow.yml`` and makes
sure every declared package is present on the host, installing the missing
ones. Each package manager kind is described by a ``PackagePlan`` that knows
its probe command, how to read the probe output, the exit code that means
"not installed" and its install command. Commands are argument vectors; no
shell is involved.

Resolution never raises. Problems are collected in a ``DependencyReport``
and logged: a failed install is a hard failure, anything else that went
wrong (unreadable manifest, unknown manager, failing probe) is soft.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Dict, List, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..config import PackageRepoSection
from ..errors import FAILED_TO_CHECK_A_DEPENDENCY_PACKAGE
from .process_runner import ProcessLaunchError, ProcessRunner

logger = logging.getLogger(__name__)

MANIFEST_FILE = "workflow.yml"


class PackageSpec(BaseModel):
    name: str
    type: str
    version: str = ""
    source: str = ""


class DependencySpec(PackageSpec):
    packages: List[PackageSpec] = Field(default_factory=list)


class DependencyManifest(BaseModel):
    dependencies: List[DependencySpec] = Field(default_factory=list)

    def ordered_packages(self) -> List[PackageSpec]:
        """Each dependency's own packages first, then the dependency itself."""
        ordered: List[PackageSpec] = []
        for dependency in self.dependencies:
            ordered.extend(dependency.packages)
            ordered.append(PackageSpec(**dependency.model_dump(exclude={"packages"})))
        return ordered


# -- package plans ---------------------------------------------------------


class PackagePlan(ABC):
    """Probe/install commands for one package of one manager kind."""

    kinds: ClassVar[Tuple[str, ...]] = ()
    # Probe exit codes meaning "not installed" rather than "probe broke".
    absent_exit_codes: ClassVar[Tuple[int, ...]] = (1,)

    def __init__(self, spec: PackageSpec, package_repo: Optional[PackageRepoSection] = None):
        self.spec = spec
        self.package_repo = package_repo or PackageRepoSection()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def version(self) -> str:
        return self.spec.version

    @abstractmethod
    def probe_argv(self) -> List[str]:
        pass

    @abstractmethod
    def is_installed(self, probe_output: str) -> bool:
        pass

    @abstractmethod
    def install_argv(self) -> List[str]:
        pass


class NpmPlan(PackagePlan):
    kinds = ("npm",)

    @property
    def requirement(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name

    def probe_argv(self) -> List[str]:
        return ["npm", "list", "-g", "--depth=0", self.name]

    def is_installed(self, probe_output: str) -> bool:
        wanted = f"{self.name}@{self.version}" if self.version else f"{self.name}@"
        return wanted in probe_output

    def install_argv(self) -> List[str]:
        return ["npm", "install", "-g", self.requirement]


class AptPlan(PackagePlan):
    kinds = ("apt",)

    INSTALLED_STATUS = "install ok installed"

    def probe_argv(self) -> List[str]:
        return [
            "dpkg-query",
            "-W",
            "--showformat=${Package}=${Version}=>${Status}\n",
            self.name,
        ]

    def is_installed(self, probe_output: str) -> bool:
        for line in probe_output.splitlines():
            package, _, rest = line.strip().partition("=")
            version, _, status = rest.partition("=>")
            if package != self.name or status != self.INSTALLED_STATUS:
                continue
            if not self.version or version == self.version:
                return True
        return False

    def install_argv(self) -> List[str]:
        requirement = f"{self.name}={self.version}" if self.version else self.name
        return ["apt-get", "install", "-qy", requirement]


class PipPlan(PackagePlan):
    kinds = ("pip", "pip3")

    INTERNAL_SOURCE_PREFIX = "ok/"

    @property
    def distribution(self) -> str:
        # "package[extra]" is installed as "package"
        return self.name.split("[", 1)[0]

    @staticmethod
    def _normalize(name: str) -> str:
        return re.sub(r"[-_.]+", "-", name).lower()

    def probe_argv(self) -> List[str]:
        return ["pip3", "freeze"]

    def is_installed(self, probe_output: str) -> bool:
        wanted = self._normalize(self.distribution)
        for line in probe_output.splitlines():
            name, sep, version = line.strip().partition("==")
            if not sep or self._normalize(name) != wanted:
                continue
            if not self.version or version == self.version:
                return True
        return False

    def index_url(self) -> Optional[str]:
        """Extra index for ``source``: the internal package repo or a URL."""
        source = self.spec.source
        if not source:
            return None
        if source.startswith(self.INTERNAL_SOURCE_PREFIX):
            project_id = source[len(self.INTERNAL_SOURCE_PREFIX):].split("/", 1)[0]
            repo = self.package_repo
            return (
                f"{repo.protocol}://{repo.token_name}:{repo.token_value}@"
                f"{repo.url_base}/projects/{project_id}/packages/pypi/simple"
            )
        return source

    def install_argv(self) -> List[str]:
        requirement = f"{self.name}=={self.version}" if self.version else self.name
        argv = ["pip3", "install", requirement, "-q", "-q", "-q", "--exists-action", "i"]
        index_url = self.index_url()
        if index_url:
            argv += ["--extra-index-url", index_url]
        return argv


PLAN_TYPES: Dict[str, Type[PackagePlan]] = {
    kind: plan for plan in (NpmPlan, AptPlan, PipPlan) for kind in plan.kinds
}


def build_plan(
    spec: PackageSpec, package_repo: Optional[PackageRepoSection] = None
) -> Optional[PackagePlan]:
    plan_type = PLAN_TYPES.get(spec.type)
    if plan_type is None:
        return None
    return plan_type(spec, package_repo)


# -- report ----------------------------------------------------------------


@dataclass
class PackageOutcome:
    name: str
    kind: str
    action: str  # present, installed, failed, skipped
    hard: bool = False
    message: str = ""
    code: Optional[str] = None


@dataclass
class DependencyReport:
    """What the resolver did for one artifact directory."""

    path: Path
    manifest_found: bool = False
    outcomes: List[PackageOutcome] = field(default_factory=list)
    soft_failures: List[PackageOutcome] = field(default_factory=list)

    @property
    def hard_failures(self) -> List[PackageOutcome]:
        return [o for o in self.outcomes if o.hard]

    @property
    def ok(self) -> bool:
        return not self.hard_failures

    def soft(self, name: str, kind: str, message: str) -> None:
        logger.warning(f"{FAILED_TO_CHECK_A_DEPENDENCY_PACKAGE}: {message}")
        self.soft_failures.append(
            PackageOutcome(
                name=name,
                kind=kind,
                action="skipped",
                message=message,
                code=FAILED_TO_CHECK_A_DEPENDENCY_PACKAGE,
            )
        )


class DependencyResolver:
    """Checks and installs the packages an artifact declares."""

    def __init__(
        self,
        runner: ProcessRunner,
        package_repo: Optional[PackageRepoSection] = None,
    ):
        self.runner = runner
        self.package_repo = package_repo

    def load_manifest(self, path: Path, report: DependencyReport) -> Optional[DependencyManifest]:
        manifest_path = Path(path) / MANIFEST_FILE
        if not manifest_path.exists():
            logger.info(f"No {MANIFEST_FILE} in {path}, nothing to resolve")
            return None
        report.manifest_found = True
        try:
            with manifest_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            return DependencyManifest.model_validate(raw)
        except (OSError, yaml.YAMLError, PydanticValidationError) as e:
            report.soft(MANIFEST_FILE, "manifest", f"Failed to read {manifest_path}: {e}")
            return None

    def resolve(self, path: Path) -> DependencyReport:
        """Ensure every package declared under ``path`` is installed."""
        report = DependencyReport(path=Path(path))
        manifest = self.load_manifest(path, report)
        if manifest is None:
            return report

        for spec in manifest.ordered_packages():
            plan = build_plan(spec, self.package_repo)
            if plan is None:
                report.soft(spec.name, spec.type, f"Unsupported package type '{spec.type}' for {spec.name}")
                continue
            report.outcomes.append(self.check_install(plan, report))

        for failure in report.hard_failures:
            logger.error(f"{FAILED_TO_CHECK_A_DEPENDENCY_PACKAGE}: {failure.message}")
        return report

    def check_install(self, plan: PackagePlan, report: DependencyReport) -> PackageOutcome:
        kind = plan.spec.type
        if self._probe(plan, report):
            logger.info(f"The package {plan.name} is already installed.")
            return PackageOutcome(name=plan.name, kind=kind, action="present")

        logger.info(f"The package {plan.name} is not installed. Installing it...")
        try:
            exit_code, output = self.runner.capture(plan.install_argv())
        except ProcessLaunchError as e:
            return PackageOutcome(
                name=plan.name,
                kind=kind,
                action="failed",
                hard=True,
                message=f"Installation of a package {plan.name} failed: {e.message}",
                code=FAILED_TO_CHECK_A_DEPENDENCY_PACKAGE,
            )
        if output:
            logger.info(output.rstrip())
        if exit_code != 0:
            return PackageOutcome(
                name=plan.name,
                kind=kind,
                action="failed",
                hard=True,
                message=f"Installation of a package {plan.name} failed with the status code: {exit_code}",
                code=FAILED_TO_CHECK_A_DEPENDENCY_PACKAGE,
            )
        logger.info(f"Package {plan.name} has been installed.")
        return PackageOutcome(name=plan.name, kind=kind, action="installed")

    def _probe(self, plan: PackagePlan, report: DependencyReport) -> bool:
        """True when the package is present. A broken probe counts as absent."""
        try:
            exit_code, output = self.runner.capture(plan.probe_argv())
        except ProcessLaunchError as e:
            report.soft(plan.name, plan.spec.type, f"Package name: {plan.name}: {e.message}")
            return False
        if output:
            logger.debug(output.rstrip())
        if exit_code == 0:
            return plan.is_installed(output)
        if exit_code not in plan.absent_exit_codes:
            report.soft(
                plan.name,
                plan.spec.type,
                f"Checking existence of a package {plan.name} failed with the status code: {exit_code}",
            )
        return False
