"""Shared dependency-package layer.

The layer holds the project's production dependencies under ``python/``,
so every function imports them without shipping them in its own code
artifact. A published version is identified by a short content hash over
the resolved ``name@version`` closure; a deploy whose closure hashes the
same reuses that version instead of publishing a new one.
"""

from __future__ import annotations

import hashlib
import logging
import tempfile
import tomllib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name

from .artifacts import build_zip, iter_directory
from .clients import AwsClients
from .handlers import DEFAULT_RUNTIME
from .models import LayerManifest
from .naming import layer_name
from .reconcilers.layer import (
    LayerReconciler,
    LayerSpec,
    LayerVersion,
    delete_layer_versions,
    list_layer_versions,
)
from .tags import SHARED_HANDLER, TagContext

logger = logging.getLogger(__name__)

LAYER_PREFIX = "python/"
HASH_LENGTH = 8

STRATEGY_INSTALLED = "installed"
STRATEGY_LAMBDA_BUILDERS = "lambda-builders"
STRATEGIES = (STRATEGY_INSTALLED, STRATEGY_LAMBDA_BUILDERS)


@dataclass(frozen=True)
class ResolvedPackage:
    """One installed distribution in the production closure."""

    name: str
    version: str
    root: Path
    files: tuple[str, ...]
    """Paths relative to ``root`` (the site-packages directory)."""

    @property
    def pin(self) -> str:
        return f"{self.name}@{self.version}"


def _parse_requirements(lines: Iterable[str]) -> list[Requirement]:
    requirements: list[Requirement] = []
    for raw in lines:
        line = raw.split("#", 1)[0].strip()
        # Options (-r, -e, --index-url) and URLs are not package names
        if not line or line.startswith("-"):
            continue
        try:
            requirements.append(Requirement(line))
        except InvalidRequirement:
            logger.warning("Ignoring unparseable requirement %r", line)
    return requirements


def _applies(requirement: Requirement) -> bool:
    """False for extras-only requirements and markers that do not match."""
    if requirement.marker is None:
        return True
    return requirement.marker.evaluate({"extra": ""})


def read_production_dependencies(project_dir: Path) -> list[str]:
    """
    Declared production dependency names, canonicalized.

    Reads ``[project].dependencies`` from ``pyproject.toml`` and falls back
    to ``requirements.txt``. Optional dependencies are never production.
    """
    pyproject = project_dir / "pyproject.toml"
    requirements: list[Requirement] = []
    if pyproject.exists():
        with pyproject.open("rb") as f:
            data = tomllib.load(f)
        requirements = _parse_requirements(data.get("project", {}).get("dependencies", []))
    else:
        requirements_txt = project_dir / "requirements.txt"
        if requirements_txt.exists():
            requirements = _parse_requirements(requirements_txt.read_text().splitlines())

    names: list[str] = []
    for requirement in requirements:
        if not _applies(requirement):
            continue
        name = canonicalize_name(requirement.name)
        if name not in names:
            names.append(name)
    return names


def find_site_packages(project_dir: Path) -> list[Path] | None:
    """
    Locate the project's virtualenv site-packages.

    Returns None to fall back to the running interpreter's ``sys.path``.
    """
    for venv in (".venv", "venv"):
        candidates = sorted((project_dir / venv).glob("lib/python*/site-packages"))
        if candidates:
            return candidates
    return None


def installed_distributions(
    paths: Sequence[Path] | None = None,
) -> dict[str, metadata.Distribution]:
    """Installed distributions keyed by canonical name. First path wins."""
    kwargs = {"path": [str(p) for p in paths]} if paths is not None else {}
    index: dict[str, metadata.Distribution] = {}
    for dist in metadata.distributions(**kwargs):
        name = dist.metadata["Name"]
        if name:
            index.setdefault(canonicalize_name(name), dist)
    return index


def collect_closure(
    roots: Iterable[str], index: dict[str, metadata.Distribution]
) -> dict[str, metadata.Distribution]:
    """
    Transitive closure of ``roots`` over installed requirement metadata.

    Explicit stack traversal with a visited set; a cycle just stops the
    walk. Names that are not installed are logged and left out.
    """
    visited: set[str] = set()
    closure: dict[str, metadata.Distribution] = {}
    stack = [canonicalize_name(name) for name in roots]
    while stack:
        name = stack.pop()
        if name in visited:
            continue
        visited.add(name)
        dist = index.get(name)
        if dist is None:
            logger.warning("Dependency %s is not installed, skipping", name)
            continue
        closure[name] = dist
        for line in dist.requires or []:
            try:
                requirement = Requirement(line)
            except InvalidRequirement:
                logger.debug("Ignoring unparseable requirement %r of %s", line, name)
                continue
            if _applies(requirement):
                stack.append(canonicalize_name(requirement.name))
    return closure


def resolve_packages(closure: dict[str, metadata.Distribution]) -> list[ResolvedPackage]:
    """
    Resolve the installed files of each distribution.

    Distributions whose file list is missing, or whose files are not on
    disk, are skipped with a warning.
    """
    packages: list[ResolvedPackage] = []
    skipped: list[str] = []
    for name in sorted(closure):
        dist = closure[name]
        entries = dist.files
        if not entries:
            skipped.append(name)
            continue
        root = Path(str(dist.locate_file("")))
        # Entries starting with ".." (console scripts, data files) live outside site-packages
        files = tuple(
            entry.as_posix()
            for entry in entries
            if ".." not in entry.parts
            and "__pycache__" not in entry.parts
            and entry.suffix != ".pyc"
            and (root / entry).is_file()
        )
        if not files:
            skipped.append(name)
            continue
        packages.append(
            ResolvedPackage(name=name, version=dist.version, root=root, files=files)
        )
    if skipped:
        logger.warning(
            "Skipped %d packages with unresolvable files: %s", len(skipped), ", ".join(skipped)
        )
    return packages


def compute_content_hash(pins: Iterable[str]) -> str:
    """sha256 over the sorted ``name@version`` lines, truncated to 8 hex chars."""
    content = "\n".join(sorted(set(pins)))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def build_layer_zip(packages: Sequence[ResolvedPackage]) -> bytes:
    """Zip the installed files under ``python/`` with fixed timestamps."""
    entries: dict[str, bytes] = {}
    for package in packages:
        for relative in package.files:
            entries.setdefault(LAYER_PREFIX + relative, (package.root / relative).read_bytes())
    return build_zip(entries.items())


def build_with_lambda_builders(packages: Sequence[ResolvedPackage], runtime: str) -> bytes:
    """
    Pip-install the pinned closure for the Lambda platform and zip it.

    Used when the locally installed wheels are not Lambda-compatible
    (compiled extensions built for another OS or architecture).
    """
    from aws_lambda_builders.architecture import X86_64
    from aws_lambda_builders.builder import LambdaBuilder

    with tempfile.TemporaryDirectory() as tmpdir_str:
        tmpdir = Path(tmpdir_str)
        source_dir = tmpdir / "source"
        scratch_dir = tmpdir / "scratch"
        artifacts_dir = tmpdir / "artifacts"
        for directory in (source_dir, scratch_dir, artifacts_dir):
            directory.mkdir()

        requirements = source_dir / "requirements.txt"
        requirements.write_text("".join(f"{p.name}=={p.version}\n" for p in packages))
        (source_dir / "__init__.py").touch()

        builder = LambdaBuilder(
            language="python",
            dependency_manager="pip",
            application_framework=None,
        )
        builder.build(
            source_dir=str(source_dir),
            artifacts_dir=str(artifacts_dir),
            scratch_dir=str(scratch_dir),
            manifest_path=str(requirements),
            runtime=runtime,
            architecture=X86_64,
        )

        placeholders = {"__init__.py", "requirements.txt"}
        return build_zip(
            (name, path.read_bytes())
            for name, path in iter_directory(artifacts_dir, LAYER_PREFIX)
            if name.removeprefix(LAYER_PREFIX) not in placeholders
        )


class LayerBuilder:
    """
    Ensure the project's dependency-package layer is published.

    Example:
        async with AwsClients(region="eu-central-1") as clients:
            builder = LayerBuilder(clients, project="acme", stage="dev")
            manifest = await builder.ensure_layer(Path("."))
    """

    def __init__(
        self,
        clients: AwsClients,
        project: str,
        stage: str,
        runtime: str = DEFAULT_RUNTIME,
        site_packages: Sequence[Path] | None = None,
        strategy: str = STRATEGY_INSTALLED,
    ) -> None:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown layer build strategy: {strategy}")
        self.clients = clients
        self.project = project
        self.stage = stage
        self.runtime = runtime
        self.site_packages = site_packages
        self.strategy = strategy

    @property
    def name(self) -> str:
        return layer_name(self.project, self.stage)

    def resolve(self, project_dir: Path) -> list[ResolvedPackage]:
        """Resolved production closure of ``project_dir``, sorted by name."""
        roots = read_production_dependencies(project_dir)
        if not roots:
            return []
        paths = self.site_packages
        if paths is None:
            paths = find_site_packages(project_dir)
        return resolve_packages(collect_closure(roots, installed_distributions(paths)))

    def _archive(self, packages: Sequence[ResolvedPackage]) -> bytes:
        if self.strategy == STRATEGY_LAMBDA_BUILDERS:
            return build_with_lambda_builders(packages, self.runtime)
        return build_layer_zip(packages)

    async def ensure_layer(self, project_dir: Path) -> LayerManifest | None:
        """
        Reuse or publish the layer for the current production closure.

        Returns:
            LayerManifest, or None when there is nothing to package
        """
        packages = self.resolve(project_dir)
        if not packages:
            logger.info("No production dependencies, skipping layer")
            return None

        content_hash = compute_content_hash(p.pin for p in packages)
        spec = LayerSpec(
            name=self.name,
            content_hash=content_hash,
            runtime=self.runtime,
            archive=lambda: self._archive(packages),
        )
        reconciler = LayerReconciler(
            self.clients, TagContext(self.project, self.stage, SHARED_HANDLER)
        )
        result = await reconciler.ensure(spec)
        if not result.changed:
            logger.info(
                "Layer %s with hash %s already published (version %s)",
                self.name,
                content_hash,
                result.outputs["version"],
            )
        return LayerManifest(
            content_hash=content_hash,
            packages=tuple(p.pin for p in packages),
            version=int(result.outputs["version"]),
            arn=result.identifier,
            reused=not result.changed,
        )

    async def list_versions(self) -> list[LayerVersion]:
        return await list_layer_versions(await self.clients.get("lambda"), self.name)

    async def prune(self, keep_latest: bool = True) -> list[int]:
        """Delete published versions, optionally keeping the newest one."""
        client = await self.clients.get("lambda")
        keep: set[int] = set()
        if keep_latest:
            versions = await list_layer_versions(client, self.name)
            if versions:
                keep.add(versions[0].version)
        return await delete_layer_versions(client, self.name, keep)
