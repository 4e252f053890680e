"""Project manifest (``effortless.yaml``) parsing and settings resolution."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .exceptions import ValidationError
from .handlers import FunctionOptions, HandlerSpec
from .naming import (
    REGION_ENV_VAR,
    STAGE_ENV_VAR,
    resolve_region,
    resolve_stage,
    validate_name,
)

MANIFEST_FILENAME = "effortless.yaml"
DEFAULT_CONCURRENCY = 5


@dataclass(frozen=True)
class ProjectManifest:
    """Parsed project manifest: identity, defaults and declared handlers."""

    project: str
    stage: str
    region: str | None = None
    concurrency: int = DEFAULT_CONCURRENCY
    defaults: FunctionOptions = field(default_factory=FunctionOptions)
    handlers: tuple[HandlerSpec, ...] = ()
    root: Path = field(default_factory=Path.cwd)

    def __post_init__(self) -> None:
        validate_name("project", self.project)
        validate_name("stage", self.stage)
        if self.concurrency < 1:
            raise ValidationError("concurrency", self.concurrency, "Must be at least 1")
        seen: set[str] = set()
        for handler in self.handlers:
            if handler.name in seen:
                raise ValidationError("handler", handler.name, "Duplicate handler name")
            seen.add(handler.name)

    @classmethod
    def from_dict(
        cls,
        d: dict[str, Any],
        stage: str | None = None,
        region: str | None = None,
        root: Path | None = None,
    ) -> ProjectManifest:
        """
        Build a manifest from parsed YAML.

        Stage and region resolve as: explicit argument, then environment,
        then the manifest value, then the built-in default.
        """
        project = d.get("project")
        if not project:
            raise ValidationError("project", project, "'project' is required in the manifest")

        defaults = FunctionOptions.from_dict(d.get("defaults", {}) or {})
        handlers = tuple(
            HandlerSpec.from_dict(entry, defaults) for entry in d.get("handlers", []) or []
        )
        stage = stage or os.environ.get(STAGE_ENV_VAR) or d.get("stage") or resolve_stage(None)
        region = region or os.environ.get(REGION_ENV_VAR) or d.get("region") or resolve_region(None)
        return cls(
            project=project,
            stage=stage,
            region=region,
            concurrency=int(d.get("concurrency", DEFAULT_CONCURRENCY)),
            defaults=defaults,
            handlers=handlers,
            root=root or Path.cwd(),
        )

    @classmethod
    def from_yaml(cls, yaml_str: str, **kwargs: Any) -> ProjectManifest:
        import yaml

        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValidationError("manifest", type(data).__name__, "Top level must be a mapping")
        return cls.from_dict(data, **kwargs)

    @classmethod
    def load(
        cls,
        path: str | Path | None = None,
        stage: str | None = None,
        region: str | None = None,
    ) -> ProjectManifest:
        """Load ``effortless.yaml`` (or the given file) from disk."""
        manifest_path = Path(path) if path else Path.cwd() / MANIFEST_FILENAME
        if manifest_path.is_dir():
            manifest_path = manifest_path / MANIFEST_FILENAME
        if not manifest_path.exists():
            raise ValidationError("manifest", str(manifest_path), "File not found")
        return cls.from_yaml(
            manifest_path.read_text(),
            stage=stage,
            region=region,
            root=manifest_path.parent.resolve(),
        )

    @property
    def handler_names(self) -> list[str]:
        return [h.name for h in self.handlers]

    def handler(self, name: str) -> HandlerSpec:
        for handler in self.handlers:
            if handler.name == name:
                return handler
        raise ValidationError("handler", name, "Not declared in the manifest")

