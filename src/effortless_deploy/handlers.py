"""Handler definitions: the structured input every deploy starts from.

Handler specs are produced by the project manifest (or by any external
discovery step) and are consumed read-only by the resolver, the pipeline
and the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar

from .exceptions import ValidationError
from .naming import validate_handler_name

DEFAULT_MEMORY = 256
DEFAULT_TIMEOUT = 30
DEFAULT_RUNTIME = "python3.12"
DEFAULT_ENTRYPOINT = "handler.handler"
APP_TIMEOUT = 5
APP_ENTRYPOINT = "effortless_app.handler"

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS", "ANY"})


class HandlerKind(str, Enum):
    HTTP = "http"
    TABLE = "table"
    FIFO_QUEUE = "fifo-queue"
    BUCKET = "bucket"
    MAILER = "mailer"
    STATIC_SITE = "static-site"
    APP = "app"


@dataclass(frozen=True)
class FunctionOptions:
    """Function configuration shared by every kind that runs code."""

    code: str | None = None
    memory: int = DEFAULT_MEMORY
    timeout: int = DEFAULT_TIMEOUT
    runtime: str = DEFAULT_RUNTIME
    entrypoint: str = DEFAULT_ENTRYPOINT
    permissions: tuple[str, ...] = ()
    static_globs: tuple[str, ...] = ()
    """Project-relative glob patterns of extra files shipped in the code archive."""

    def __post_init__(self) -> None:
        if not 128 <= self.memory <= 10240:
            raise ValidationError("memory", self.memory, "Must be between 128 and 10240 MB")
        if not 1 <= self.timeout <= 900:
            raise ValidationError("timeout", self.timeout, "Must be between 1 and 900 seconds")

    @classmethod
    def from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None = None) -> FunctionOptions:
        base = defaults or cls()
        return cls(
            code=d.get("code", base.code),
            memory=int(d.get("memory", base.memory)),
            timeout=int(d.get("timeout", base.timeout)),
            runtime=d.get("runtime", base.runtime),
            entrypoint=d.get("entrypoint", base.entrypoint),
            permissions=tuple(d.get("permissions", base.permissions)),
            static_globs=tuple(d.get("static_globs", base.static_globs) or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "memory": self.memory,
            "timeout": self.timeout,
            "runtime": self.runtime,
            "entrypoint": self.entrypoint,
        }
        if self.code is not None:
            result["code"] = self.code
        if self.permissions:
            result["permissions"] = list(self.permissions)
        if self.static_globs:
            result["static_globs"] = list(self.static_globs)
        return result


@dataclass(frozen=True)
class ParamEntry:
    """A parameter the handler reads at runtime, keyed by property name."""

    property_name: str
    key: str


@dataclass(frozen=True)
class KeyAttribute:
    name: str
    type: str = "S"

    def __post_init__(self) -> None:
        if self.type not in ("S", "N", "B"):
            raise ValidationError("key_type", self.type, "Must be one of S, N, B")

    @classmethod
    def parse(cls, value: Any) -> KeyAttribute:
        if isinstance(value, str):
            return cls(name=value)
        return cls(name=value["name"], type=value.get("type", "S"))


@dataclass(frozen=True)
class HandlerSpec:
    """Base handler definition. Use a kind-specific subclass."""

    kind: ClassVar[HandlerKind]
    runs_code: ClassVar[bool] = True

    name: str
    deps: tuple[str, ...] = ()
    params: tuple[ParamEntry, ...] = ()
    function: FunctionOptions | None = None

    def __post_init__(self) -> None:
        validate_handler_name(self.name)

    @property
    def has_function(self) -> bool:
        return self.function is not None

    @classmethod
    def from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None = None) -> HandlerSpec:
        """Parse one handler entry, dispatching on its ``kind`` field."""
        raw_kind = d.get("kind")
        try:
            kind = HandlerKind(raw_kind)
        except ValueError as e:
            raise ValidationError("kind", raw_kind, f"Unknown handler kind for {d.get('name')!r}") from e
        handler_cls = HANDLER_CLASSES[kind]
        return handler_cls._from_dict(d, defaults)

    @classmethod
    def _common(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> dict[str, Any]:
        name = d.get("name")
        if not name:
            raise ValidationError("name", name, "'name' is required for every handler")
        params = d.get("params", {}) or {}
        function = None
        if cls.runs_code and (cls.requires_function() or _declares_function(d)):
            function = FunctionOptions.from_dict(d, defaults)
        return {
            "name": name,
            "deps": tuple(d.get("deps", ()) or ()),
            "params": tuple(ParamEntry(prop, key) for prop, key in params.items()),
            "function": function,
        }

    @classmethod
    def requires_function(cls) -> bool:
        return True

    @classmethod
    def _from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> HandlerSpec:
        return cls(**cls._common(d, defaults))

    def with_function(self, **changes: Any) -> HandlerSpec:
        """Return a copy with function options replaced."""
        return replace(self, function=replace(self.function or FunctionOptions(), **changes))


def _declares_function(d: dict[str, Any]) -> bool:
    return "code" in d


@dataclass(frozen=True)
class HttpHandler(HandlerSpec):
    kind: ClassVar[HandlerKind] = HandlerKind.HTTP

    method: str = "GET"
    path: str = "/"

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.method.upper() not in HTTP_METHODS:
            raise ValidationError("method", self.method, "Unsupported HTTP method")
        if not self.path.startswith("/"):
            raise ValidationError("path", self.path, "Must start with '/'")

    @property
    def route_key(self) -> str:
        return f"{self.method.upper()} {self.path}"

    @classmethod
    def _from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> HttpHandler:
        if "path" not in d:
            raise ValidationError("path", None, f"HTTP handler {d.get('name')!r} needs a path")
        return cls(
            **cls._common(d, defaults),
            method=str(d.get("method", "GET")).upper(),
            path=d["path"],
        )


@dataclass(frozen=True)
class TableHandler(HandlerSpec):
    kind: ClassVar[HandlerKind] = HandlerKind.TABLE

    partition_key: KeyAttribute = field(default_factory=lambda: KeyAttribute("pk"))
    sort_key: KeyAttribute | None = None
    billing_mode: str = "PAY_PER_REQUEST"
    stream_view: str = "NEW_AND_OLD_IMAGES"
    batch_size: int = 100
    batch_window: int = 2
    starting_position: str = "LATEST"

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.billing_mode not in ("PAY_PER_REQUEST", "PROVISIONED"):
            raise ValidationError("billing_mode", self.billing_mode, "Unsupported billing mode")
        if self.stream_view not in ("NEW_IMAGE", "OLD_IMAGE", "NEW_AND_OLD_IMAGES", "KEYS_ONLY"):
            raise ValidationError("stream_view", self.stream_view, "Unsupported stream view type")

    @classmethod
    def requires_function(cls) -> bool:
        return False

    @classmethod
    def _from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> TableHandler:
        sort_key = d.get("sort_key")
        return cls(
            **cls._common(d, defaults),
            partition_key=KeyAttribute.parse(d.get("partition_key", "pk")),
            sort_key=KeyAttribute.parse(sort_key) if sort_key else None,
            billing_mode=d.get("billing_mode", "PAY_PER_REQUEST"),
            stream_view=d.get("stream_view", "NEW_AND_OLD_IMAGES"),
            batch_size=int(d.get("batch_size", 100)),
            batch_window=int(d.get("batch_window", 2)),
            starting_position=d.get("starting_position", "LATEST"),
        )


@dataclass(frozen=True)
class QueueHandler(HandlerSpec):
    kind: ClassVar[HandlerKind] = HandlerKind.FIFO_QUEUE

    batch_size: int = 10
    batch_window: int = 0
    visibility_timeout: int | None = None
    retention_period: int = 345600
    content_based_deduplication: bool = True

    @classmethod
    def _from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> QueueHandler:
        visibility = d.get("visibility_timeout")
        return cls(
            **cls._common(d, defaults),
            batch_size=int(d.get("batch_size", 10)),
            batch_window=int(d.get("batch_window", 0)),
            visibility_timeout=int(visibility) if visibility is not None else None,
            retention_period=int(d.get("retention_period", 345600)),
            content_based_deduplication=bool(d.get("content_based_deduplication", True)),
        )

    def effective_visibility_timeout(self) -> int:
        """Visibility timeout must cover the consumer's runtime."""
        if self.visibility_timeout is not None:
            return self.visibility_timeout
        timeout = self.function.timeout if self.function else DEFAULT_TIMEOUT
        return max(timeout, 30)


@dataclass(frozen=True)
class BucketHandler(HandlerSpec):
    kind: ClassVar[HandlerKind] = HandlerKind.BUCKET

    events: tuple[str, ...] = ("s3:ObjectCreated:*", "s3:ObjectRemoved:*")
    prefix: str | None = None
    suffix: str | None = None

    @classmethod
    def requires_function(cls) -> bool:
        return False

    @classmethod
    def _from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> BucketHandler:
        events = d.get("events")
        return cls(
            **cls._common(d, defaults),
            events=tuple(events) if events else ("s3:ObjectCreated:*", "s3:ObjectRemoved:*"),
            prefix=d.get("prefix"),
            suffix=d.get("suffix"),
        )


@dataclass(frozen=True)
class MailerHandler(HandlerSpec):
    kind: ClassVar[HandlerKind] = HandlerKind.MAILER
    runs_code: ClassVar[bool] = False

    domain: str | dict[str, str] = ""

    def domain_for(self, stage: str) -> str | None:
        if isinstance(self.domain, dict):
            return self.domain.get(stage)
        return self.domain or None

    @classmethod
    def _from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> MailerHandler:
        if not d.get("domain"):
            raise ValidationError("domain", None, f"Mailer {d.get('name')!r} needs a domain")
        return cls(**cls._common(d, defaults), domain=d["domain"])


@dataclass(frozen=True)
class StaticSiteHandler(HandlerSpec):
    kind: ClassVar[HandlerKind] = HandlerKind.STATIC_SITE
    runs_code: ClassVar[bool] = False

    dir: str = "dist"
    index: str = "index.html"
    spa: bool = False
    domain: str | dict[str, str] | None = None
    error_page: str | None = None
    routes: tuple[str, ...] = ()
    certificate_arn: str | None = None
    build: str | None = None
    """Shell command run in the project root before the files are synced."""

    def domain_for(self, stage: str) -> str | None:
        if isinstance(self.domain, dict):
            return self.domain.get(stage)
        return self.domain

    @classmethod
    def _from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> StaticSiteHandler:
        return cls(
            **cls._common(d, defaults),
            dir=d.get("dir", "dist"),
            index=d.get("index", "index.html"),
            spa=bool(d.get("spa", False)),
            domain=d.get("domain"),
            error_page=d.get("error_page"),
            routes=tuple(d.get("routes", ()) or ()),
            certificate_arn=d.get("certificate_arn"),
            build=d.get("build"),
        )


@dataclass(frozen=True)
class AppHandler(HandlerSpec):
    """
    A static site served by a function behind the shared HTTP API.

    The site files are bundled into the function's code archive together
    with a small file server; use :class:`StaticSiteHandler` for a
    CDN-backed site instead.
    """

    kind: ClassVar[HandlerKind] = HandlerKind.APP

    function: FunctionOptions | None = field(
        default_factory=lambda: FunctionOptions(timeout=APP_TIMEOUT, entrypoint=APP_ENTRYPOINT)
    )
    dir: str = "dist"
    path: str = "/"
    index: str = "index.html"
    spa: bool = False
    build: str | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.path.startswith("/"):
            raise ValidationError("path", self.path, "Must start with '/'")

    @property
    def base_path(self) -> str:
        return self.path.rstrip("/")

    @property
    def route_keys(self) -> tuple[str, ...]:
        base = self.base_path
        if not base:
            return ("GET /", "GET /{proxy+}")
        return (f"GET {base}", f"GET {base}/{{proxy+}}")

    @classmethod
    def _from_dict(cls, d: dict[str, Any], defaults: FunctionOptions | None) -> AppHandler:
        if not d.get("dir"):
            raise ValidationError("dir", None, f"App {d.get('name')!r} needs a dir")
        app_defaults = replace(
            defaults or FunctionOptions(), timeout=APP_TIMEOUT, entrypoint=APP_ENTRYPOINT
        )
        common = cls._common(d, app_defaults)
        # The bundled file server is the only entrypoint an app can have
        common["function"] = replace(common["function"], entrypoint=APP_ENTRYPOINT)
        return cls(
            **common,
            dir=d["dir"],
            path=d.get("path", "/"),
            index=d.get("index", "index.html"),
            spa=bool(d.get("spa", False)),
            build=d.get("build"),
        )


HANDLER_CLASSES: dict[HandlerKind, type[HandlerSpec]] = {
    HandlerKind.HTTP: HttpHandler,
    HandlerKind.TABLE: TableHandler,
    HandlerKind.FIFO_QUEUE: QueueHandler,
    HandlerKind.BUCKET: BucketHandler,
    HandlerKind.MAILER: MailerHandler,
    HandlerKind.STATIC_SITE: StaticSiteHandler,
    HandlerKind.APP: AppHandler,
}

EVENT_KINDS = frozenset({HandlerKind.TABLE, HandlerKind.FIFO_QUEUE, HandlerKind.BUCKET})
