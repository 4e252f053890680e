"""Tests for handler definitions and manifest parsing."""

from pathlib import Path

import pytest

from effortless_deploy.config import ProjectManifest
from effortless_deploy.exceptions import ValidationError
from effortless_deploy.handlers import (
    APP_ENTRYPOINT,
    APP_TIMEOUT,
    AppHandler,
    BucketHandler,
    FunctionOptions,
    HandlerSpec,
    HttpHandler,
    KeyAttribute,
    MailerHandler,
    QueueHandler,
    StaticSiteHandler,
    TableHandler,
)

MANIFEST = """
project: acme
stage: dev
region: eu-central-1
concurrency: 3
defaults:
  code: build
  memory: 256
handlers:
  - name: createOrder
    kind: http
    method: post
    path: /orders
    deps: [orders]
    params:
      stripeKey: stripe-key
  - name: orders
    kind: table
    partition_key: id
    sort_key: {name: createdAt, type: N}
  - name: jobs
    kind: fifo-queue
    timeout: 60
  - name: uploads
    kind: bucket
  - name: mail
    kind: mailer
    domain:
      prod: acme.com
  - name: web
    kind: static-site
    dir: public
    spa: true
"""


class TestHandlerSpec:
    """Handler parsing dispatches on kind."""

    def test_http_handler(self) -> None:
        handler = HandlerSpec.from_dict(
            {"name": "createOrder", "kind": "http", "method": "post", "path": "/orders"}
        )
        assert isinstance(handler, HttpHandler)
        assert handler.route_key == "POST /orders"
        assert handler.function == FunctionOptions()

    def test_http_handler_needs_path(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            HandlerSpec.from_dict({"name": "x", "kind": "http"})
        assert exc_info.value.field == "path"

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            HandlerSpec.from_dict({"name": "x", "kind": "cron"})
        assert exc_info.value.field == "kind"

    def test_table_without_code_has_no_function(self) -> None:
        handler = HandlerSpec.from_dict({"name": "orders", "kind": "table"})
        assert isinstance(handler, TableHandler)
        assert not handler.has_function
        assert handler.partition_key == KeyAttribute("pk")

    def test_table_with_code_has_function(self) -> None:
        handler = HandlerSpec.from_dict({"name": "orders", "kind": "table", "code": "src"})
        assert handler.has_function
        assert handler.function is not None and handler.function.code == "src"

    def test_invalid_key_type(self) -> None:
        with pytest.raises(ValidationError):
            KeyAttribute("pk", "X")

    def test_memory_bounds(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            FunctionOptions(memory=64)
        assert exc_info.value.field == "memory"

    def test_queue_visibility_defaults_to_timeout(self) -> None:
        handler = HandlerSpec.from_dict({"name": "jobs", "kind": "fifo-queue", "timeout": 120})
        assert isinstance(handler, QueueHandler)
        assert handler.effective_visibility_timeout() == 120
        short = HandlerSpec.from_dict({"name": "jobs", "kind": "fifo-queue", "timeout": 5})
        assert short.effective_visibility_timeout() == 30

    def test_mailer_domain_per_stage(self) -> None:
        handler = MailerHandler(name="mail", domain={"prod": "acme.com"})
        assert handler.domain_for("prod") == "acme.com"
        assert handler.domain_for("dev") is None
        assert not handler.runs_code

    def test_app_handler(self) -> None:
        handler = HandlerSpec.from_dict(
            {"name": "docs", "kind": "app", "dir": "site", "path": "/docs", "entrypoint": "x.y"},
            defaults=FunctionOptions(memory=512),
        )
        assert isinstance(handler, AppHandler)
        assert handler.route_keys == ("GET /docs", "GET /docs/{proxy+}")
        assert handler.function is not None
        assert handler.function.entrypoint == APP_ENTRYPOINT
        assert (handler.function.timeout, handler.function.memory) == (APP_TIMEOUT, 512)
        assert AppHandler(name="root").route_keys == ("GET /", "GET /{proxy+}")

    def test_app_handler_needs_dir(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            HandlerSpec.from_dict({"name": "docs", "kind": "app"})
        assert exc_info.value.field == "dir"

    def test_static_globs_and_site_build(self) -> None:
        http = HandlerSpec.from_dict(
            {"name": "a", "kind": "http", "path": "/a", "static_globs": ["templates/*.html"]}
        )
        assert http.function is not None
        assert http.function.static_globs == ("templates/*.html",)
        assert http.function.to_dict()["static_globs"] == ["templates/*.html"]
        site = HandlerSpec.from_dict({"name": "web", "kind": "static-site", "build": "npm run build"})
        assert isinstance(site, StaticSiteHandler)
        assert site.build == "npm run build"

    def test_with_function(self) -> None:
        handler = HttpHandler(name="a", path="/a", function=FunctionOptions())
        changed = handler.with_function(memory=512)
        assert changed.function is not None and changed.function.memory == 512
        assert handler.function is not None and handler.function.memory == 256


class TestProjectManifest:
    """Manifest parsing and settings resolution."""

    def test_from_yaml(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("EFFORTLESS_STAGE", raising=False)
        monkeypatch.delenv("EFFORTLESS_REGION", raising=False)
        manifest = ProjectManifest.from_yaml(MANIFEST)

        assert manifest.project == "acme"
        assert manifest.stage == "dev"
        assert manifest.region == "eu-central-1"
        assert manifest.concurrency == 3
        assert manifest.handler_names == ["createOrder", "orders", "jobs", "uploads", "mail", "web"]

        http = manifest.handler("createOrder")
        assert isinstance(http, HttpHandler)
        assert http.deps == ("orders",)
        assert http.params[0].property_name == "stripeKey"
        assert http.function is not None and http.function.code == "build"

        table = manifest.handler("orders")
        assert isinstance(table, TableHandler)
        assert table.sort_key == KeyAttribute("createdAt", "N")

        assert isinstance(manifest.handler("uploads"), BucketHandler)
        site = manifest.handler("web")
        assert isinstance(site, StaticSiteHandler)
        assert site.spa and site.dir == "public"

    def test_explicit_stage_overrides_manifest(self) -> None:
        manifest = ProjectManifest.from_yaml(MANIFEST, stage="prod")
        assert manifest.stage == "prod"

    def test_env_stage_overrides_manifest(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EFFORTLESS_STAGE", "qa")
        assert ProjectManifest.from_yaml(MANIFEST).stage == "qa"

    def test_duplicate_handler_names(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ProjectManifest.from_dict(
                {
                    "project": "acme",
                    "handlers": [
                        {"name": "a", "kind": "table"},
                        {"name": "a", "kind": "bucket"},
                    ],
                }
            )
        assert "Duplicate" in exc_info.value.reason

    def test_missing_project(self) -> None:
        with pytest.raises(ValidationError):
            ProjectManifest.from_dict({"handlers": []})

    def test_unknown_handler_lookup(self) -> None:
        manifest = ProjectManifest.from_dict({"project": "acme"})
        with pytest.raises(ValidationError):
            manifest.handler("nope")

    def test_load_from_directory(self, tmp_path: Path) -> None:
        (tmp_path / "effortless.yaml").write_text(MANIFEST)
        manifest = ProjectManifest.load(tmp_path, stage="dev")
        assert manifest.root == tmp_path.resolve()
        assert len(manifest.handlers) == 6

    def test_load_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ProjectManifest.load(tmp_path)
        assert "not found" in exc_info.value.reason
