"""Deterministic zip archives and code artifact loading.

Archives are byte-identical for identical inputs: entries are sorted and
every entry carries the same fixed timestamp and permissions. That keeps
the function's code hash stable across rebuilds of unchanged code.
"""

from __future__ import annotations

import io
import logging
import subprocess
import zipfile
from collections.abc import Iterable, Iterator
from pathlib import Path

from .exceptions import BuildCommandError, ValidationError

logger = logging.getLogger(__name__)

FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
FILE_MODE = 0o644
EXCLUDED_NAMES = frozenset({"__pycache__", ".git", ".DS_Store"})
EXCLUDED_SUFFIXES = (".pyc", ".pyo")
APP_SERVER_PATH = Path(__file__).parent / "runtime" / "effortless_app.py"
APP_SITE_PREFIX = "site/"


def _entry(name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=FIXED_DATE_TIME)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = FILE_MODE << 16
    return info


def build_zip(entries: Iterable[tuple[str, bytes]]) -> bytes:
    """Zip ``(archive_name, content)`` pairs in sorted name order."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in sorted(entries, key=lambda item: item[0]):
            archive.writestr(_entry(name), content)
    return buffer.getvalue()


def iter_directory(root: Path, prefix: str = "") -> Iterator[tuple[str, Path]]:
    """Yield ``(archive_name, path)`` for every regular file under ``root``."""
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if any(part in EXCLUDED_NAMES for part in relative.parts):
            continue
        if not path.is_file() or path.suffix in EXCLUDED_SUFFIXES:
            continue
        yield prefix + relative.as_posix(), path


def zip_directory(root: Path, prefix: str = "") -> bytes:
    return build_zip((name, path.read_bytes()) for name, path in iter_directory(root, prefix))


def glob_entries(root: Path, patterns: Iterable[str]) -> list[tuple[str, bytes]]:
    """Files under ``root`` matching any pattern, named relative to ``root``."""
    found: dict[str, Path] = {}
    for pattern in patterns:
        matches = [p for p in sorted(root.glob(pattern)) if p.is_file()]
        if not matches:
            logger.warning("Static glob %r matched no files under %s", pattern, root)
        for path in matches:
            found[path.relative_to(root).as_posix()] = path
    return [(name, path.read_bytes()) for name, path in found.items()]


def _zip_entries(archive: bytes) -> list[tuple[str, bytes]]:
    with zipfile.ZipFile(io.BytesIO(archive)) as existing:
        return [
            (info.filename, existing.read(info))
            for info in existing.infolist()
            if not info.is_dir()
        ]


def load_code_artifact(root: Path, code: str | None, static_globs: Iterable[str] = ()) -> bytes:
    """
    Load the deployable code for a handler.

    Args:
        root: Project root that relative paths are resolved against
        code: A prebuilt ``.zip`` file, a directory to zip or a single file
        static_globs: Extra project files to ship alongside the code

    Raises:
        ValidationError: If no code is configured or the path does not exist
    """
    if not code:
        raise ValidationError("code", code, "Handler runs code but declares no code path")
    path = Path(code)
    if not path.is_absolute():
        path = root / path
    if path.is_dir():
        entries = [(name, file.read_bytes()) for name, file in iter_directory(path)]
    elif path.is_file() and path.suffix == ".zip":
        if not static_globs:
            return path.read_bytes()
        entries = _zip_entries(path.read_bytes())
    elif path.is_file():
        entries = [(path.name, path.read_bytes())]
    else:
        raise ValidationError("code", str(path), "Code path does not exist")

    extra = dict(glob_entries(root, static_globs))
    names = {name for name, _ in entries}
    entries.extend((name, content) for name, content in extra.items() if name not in names)
    return build_zip(entries)


def app_bundle(root: Path, site_dir: str, static_globs: Iterable[str] = ()) -> bytes:
    """
    Archive of the app file server plus the site files under ``site/``.

    Raises:
        ValidationError: If the site directory does not exist
    """
    source = root / site_dir
    if not source.is_dir():
        raise ValidationError("dir", str(source), "Site directory does not exist")
    entries = [(APP_SERVER_PATH.name, APP_SERVER_PATH.read_bytes())]
    entries.extend(
        (name, file.read_bytes()) for name, file in iter_directory(source, APP_SITE_PREFIX)
    )
    entries.extend(glob_entries(root, static_globs))
    return build_zip(entries)


def run_build(root: Path, command: str) -> None:
    """
    Run a site build command through the shell in ``root``.

    Raises:
        BuildCommandError: If the command exits non-zero
    """
    logger.info("Building: %s", command)
    completed = subprocess.run(
        command, shell=True, cwd=root, capture_output=True, text=True, check=False
    )
    if completed.returncode != 0:
        output = (completed.stderr or completed.stdout).strip()
        raise BuildCommandError(command, completed.returncode, output[-2000:])
    logger.debug("Build output:\n%s", completed.stdout)
