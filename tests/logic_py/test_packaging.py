from __future__ import annotations

import re
from pathlib import Path

import pytest

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    try:
        import tomli as tomllib
    except ModuleNotFoundError:
        tomllib = None


PROJECT_DIR = Path(__file__).resolve().parents[2]
_IMPORT_RE = re.compile(r"^(?:from|import) ([a-zA-Z_][a-zA-Z0-9_]*)", re.MULTILINE)
_DISTRIBUTIONS = {"requests": "requests", "tenacity": "tenacity"}


def test_third_party_imports_are_declared_dependencies() -> None:
    if tomllib is None:
        pytest.skip("tomllib is unavailable on this interpreter")

    pyproject = tomllib.loads((PROJECT_DIR / "pyproject.toml").read_text(encoding="utf-8"))
    declared = {
        re.split(r"[<>=!~\[ ]", requirement, maxsplit=1)[0].lower()
        for requirement in pyproject["project"]["dependencies"]
    }

    imported: set[str] = set()
    for source in (PROJECT_DIR / "devpod_core").glob("*.py"):
        imported.update(_IMPORT_RE.findall(source.read_text(encoding="utf-8")))

    missing = sorted(
        _DISTRIBUTIONS[name] for name in imported & set(_DISTRIBUTIONS)
        if _DISTRIBUTIONS[name] not in declared
    )
    assert not missing, f"pyproject.toml is missing dependencies: {missing}"


def test_package_discovery_covers_devpod_core() -> None:
    if tomllib is None:
        pytest.skip("tomllib is unavailable on this interpreter")

    pyproject = tomllib.loads((PROJECT_DIR / "pyproject.toml").read_text(encoding="utf-8"))
    find = pyproject["tool"]["setuptools"]["packages"]["find"]
    assert "devpod_core*" in find["include"]
    assert find.get("namespaces") is True
