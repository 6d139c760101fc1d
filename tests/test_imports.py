"""Smoke tests for the package modules.

Every module must compile without warnings (invalid escape sequences in
docstrings become SyntaxWarnings on newer interpreters), and the two
entrypoints must import cleanly and expose their callables.
"""

import importlib
import warnings
from pathlib import Path

import pytest

import contactflow

PACKAGE_DIR = Path(contactflow.__file__).parent
MODULES = sorted(PACKAGE_DIR.rglob("*.py"))


@pytest.mark.parametrize("path", MODULES, ids=lambda p: str(p.relative_to(PACKAGE_DIR)))
def test_module_compiles_without_warnings(path: Path) -> None:
    source = path.read_text(encoding="utf-8")
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, str(path), "exec")


def test_api_entrypoint_imports() -> None:
    module = importlib.import_module("contactflow.main")
    assert callable(module.run)
    assert module.app is not None


def test_worker_entrypoint_imports() -> None:
    module = importlib.import_module("contactflow.worker")
    assert callable(module.main)
