"""Package-wide source conventions."""

from pathlib import Path

import pytest

import ollagent

PACKAGE_DIR = Path(ollagent.__file__).parent
MODULES = sorted(p for p in PACKAGE_DIR.rglob("*.py") if p.read_text().strip())


@pytest.mark.parametrize("module", MODULES, ids=lambda p: str(p.relative_to(PACKAGE_DIR)))
def test_module_postpones_annotations(module: Path):
    assert "from __future__ import annotations" in module.read_text()
