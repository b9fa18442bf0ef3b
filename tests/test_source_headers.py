# tests/test_source_headers.py
"""Every source module starts with its repository path."""

from pathlib import Path

import pytest

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
MODULES = sorted(p for p in (SRC_ROOT / "bavard").rglob("*.py") if p.stat().st_size)


@pytest.mark.parametrize("module", MODULES, ids=lambda p: str(p.relative_to(SRC_ROOT)))
def test_module_starts_with_path_comment(module: Path) -> None:
    first_line = module.read_text(encoding="utf-8").splitlines()[0]

    assert first_line == f"# {module.relative_to(SRC_ROOT.parent).as_posix()}"
