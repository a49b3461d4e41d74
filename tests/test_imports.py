"""Every module must import on its own in a fresh interpreter."""

import os
import subprocess
import sys
from pathlib import Path

import pytest


SRC_DIR = Path(__file__).parent.parent / "src"


def module_names():
    names = []
    for py_file in sorted((SRC_DIR / "docsync").rglob("*.py")):
        parts = py_file.relative_to(SRC_DIR).with_suffix("").parts
        if parts[-1] == "__init__":
            parts = parts[:-1]
        names.append(".".join(parts))
    return names


def subprocess_env():
    paths = [str(SRC_DIR), os.environ.get("PYTHONPATH", "")]
    return {**os.environ, "PYTHONPATH": os.pathsep.join(p for p in paths if p)}


class TestModuleImports:
    """Import order between sub-packages."""

    @pytest.mark.parametrize("module", module_names())
    def test_module_imports_standalone(self, module):
        result = subprocess.run(
            [sys.executable, "-c", f"import {module}"],
            capture_output=True,
            env=subprocess_env(),
            text=True,
            timeout=60
        )

        assert result.returncode == 0, result.stderr

    def test_extension_helper_has_no_package_imports(self):
        source = (SRC_DIR / "docsync" / "utils" / "paths.py").read_text(encoding="utf-8")

        assert "from .." not in source
        assert "import docsync" not in source
