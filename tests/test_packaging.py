"""
The service runs from source; installing the project must not drop
generic top-level modules (main, settings, cli...) into site-packages.
"""

import tomllib
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


def test_no_top_level_modules_installed():
    project = tomllib.loads((ROOT / "pyproject.toml").read_text())
    setuptools_cfg = project["tool"]["setuptools"]
    assert setuptools_cfg["py-modules"] == []
    assert setuptools_cfg["packages"] == []
    assert "scripts" not in project["project"]


def test_service_modules_stay_importable_from_source():
    project = tomllib.loads((ROOT / "pyproject.toml").read_text())
    assert project["tool"]["pytest"]["ini_options"]["pythonpath"] == ["wrapper"]
    assert (ROOT / "wrapper" / "main.py").exists()
