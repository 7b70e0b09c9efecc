from __future__ import annotations

from pathlib import Path

import backend_store_tasks

PACKAGE_ROOT = Path(backend_store_tasks.__file__).parent
HEADER = "MIT License\nCopyright (c) 2026 backend-store-tasks contributors\n"


def test_every_module_carries_project_license_header():
    modules = sorted(PACKAGE_ROOT.rglob("*.py"))
    assert modules
    missing = [
        str(path.relative_to(PACKAGE_ROOT))
        for path in modules
        if not path.read_text(encoding="utf-8").startswith(f'"""\n{HEADER}')
    ]
    assert missing == []
