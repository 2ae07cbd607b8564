import importlib.util
from pathlib import Path

import pytest


@pytest.fixture(scope="module")
def guard():
    script = (
        Path(__file__).resolve().parent.parent / "scripts" / "check_core_imports.py"
    )
    spec = importlib.util.spec_from_file_location("check_core_imports", script)
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None  # for mypy
    spec.loader.exec_module(module)
    return module


def test_core_package_is_transport_free(guard):
    assert guard.main([]) == 0, "core import guard failed"


def test_guard_flags_transport_imports(guard, tmp_path):
    bad = tmp_path / "bad.py"
    bad.write_text(
        "import httpx\n"
        "from dotenv import load_dotenv\n"
        "from ..client import ApiClient\n"
        "from .. import config\n"
        "from .payload import unwrap\n"
    )
    violations = guard.scan_file(bad)
    assert [(v.lineno, v.module) for v in violations] == [
        (1, "httpx"),
        (2, "dotenv"),
        (3, "entity_bridge.client"),
        (4, "entity_bridge.config"),
    ]
    assert "entity_bridge.client" in str(violations[0].reason)
    assert str(violations[2]).endswith(
        "imports entity_bridge.client"
        " (the core talks to transports through DataContext)"
    )


def test_relative_imports_resolve_against_the_file(guard):
    assert guard.resolve_relative("entity_bridge.core.paging", 1, "payload") == (
        "entity_bridge.core.payload"
    )
    assert guard.resolve_relative("entity_bridge.core.paging", 2, "client") == (
        "entity_bridge.client"
    )
    assert guard.resolve_relative("entity_bridge.core._", 1, None) == (
        "entity_bridge.core"
    )


def test_main_reports_and_fails_on_bad_files(guard, tmp_path, capsys):
    (tmp_path / "ok.py").write_text("from .query import field\n")
    (tmp_path / "bad.py").write_text("import httpx.Client\n")
    assert guard.main([str(tmp_path)]) == 1
    err = capsys.readouterr().err
    assert "bad.py:1: imports httpx" in err
    assert "ok.py" not in err
