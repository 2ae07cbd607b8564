#!/usr/bin/env python3
"""
Keep entity_bridge.core transport-free: the core may not import the HTTP
client stack or the environment loader, directly or by relative import.

Usage: check_core_imports.py [FILE_OR_DIR ...]   (default: the core package)
"""

from __future__ import annotations

import ast
import sys
from pathlib import Path
from typing import Iterable, Iterator, List, NamedTuple, Optional, Tuple

REPO_ROOT = Path(__file__).resolve().parent.parent
SRC_DIR = REPO_ROOT / "src"
CORE_PACKAGE = "entity_bridge.core"

FORBIDDEN = {
    "httpx": "HTTP belongs to entity_bridge.client",
    "respx": "HTTP mocking is test-only",
    "dotenv": "environment loading belongs to entity_bridge.config",
    "entity_bridge.client": "the core talks to transports through DataContext",
    "entity_bridge.config": "the core receives settings, it does not load them",
}


class Violation(NamedTuple):
    path: Path
    lineno: int
    module: str
    reason: str

    def __str__(self) -> str:
        return f"{self.path}:{self.lineno}: imports {self.module} ({self.reason})"


def forbidden_prefix(module: str) -> Optional[str]:
    for prefix in FORBIDDEN:
        if module == prefix or module.startswith(prefix + "."):
            return prefix
    return None


def module_name(path: Path) -> str:
    """Dotted name of a file under src/; files elsewhere count as core modules."""
    try:
        parts = list(path.resolve().relative_to(SRC_DIR).with_suffix("").parts)
    except ValueError:
        return f"{CORE_PACKAGE}.{path.stem}"
    if parts[-1] == "__init__":
        parts[-1] = "_"
    return ".".join(parts)


def resolve_relative(current: str, level: int, module: Optional[str]) -> str:
    package = current.split(".")[:-level]
    if module:
        package.append(module)
    return ".".join(package)


def imported_modules(tree: ast.AST, current: str) -> Iterator[Tuple[int, str]]:
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                yield node.lineno, alias.name
        elif isinstance(node, ast.ImportFrom):
            if node.level:
                base = resolve_relative(current, node.level, node.module)
            else:
                base = node.module or ""
            yield node.lineno, base
            for alias in node.names:
                # "from .. import client" names the module in the alias
                yield node.lineno, f"{base}.{alias.name}"


def scan_file(path: Path) -> List[Violation]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    found: List[Violation] = []
    seen = set()
    for lineno, module in imported_modules(tree, module_name(path)):
        prefix = forbidden_prefix(module)
        if prefix is None or (lineno, prefix) in seen:
            continue
        seen.add((lineno, prefix))
        found.append(Violation(path, lineno, prefix, FORBIDDEN[prefix]))
    return found


def iter_sources(targets: Iterable[Path]) -> Iterator[Path]:
    for target in targets:
        if target.is_dir():
            yield from sorted(target.rglob("*.py"))
        else:
            yield target


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    targets = [Path(a) for a in args] or [SRC_DIR.joinpath(*CORE_PACKAGE.split("."))]
    violations: List[Violation] = []
    for path in iter_sources(targets):
        violations.extend(scan_file(path))

    for v in violations:
        print(v, file=sys.stderr)
    return 1 if violations else 0


if __name__ == "__main__":
    sys.exit(main())
