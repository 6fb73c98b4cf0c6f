"""
Import-boundary enforcement for the billing kernel layers.

1. Domain purity        -- billing_kernel/domain/** may not import the DB,
                           ORM models, services or selectors at runtime.
2. Model isolation      -- billing_kernel/models/** may not import services,
                           selectors or domain logic.
3. Read/write split     -- billing_kernel/selectors/** may not import
                           services.
4. Config independence  -- billing_config/** may not import billing_kernel.
5. Single env reader    -- only billing_config/settings.py touches os.environ.
6. Injected clock       -- only the clock module reads the wall clock.

All scanning is done via AST; imports under ``if TYPE_CHECKING:`` are
ignored because they never execute.
"""

import ast
import glob
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _python_files(root: str) -> list[str]:
    """Return all .py files under *root*, sorted for deterministic order."""
    return sorted(glob.glob(f"{ROOT / root}/**/*.py", recursive=True))


def _is_type_checking_block(node: ast.AST) -> bool:
    if not isinstance(node, ast.If):
        return False
    test = node.test
    if isinstance(test, ast.Name):
        return test.id == "TYPE_CHECKING"
    return isinstance(test, ast.Attribute) and test.attr == "TYPE_CHECKING"


def _runtime_nodes(tree: ast.AST):
    """Walk the tree, skipping ``if TYPE_CHECKING:`` bodies."""
    stack = [tree]
    while stack:
        node = stack.pop()
        yield node
        for child in ast.iter_child_nodes(node):
            if _is_type_checking_block(child):
                stack.extend(child.orelse)
                continue
            stack.append(child)


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Return (line_number, module_string) for every runtime import in *filepath*."""
    tree = ast.parse(Path(filepath).read_text(), filename=filepath)

    results: list[tuple[int, str]] = []
    for node in _runtime_nodes(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _matches_any(module: str, prefixes: tuple[str, ...]) -> bool:
    """True if *module* equals or is a child of any prefix."""
    return any(module == p or module.startswith(f"{p}.") for p in prefixes)


def _violations(root: str, forbidden: tuple[str, ...]) -> list[str]:
    found = []
    for filepath in _python_files(root):
        for lineno, module in _extract_imports(filepath):
            if _matches_any(module, forbidden):
                found.append(f"{Path(filepath).relative_to(ROOT)}:{lineno} imports {module}")
    return found


def _attribute_uses(filepath: str, names: set[str]) -> list[tuple[int, str]]:
    tree = ast.parse(Path(filepath).read_text(), filename=filepath)
    hits = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
            ref = f"{node.value.id}.{node.attr}"
            if ref in names:
                hits.append((node.lineno, ref))
    return hits


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestLayerBoundaries:
    def test_scan_finds_sources(self):
        assert _python_files("billing_kernel/domain")
        assert _python_files("billing_config")

    def test_domain_is_pure(self):
        forbidden = (
            "sqlalchemy",
            "billing_kernel.db",
            "billing_kernel.models",
            "billing_kernel.services",
            "billing_kernel.selectors",
            "billing_config",
        )
        assert _violations("billing_kernel/domain", forbidden) == []

    def test_models_do_not_reach_up(self):
        forbidden = (
            "billing_kernel.services",
            "billing_kernel.selectors",
            "billing_kernel.domain",
        )
        assert _violations("billing_kernel/models", forbidden) == []

    def test_selectors_do_not_import_services(self):
        assert _violations("billing_kernel/selectors", ("billing_kernel.services",)) == []

    def test_config_does_not_import_kernel(self):
        assert _violations("billing_config", ("billing_kernel",)) == []


class TestImpureCalls:
    def test_only_settings_reads_environment(self):
        offenders = []
        for filepath in _python_files("billing_kernel") + _python_files("billing_config"):
            if filepath.endswith("billing_config/settings.py"):
                continue
            for lineno, ref in _attribute_uses(filepath, {"os.environ", "os.getenv"}):
                offenders.append(f"{filepath}:{lineno} {ref}")
        assert offenders == []

    def test_wall_clock_only_in_clock_module(self):
        offenders = []
        for filepath in _python_files("billing_kernel"):
            if filepath.endswith("domain/clock.py"):
                continue
            for lineno, ref in _attribute_uses(
                filepath, {"datetime.now", "datetime.utcnow", "date.today", "time.time"},
            ):
                offenders.append(f"{filepath}:{lineno} {ref}")
        assert offenders == []
