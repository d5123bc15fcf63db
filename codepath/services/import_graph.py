"""
Import Graph
Resolves intra-repository imports for Python (AST) and JavaScript/TypeScript (regex).

Imports that do not resolve to a file of the same repository (stdlib,
third-party packages) are ignored.
"""

import ast
import logging
import posixpath
import re
from typing import Any, Dict, List, Optional

from codepath.models import SourceFile

logger = logging.getLogger(__name__)

PYTHON_EXTENSIONS = (".py",)
SCRIPT_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")

# ES module imports/re-exports, side-effect imports, require() and dynamic import()
SCRIPT_IMPORT_PATTERNS = (
    re.compile(r"""(?:import|export)\s+(?:type\s+)?[\w*{}\s,]*?\s*from\s+['"]([^'"]+)['"]"""),
    re.compile(r"""import\s+['"]([^'"]+)['"]"""),
    re.compile(r"""require\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"""import\(\s*['"]([^'"]+)['"]\s*\)"""),
)


def detect_language(file_path: str, declared: str = "text") -> str:
    if file_path.endswith(PYTHON_EXTENSIONS):
        return "python"
    if file_path.endswith(SCRIPT_EXTENSIONS):
        return "typescript" if file_path.endswith((".ts", ".tsx")) else "javascript"
    return declared.lower()


class _ImportVisitor(ast.NodeVisitor):
    """AST visitor collecting import statements."""

    def __init__(self):
        self.imports: list[dict[str, Any]] = []

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self.imports.append({"module": alias.name, "names": [], "level": 0})
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self.imports.append(
            {
                "module": node.module or "",
                "names": [alias.name for alias in node.names if alias.name != "*"],
                "level": node.level,
            }
        )
        self.generic_visit(node)


def parse_python_imports(code: str) -> list[dict[str, Any]]:
    """
    Import statements of a Python module.

    Returns:
        [{"module": str, "names": [str], "level": int}]; empty on syntax errors
    """
    try:
        tree = ast.parse(code)
    except (SyntaxError, ValueError) as e:
        logger.debug(f"   Skipping imports of unparsable Python source: {e}")
        return []

    visitor = _ImportVisitor()
    visitor.visit(tree)
    return visitor.imports


def parse_script_imports(code: str) -> list[str]:
    """Module specifiers imported by a JavaScript/TypeScript file, in source order."""
    found = []
    for pattern in SCRIPT_IMPORT_PATTERNS:
        for match in pattern.finditer(code):
            found.append((match.start(), match.group(1)))
    seen = set()
    specifiers = []
    for _, specifier in sorted(found):
        if specifier not in seen:
            seen.add(specifier)
            specifiers.append(specifier)
    return specifiers


def _python_module_index(paths: List[str]) -> Dict[str, Optional[str]]:
    """
    Dotted module name -> file path, for every suffix of each module path, so
    `pkg.mod` resolves whether the package sits at the root or under `src/`.
    Ambiguous suffixes map to None.
    """
    index: Dict[str, Optional[str]] = {}
    exact: Dict[str, str] = {}
    for path in sorted(paths):
        if not path.endswith(".py"):
            continue
        stem = path[:-3]
        if stem.endswith("/__init__") or stem == "__init__":
            stem = stem[: -len("__init__")].rstrip("/")
            if not stem:
                continue
        parts = stem.split("/")
        exact[".".join(parts)] = path
        for start in range(1, len(parts)):
            dotted = ".".join(parts[start:])
            if dotted in index and index[dotted] != path:
                index[dotted] = None
            else:
                index[dotted] = path
    index.update(exact)
    return index


def _package_of(file_path: str, level: int) -> str:
    directory = posixpath.dirname(file_path)
    for _ in range(level - 1):
        directory = posixpath.dirname(directory)
    return directory.replace("/", ".")


class ImportGraph:
    """Resolved file -> imported repository files."""

    def __init__(self, files: List[SourceFile]):
        self.paths = sorted({f.file_path for f in files})
        self._path_set = set(self.paths)
        self._module_index = _python_module_index(self.paths)
        self.imports: Dict[str, List[str]] = {}
        for source_file in sorted(files, key=lambda f: f.file_path):
            self.imports[source_file.file_path] = self._resolve_file(source_file)

        edge_count = sum(len(targets) for targets in self.imports.values())
        logger.debug(f"   Import graph: {len(self.paths)} files, {edge_count} edges")

    def _resolve_file(self, source_file: SourceFile) -> List[str]:
        language = detect_language(source_file.file_path, source_file.language)
        resolved: List[str] = []
        if language == "python":
            for statement in parse_python_imports(source_file.content):
                resolved.extend(self._resolve_python(source_file.file_path, statement))
        elif language in ("javascript", "typescript"):
            for specifier in parse_script_imports(source_file.content):
                target = self._resolve_script(source_file.file_path, specifier)
                if target:
                    resolved.append(target)

        targets = []
        for target in resolved:
            if target != source_file.file_path and target not in targets:
                targets.append(target)
        return sorted(targets)

    def _lookup_module(self, dotted: str) -> Optional[str]:
        if not dotted:
            return None
        return self._module_index.get(dotted)

    def _resolve_python(self, file_path: str, statement: dict[str, Any]) -> List[str]:
        module = statement["module"]
        level = statement["level"]
        if level:
            package = _package_of(file_path, level)
            root = ".".join(part for part in (package, module) if part)
            # Relative imports resolve against the exact path, never a suffix
            lookup = self._relative_lookup
        else:
            root = module
            lookup = self._lookup_module

        # `from pkg import mod` may name submodules; anything else is the module itself
        targets = []
        for name in statement["names"]:
            target = lookup(f"{root}.{name}" if root else name)
            if target:
                targets.append(target)
        if len(targets) < len(statement["names"]) or not statement["names"]:
            target = lookup(root)
            if target:
                targets.append(target)
        return targets

    def _relative_lookup(self, dotted: str) -> Optional[str]:
        if not dotted:
            return None
        stem = dotted.replace(".", "/")
        for candidate in (f"{stem}.py", f"{stem}/__init__.py"):
            if candidate in self._path_set:
                return candidate
        return None

    def _resolve_script(self, file_path: str, specifier: str) -> Optional[str]:
        if not specifier.startswith("."):
            return None
        base = posixpath.normpath(posixpath.join(posixpath.dirname(file_path), specifier))
        candidates = [base]
        candidates.extend(f"{base}{ext}" for ext in SCRIPT_EXTENSIONS)
        candidates.extend(f"{base}/index{ext}" for ext in SCRIPT_EXTENSIONS)
        # TypeScript sources imported with their emitted .js extension
        if base.endswith(".js"):
            candidates.extend(f"{base[:-3]}{ext}" for ext in (".ts", ".tsx"))
        for candidate in candidates:
            if candidate in self._path_set:
                return candidate
        return None

    def importers(self) -> Dict[str, List[str]]:
        """Reverse edges: file -> files importing it."""
        reverse: Dict[str, List[str]] = {path: [] for path in self.paths}
        for source, targets in self.imports.items():
            for target in targets:
                reverse[target].append(source)
        return {path: sorted(sources) for path, sources in reverse.items()}
