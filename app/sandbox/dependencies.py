"""
Detection of third-party dependencies in submitted source code.

Feeds the command builder so an install step can be chained in front of the
entry command.  Detection is heuristic and never fails: unknown languages and
unparsable code simply yield fewer names.
"""

from __future__ import annotations

import ast
import re
import sys

PYTHON_STDLIB: frozenset[str] = frozenset(sys.stdlib_module_names) | {"__future__"}

NODE_BUILTINS: frozenset[str] = frozenset({
    "assert", "buffer", "child_process", "cluster", "crypto", "dgram", "dns",
    "events", "fs", "http", "http2", "https", "net", "os", "path", "perf_hooks",
    "process", "querystring", "readline", "stream", "string_decoder", "timers",
    "tls", "tty", "url", "util", "v8", "vm", "worker_threads", "zlib",
})

_PY_IMPORT_RE = re.compile(r"^\s*(?:import|from)\s+([A-Za-z0-9_\-]+)")
_JS_IMPORT_RE = re.compile(
    r"""(?:import\s+(?:[\w*\s{},]*)\s+from\s+['"]([^'"]+)['"])"""
    r"""|(?:require\(\s*['"]([^'"]+)['"]\s*\))"""
)
_GO_IMPORT_BLOCK_RE = re.compile(r"import\s*\(([^)]*)\)", re.S)
_GO_IMPORT_LINE_RE = re.compile(r'import\s+(?:\w+\s+)?"([^"]+)"')
_GO_QUOTED_RE = re.compile(r'"([^"]+)"')


def detect_dependencies(code: str, language: str | None) -> list[str]:
    """Return external package names referenced by ``code``, first-seen order."""
    if not language:
        return []
    lang = language.lower()
    if lang == "python":
        found = _python_imports(code)
    elif lang in ("javascript", "typescript", "node"):
        found = _node_imports(code)
    elif lang == "go":
        found = _go_imports(code)
    else:
        return []
    return list(dict.fromkeys(found))


def _python_imports(code: str) -> list[str]:
    names: list[str] = []
    try:
        tree = ast.parse(code)
    except SyntaxError:
        # Still useful for half-written code: fall back to a line scan.
        for line in code.splitlines():
            match = _PY_IMPORT_RE.match(line)
            if match:
                names.append(match.group(1).split(".")[0])
    else:
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                names.extend(alias.name.split(".")[0] for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.module and not node.level:
                names.append(node.module.split(".")[0])
    return [name for name in names if name not in PYTHON_STDLIB]


def _node_imports(code: str) -> list[str]:
    names: list[str] = []
    for match in _JS_IMPORT_RE.finditer(code):
        spec = match.group(1) or match.group(2)
        if not spec or spec.startswith((".", "/")) or spec.startswith("node:"):
            continue
        parts = spec.split("/")
        if spec.startswith("@"):
            if len(parts) < 2:
                continue
            package = "/".join(parts[:2])
        else:
            package = parts[0]
        if package not in NODE_BUILTINS:
            names.append(package)
    return names


def _go_imports(code: str) -> list[str]:
    paths: list[str] = []
    for block in _GO_IMPORT_BLOCK_RE.findall(code):
        paths.extend(_GO_QUOTED_RE.findall(block))
    paths.extend(_GO_IMPORT_LINE_RE.findall(code))
    # The standard library never has a dot in its first path segment.
    return [path for path in paths if "." in path.split("/")[0]]
