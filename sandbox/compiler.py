"""
Script compiler.

Pattern:
  - user source is a Python module body that exports one entry function,
    either assignment-style (`exports = fn`) or default-style (`def default(env)`)
  - the body runs in a namespace whose __builtins__ is a small allowlist,
    so there is no __import__, open, eval or exec
  - import statements and dunder names are rejected before anything runs
  - compile_script() only records the source; parsing and execution happen
    in instantiate(), inside the execution context
"""
import array
import ast
import asyncio
import hashlib
import math
from dataclasses import dataclass
from typing import Any, Callable

from sandbox.errors import CompileError

NO_EXPORT = "no callable export"

# Safe builtins allowed inside the sandbox
_SAFE_BUILTINS = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "divmod": divmod,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "pow": pow,
    "range": range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "print": print,
    "True": True,
    "False": False,
    "None": None,
    "Exception": Exception,
    "ValueError": ValueError,
    "TypeError": TypeError,
    "KeyError": KeyError,
    "IndexError": IndexError,
    "ZeroDivisionError": ZeroDivisionError,
}

# What the runtime unavoidably offers: math, timers and typed buffers.
_AMBIENT = {
    "math": math,
    "sleep": asyncio.sleep,
    "array": array.array,
}


# Attributes that reach frames, code objects or formatting-based lookups.
_FORBIDDEN_ATTRS = frozenset({
    "format", "format_map", "mro",
    "get_stack", "print_stack", "get_coro", "get_loop",
})
# private/dunder, frame (f_), code (co_), traceback (tb_),
# generator (gi_), coroutine (cr_) and async generator (ag_) internals
_FORBIDDEN_ATTR_PREFIXES = ("_", "f_", "co_", "tb_", "gi_", "cr_", "ag_")


class _SourceGuard(ast.NodeVisitor):
    """
    Rejects imports, dunder names, private or introspection attributes and
    dunder string literals.
    """

    def _reject(self, node: ast.AST, what: str):
        raise CompileError(f"line {getattr(node, 'lineno', '?')}: {what} is not allowed")

    def visit_Import(self, node):
        self._reject(node, "import")

    def visit_ImportFrom(self, node):
        self._reject(node, "import")

    def visit_Attribute(self, node):
        attr = node.attr
        if attr in _FORBIDDEN_ATTRS or attr.startswith(_FORBIDDEN_ATTR_PREFIXES):
            self._reject(node, f"attribute '{attr}'")
        self.generic_visit(node)

    def visit_Name(self, node):
        if node.id.startswith("__"):
            self._reject(node, f"name '{node.id}'")

    def visit_Constant(self, node):
        if isinstance(node.value, str) and node.value.startswith("__"):
            self._reject(node, f"string {node.value!r}")


def _compile_code(source: str, filename: str):
    try:
        tree = ast.parse(source, filename=filename, mode="exec")
    except SyntaxError as e:
        raise CompileError(f"line {e.lineno}: {e.msg}") from None
    _SourceGuard().visit(tree)
    return compile(tree, filename, "exec")


def extract_entry(namespace: dict[str, Any]) -> Callable:
    """Pick the exported entry point; `default` wins over `exports`."""
    for name in ("default", "exports"):
        candidate = namespace.get(name)
        if callable(candidate):
            return candidate
    raise CompileError(NO_EXPORT)


@dataclass(frozen=True)
class CompiledScript:
    source: str
    digest: str
    filename: str = "<indicator>"

    def instantiate(self, overrides: dict[str, Any] | None = None) -> Callable:
        """
        Run the module body in a fresh restricted namespace and return its entry.

        Args:
            overrides: builtins to replace (the context passes its own `print`).

        Raises:
            CompileError: syntax error, forbidden construct, or no callable export.
        """
        code = _compile_code(self.source, self.filename)
        builtins_table = {**_SAFE_BUILTINS, **(overrides or {})}
        namespace: dict[str, Any] = {"__builtins__": builtins_table, **_AMBIENT}
        exec(code, namespace)  # noqa: S102
        return extract_entry(namespace)


def compile_script(source: str) -> CompiledScript:
    """Wrap source into a lazily-compiled unit. Never raises."""
    digest = hashlib.sha256(source.encode("utf-8")).hexdigest()
    return CompiledScript(source=source, digest=digest, filename=f"<indicator:{digest[:8]}>")
