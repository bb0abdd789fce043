"""Command evaluation and external capabilities.

A command is evaluated in a fresh namespace holding its upstream values,
its declared capabilities, and the ``read_result``/``load_result``
primitives. A block command's value is its final expression statement; a
block that ends in any other statement evaluates to None.

Capabilities are declared as importable module names, optionally aliased
(``"numpy as np"``). They are imported once per run and stamped with a
``name==version`` identity token that feeds the target's input digest.
"""

from __future__ import annotations

import ast
import builtins
import importlib
import importlib.metadata
import logging
import sys
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from types import ModuleType
from typing import Any

logger = logging.getLogger(__name__)

MISSING_VERSION = "missing"


def evaluate_source(source: str, namespace: dict[str, Any], filename: str = "<command>") -> Any:
    """Execute command source in ``namespace`` and return its value.

    Raises:
        Exception: Whatever the command raises.
    """
    tree = ast.parse(source, filename=filename, mode="exec")
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        body = ast.Module(body=tree.body[:-1], type_ignores=[])
        value_expr: ast.Expression | None = ast.Expression(body=tree.body[-1].value)
    else:
        body = tree
        value_expr = None

    namespace.setdefault("__builtins__", builtins)
    exec(compile(body, filename, "exec"), namespace)
    if value_expr is None:
        return None
    return eval(compile(value_expr, filename, "eval"), namespace)


def build_namespace(
    bindings: dict[str, Any],
    read_result: Callable[[str], Any],
    module_name: str,
) -> dict[str, Any]:
    """Fresh evaluation namespace with result primitives bound.

    ``load_result(name)`` assigns the named result into this namespace.
    """
    namespace: dict[str, Any] = {"__builtins__": builtins, "__name__": module_name}
    namespace.update(bindings)

    def load_result(name: str) -> None:
        namespace[name] = read_result(name)

    namespace["read_result"] = read_result
    namespace["load_result"] = load_result
    return namespace


# =============================================================================
# Capabilities
# =============================================================================


def capability_binding(declaration: str) -> tuple[str, str]:
    """Split a declaration into ``(module_name, bound_name)``.

    Example:
        >>> capability_binding("numpy as np")
        ('numpy', 'np')
        >>> capability_binding("os.path")
        ('os.path', 'os')
    """
    module_name, _, alias = declaration.partition(" as ")
    module_name = module_name.strip()
    alias = alias.strip()
    if alias:
        return module_name, alias
    return module_name, module_name.split(".")[0]


@dataclass(frozen=True, slots=True)
class Capability:
    """An imported external capability.

    Attributes:
        declaration: As declared on the target.
        module_name: Importable module name.
        binding: Name bound in the command namespace.
        version: Version stamp, or ``missing`` when the import failed.
        module: Object bound under ``binding``.
        error: Import error message when missing.
    """

    declaration: str
    module_name: str
    binding: str
    version: str
    module: ModuleType | None = None
    error: str | None = None

    @property
    def token(self) -> str:
        """Identity token contributing to input digests."""
        return f"{self.module_name}=={self.version}"

    @property
    def available(self) -> bool:
        return self.module is not None


def _module_version(module_name: str, module: ModuleType) -> str:
    top_level = module_name.split(".")[0]
    if top_level in sys.stdlib_module_names:
        return f"python-{sys.version_info.major}.{sys.version_info.minor}"

    for dist in importlib.metadata.packages_distributions().get(top_level, []):
        try:
            return importlib.metadata.version(dist)
        except importlib.metadata.PackageNotFoundError:
            continue

    version = getattr(sys.modules.get(top_level, module), "__version__", None)
    return str(version) if version is not None else "unknown"


class CapabilityResolver:
    """Import capabilities once and keep them fixed for a run.

    Thread-safe so parallel workers share one resolution per declaration.
    """

    def __init__(self) -> None:
        self._resolved: dict[str, Capability] = {}
        self._lock = threading.Lock()

    def resolve(self, declaration: str) -> Capability:
        """Resolve a declaration, importing it on first use."""
        with self._lock:
            cached = self._resolved.get(declaration)
            if cached is not None:
                return cached

            module_name, binding = capability_binding(declaration)
            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                logger.warning("Capability %r is not importable: %s", declaration, e)
                capability = Capability(
                    declaration=declaration,
                    module_name=module_name,
                    binding=binding,
                    version=MISSING_VERSION,
                    error=str(e),
                )
            else:
                bound = module if binding != module_name.split(".")[0] else sys.modules[binding]
                capability = Capability(
                    declaration=declaration,
                    module_name=module_name,
                    binding=binding,
                    version=_module_version(module_name, module),
                    module=bound,
                )
            self._resolved[declaration] = capability
            return capability

    def resolve_all(self, declarations: Iterable[str]) -> list[Capability]:
        return [self.resolve(d) for d in sorted(set(declarations))]

    def tokens(self, declarations: Iterable[str]) -> list[str]:
        """Identity tokens of the declared capabilities."""
        return [c.token for c in self.resolve_all(declarations)]
