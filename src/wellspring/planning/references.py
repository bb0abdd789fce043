"""Static reference analysis for target commands.

Commands are Python source. Dependencies are discovered from the parsed
syntax tree, never from the raw text:

1. Free names: names a command reads from the module namespace before (or
   without) binding them there. Python's scoping rules apply: parameters,
   locals, and comprehension variables belong to their own scope, and a
   top-level read that precedes the first top-level binding is free. Free
   names that match target names are dependencies.
2. Result primitives: ``read_result("x")`` and ``load_result("x")`` calls
   with a literal target name.

Example:
    >>> refs = analyze_source("total = sum(raw)\\ntotal + read_result('offset')")
    >>> sorted(refs.free_names)
    ['raw', 'read_result', 'sum']
    >>> sorted(refs.result_calls)
    ['offset']
"""

from __future__ import annotations

import ast
from collections.abc import Iterable
from dataclasses import dataclass, field

READ_RESULT = "read_result"
LOAD_RESULT = "load_result"
RESULT_PRIMITIVES = frozenset({READ_RESULT, LOAD_RESULT})

_COMPREHENSIONS = (ast.ListComp, ast.SetComp, ast.GeneratorExp, ast.DictComp)
_FUNCTIONS = (ast.FunctionDef, ast.AsyncFunctionDef)


@dataclass(frozen=True, slots=True)
class CommandReferences:
    """Symbols a command refers to.

    Attributes:
        free_names: Names read from the module namespace before being bound.
        result_calls: Literal target names passed to result primitives.
        dynamic_calls: Result primitive calls whose argument is not a literal.
    """

    free_names: frozenset[str]
    result_calls: frozenset[str]
    dynamic_calls: int = 0


@dataclass(slots=True)
class _Scope:
    """A nested scope: function, lambda, class body, or comprehension."""

    kind: str
    names: set[str]
    declared_global: set[str] = field(default_factory=set)

    @property
    def deferred(self) -> bool:
        """Whether the body runs later than its definition."""
        return self.kind == "function"


def _target_names(node: ast.AST) -> set[str]:
    return {
        n.id for n in ast.walk(node) if isinstance(n, ast.Name) and not isinstance(n.ctx, ast.Load)
    }


def _argument_names(args: ast.arguments) -> set[str]:
    params = [*args.posonlyargs, *args.args, *args.kwonlyargs]
    if args.vararg:
        params.append(args.vararg)
    if args.kwarg:
        params.append(args.kwarg)
    return {a.arg for a in params}


def _scope_bindings(nodes: Iterable[ast.AST]) -> tuple[set[str], set[str]]:
    """Names bound directly in a scope, and names it declares ``global``.

    Nested scopes contribute only their own name (and walrus targets of
    comprehensions, which bind in the enclosing scope).
    """
    bound: set[str] = set()
    declared: set[str] = set()
    nonlocal_names: set[str] = set()
    stack = list(nodes)

    while stack:
        node = stack.pop()
        if isinstance(node, (*_FUNCTIONS, ast.ClassDef)):
            bound.add(node.name)
            continue
        if isinstance(node, ast.Lambda):
            continue
        if isinstance(node, _COMPREHENSIONS):
            for sub in ast.walk(node):
                if isinstance(sub, ast.NamedExpr) and isinstance(sub.target, ast.Name):
                    bound.add(sub.target.id)
            continue
        if isinstance(node, ast.Global):
            declared.update(node.names)
            continue
        if isinstance(node, ast.Nonlocal):
            nonlocal_names.update(node.names)
            continue

        if isinstance(node, ast.Name) and not isinstance(node.ctx, ast.Load):
            bound.add(node.id)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            bound.update(_alias_binding(a) for a in node.names)
        elif isinstance(node, (ast.ExceptHandler, ast.MatchAs, ast.MatchStar)) and node.name:
            bound.add(node.name)
        elif isinstance(node, ast.MatchMapping) and node.rest:
            bound.add(node.rest)
        stack.extend(ast.iter_child_nodes(node))

    return bound - declared - nonlocal_names, declared


def _alias_binding(alias: ast.alias) -> str:
    return alias.asname or alias.name.split(".")[0]


class _ReferenceCollector(ast.NodeVisitor):
    """Resolve name reads against Python's scopes, in evaluation order.

    At the top level a read is free unless a binding of the name has already
    been executed. Inside a function body the read happens later, so it is
    free only when the top level never binds the name.
    """

    def __init__(self) -> None:
        self.scopes: list[_Scope] = []
        self.executed: set[str] = set()
        self.module_bound: set[str] = set()
        self.free: set[str] = set()
        self.deferred_reads: set[str] = set()
        self.result_calls: set[str] = set()
        self.dynamic_calls = 0

    @property
    def free_names(self) -> set[str]:
        return self.free | (self.deferred_reads - self.module_bound)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def _load(self, name: str) -> None:
        for i, scope in enumerate(reversed(self.scopes)):
            if name in scope.declared_global:
                break
            # Class bodies are invisible to the scopes nested in them
            if i > 0 and scope.kind == "class":
                continue
            if name in scope.names:
                return
        if any(scope.deferred for scope in self.scopes):
            self.deferred_reads.add(name)
        elif name not in self.executed:
            self.free.add(name)

    def _store(self, name: str, *, walrus: bool = False) -> None:
        scopes = self.scopes
        if walrus:
            scopes = [s for s in scopes if s.kind != "comprehension"]
        if not scopes:
            self.executed.add(name)
        elif name in scopes[-1].declared_global:
            self.module_bound.add(name)
            self.executed.add(name)

    def _visit_all(self, nodes: Iterable[ast.AST | None]) -> None:
        for node in nodes:
            if node is not None:
                self.visit(node)

    # -------------------------------------------------------------------------
    # Names and bindings
    # -------------------------------------------------------------------------

    def visit_Module(self, node: ast.Module) -> None:
        self.module_bound, _ = _scope_bindings(node.body)
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Load):
            self._load(node.id)
        else:
            self._store(node.id)

    def visit_Assign(self, node: ast.Assign) -> None:
        self.visit(node.value)
        self._visit_all(node.targets)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        self._visit_all([node.annotation, node.value, node.target])

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        if isinstance(node.target, ast.Name):
            self._load(node.target.id)
            self.visit(node.value)
            self._store(node.target.id)
        else:
            self._visit_all([node.value, node.target])

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self.visit(node.value)
        self._store(node.target.id, walrus=True)

    def visit_For(self, node: ast.For | ast.AsyncFor) -> None:
        self._visit_all([node.iter, node.target, *node.body, *node.orelse])

    visit_AsyncFor = visit_For

    def visit_Import(self, node: ast.Import | ast.ImportFrom) -> None:
        for alias in node.names:
            self._store(_alias_binding(alias))

    visit_ImportFrom = visit_Import

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        self._visit_all([node.type])
        if node.name:
            self._store(node.name)
        self._visit_all(node.body)

    def visit_MatchAs(self, node: ast.MatchAs) -> None:
        self._visit_all([node.pattern])
        if node.name:
            self._store(node.name)

    def visit_MatchStar(self, node: ast.MatchStar) -> None:
        if node.name:
            self._store(node.name)

    def visit_MatchMapping(self, node: ast.MatchMapping) -> None:
        self._visit_all([*node.keys, *node.patterns])
        if node.rest:
            self._store(node.rest)

    # -------------------------------------------------------------------------
    # Nested scopes
    # -------------------------------------------------------------------------

    def _visit_signature(self, args: ast.arguments) -> None:
        self._visit_all([*args.defaults, *args.kw_defaults])
        params = [*args.posonlyargs, *args.args, *args.kwonlyargs, args.vararg, args.kwarg]
        self._visit_all(p.annotation for p in params if p is not None)

    def visit_FunctionDef(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        self._visit_all(node.decorator_list)
        self._visit_signature(node.args)
        self._visit_all([node.returns])

        bound, declared = _scope_bindings(node.body)
        self.scopes.append(_Scope("function", bound | _argument_names(node.args), declared))
        self._visit_all(node.body)
        self.scopes.pop()
        self._store(node.name)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda) -> None:
        self._visit_signature(node.args)
        bound, _ = _scope_bindings([node.body])
        self.scopes.append(_Scope("function", bound | _argument_names(node.args)))
        self.visit(node.body)
        self.scopes.pop()

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._visit_all([*node.decorator_list, *node.bases, *node.keywords])

        bound, declared = _scope_bindings(node.body)
        self.scopes.append(_Scope("class", bound, declared))
        self._visit_all(node.body)
        self.scopes.pop()
        self._store(node.name)

    def _visit_comprehension(
        self, generators: list[ast.comprehension], results: list[ast.expr]
    ) -> None:
        # The first iterable is evaluated in the enclosing scope
        self.visit(generators[0].iter)

        names: set[str] = set()
        for generator in generators:
            names |= _target_names(generator.target)
        self.scopes.append(_Scope("comprehension", names))
        for i, generator in enumerate(generators):
            if i > 0:
                self.visit(generator.iter)
            self._visit_all([generator.target, *generator.ifs])
        self._visit_all(results)
        self.scopes.pop()

    def visit_ListComp(self, node: ast.ListComp | ast.SetComp | ast.GeneratorExp) -> None:
        self._visit_comprehension(node.generators, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node: ast.DictComp) -> None:
        self._visit_comprehension(node.generators, [node.key, node.value])

    # -------------------------------------------------------------------------
    # Result primitives
    # -------------------------------------------------------------------------

    def visit_Call(self, node: ast.Call) -> None:
        if isinstance(node.func, ast.Name) and node.func.id in RESULT_PRIMITIVES:
            name_arg = _primitive_argument(node)
            if isinstance(name_arg, ast.Constant) and isinstance(name_arg.value, str):
                self.result_calls.add(name_arg.value)
            else:
                self.dynamic_calls += 1
        self.generic_visit(node)


def _primitive_argument(node: ast.Call) -> ast.expr | None:
    """Return the target-name argument of a result primitive call."""
    if node.args:
        return node.args[0]
    for keyword in node.keywords:
        if keyword.arg == "name":
            return keyword.value
    return None


def parse_source(source: str, filename: str = "<command>") -> ast.Module:
    """Parse command source into a module tree.

    Raises:
        SyntaxError: If the source is not valid Python.
    """
    return ast.parse(source, filename=filename, mode="exec")


def analyze_tree(tree: ast.AST) -> CommandReferences:
    """Collect the references of an already-parsed command."""
    collector = _ReferenceCollector()
    collector.visit(tree)
    return CommandReferences(
        free_names=frozenset(collector.free_names),
        result_calls=frozenset(collector.result_calls),
        dynamic_calls=collector.dynamic_calls,
    )


def analyze_source(source: str) -> CommandReferences:
    """Parse and analyze command source."""
    return analyze_tree(parse_source(source))
