"""Planning: target definitions, reference analysis, and the dependency graph.

Modules:
- targets: Target model and constructors
- references: static analysis of command source
- graph: dependency graph derived from references
- registry: validated loading of pipeline definitions
"""
