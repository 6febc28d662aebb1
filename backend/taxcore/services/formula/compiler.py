"""
Formula Compiler & Dependency Resolver

Turns a rule's formula set into an execution plan:

1. Parse every expression into an operation tree.
2. Bind every referenced name (and every output) to a canonical key
   through the registry lookup.
3. Build a networkx DiGraph with an edge from each formula output to the
   formulas that read it.
4. Reject cycles, then either check the explicit calculation_order against
   the graph or derive one from a topological sort.
5. Check that every dependency has a source: a declared user input, a
   rule constant, or an upstream formula output.

Any failure blocks the whole formula set.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
import logging

import networkx as nx

from taxcore.exceptions.calculation_exceptions import (
    FormulaParseException, VariableMissingException, RuleValidationException
)
from . import ast
from .parser import parse_formula

logger = logging.getLogger(__name__)

Lookup = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class FormulaSource:
    """Formula text as stored on a rule"""
    output_variable: str
    expression: str
    calculation_order: Optional[int] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class CompiledFormula:
    output_key: str
    expression: str
    tree: ast.Node
    bindings: Mapping[str, str]  # name as written -> canonical key
    dependencies: Tuple[str, ...]
    calculation_order: int
    description: Optional[str] = None

    @property
    def uses_brackets(self) -> bool:
        return "brackets" in ast.calls(self.tree)


@dataclass(frozen=True)
class CompiledRuleSet:
    formulas: Tuple[CompiledFormula, ...]
    inputs: FrozenSet[str]
    constants: Mapping[str, Decimal] = field(default_factory=dict)

    @property
    def outputs(self) -> Tuple[str, ...]:
        return tuple(f.output_key for f in self.formulas)


class FormulaCompiler:
    """
    Usage:
        compiler = FormulaCompiler(lookup=lambda term: registry_service.lookup(db, term))
        plan = compiler.compile(formulas, inputs=["gross_income"], has_brackets=True)
    """

    def __init__(self, lookup: Lookup):
        self.lookup = lookup

    def _bind(self, name: str, step: str) -> str:
        key = self.lookup(name)
        if not key:
            raise VariableMissingException(f"'{name}' has no canonical variable mapping", failed_step=step)
        return key

    def _parse(self, source: FormulaSource) -> ast.Node:
        step = f"parse:{source.output_variable}"
        try:
            return parse_formula(source.expression)
        except FormulaParseException as exc:
            raise FormulaParseException(
                f"{source.output_variable} = {source.expression}: {exc.message}", failed_step=step
            )

    def bind_inputs(self, inputs: Iterable[str]) -> FrozenSet[str]:
        """Canonical keys for declared inputs; unmapped inputs are dropped"""
        keys = set()
        for term in inputs:
            key = self.lookup(term)
            if key:
                keys.add(key)
        return frozenset(keys)

    def compile(
        self,
        formulas: List[FormulaSource],
        inputs: Iterable[str] = (),
        constants: Optional[Mapping[str, Decimal]] = None,
        has_brackets: bool = False,
        enforce_order: bool = True
    ) -> CompiledRuleSet:
        """
        With enforce_order, explicit calculation_order values (when every
        formula has one) must already be a valid topological order.
        Otherwise they only break ties in the derived order.
        """
        constants = dict(constants or {})
        input_keys = self.bind_inputs(inputs)

        parsed = []
        for source in formulas:
            tree = self._parse(source)
            output_key = self._bind(source.output_variable, f"resolve:{source.output_variable}")
            bindings = {
                name: self._bind(name, f"resolve:{source.output_variable}")
                for name in ast.variables(tree)
            }
            if "brackets" in ast.calls(tree) and not has_brackets:
                raise RuleValidationException(
                    f"{source.output_variable} calls brackets() but the rule has no bracket set",
                    failed_step=f"validate:{source.output_variable}"
                )
            parsed.append((source, tree, output_key, bindings))

        graph = self._build_graph(parsed)
        order = self._order(graph, parsed, enforce_order)

        compiled = []
        by_output = {p[2]: p for p in parsed}
        for position, output_key in enumerate(order, start=1):
            source, tree, _, bindings = by_output[output_key]
            dependencies = tuple(sorted(set(bindings.values())))

            for dependency in dependencies:
                if dependency in graph:
                    continue
                if dependency not in input_keys and dependency not in constants:
                    raise VariableMissingException(
                        f"'{dependency}' used by {output_key} is neither a declared input, "
                        f"a rule constant nor a formula output",
                        failed_step=f"resolve:{output_key}"
                    )

            compiled.append(CompiledFormula(
                output_key=output_key,
                expression=source.expression,
                tree=tree,
                bindings=bindings,
                dependencies=dependencies,
                calculation_order=position,
                description=source.description
            ))

        return CompiledRuleSet(formulas=tuple(compiled), inputs=input_keys, constants=constants)

    def _build_graph(self, parsed) -> nx.DiGraph:
        graph = nx.DiGraph()

        for source, _, output_key, _ in parsed:
            if output_key in graph:
                raise RuleValidationException(
                    f"More than one formula computes '{output_key}'",
                    failed_step=f"validate:{source.output_variable}"
                )
            graph.add_node(output_key)

        for _, _, output_key, bindings in parsed:
            for dependency in bindings.values():
                if dependency in graph:
                    graph.add_edge(dependency, output_key)

        if not nx.is_directed_acyclic_graph(graph):
            cycle = next(nx.simple_cycles(graph))
            path = " -> ".join(cycle + [cycle[0]])
            raise RuleValidationException(f"Dependency cycle: {path}", failed_step="order")

        return graph

    def _order(self, graph: nx.DiGraph, parsed, enforce_order: bool) -> List[str]:
        hints = {}
        for index, (source, _, output_key, _) in enumerate(parsed):
            hints[output_key] = (
                source.calculation_order if source.calculation_order is not None else float("inf"),
                index
            )

        explicit = all(p[0].calculation_order is not None for p in parsed)
        if enforce_order and explicit:
            position = {key: hint[0] for key, hint in hints.items()}
            for upstream, downstream in graph.edges:
                if position[upstream] >= position[downstream]:
                    raise RuleValidationException(
                        f"calculation_order runs {downstream} (order {position[downstream]}) "
                        f"before its input {upstream} (order {position[upstream]})",
                        failed_step="order"
                    )

        return list(nx.lexicographical_topological_sort(graph, key=lambda node: hints[node]))

