# Operation tree produced by the formula parser.

from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple, Union


@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Var:
    name: str  # as written; the compiler binds it to a canonical key


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class BinOp:
    op: str  # "+", "-", "*", "/"
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Compare:
    op: str  # "<", "<=", ">", ">=", "==", "!="
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str  # "min", "max", "if", "brackets"
    args: Tuple["Node", ...]


Node = Union[Number, Var, UnaryOp, BinOp, Compare, Call]


def variables(node: Node) -> Tuple[str, ...]:
    """Variable names referenced by a tree, in first-seen order"""
    seen = []

    def walk(n):
        if isinstance(n, Var):
            if n.name not in seen:
                seen.append(n.name)
        elif isinstance(n, UnaryOp):
            walk(n.operand)
        elif isinstance(n, (BinOp, Compare)):
            walk(n.left)
            walk(n.right)
        elif isinstance(n, Call):
            for arg in n.args:
                walk(arg)

    walk(node)
    return tuple(seen)


def calls(node: Node) -> Tuple[str, ...]:
    """Function names used anywhere in a tree"""
    found = set()

    def walk(n):
        if isinstance(n, Call):
            found.add(n.name)
            for arg in n.args:
                walk(arg)
        elif isinstance(n, UnaryOp):
            walk(n.operand)
        elif isinstance(n, (BinOp, Compare)):
            walk(n.left)
            walk(n.right)

    walk(node)
    return tuple(sorted(found))
