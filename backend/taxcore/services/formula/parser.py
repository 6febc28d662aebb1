"""
Formula Parser

Tokenizer plus recursive-descent parser for the formula grammar:

    expr        := comparison
    comparison  := additive (("<"|"<="|">"|">="|"=="|"!=") additive)?
    additive    := term (("+"|"-") term)*
    term        := unary (("*"|"×"|"/"|"÷") unary)*
    unary       := "-" unary | primary
    primary     := NUMBER "%"? | IDENT | "{" raw term "}"
                 | IDENT "(" args ")" | "(" expr ")"

Functions: min(a, b, ...), max(a, b, ...), if(cond, a, b), brackets(x).
Outside parentheses a number may use thousands separators ("1,000,000").
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional
import re

from taxcore.exceptions.calculation_exceptions import FormulaParseException
from .ast import Node, Number, Var, UnaryOp, BinOp, Compare, Call


FUNCTIONS = {
    "min": (2, None),
    "max": (2, None),
    "if": (3, 3),
    "brackets": (1, 1),
}

_TOKEN_SPEC = [
    ("SPACE", r"\s+"),
    ("GROUPED", r"\d{1,3}(?:,\d{3})+(?:\.\d+)?"),
    ("NUMBER", r"\d+(?:\.\d+)?|\.\d+"),
    ("BRACED", r"\{[^{}]+\}"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("OP", r"<=|>=|==|!=|<|>|\+|-|\*|/|×|÷|%"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("COMMA", r","),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_PLAIN_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")

_OP_ALIASES = {"×": "*", "÷": "/"}


@dataclass
class Token:
    kind: str
    text: str
    pos: int


def tokenize(text: str) -> List[Token]:
    tokens = []
    depth = 0
    pos = 0

    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise FormulaParseException(f"Unexpected character {text[pos]!r} at position {pos}")

        kind = match.lastgroup
        value = match.group()

        if kind == "GROUPED":
            if depth > 0:
                # Inside an argument list the comma separates arguments
                match = _PLAIN_NUMBER_RE.match(text, pos)
                value = match.group()
            kind, value = "NUMBER", value.replace(",", "")

        if kind == "LPAREN":
            depth += 1
        elif kind == "RPAREN":
            depth -= 1

        if kind != "SPACE":
            tokens.append(Token(kind, _OP_ALIASES.get(value, value), pos))
        pos = match.end()

    tokens.append(Token("EOF", "", len(text)))
    return tokens


class _Parser:

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, kind: str, text: Optional[str] = None) -> Optional[Token]:
        token = self.current
        if token.kind == kind and (text is None or token.text == text):
            return self._advance()
        return None

    def _expect(self, kind: str, text: Optional[str] = None) -> Token:
        token = self._accept(kind, text)
        if token is None:
            wanted = text or kind.lower()
            found = self.current.text or "end of formula"
            raise FormulaParseException(f"Expected {wanted} at position {self.current.pos}, found {found!r}")
        return token

    def parse(self) -> Node:
        if self.current.kind == "EOF":
            raise FormulaParseException("Formula is empty")
        node = self.comparison()
        if self.current.kind != "EOF":
            raise FormulaParseException(
                f"Unexpected {self.current.text!r} at position {self.current.pos}"
            )
        return node

    def comparison(self) -> Node:
        left = self.additive()
        token = self.current
        if token.kind == "OP" and token.text in ("<", "<=", ">", ">=", "==", "!="):
            self._advance()
            right = self.additive()
            return Compare(token.text, left, right)
        return left

    def additive(self) -> Node:
        node = self.term()
        while self.current.kind == "OP" and self.current.text in ("+", "-"):
            op = self._advance().text
            node = BinOp(op, node, self.term())
        return node

    def term(self) -> Node:
        node = self.unary()
        while self.current.kind == "OP" and self.current.text in ("*", "/"):
            op = self._advance().text
            node = BinOp(op, node, self.unary())
        return node

    def unary(self) -> Node:
        if self._accept("OP", "-"):
            return UnaryOp("-", self.unary())
        return self.primary()

    def primary(self) -> Node:
        token = self.current

        if token.kind == "NUMBER":
            self._advance()
            try:
                value = Decimal(token.text)
            except InvalidOperation:
                raise FormulaParseException(f"Bad number {token.text!r}")
            if self._accept("OP", "%"):
                value = value / 100
            return Number(value)

        if token.kind == "BRACED":
            self._advance()
            return Var(token.text[1:-1].strip())

        if token.kind == "IDENT":
            self._advance()
            if self.current.kind == "LPAREN":
                return self.call(token)
            return Var(token.text)

        if self._accept("LPAREN"):
            node = self.comparison()
            self._expect("RPAREN")
            return node

        found = token.text or "end of formula"
        raise FormulaParseException(f"Unexpected {found!r} at position {token.pos}")

    def call(self, name_token: Token) -> Node:
        name = name_token.text.lower()
        if name not in FUNCTIONS:
            raise FormulaParseException(f"Unknown function {name_token.text!r}")

        self._expect("LPAREN")
        args = [self.comparison()]
        while self._accept("COMMA"):
            args.append(self.comparison())
        self._expect("RPAREN")

        min_args, max_args = FUNCTIONS[name]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise FormulaParseException(f"{name}() called with {len(args)} argument(s)")

        return Call(name, tuple(args))


def parse_formula(text: str) -> Node:
    """Parse formula text into an operation tree, raising FormulaParseException on bad input"""
    if text is None:
        raise FormulaParseException("Formula is empty")
    return _Parser(text).parse()
