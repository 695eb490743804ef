#!/usr/bin/env python3
from __future__ import annotations

import enum
import logging
import math
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

log = logging.getLogger(__name__)

# ----------------------------
# Configuration
# ----------------------------

DEFAULT_STEP_LIMIT = 1_000_000       # instructions executed before ExecutionTimeout
DEFAULT_MAX_DEPTH = 200              # parser nesting bound
DEFAULT_MAX_CALL_DEPTH = 1000
DEFAULT_FALLBACK_STACK_SIZE = 1024   # reported when recursion defeats static analysis

@dataclass
class CompilerConfig:
    step_limit: int = DEFAULT_STEP_LIMIT
    eager_execute: bool = True
    fold_constants: bool = True
    stack_alignment: int = 1
    fallback_stack_size: int = DEFAULT_FALLBACK_STACK_SIZE
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH
    max_depth: int = DEFAULT_MAX_DEPTH


# ----------------------------
# Errors
# ----------------------------

class CompileError(Exception):
    """A user-facing error found before any code is produced."""

    def __init__(self, message: str, line: Optional[int] = None, col: Optional[int] = None):
        self.message = message
        self.line = line
        self.col = col
        where = f" at {line}:{col}" if line is not None else ""
        super().__init__(f"{message}{where}")

    @property
    def kind(self) -> str:
        return type(self).__name__

class LexError(CompileError):
    def __init__(self, char: str, line: int, col: int):
        self.char = char
        super().__init__(f"Unexpected character {char!r}", line, col)

class ParseError(CompileError):
    def __init__(self, expected: str, found: str, line: int, col: int):
        self.expected = expected
        self.found = found
        super().__init__(f"Expected {expected}, got {found}", line, col)

class DuplicateSymbol(CompileError):
    pass

class UnboundExtern(CompileError):
    pass

class UndeclaredIdentifier(CompileError):
    pass

class UndeclaredFunction(CompileError):
    pass

class ArityMismatch(CompileError):
    pass

class ImmutableExtern(CompileError):
    pass

class ExecutionError(Exception):
    """Execution stopped early; `outputs` holds what was printed so far."""

    def __init__(self, message: str, outputs: Sequence[float]):
        self.outputs = list(outputs)
        super().__init__(message)

class ExecutionTimeout(ExecutionError):
    def __init__(self, steps: int, outputs: Sequence[float]):
        self.steps = steps
        super().__init__(f"Step limit of {steps} instructions exhausted", outputs)

class RuntimeFault(ExecutionError):
    def __init__(self, kind: str, address: int, outputs: Sequence[float]):
        self.kind = kind
        self.address = address
        super().__init__(f"{kind} at address {address}", outputs)

class InternalError(Exception):
    """Inconsistent generated code. Never caused by user input."""

class ListingError(ValueError):
    pass


# ----------------------------
# Lexer
# ----------------------------

KEYWORDS = {"let", "fn", "extern", "print", "for", "if", "else", "while", "return", "true", "false"}

TOKEN_SPEC = [
    ("COMMENT",    r"//[^\n]*"),
    ("BLOCK",      r"/\*.*?\*/"),
    ("OPEN_BLOCK", r"/\*"),
    ("NUMBER",     r"\d+(?:\.\d+)?"),
    ("ID",         r"[A-Za-z_]\w*"),
    ("OP",         r"==|!=|<=|>=|[+\-*/%^=<>!]"),
    ("PUNCT",      r"[(){};,]"),
    ("NEWLINE",    r"\n"),
    ("SKIP",       r"[ \t\r]+"),
    ("MISMATCH",   r"."),
]

# ASCII: only decimal digits and latin identifiers
TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pat})" for name, pat in TOKEN_SPEC), re.DOTALL | re.ASCII)

@dataclass(frozen=True)
class Tok:
    kind: str
    value: str
    pos: int
    line: int = 1
    col: int = 1

class Lexer:
    """Lazy token stream. Every iteration rescans the source from the start."""

    def __init__(self, src: str):
        self.src = src

    def __iter__(self) -> Iterator[Tok]:
        line = 1
        line_start = 0
        for m in TOKEN_RE.finditer(self.src):
            kind = m.lastgroup
            val = m.group()
            pos = m.start()
            col = pos - line_start + 1
            if kind == "NEWLINE":
                line += 1
                line_start = m.end()
                continue
            if kind in ("SKIP", "COMMENT"):
                continue
            if kind == "BLOCK":
                if "\n" in val:
                    line += val.count("\n")
                    line_start = pos + val.rfind("\n") + 1
                continue
            if kind in ("MISMATCH", "OPEN_BLOCK"):
                raise LexError(val[0], line, col)
            if kind == "ID" and val in KEYWORDS:
                kind = "KW"
            yield Tok(kind, val, pos, line, col)
        yield Tok("EOF", "", len(self.src), line, len(self.src) - line_start + 1)

def lex(src: str) -> List[Tok]:
    return list(Lexer(src))


# ----------------------------
# AST
# ----------------------------

class Stmt: pass

class Expr: pass

@dataclass
class NumberLiteral(Expr):
    value: float
    line: int = 0
    col: int = 0

@dataclass
class Identifier(Expr):
    name: str
    line: int = 0
    col: int = 0
    symbol: Optional["Symbol"] = field(default=None, compare=False, repr=False)

@dataclass
class UnaryExpr(Expr):
    op: str
    operand: Expr
    line: int = 0
    col: int = 0

@dataclass
class BinaryExpr(Expr):
    op: str
    lhs: Expr
    rhs: Expr
    line: int = 0
    col: int = 0

@dataclass
class Call(Expr):
    name: str
    args: List[Expr]
    line: int = 0
    col: int = 0
    func: Optional["FunctionDecl"] = field(default=None, compare=False, repr=False)

@dataclass
class Block(Stmt):
    stmts: List[Stmt]

@dataclass
class LetStmt(Stmt):
    name: str
    init: Optional[Expr]     # None => 0
    line: int = 0
    col: int = 0
    symbol: Optional["Symbol"] = field(default=None, compare=False, repr=False)

@dataclass
class ExternDecl(Stmt):
    name: str
    line: int = 0
    col: int = 0
    symbol: Optional["Symbol"] = field(default=None, compare=False, repr=False)

@dataclass
class Assignment(Stmt):
    name: str
    value: Expr
    line: int = 0
    col: int = 0
    symbol: Optional["Symbol"] = field(default=None, compare=False, repr=False)

@dataclass
class PrintStmt(Stmt):
    expr: Expr
    line: int = 0
    col: int = 0

@dataclass
class ExprStmt(Stmt):
    expr: Expr
    line: int = 0
    col: int = 0

@dataclass
class ForStmt(Stmt):
    init: Optional[Stmt]     # LetStmt / Assignment / ExprStmt / None
    cond: Optional[Expr]     # None => loop forever
    step: Optional[Stmt]     # Assignment / ExprStmt / None
    body: Block
    line: int = 0
    col: int = 0

@dataclass
class WhileStmt(Stmt):
    cond: Expr
    body: Block
    line: int = 0
    col: int = 0

@dataclass
class IfStmt(Stmt):
    cond: Expr
    then_blk: Block
    else_blk: Optional[Block]
    line: int = 0
    col: int = 0

@dataclass
class ReturnStmt(Stmt):
    expr: Optional[Expr]     # None => 0
    line: int = 0
    col: int = 0

@dataclass
class FunctionDecl(Stmt):
    name: str
    params: List[str]
    body: Block
    line: int = 0
    col: int = 0
    frame_size: int = field(default=0, compare=False)

@dataclass
class Program:
    stmts: List[Stmt]
    frame_size: int = field(default=0, compare=False)

def left_spine(e: Expr) -> Tuple[Expr, List[BinaryExpr]]:
    """Split `a op b op c ...` into its leftmost operand and the chain, innermost first.

    Flat left-associative chains are not bounded by the parser's nesting
    limit, so passes walk them with a loop instead of recursing on `lhs`.
    """
    chain: List[BinaryExpr] = []
    while isinstance(e, BinaryExpr):
        chain.append(e)
        e = e.lhs
    chain.reverse()
    return e, chain


# ----------------------------
# Parser (recursive descent)
# ----------------------------

def describe(t: Tok) -> str:
    if t.kind == "EOF":
        return "end of input"
    return f"{t.kind}:{t.value!r}"

class Parser:
    def __init__(self, toks: Iterable[Tok], max_depth: int = DEFAULT_MAX_DEPTH):
        self.stream = iter(toks)
        self.buf: List[Tok] = []
        self.max_depth = max_depth
        self.depth = 0
        self.in_func = False

    def peek(self, k: int = 0) -> Tok:
        while len(self.buf) <= k:
            if self.buf and self.buf[-1].kind == "EOF":
                return self.buf[-1]
            self.buf.append(next(self.stream))
        return self.buf[k]

    def cur(self) -> Tok:
        return self.peek(0)

    def error(self, expected: str) -> ParseError:
        t = self.cur()
        return ParseError(expected, describe(t), t.line, t.col)

    def eat(self, kind: str, value: Optional[str] = None) -> Tok:
        t = self.cur()
        if t.kind != kind or (value is not None and t.value != value):
            raise self.error(repr(value) if value is not None else kind)
        self.buf.pop(0)
        return t

    def match(self, kind: str, value: Optional[str] = None) -> bool:
        t = self.cur()
        if t.kind != kind:
            return False
        if value is not None and t.value != value:
            return False
        return True

    def enter(self) -> None:
        self.depth += 1
        if self.depth > self.max_depth:
            raise self.error(f"at most {self.max_depth} levels of nesting")

    def leave(self) -> None:
        self.depth -= 1

    def parse_program(self) -> Program:
        stmts: List[Stmt] = []
        while not self.match("EOF"):
            if self.match("KW", "fn"):
                stmts.append(self.parse_func())
            else:
                stmts.append(self.parse_stmt())
        return Program(stmts)

    def parse_func(self) -> FunctionDecl:
        t = self.eat("KW", "fn")
        name = self.eat("ID").value
        self.eat("PUNCT", "(")
        params: List[str] = []
        if not self.match("PUNCT", ")"):
            while True:
                params.append(self.eat("ID").value)
                if self.match("PUNCT", ","):
                    self.eat("PUNCT", ",")
                    continue
                break
        self.eat("PUNCT", ")")
        self.in_func = True
        body = self.parse_block()
        self.in_func = False
        return FunctionDecl(name, params, body, t.line, t.col)

    def parse_block(self) -> Block:
        self.enter()
        self.eat("PUNCT", "{")
        stmts: List[Stmt] = []
        while not self.match("PUNCT", "}"):
            stmts.append(self.parse_stmt())
        self.eat("PUNCT", "}")
        self.leave()
        return Block(stmts)

    def parse_stmt(self) -> Stmt:
        t = self.cur()

        if self.match("KW", "fn"):
            raise self.error("statement (functions are only allowed at top level)")

        if self.match("PUNCT", "{"):
            return self.parse_block()

        if self.match("KW", "extern"):
            self.eat("KW", "extern")
            name = self.eat("ID").value
            self.eat("PUNCT", ";")
            return ExternDecl(name, t.line, t.col)

        if self.match("KW", "print"):
            self.eat("KW", "print")
            e = self.parse_expr()
            self.eat("PUNCT", ";")
            return PrintStmt(e, t.line, t.col)

        if self.match("KW", "return"):
            if not self.in_func:
                raise self.error("statement ('return' is only allowed inside a function)")
            self.eat("KW", "return")
            e = None
            if not self.match("PUNCT", ";"):
                e = self.parse_expr()
            self.eat("PUNCT", ";")
            return ReturnStmt(e, t.line, t.col)

        if self.match("KW", "if"):
            return self.parse_if()

        if self.match("KW", "while"):
            self.eat("KW", "while")
            self.eat("PUNCT", "(")
            cond = self.parse_expr()
            self.eat("PUNCT", ")")
            body = self.parse_block()
            return WhileStmt(cond, body, t.line, t.col)

        if self.match("KW", "for"):
            self.eat("KW", "for")
            self.eat("PUNCT", "(")

            init: Optional[Stmt] = None
            if not self.match("PUNCT", ";"):
                init = self.parse_simple(allow_let=True)
            self.eat("PUNCT", ";")

            cond: Optional[Expr] = None
            if not self.match("PUNCT", ";"):
                cond = self.parse_expr()
            self.eat("PUNCT", ";")

            step: Optional[Stmt] = None
            if not self.match("PUNCT", ")"):
                step = self.parse_simple(allow_let=False)
            self.eat("PUNCT", ")")

            body = self.parse_block()
            return ForStmt(init, cond, step, body, t.line, t.col)

        st = self.parse_simple(allow_let=True)
        self.eat("PUNCT", ";")
        return st

    def parse_if(self) -> IfStmt:
        self.enter()
        t = self.eat("KW", "if")
        self.eat("PUNCT", "(")
        cond = self.parse_expr()
        self.eat("PUNCT", ")")
        then_blk = self.parse_block()
        else_blk = None
        if self.match("KW", "else"):
            self.eat("KW", "else")
            if self.match("KW", "if"):
                else_blk = Block([self.parse_if()])
            else:
                else_blk = self.parse_block()
        self.leave()
        return IfStmt(cond, then_blk, else_blk, t.line, t.col)

    def parse_simple(self, allow_let: bool) -> Stmt:
        """let / assignment / expression, without the trailing ';'."""
        t = self.cur()
        if allow_let and self.match("KW", "let"):
            self.eat("KW", "let")
            name = self.eat("ID").value
            init = None
            if self.match("OP", "="):
                self.eat("OP", "=")
                init = self.parse_expr()
            return LetStmt(name, init, t.line, t.col)

        if t.kind == "ID" and self.peek(1).kind == "OP" and self.peek(1).value == "=":
            name = self.eat("ID").value
            self.eat("OP", "=")
            return Assignment(name, self.parse_expr(), t.line, t.col)

        return ExprStmt(self.parse_expr(), t.line, t.col)

    PRECEDENCE = {
        "==": 1, "!=": 1,
        "<": 2, "<=": 2, ">": 2, ">=": 2,
        "+": 3, "-": 3,
        "*": 4, "/": 4, "%": 4,
        "^": 5,
    }
    RIGHT_ASSOC = {"^"}

    def parse_expr(self, min_prec: int = 1) -> Expr:
        self.enter()
        e = self.parse_unary()

        while True:
            t = self.cur()
            if t.kind != "OP" or t.value not in self.PRECEDENCE:
                break

            prec = self.PRECEDENCE[t.value]
            if prec < min_prec:
                break

            self.eat("OP")
            rhs = self.parse_expr(prec if t.value in self.RIGHT_ASSOC else prec + 1)
            e = BinaryExpr(t.value, e, rhs, t.line, t.col)

        self.leave()
        return e

    def parse_unary(self) -> Expr:
        if self.match("OP", "-") or self.match("OP", "!"):
            t = self.eat("OP")
            # -2^2 is -(2^2)
            operand = self.parse_expr(self.PRECEDENCE["^"])
            return UnaryExpr(t.value, operand, t.line, t.col)
        return self.parse_primary()

    def parse_primary(self) -> Expr:
        t = self.cur()
        if t.kind == "NUMBER":
            self.eat("NUMBER")
            return NumberLiteral(float(t.value), t.line, t.col)
        if self.match("KW", "true") or self.match("KW", "false"):
            self.eat("KW")
            return NumberLiteral(1.0 if t.value == "true" else 0.0, t.line, t.col)
        if t.kind == "ID":
            name = self.eat("ID").value
            if self.match("PUNCT", "("):
                self.eat("PUNCT", "(")
                args: List[Expr] = []
                if not self.match("PUNCT", ")"):
                    while True:
                        args.append(self.parse_expr())
                        if self.match("PUNCT", ","):
                            self.eat("PUNCT", ",")
                            continue
                        break
                self.eat("PUNCT", ")")
                return Call(name, args, t.line, t.col)
            return Identifier(name, t.line, t.col)
        if self.match("PUNCT", "("):
            self.eat("PUNCT", "(")
            e = self.parse_expr()
            self.eat("PUNCT", ")")
            return e
        raise self.error("expression")

def parse(src: str, max_depth: int = DEFAULT_MAX_DEPTH) -> Program:
    return Parser(Lexer(src), max_depth).parse_program()


# ----------------------------
# Symbol resolution
# ----------------------------

@dataclass(frozen=True)
class ExternBinding:
    identifier: str
    offset: int
    value: float = 0.0    # host memory content at `offset`

@dataclass(frozen=True)
class Symbol:
    name: str
    kind: str    # "local", "param" or "extern"
    slot: int    # frame slot, or memory offset for externs

def bind_externs(bindings: Iterable[ExternBinding]) -> Dict[str, ExternBinding]:
    table: Dict[str, ExternBinding] = {}
    by_offset: Dict[int, ExternBinding] = {}
    for b in bindings:
        if b.identifier in table:
            raise DuplicateSymbol(f"Extern binding {b.identifier!r} supplied twice")
        other = by_offset.get(b.offset)
        if other is not None and other.value != b.value:
            raise DuplicateSymbol(
                f"Extern bindings {other.identifier!r} and {b.identifier!r} share offset {b.offset} "
                f"with different values")
        table[b.identifier] = b
        by_offset[b.offset] = b
    return table

def extern_memory(bindings: Iterable[ExternBinding]) -> Mapping[int, float]:
    """Read-only view of host memory: offset -> value."""
    return MappingProxyType({b.offset: float(b.value) for b in bind_externs(bindings).values()})

class Resolver:
    def __init__(self, externs: Mapping[str, ExternBinding]):
        self.externs = externs
        self.funcs: Dict[str, FunctionDecl] = {}
        self.scopes: List[Dict[str, Symbol]] = []
        self.next_slot = 0

    def resolve(self, prog: Program) -> Program:
        for st in prog.stmts:
            if isinstance(st, FunctionDecl):
                if st.name in self.funcs:
                    raise DuplicateSymbol(f"Function {st.name!r} already declared", st.line, st.col)
                self.funcs[st.name] = st

        self.scopes = [{}]
        self.next_slot = 0
        for st in prog.stmts:
            if isinstance(st, FunctionDecl):
                self.resolve_func(st)
            else:
                self.resolve_stmt(st)
        prog.frame_size = self.next_slot
        return prog

    def resolve_func(self, f: FunctionDecl) -> None:
        saved = (self.scopes, self.next_slot)
        # only externs cross into another frame
        visible = {n: s for n, s in self.scopes[0].items() if s.kind == "extern"}
        self.scopes = [visible, {}]
        self.next_slot = 0
        for p in f.params:
            self.declare(p, "param", f.line, f.col)
        for st in f.body.stmts:
            self.resolve_stmt(st)
        f.frame_size = self.next_slot
        self.scopes, self.next_slot = saved

    def declare(self, name: str, kind: str, line: int, col: int, slot: Optional[int] = None) -> Symbol:
        scope = self.scopes[-1]
        if name in scope:
            raise DuplicateSymbol(f"{name!r} already declared in this scope", line, col)
        if slot is None:
            slot = self.next_slot
            self.next_slot += 1
        sym = Symbol(name, kind, slot)
        scope[name] = sym
        return sym

    def lookup(self, name: str, line: int, col: int) -> Symbol:
        for scope in reversed(self.scopes):
            if name in scope:
                return scope[name]
        raise UndeclaredIdentifier(f"Undeclared identifier {name!r}", line, col)

    def resolve_block(self, b: Block) -> None:
        self.scopes.append({})
        for st in b.stmts:
            self.resolve_stmt(st)
        self.scopes.pop()

    def resolve_stmt(self, st: Stmt) -> None:
        if isinstance(st, LetStmt):
            if st.init is not None:
                self.resolve_expr(st.init)
            st.symbol = self.declare(st.name, "local", st.line, st.col)
            return

        if isinstance(st, ExternDecl):
            binding = self.externs.get(st.name)
            if binding is None:
                raise UnboundExtern(f"No extern binding supplied for {st.name!r}", st.line, st.col)
            st.symbol = self.declare(st.name, "extern", st.line, st.col, slot=binding.offset)
            return

        if isinstance(st, Assignment):
            self.resolve_expr(st.value)
            sym = self.lookup(st.name, st.line, st.col)
            if sym.kind == "extern":
                raise ImmutableExtern(f"Cannot assign to extern {st.name!r}", st.line, st.col)
            st.symbol = sym
            return

        if isinstance(st, (PrintStmt, ExprStmt)):
            self.resolve_expr(st.expr)
            return

        if isinstance(st, ReturnStmt):
            if st.expr is not None:
                self.resolve_expr(st.expr)
            return

        if isinstance(st, Block):
            self.resolve_block(st)
            return

        if isinstance(st, ForStmt):
            self.scopes.append({})
            if st.init is not None:
                self.resolve_stmt(st.init)
            if st.cond is not None:
                self.resolve_expr(st.cond)
            if st.step is not None:
                self.resolve_stmt(st.step)
            self.resolve_block(st.body)
            self.scopes.pop()
            return

        if isinstance(st, WhileStmt):
            self.resolve_expr(st.cond)
            self.resolve_block(st.body)
            return

        if isinstance(st, IfStmt):
            self.resolve_expr(st.cond)
            self.resolve_block(st.then_blk)
            if st.else_blk is not None:
                self.resolve_block(st.else_blk)
            return

        raise InternalError(f"Unexpected statement node: {type(st).__name__}")

    def resolve_expr(self, e: Expr) -> None:
        if isinstance(e, NumberLiteral):
            return
        if isinstance(e, Identifier):
            e.symbol = self.lookup(e.name, e.line, e.col)
            return
        if isinstance(e, UnaryExpr):
            self.resolve_expr(e.operand)
            return
        if isinstance(e, BinaryExpr):
            first, chain = left_spine(e)
            self.resolve_expr(first)
            for b in chain:
                self.resolve_expr(b.rhs)
            return
        if isinstance(e, Call):
            f = self.funcs.get(e.name)
            if f is None:
                raise UndeclaredFunction(f"Undeclared function {e.name!r}", e.line, e.col)
            if len(e.args) != len(f.params):
                raise ArityMismatch(
                    f"{e.name}() takes {len(f.params)} argument(s), {len(e.args)} given", e.line, e.col)
            for a in e.args:
                self.resolve_expr(a)
            e.func = f
            return
        raise InternalError(f"Unexpected expression node: {type(e).__name__}")


# ----------------------------
# Instructions
# ----------------------------

class Op(enum.Enum):
    PUSH = "PUSH"      # arg: immediate value
    LOAD = "LOAD"      # arg: frame slot
    STORE = "STORE"    # arg: frame slot
    LOADX = "LOADX"    # arg: extern memory offset
    POP = "POP"
    ADD = "ADD"
    SUB = "SUB"
    MUL = "MUL"
    DIV = "DIV"
    MOD = "MOD"
    POW = "POW"
    NEG = "NEG"
    NOT = "NOT"
    LT = "LT"
    LE = "LE"
    GT = "GT"
    GE = "GE"
    EQ = "EQ"
    NE = "NE"
    JMP = "JMP"        # arg: address
    JZ = "JZ"          # arg: address, taken when the popped value is 0
    CALL = "CALL"      # arg: function entry address
    RET = "RET"
    PRINT = "PRINT"
    HALT = "HALT"

# (consumed, produced); CALL depends on the callee
STACK_EFFECT: Dict[Op, Tuple[int, int]] = {
    Op.PUSH: (0, 1), Op.LOAD: (0, 1), Op.STORE: (1, 0), Op.LOADX: (0, 1), Op.POP: (1, 0),
    Op.ADD: (2, 1), Op.SUB: (2, 1), Op.MUL: (2, 1), Op.DIV: (2, 1), Op.MOD: (2, 1), Op.POW: (2, 1),
    Op.NEG: (1, 1), Op.NOT: (1, 1),
    Op.LT: (2, 1), Op.LE: (2, 1), Op.GT: (2, 1), Op.GE: (2, 1), Op.EQ: (2, 1), Op.NE: (2, 1),
    Op.JMP: (0, 0), Op.JZ: (1, 0), Op.RET: (1, 0), Op.PRINT: (1, 0), Op.HALT: (0, 0),
}

ARG_TYPES: Dict[Op, Callable[[str], Union[int, float]]] = {
    Op.PUSH: float, Op.LOAD: int, Op.STORE: int, Op.LOADX: int,
    Op.JMP: int, Op.JZ: int, Op.CALL: int,
}

def _div(a: float, b: float) -> float:
    if b == 0.0:
        raise ZeroDivisionError("division by zero")
    return a / b

def _mod(a: float, b: float) -> float:
    if b == 0.0:
        raise ZeroDivisionError("modulo by zero")
    return math.fmod(a, b)

BINARY_FUNCS: Dict[Op, Callable[[float, float], float]] = {
    Op.ADD: lambda a, b: a + b,
    Op.SUB: lambda a, b: a - b,
    Op.MUL: lambda a, b: a * b,
    Op.DIV: _div,
    Op.MOD: _mod,
    Op.POW: math.pow,
    Op.LT: lambda a, b: 1.0 if a < b else 0.0,
    Op.LE: lambda a, b: 1.0 if a <= b else 0.0,
    Op.GT: lambda a, b: 1.0 if a > b else 0.0,
    Op.GE: lambda a, b: 1.0 if a >= b else 0.0,
    Op.EQ: lambda a, b: 1.0 if a == b else 0.0,
    Op.NE: lambda a, b: 1.0 if a != b else 0.0,
}

UNARY_FUNCS: Dict[Op, Callable[[float], float]] = {
    Op.NEG: lambda a: -a,
    Op.NOT: lambda a: 1.0 if a == 0.0 else 0.0,
}

BINARY_OPS = {
    "+": Op.ADD, "-": Op.SUB, "*": Op.MUL, "/": Op.DIV, "%": Op.MOD, "^": Op.POW,
    "<": Op.LT, "<=": Op.LE, ">": Op.GT, ">=": Op.GE, "==": Op.EQ, "!=": Op.NE,
}

UNARY_OPS = {"-": Op.NEG, "!": Op.NOT}

@dataclass(frozen=True)
class Instr:
    op: Op
    arg: Optional[Union[int, float]] = None

    def __str__(self) -> str:
        if self.arg is None:
            return self.op.value
        if self.op is Op.PUSH:
            return f"{self.op.value} {float(self.arg)!r}"
        return f"{self.op.value} {self.arg}"

@dataclass(frozen=True)
class FunctionInfo:
    name: str
    entry: int
    arity: int

@dataclass
class CompiledProgram:
    code: List[Instr]
    functions: Dict[str, FunctionInfo] = field(default_factory=dict)

    def function_at(self, entry: int) -> Optional[FunctionInfo]:
        for f in self.functions.values():
            if f.entry == entry:
                return f
        return None

    def listing(self) -> str:
        labels = {f.entry: f for f in self.functions.values()}
        lines: List[str] = []
        for addr, ins in enumerate(self.code):
            if addr in labels:
                f = labels[addr]
                lines.append(f"# fn {f.name}/{f.arity}")
            lines.append(f"{addr:04d}  {ins}")
        return "\n".join(lines) + "\n"


# ----------------------------
# Constant folding
# ----------------------------

def fold_expr(e: Expr) -> Expr:
    """Replace literal-only subexpressions by their value. Faulting folds are left for runtime."""
    if isinstance(e, UnaryExpr):
        operand = fold_expr(e.operand)
        if isinstance(operand, NumberLiteral):
            return NumberLiteral(UNARY_FUNCS[UNARY_OPS[e.op]](operand.value), e.line, e.col)
        return UnaryExpr(e.op, operand, e.line, e.col)

    if isinstance(e, BinaryExpr):
        first, chain = left_spine(e)
        acc = fold_expr(first)
        for b in chain:
            acc = fold_binary(b, acc, fold_expr(b.rhs))
        return acc

    if isinstance(e, Call):
        return Call(e.name, [fold_expr(a) for a in e.args], e.line, e.col, func=e.func)

    return e

def fold_binary(e: BinaryExpr, lhs: Expr, rhs: Expr) -> Expr:
    if isinstance(lhs, NumberLiteral) and isinstance(rhs, NumberLiteral):
        try:
            v = BINARY_FUNCS[BINARY_OPS[e.op]](lhs.value, rhs.value)
        except (ArithmeticError, ValueError):
            pass
        else:
            if math.isfinite(v):
                return NumberLiteral(v, e.line, e.col)
    return BinaryExpr(e.op, lhs, rhs, e.line, e.col)


# ----------------------------
# Codegen (stack VM)
# ----------------------------

class Codegen:
    def __init__(self, prog: Program, fold: bool = True):
        self.prog = prog
        self.fold = fold
        self.code: List[Instr] = []
        self.functions: Dict[str, FunctionInfo] = {}
        self.call_fixups: List[Tuple[int, str]] = []

    def emit(self, op: Op, arg: Optional[Union[int, float]] = None) -> int:
        self.code.append(Instr(op, arg))
        return len(self.code) - 1

    def here(self) -> int:
        return len(self.code)

    def patch(self, addr: int, target: int) -> None:
        self.code[addr] = Instr(self.code[addr].op, target)

    def gen(self) -> CompiledProgram:
        funcs: List[FunctionDecl] = []
        for st in self.prog.stmts:
            if isinstance(st, FunctionDecl):
                funcs.append(st)
            else:
                self.gen_stmt(st)
        self.emit(Op.HALT)

        for f in funcs:
            self.gen_func(f)

        for addr, name in self.call_fixups:
            self.patch(addr, self.functions[name].entry)

        return CompiledProgram(self.code, self.functions)

    def gen_func(self, f: FunctionDecl) -> None:
        self.functions[f.name] = FunctionInfo(f.name, self.here(), len(f.params))
        # arguments were pushed left to right
        for slot in reversed(range(len(f.params))):
            self.emit(Op.STORE, slot)
        self.gen_block(f.body)
        self.emit(Op.PUSH, 0.0)
        self.emit(Op.RET)

    def gen_block(self, b: Block) -> None:
        for st in b.stmts:
            self.gen_stmt(st)

    def gen_stmt(self, st: Stmt) -> None:
        if isinstance(st, LetStmt):
            if st.init is None:
                self.emit(Op.PUSH, 0.0)
            else:
                self.gen_expr(st.init)
            self.emit(Op.STORE, st.symbol.slot)
            return

        if isinstance(st, ExternDecl):
            return

        if isinstance(st, Assignment):
            self.gen_expr(st.value)
            self.emit(Op.STORE, st.symbol.slot)
            return

        if isinstance(st, PrintStmt):
            self.gen_expr(st.expr)
            self.emit(Op.PRINT)
            return

        if isinstance(st, ExprStmt):
            self.gen_expr(st.expr)
            self.emit(Op.POP)
            return

        if isinstance(st, ReturnStmt):
            if st.expr is None:
                self.emit(Op.PUSH, 0.0)
            else:
                self.gen_expr(st.expr)
            self.emit(Op.RET)
            return

        if isinstance(st, Block):
            self.gen_block(st)
            return

        if isinstance(st, ForStmt):
            if st.init is not None:
                self.gen_stmt(st.init)
            start = self.here()
            exit_jump = None
            if st.cond is not None:
                self.gen_expr(st.cond)
                exit_jump = self.emit(Op.JZ)
            self.gen_block(st.body)
            if st.step is not None:
                self.gen_stmt(st.step)
            self.emit(Op.JMP, start)
            if exit_jump is not None:
                self.patch(exit_jump, self.here())
            return

        if isinstance(st, WhileStmt):
            start = self.here()
            self.gen_expr(st.cond)
            exit_jump = self.emit(Op.JZ)
            self.gen_block(st.body)
            self.emit(Op.JMP, start)
            self.patch(exit_jump, self.here())
            return

        if isinstance(st, IfStmt):
            self.gen_expr(st.cond)
            else_jump = self.emit(Op.JZ)
            self.gen_block(st.then_blk)
            if st.else_blk is None:
                self.patch(else_jump, self.here())
            else:
                end_jump = self.emit(Op.JMP)
                self.patch(else_jump, self.here())
                self.gen_block(st.else_blk)
                self.patch(end_jump, self.here())
            return

        raise InternalError(f"Unsupported statement node: {type(st).__name__}")

    def gen_expr(self, e: Expr) -> None:
        if self.fold:
            e = fold_expr(e)
        self.gen_value(e)

    def gen_value(self, e: Expr) -> None:
        if isinstance(e, NumberLiteral):
            self.emit(Op.PUSH, float(e.value))
            return

        if isinstance(e, Identifier):
            sym = e.symbol
            if sym is None:
                raise InternalError(f"Unresolved identifier {e.name!r}")
            self.emit(Op.LOADX if sym.kind == "extern" else Op.LOAD, sym.slot)
            return

        if isinstance(e, UnaryExpr):
            self.gen_value(e.operand)
            self.emit(UNARY_OPS[e.op])
            return

        if isinstance(e, BinaryExpr):
            first, chain = left_spine(e)
            self.gen_value(first)
            for b in chain:
                self.gen_value(b.rhs)
                self.emit(BINARY_OPS[b.op])
            return

        if isinstance(e, Call):
            for a in e.args:
                self.gen_value(a)
            self.call_fixups.append((self.emit(Op.CALL), e.name))
            return

        raise InternalError(f"Unsupported expression node: {type(e).__name__}")


# ----------------------------
# Stack analysis
# ----------------------------

@dataclass(frozen=True)
class StackEstimate:
    size: int
    exact: bool

class StackAnalyzer:
    """Follows every path of the final code and reports the deepest operand + call stack.

    Each block (the top level, each function) is walked from its entry with a
    depth per address; branches are followed both ways and must agree where
    they meet. A CALL reached at operand depth d costs d + 1 + peak(callee).
    """

    def __init__(self, program: CompiledProgram, alignment: int = 1,
                 fallback: int = DEFAULT_FALLBACK_STACK_SIZE):
        self.program = program
        self.alignment = max(1, alignment)
        self.fallback = fallback
        self.by_entry = {f.entry: f for f in program.functions.values()}
        self.summaries: Dict[int, Tuple[int, int]] = {}   # entry -> (peak, depth at RET)
        self.active: Set[int] = set()
        self.exact = True

    def estimate(self) -> StackEstimate:
        peak, _ = self.walk(0, floor=0)
        if not self.exact:
            log.warning("recursive calls: stack size cannot be bounded, using %d", self.fallback)
            return StackEstimate(self.align(self.fallback), False)
        return StackEstimate(self.align(peak), True)

    def align(self, n: int) -> int:
        return -(-n // self.alignment) * self.alignment

    def call_summary(self, f: FunctionInfo) -> Tuple[int, int]:
        if f.entry in self.summaries:
            return self.summaries[f.entry]
        if f.entry in self.active:
            self.exact = False
            return 0, 1 - f.arity

        self.active.add(f.entry)
        peak, ret_depth = self.walk(f.entry, floor=-f.arity)
        self.active.discard(f.entry)

        if ret_depth is None:
            # never returns
            ret_depth = 1 - f.arity
        elif ret_depth != 1 - f.arity:
            raise InternalError(f"{f.name} returns with depth {ret_depth}, expected {1 - f.arity}")
        self.summaries[f.entry] = (peak, ret_depth)
        return peak, ret_depth

    def walk(self, entry: int, floor: int) -> Tuple[int, Optional[int]]:
        code = self.program.code
        depth_at: Dict[int, int] = {entry: 0}
        work = [entry]
        peak = 0
        ret_depth: Optional[int] = None

        while work:
            pc = work.pop()
            if not 0 <= pc < len(code):
                raise InternalError(f"Control reaches address {pc} outside the program")
            depth = depth_at[pc]
            ins = code[pc]

            if ins.op is Op.HALT:
                continue

            if ins.op is Op.RET:
                if depth - 1 < floor:
                    raise InternalError(f"Stack underflow at {pc}")
                if ret_depth is None:
                    ret_depth = depth
                elif ret_depth != depth:
                    raise InternalError(f"Inconsistent return depth at {pc}: {depth} != {ret_depth}")
                continue

            if ins.op is Op.CALL:
                callee = self.by_entry.get(ins.arg)
                if callee is None:
                    raise InternalError(f"CALL at {pc} targets {ins.arg}, which is not a function entry")
                if depth - callee.arity < floor:
                    raise InternalError(f"Stack underflow at {pc}")
                sub_peak, effect = self.call_summary(callee)
                peak = max(peak, depth + 1 + sub_peak)
                after = depth + effect
            else:
                consume, produce = STACK_EFFECT[ins.op]
                if depth - consume < floor:
                    raise InternalError(f"Stack underflow at {pc}")
                after = depth - consume + produce

            peak = max(peak, after)

            if ins.op is Op.JMP:
                succs = [ins.arg]
            elif ins.op is Op.JZ:
                succs = [pc + 1, ins.arg]
            else:
                succs = [pc + 1]

            for nxt in succs:
                if nxt in depth_at:
                    if depth_at[nxt] != after:
                        raise InternalError(
                            f"Stack depth mismatch at {nxt}: {depth_at[nxt]} != {after} (from {pc})")
                else:
                    depth_at[nxt] = after
                    work.append(nxt)

        return peak, ret_depth

def analyze_stack(program: CompiledProgram, alignment: int = 1,
                  fallback: int = DEFAULT_FALLBACK_STACK_SIZE) -> StackEstimate:
    return StackAnalyzer(program, alignment, fallback).estimate()


# ----------------------------
# Interpreter
# ----------------------------

class Interpreter:
    def __init__(self, program: CompiledProgram, memory: Mapping[int, float],
                 step_limit: int = DEFAULT_STEP_LIMIT, max_call_depth: int = DEFAULT_MAX_CALL_DEPTH):
        self.program = program
        self.memory = memory
        self.step_limit = step_limit
        self.max_call_depth = max_call_depth
        self.steps = 0

    def run(self) -> List[float]:
        code = self.program.code
        stack: List[float] = []
        frames: List[List[float]] = [[]]
        returns: List[int] = []
        out: List[float] = []
        pc = 0
        steps = 0

        while True:
            if steps >= self.step_limit:
                self.steps = steps
                raise ExecutionTimeout(steps, out)
            if not 0 <= pc < len(code):
                raise InternalError(f"Program counter {pc} outside the program")
            ins = code[pc]
            op = ins.op
            steps += 1

            try:
                if op is Op.PUSH:
                    stack.append(ins.arg)
                elif op is Op.LOAD:
                    stack.append(frames[-1][ins.arg])
                elif op is Op.STORE:
                    frame = frames[-1]
                    if ins.arg >= len(frame):
                        frame.extend([0.0] * (ins.arg + 1 - len(frame)))
                    frame[ins.arg] = stack.pop()
                elif op is Op.LOADX:
                    if ins.arg not in self.memory:
                        raise InternalError(f"No extern memory at offset {ins.arg}")
                    stack.append(self.memory[ins.arg])
                elif op in BINARY_FUNCS:
                    b = stack.pop()
                    a = stack.pop()
                    stack.append(BINARY_FUNCS[op](a, b))
                elif op in UNARY_FUNCS:
                    stack.append(UNARY_FUNCS[op](stack.pop()))
                elif op is Op.JMP:
                    pc = ins.arg
                    continue
                elif op is Op.JZ:
                    if stack.pop() == 0.0:
                        pc = ins.arg
                        continue
                elif op is Op.CALL:
                    if len(returns) >= self.max_call_depth:
                        raise RuntimeFault("call-depth-exceeded", pc, out)
                    returns.append(pc + 1)
                    frames.append([])
                    pc = ins.arg
                    continue
                elif op is Op.RET:
                    # return value stays on the operand stack
                    frames.pop()
                    pc = returns.pop()
                    continue
                elif op is Op.PRINT:
                    out.append(float(stack.pop()))
                elif op is Op.POP:
                    stack.pop()
                elif op is Op.HALT:
                    break
                else:
                    raise InternalError(f"Unknown opcode {op} at {pc}")
            except ZeroDivisionError:
                raise RuntimeFault("division-by-zero", pc, out) from None
            except OverflowError:
                raise RuntimeFault("overflow", pc, out) from None
            except ValueError:
                raise RuntimeFault("domain-error", pc, out) from None
            except IndexError:
                raise InternalError(f"Stack or frame underflow at {pc}") from None
            pc += 1

        self.steps = steps
        return out


# ----------------------------
# Listing loader
# ----------------------------

LISTING_RE = re.compile(r"^(\d+)\s+([A-Z]+)(?:\s+(\S+))?$", re.ASCII)
FN_LABEL_RE = re.compile(r"^#\s*fn\s+([A-Za-z_]\w*)/(\d+)$", re.ASCII)

def parse_listing(text: str) -> CompiledProgram:
    """Rebuild a CompiledProgram from the text produced by CompiledProgram.listing()."""
    code: List[Instr] = []
    functions: Dict[str, FunctionInfo] = {}
    pending: Optional[Tuple[str, int]] = None

    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            m = FN_LABEL_RE.match(line)
            if m:
                pending = (m.group(1), int(m.group(2)))
            continue

        m = LISTING_RE.match(line)
        if not m:
            raise ListingError(f"line {lineno}: cannot parse {raw!r}")
        addr, mnemonic, arg_text = m.groups()
        if int(addr) != len(code):
            raise ListingError(f"line {lineno}: expected address {len(code)}, got {addr}")
        try:
            op = Op[mnemonic]
        except KeyError:
            raise ListingError(f"line {lineno}: unknown instruction {mnemonic!r}") from None

        arg: Optional[Union[int, float]] = None
        if op in ARG_TYPES:
            if arg_text is None:
                raise ListingError(f"line {lineno}: {mnemonic} needs an operand")
            try:
                arg = ARG_TYPES[op](arg_text)
            except ValueError:
                raise ListingError(f"line {lineno}: bad operand {arg_text!r}") from None
        elif arg_text is not None:
            raise ListingError(f"line {lineno}: {mnemonic} takes no operand")

        if pending is not None:
            name, arity = pending
            if name in functions:
                raise ListingError(f"line {lineno}: function {name!r} defined twice")
            functions[name] = FunctionInfo(name, len(code), arity)
            pending = None
        code.append(Instr(op, arg))

    entries = {f.entry for f in functions.values()}
    for addr, ins in enumerate(code):
        if ins.op in (Op.JMP, Op.JZ) and not 0 <= ins.arg < len(code):
            raise ListingError(f"address {addr}: jump target {ins.arg} out of range")
        if ins.op is Op.CALL and ins.arg not in entries:
            raise ListingError(f"address {addr}: call target {ins.arg} is not a function entry")
    if not code:
        raise ListingError("empty listing")
    return CompiledProgram(code, functions)


# ----------------------------
# Compiler facade
# ----------------------------

@dataclass
class CompileResult:
    code_text: str
    stack_size: int
    outputs: List[float]
    program: CompiledProgram
    stack_size_exact: bool = True
    executed: bool = False
    error: Optional[ExecutionError] = None

    @property
    def complete(self) -> bool:
        """True when the program ran to HALT and `outputs` is the full sequence."""
        return self.executed and self.error is None

class Compiler:
    def __init__(self, config: Optional[CompilerConfig] = None):
        self.config = config or CompilerConfig()

    def compile(self, source: str, externs: Iterable[ExternBinding] = ()) -> CompileResult:
        cfg = self.config
        externs = list(externs)
        table = bind_externs(externs)

        prog = Parser(Lexer(source), cfg.max_depth).parse_program()
        log.debug("parsed %d top-level statements", len(prog.stmts))

        Resolver(table).resolve(prog)
        program = Codegen(prog, fold=cfg.fold_constants).gen()
        log.debug("generated %d instructions, %d functions", len(program.code), len(program.functions))

        estimate = analyze_stack(program, cfg.stack_alignment, cfg.fallback_stack_size)
        log.debug("recommended stack size %d (exact=%s)", estimate.size, estimate.exact)

        result = CompileResult(program.listing(), estimate.size, [], program, estimate.exact)
        if cfg.eager_execute:
            result.executed = True
            try:
                result.outputs = self.run(program, externs)
            except ExecutionError as e:
                log.debug("execution stopped: %s", e)
                result.outputs = e.outputs
                result.error = e
        return result

    def run(self, program: CompiledProgram, externs: Iterable[ExternBinding] = ()) -> List[float]:
        vm = Interpreter(program, extern_memory(externs), self.config.step_limit, self.config.max_call_depth)
        out = vm.run()
        log.debug("executed %d steps, %d values printed", vm.steps, len(out))
        return out

def compile(source: str, externs: Iterable[ExternBinding] = (),
            config: Optional[CompilerConfig] = None) -> CompileResult:
    return Compiler(config).compile(source, externs)


# ----------------------------
# Driver
# ----------------------------

HELP = """\
Usage:
  python3 barracuda.py [-x name=offset[:value]]... [-s steps] [-o listing] [-n] [-v] program.bc
  python3 barracuda.py -l [-x name=offset[:value]]... [-s steps] [-v] listing.bct
"""

EXTERN_ARG_RE = re.compile(r"([A-Za-z_]\w*)=(\d+)(?::(\S+))?", re.ASCII)

def parse_extern_arg(text: str) -> ExternBinding:
    m = EXTERN_ARG_RE.fullmatch(text)
    if not m:
        raise ValueError(f"bad extern binding {text!r}, expected name=offset[:value]")
    value = float(m.group(3)) if m.group(3) is not None else 0.0
    return ExternBinding(m.group(1), int(m.group(2)), value)

def main(argv: List[str]) -> int:
    import getopt
    try:
        opts, args = getopt.getopt(argv[1:], "x:s:o:nlv")
    except getopt.GetoptError as e:
        print(f"barracuda.py: {e}", file=sys.stderr)
        print(HELP, file=sys.stderr)
        return 2

    config = CompilerConfig()
    externs: List[ExternBinding] = []
    out_path: Optional[str] = None
    listing_mode = False
    for flag, val in opts:
        if flag == "-x":
            try:
                externs.append(parse_extern_arg(val))
            except ValueError as e:
                print(f"barracuda.py: {e}", file=sys.stderr)
                return 2
        elif flag == "-s":
            if not val.isdigit() or int(val) <= 0:
                print(f"barracuda.py: step limit must be a positive integer, got {val!r}", file=sys.stderr)
                return 2
            config.step_limit = int(val)
        elif flag == "-o":
            out_path = val
        elif flag == "-n":
            config.eager_execute = False
        elif flag == "-l":
            listing_mode = True
        elif flag == "-v":
            logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    if len(args) != 1:
        print(HELP, file=sys.stderr)
        return 2

    path = Path(args[0])
    if not path.exists():
        print(f"barracuda.py: file not found: {path}", file=sys.stderr)
        return 1

    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        print(f"barracuda.py: {path} is not valid UTF-8: {e}", file=sys.stderr)
        return 1

    compiler = Compiler(config)

    if listing_mode:
        try:
            outputs = compiler.run(parse_listing(text), externs)
        except (ListingError, CompileError) as e:
            print(f"barracuda.py: {e}", file=sys.stderr)
            return 1
        except ExecutionError as e:
            for v in e.outputs:
                print(v)
            print(f"barracuda.py: {type(e).__name__}: {e}", file=sys.stderr)
            return 3
        for v in outputs:
            print(v)
        return 0

    try:
        result = compiler.compile(text, externs)
    except CompileError as e:
        print(f"barracuda.py: {e.kind}: {e}", file=sys.stderr)
        return 1

    if out_path == "-":
        sys.stdout.write(result.code_text)
    elif out_path is not None:
        Path(out_path).write_text(result.code_text, encoding="utf-8")

    for v in result.outputs:
        print(v)
    print(f"stack size: {result.stack_size}", file=sys.stderr)

    if result.error is not None:
        print(f"barracuda.py: {type(result.error).__name__}: {result.error}", file=sys.stderr)
        return 3
    return 0

if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
