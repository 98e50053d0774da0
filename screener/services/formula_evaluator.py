"""
Formula Expression Evaluator

Parses and evaluates the spreadsheet-style formula language used by signal
formulas, e.g.

    IF(AND(Q12>=20%, Q15>=20%, ISNUMBER(P12)), "BUY", "No Signal")

Evaluation is split into two phases:
1. compile_formula() tokenizes and parses the text into an expression tree.
   Every syntax problem (unexpected character, unbalanced parentheses,
   unknown function, wrong argument count, trailing input) raises
   FormulaSyntaxError here, before any data is looked at.
2. CompiledFormula.evaluate() walks the tree against a variable environment.
   Evaluation never raises for well-formed formulas: unresolved identifiers
   become the MISSING marker, which propagates through arithmetic and
   comparisons, and division by zero follows IEEE float rules.

Values are one of: float, str, bool, or MISSING.

Precedence, lowest to highest:
    comparison  = <> != > < >= <=   (one per expression level, no chaining)
    additive    + -
    multiplicative  * /
    unary       - +
    postfix     %                  (20% == 0.2)
    primary     literal, identifier, Metric[Qn] reference, FUNC(...), ( ... )

AND, OR and NOT are functions, not operators. Function names are
case-insensitive; identifiers are case-sensitive.
"""

import logging
import math
import re
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from screener.models.schemas import FormulaValidation


logger = logging.getLogger(__name__)


# Tolerance for numeric =, <>, >= and <= so that percent arithmetic such as
# 0.1 + 0.2 = 30% compares equal
EPSILON = 1e-7

# Result of an IF whose condition is false and which has no else-branch
DEFAULT_ELSE = "No Signal"


# =============================================================================
# Values
# =============================================================================


class _Missing:
    """Marker for an unresolved or non-numeric value; distinct from 0 and FALSE."""

    _instance: Optional["_Missing"] = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

FormulaValue = Union[float, str, bool, _Missing]


class FormulaSyntaxError(ValueError):
    """
    Raised when formula text cannot be parsed.

    Attributes:
        message: Human-readable description without the position suffix.
        position: Zero-based character offset where the problem was detected.
    """

    def __init__(self, message: str, position: Optional[int] = None):
        self.message = message
        self.position = position
        if position is None:
            super().__init__(message)
        else:
            super().__init__(f"{message} (at position {position})")


def is_number(value: Any) -> bool:
    """True for floats that are not NaN; booleans are not numbers."""
    return isinstance(value, float) and not math.isnan(value)


def describe_value_type(value: FormulaValue) -> str:
    """Type tag used in API responses: number, text, boolean or missing."""
    if value is MISSING:
        return "missing"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, float):
        return "number"
    return "text"


def coerce_environment_value(raw: Any) -> FormulaValue:
    """Convert a value supplied by an environment into a formula value."""
    if raw is None or raw is MISSING:
        return MISSING
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float, Decimal)):
        return float(raw)
    if isinstance(raw, str):
        return raw
    return MISSING


def _to_number(value: FormulaValue) -> Union[float, _Missing]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, float):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return MISSING
    return MISSING


def _to_condition(value: FormulaValue) -> Union[bool, _Missing]:
    if value is MISSING:
        return MISSING
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return value != 0 and not math.isnan(value)
    text = value.strip().upper()
    if text in ("", "FALSE"):
        return False
    return True


def _divide(left: float, right: float) -> float:
    if right != 0:
        return left / right
    if left == 0 or math.isnan(left):
        return math.nan
    return math.copysign(math.inf, left) * math.copysign(1.0, right)


def _numbers_equal(left: float, right: float) -> bool:
    return left == right or abs(left - right) < EPSILON


def _compare(op: str, left: FormulaValue, right: FormulaValue) -> Union[bool, _Missing]:
    if left is MISSING or right is MISSING:
        return MISSING

    if isinstance(left, float) and isinstance(right, float):
        equal = _numbers_equal(left, right)
        if op == "=":
            return equal
        if op == "<>":
            return not equal
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left > right or equal
        return left < right or equal

    same_kind = type(left) is type(right)
    if op == "=":
        return same_kind and left == right
    if op == "<>":
        return not (same_kind and left == right)
    if not same_kind:
        return False
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    return left <= right


# =============================================================================
# Built-in Functions
# =============================================================================


def _fn_and(args: Sequence[FormulaValue]) -> FormulaValue:
    saw_missing = False
    for arg in args:
        condition = _to_condition(arg)
        if condition is MISSING:
            saw_missing = True
        elif not condition:
            return False
    return MISSING if saw_missing else True


def _fn_or(args: Sequence[FormulaValue]) -> FormulaValue:
    saw_missing = False
    for arg in args:
        condition = _to_condition(arg)
        if condition is MISSING:
            saw_missing = True
        elif condition:
            return True
    return MISSING if saw_missing else False


def _fn_not(args: Sequence[FormulaValue]) -> FormulaValue:
    condition = _to_condition(args[0])
    if condition is MISSING:
        return MISSING
    return not condition


def _fn_isnumber(args: Sequence[FormulaValue]) -> FormulaValue:
    return is_number(args[0])


def _fn_isblank(args: Sequence[FormulaValue]) -> FormulaValue:
    return args[0] is MISSING or args[0] == ""


def _numeric_args(args: Sequence[FormulaValue]) -> Optional[List[float]]:
    numbers = [_to_number(arg) for arg in args]
    if any(number is MISSING for number in numbers):
        return None
    return numbers  # type: ignore[return-value]


def _fn_min(args: Sequence[FormulaValue]) -> FormulaValue:
    numbers = _numeric_args(args)
    if numbers is None:
        return MISSING
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return min(numbers)


def _fn_max(args: Sequence[FormulaValue]) -> FormulaValue:
    numbers = _numeric_args(args)
    if numbers is None:
        return MISSING
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return max(numbers)


def _fn_abs(args: Sequence[FormulaValue]) -> FormulaValue:
    number = _to_number(args[0])
    if number is MISSING:
        return MISSING
    return abs(number)


def _fn_sum(args: Sequence[FormulaValue]) -> FormulaValue:
    numbers = _numeric_args(args)
    if numbers is None:
        return MISSING
    return sum(numbers, 0.0)


def _fn_average(args: Sequence[FormulaValue]) -> FormulaValue:
    total = _fn_sum(args)
    if total is MISSING:
        return MISSING
    return total / len(args)


def _round_to_digits(args: Sequence[FormulaValue], rounding: str) -> FormulaValue:
    # Quantized on the decimal representation, so 2.675 rounds as written
    number = _to_number(args[0])
    digits = _to_number(args[1])
    if number is MISSING or digits is MISSING or not math.isfinite(digits):
        return MISSING
    if not math.isfinite(number):
        return number
    try:
        quantum = Decimal(1).scaleb(-int(digits))
        return float(Decimal(repr(number)).quantize(quantum, rounding=rounding))
    except InvalidOperation:
        return number


def _fn_round(args: Sequence[FormulaValue]) -> FormulaValue:
    # Half away from zero: ROUND(2.675, 2) == 2.68
    return _round_to_digits(args, ROUND_HALF_UP)


def _fn_roundup(args: Sequence[FormulaValue]) -> FormulaValue:
    # Towards +infinity: ROUNDUP(-1.25, 1) == -1.2
    return _round_to_digits(args, ROUND_CEILING)


def _fn_rounddown(args: Sequence[FormulaValue]) -> FormulaValue:
    return _round_to_digits(args, ROUND_FLOOR)


def _fn_sqrt(args: Sequence[FormulaValue]) -> FormulaValue:
    number = _to_number(args[0])
    if number is MISSING or number < 0:
        return MISSING
    return math.sqrt(number)


def _fn_power(args: Sequence[FormulaValue]) -> FormulaValue:
    base = _to_number(args[0])
    exponent = _to_number(args[1])
    if base is MISSING or exponent is MISSING:
        return MISSING
    if base == 0 and exponent < 0:
        return math.inf
    try:
        return math.pow(base, exponent)
    except ValueError:
        # negative base with a fractional exponent
        return math.nan
    except OverflowError:
        odd = exponent.is_integer() and int(exponent) % 2 == 1
        return -math.inf if base < 0 and odd else math.inf


def _fn_log(args: Sequence[FormulaValue]) -> FormulaValue:
    number = _to_number(args[0])
    if number is MISSING or math.isnan(number) or number <= 0:
        return MISSING
    base = _to_number(args[1]) if len(args) > 1 else MISSING
    if base is MISSING:
        base = 10.0
    if math.isnan(base) or base <= 0 or base == 1:
        return MISSING
    return math.log(number) / math.log(base)


def _significance(args: Sequence[FormulaValue]) -> float:
    significance = _to_number(args[1]) if len(args) > 1 else MISSING
    if significance is MISSING or not significance > 0:
        return 1.0
    return significance


def _fn_ceiling(args: Sequence[FormulaValue]) -> FormulaValue:
    number = _to_number(args[0])
    if number is MISSING:
        return MISSING
    significance = _significance(args)
    return math.ceil(number / significance) * significance if math.isfinite(number) else number


def _fn_floor(args: Sequence[FormulaValue]) -> FormulaValue:
    number = _to_number(args[0])
    if number is MISSING:
        return MISSING
    significance = _significance(args)
    return math.floor(number / significance) * significance if math.isfinite(number) else number


def _fn_count(args: Sequence[FormulaValue]) -> FormulaValue:
    return float(sum(1 for arg in args if isinstance(arg, (float, str)) and not isinstance(arg, bool)))


def _to_text(value: FormulaValue) -> str:
    if value is MISSING:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return value


def _fn_trim(args: Sequence[FormulaValue]) -> FormulaValue:
    return _to_text(args[0]).strip()


def _fn_concat(args: Sequence[FormulaValue]) -> FormulaValue:
    return "".join(_to_text(arg) for arg in args)


def _fn_notnull(args: Sequence[FormulaValue]) -> FormulaValue:
    if args[0] is not MISSING:
        return args[0]
    return args[1] if len(args) > 1 else MISSING


def _fn_iferror(args: Sequence[FormulaValue]) -> FormulaValue:
    value = args[0]
    if value is MISSING or (isinstance(value, float) and math.isnan(value)):
        return args[1]
    return value


def _fn_coalesce(args: Sequence[FormulaValue]) -> FormulaValue:
    for arg in args:
        if arg is not MISSING:
            return arg
    return MISSING


@dataclass(frozen=True)
class FunctionSpec:
    """Arity bounds and implementation of a built-in function (max_args None = unbounded)."""
    min_args: int
    max_args: Optional[int]
    impl: Optional[Callable[[Sequence[FormulaValue]], FormulaValue]]

    def describe_arity(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args} to {self.max_args}"


# IF is evaluated lazily by the call node and has no eager implementation
FUNCTIONS: Dict[str, FunctionSpec] = {
    "IF": FunctionSpec(2, 3, None),
    "AND": FunctionSpec(1, None, _fn_and),
    "OR": FunctionSpec(1, None, _fn_or),
    "NOT": FunctionSpec(1, 1, _fn_not),
    "ISNUMBER": FunctionSpec(1, 1, _fn_isnumber),
    "ISBLANK": FunctionSpec(1, 1, _fn_isblank),
    "MIN": FunctionSpec(1, None, _fn_min),
    "MAX": FunctionSpec(1, None, _fn_max),
    "ABS": FunctionSpec(1, 1, _fn_abs),
    "SUM": FunctionSpec(1, None, _fn_sum),
    "AVERAGE": FunctionSpec(1, None, _fn_average),
    "COUNT": FunctionSpec(0, None, _fn_count),
    "ROUND": FunctionSpec(2, 2, _fn_round),
    "ROUNDUP": FunctionSpec(2, 2, _fn_roundup),
    "ROUNDDOWN": FunctionSpec(2, 2, _fn_rounddown),
    "SQRT": FunctionSpec(1, 1, _fn_sqrt),
    "POWER": FunctionSpec(2, 2, _fn_power),
    "LOG": FunctionSpec(1, 2, _fn_log),
    "CEILING": FunctionSpec(1, 2, _fn_ceiling),
    "FLOOR": FunctionSpec(1, 2, _fn_floor),
    "TRIM": FunctionSpec(1, 1, _fn_trim),
    "CONCAT": FunctionSpec(0, None, _fn_concat),
    "CONCATENATE": FunctionSpec(0, None, _fn_concat),
    "IFERROR": FunctionSpec(2, 2, _fn_iferror),
    "NOTNULL": FunctionSpec(1, None, _fn_notnull),
    "COALESCE": FunctionSpec(1, None, _fn_coalesce),
}


# =============================================================================
# Expression Tree
# =============================================================================

Environment = Mapping[str, Any]


class Node:
    """Base class of expression tree nodes."""

    def evaluate(self, env: Environment) -> FormulaValue:
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Node):
    value: FormulaValue

    def evaluate(self, env: Environment) -> FormulaValue:
        return self.value


@dataclass(frozen=True)
class Name(Node):
    name: str

    def evaluate(self, env: Environment) -> FormulaValue:
        return coerce_environment_value(env.get(self.name))


@dataclass(frozen=True)
class MetricRef(Node):
    """
    Reference to a metric in a given quarter of a twelve-quarter window:
    Metric[Q12] is the most recent quarter, Metric[Q11] the one before and
    Metric[Q1] the oldest. Metric[Pn] stands for Metric[Q(n+1)] and a bare
    Metric[n] for Metric[Qn]. Looked up in the environment under the
    canonical key "Metric[Qn]".
    """
    metric: str
    quarter: int

    @property
    def key(self) -> str:
        return f"{self.metric}[Q{self.quarter}]"

    def evaluate(self, env: Environment) -> FormulaValue:
        return coerce_environment_value(env.get(self.key))


@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: Node

    def evaluate(self, env: Environment) -> FormulaValue:
        number = _to_number(self.operand.evaluate(env))
        if number is MISSING:
            return MISSING
        return -number if self.op == "-" else number


@dataclass(frozen=True)
class Percent(Node):
    operand: Node

    def evaluate(self, env: Environment) -> FormulaValue:
        number = _to_number(self.operand.evaluate(env))
        if number is MISSING:
            return MISSING
        return number / 100


@dataclass(frozen=True)
class Arithmetic(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, env: Environment) -> FormulaValue:
        left = _to_number(self.left.evaluate(env))
        right = _to_number(self.right.evaluate(env))
        if left is MISSING or right is MISSING:
            return MISSING
        if self.op == "+":
            return left + right
        if self.op == "-":
            return left - right
        if self.op == "*":
            return left * right
        return _divide(left, right)


@dataclass(frozen=True)
class Comparison(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, env: Environment) -> FormulaValue:
        return _compare(self.op, self.left.evaluate(env), self.right.evaluate(env))


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: Tuple[Node, ...]

    def evaluate(self, env: Environment) -> FormulaValue:
        if self.name == "IF":
            condition = _to_condition(self.args[0].evaluate(env))
            if condition is MISSING:
                return MISSING
            if condition:
                return self.args[1].evaluate(env)
            if len(self.args) > 2:
                return self.args[2].evaluate(env)
            return DEFAULT_ELSE

        values = [arg.evaluate(env) for arg in self.args]
        return FUNCTIONS[self.name].impl(values)


# =============================================================================
# Tokenizer
# =============================================================================


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


_TOKEN_PATTERNS = [
    ("NUMBER", r"(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("OP", r"<>|<=|>=|!=|[<>=+\-*/%]"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("LBRACKET", r"\["),
    ("RBRACKET", r"\]"),
    ("COMMA", r","),
    ("SPACE", r"\s+"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{kind}>{pattern})" for kind, pattern in _TOKEN_PATTERNS))


def tokenize(source: str) -> List[Token]:
    """
    Split formula text into tokens, ending with an EOF token.

    Strings are delimited by double or single quotes; a doubled quote inside a
    string stands for one literal quote character.

    Raises:
        FormulaSyntaxError: On an unexpected character or an unterminated string.
    """
    tokens: List[Token] = []
    index = 0
    length = len(source)

    while index < length:
        char = source[index]

        if char in "\"'":
            start = index
            index += 1
            chunks: List[str] = []
            while True:
                end = source.find(char, index)
                if end == -1:
                    raise FormulaSyntaxError("Unterminated string literal", start)
                chunks.append(source[index:end])
                if end + 1 < length and source[end + 1] == char:
                    chunks.append(char)
                    index = end + 2
                    continue
                index = end + 1
                break
            tokens.append(Token("STRING", "".join(chunks), start))
            continue

        match = _TOKEN_RE.match(source, index)
        if match is None:
            raise FormulaSyntaxError(f"Unexpected character '{char}'", index)

        kind = match.lastgroup
        if kind != "SPACE":
            text = match.group()
            tokens.append(Token(kind, "<>" if text == "!=" else text, index))
        index = match.end()

    tokens.append(Token("EOF", "", length))
    return tokens


# =============================================================================
# Parser
# =============================================================================

_COMPARISON_OPS = {"=", "<>", ">", "<", ">=", "<="}
_QUARTER_INDEX = re.compile(r"^([QqPp])(\d+)$")


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def expect(self, kind: str, description: str) -> Token:
        token = self.peek()
        if token.kind != kind:
            found = "end of formula" if token.kind == "EOF" else f"'{token.text}'"
            raise FormulaSyntaxError(f"Expected {description} but found {found}", token.position)
        return self.advance()

    def parse(self) -> Node:
        if self.peek().kind == "EOF":
            raise FormulaSyntaxError("Formula is empty", 0)
        node = self.comparison()
        token = self.peek()
        if token.kind != "EOF":
            if token.kind == "RPAREN":
                raise FormulaSyntaxError("Unmatched closing parenthesis", token.position)
            raise FormulaSyntaxError(f"Unexpected '{token.text}'", token.position)
        return node

    def comparison(self) -> Node:
        left = self.additive()
        token = self.peek()
        if token.kind == "OP" and token.text in _COMPARISON_OPS:
            self.advance()
            right = self.additive()
            return Comparison(token.text, left, right)
        return left

    def additive(self) -> Node:
        node = self.multiplicative()
        while self.peek().kind == "OP" and self.peek().text in ("+", "-"):
            op = self.advance().text
            node = Arithmetic(op, node, self.multiplicative())
        return node

    def multiplicative(self) -> Node:
        node = self.unary()
        while self.peek().kind == "OP" and self.peek().text in ("*", "/"):
            op = self.advance().text
            node = Arithmetic(op, node, self.unary())
        return node

    def unary(self) -> Node:
        token = self.peek()
        if token.kind == "OP" and token.text in ("-", "+"):
            self.advance()
            return Unary(token.text, self.unary())
        return self.postfix()

    def postfix(self) -> Node:
        node = self.primary()
        while self.peek().kind == "OP" and self.peek().text == "%":
            self.advance()
            node = Percent(node)
        return node

    def primary(self) -> Node:
        token = self.peek()

        if token.kind == "NUMBER":
            self.advance()
            return Literal(float(token.text))

        if token.kind == "STRING":
            self.advance()
            return Literal(token.text)

        if token.kind == "LPAREN":
            self.advance()
            node = self.comparison()
            closing = self.peek()
            if closing.kind != "RPAREN":
                raise FormulaSyntaxError("Missing closing parenthesis", closing.position)
            self.advance()
            return node

        if token.kind == "IDENT":
            self.advance()
            following = self.peek()
            if following.kind == "LPAREN":
                return self.call(token)
            if following.kind == "LBRACKET":
                return self.metric_ref(token)
            if token.text.upper() == "TRUE":
                return Literal(True)
            if token.text.upper() == "FALSE":
                return Literal(False)
            return Name(token.text)

        if token.kind == "EOF":
            raise FormulaSyntaxError("Unexpected end of formula", token.position)
        raise FormulaSyntaxError(f"Unexpected '{token.text}'", token.position)

    def call(self, name_token: Token) -> Node:
        name = name_token.text.upper()
        spec = FUNCTIONS.get(name)
        if spec is None:
            raise FormulaSyntaxError(f"Unknown function '{name_token.text}'", name_token.position)

        self.advance()  # (
        args: List[Node] = []
        if self.peek().kind != "RPAREN":
            while True:
                args.append(self.comparison())
                if self.peek().kind == "COMMA":
                    self.advance()
                    continue
                break
        closing = self.peek()
        if closing.kind != "RPAREN":
            if closing.kind == "EOF":
                raise FormulaSyntaxError(f"Missing closing parenthesis for {name}", name_token.position)
            raise FormulaSyntaxError(f"Expected ',' or ')' but found '{closing.text}'", closing.position)
        self.advance()

        too_few = len(args) < spec.min_args
        too_many = spec.max_args is not None and len(args) > spec.max_args
        if too_few or too_many:
            raise FormulaSyntaxError(
                f"{name} expects {spec.describe_arity()} argument(s), got {len(args)}",
                name_token.position,
            )
        return Call(name, tuple(args))

    def metric_ref(self, name_token: Token) -> Node:
        self.advance()  # [
        index_token = self.peek()
        quarter: Optional[int] = None

        if index_token.kind == "IDENT":
            match = _QUARTER_INDEX.match(index_token.text)
            if match:
                number = int(match.group(2))
                quarter = number if match.group(1).upper() == "Q" else number + 1
        elif index_token.kind == "NUMBER" and index_token.text.isdigit():
            quarter = int(index_token.text)

        if quarter is None or quarter < 1:
            raise FormulaSyntaxError(
                "Expected a quarter index such as Q12, P11 or 12 inside []",
                index_token.position,
            )
        self.advance()
        self.expect("RBRACKET", "']'")
        return MetricRef(name_token.text, quarter)


# =============================================================================
# Public API
# =============================================================================


def _collect_references(node: Node, names: List[str]) -> None:
    if isinstance(node, Name):
        names.append(node.name)
    elif isinstance(node, MetricRef):
        names.append(node.key)
    elif isinstance(node, Unary) or isinstance(node, Percent):
        _collect_references(node.operand, names)
    elif isinstance(node, (Arithmetic, Comparison)):
        _collect_references(node.left, names)
        _collect_references(node.right, names)
    elif isinstance(node, Call):
        for arg in node.args:
            _collect_references(arg, names)


class CompiledFormula:
    """
    A parsed formula, reusable across environments.

    Attributes:
        source: The original formula text.
        references: Identifiers and metric references used, in first-use order.
    """

    def __init__(self, source: str, root: Node):
        self.source = source
        self.root = root
        names: List[str] = []
        _collect_references(root, names)
        self.references: Tuple[str, ...] = tuple(dict.fromkeys(names))

    def evaluate(self, environment: Optional[Environment] = None) -> FormulaValue:
        """Evaluate against an environment; absent names evaluate to MISSING."""
        return self.root.evaluate(environment if environment is not None else {})

    def __repr__(self) -> str:
        return f"CompiledFormula({self.source!r})"


@lru_cache(maxsize=512)
def compile_formula(source: str) -> CompiledFormula:
    """
    Parse formula text into a reusable CompiledFormula.

    A single leading '=' (as pasted from a spreadsheet) is ignored. Results are
    cached per source text.

    Raises:
        FormulaSyntaxError: If the text is not a well-formed formula.
    """
    text = source.strip()
    offset = len(source) - len(source.lstrip())
    if text.startswith("="):
        text = text[1:]
        offset += 1

    try:
        tokens = tokenize(text)
        root = _Parser(tokens).parse()
    except FormulaSyntaxError as e:
        if e.position is not None and offset:
            raise FormulaSyntaxError(e.message, e.position + offset) from None
        raise
    except RecursionError:
        raise FormulaSyntaxError("Formula is nested too deeply") from None

    return CompiledFormula(source, root)


def evaluate(source: str, environment: Optional[Environment] = None) -> FormulaValue:
    """
    Evaluate formula text against an environment of named values.

    Examples:
        >>> evaluate('IF(AND(Q12>10, P12>10), "BUY", "No Signal")', {"Q12": 15, "P12": 5})
        'No Signal'
        >>> evaluate("5/0")
        inf

    Raises:
        FormulaSyntaxError: If the text is not a well-formed formula.
    """
    return compile_formula(source).evaluate(environment)


def validate_formula(source: str) -> FormulaValidation:
    """Compile formula text and report the first syntax error, if any."""
    try:
        compile_formula(source)
    except FormulaSyntaxError as e:
        return FormulaValidation(valid=False, error=e.message, position=e.position)
    return FormulaValidation(valid=True)
