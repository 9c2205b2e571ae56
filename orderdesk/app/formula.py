from __future__ import annotations

import json
import math
import operator
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, localcontext
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .schemas import ColumnDataType, TemplateColumn

NO_VALUE = "—"
MINUS_SIGN = "−"

_NUMBER_PREFIX = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


class Operator(str, Enum):
    ADD = "+"
    SUBTRACT = "-"
    MULTIPLY = "*"
    DIVIDE = "/"
    MODULO = "%"
    POWER = "^"


class ModifierType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    ROUND = "round"
    ABS = "abs"
    CEIL = "ceil"
    FLOOR = "floor"
    MIN = "min"
    MAX = "max"


@dataclass(frozen=True)
class FormulaStep:
    column_key: str


@dataclass(frozen=True)
class FormulaModifier:
    type: ModifierType
    value: float = 0.0
    operator: str = "+"


@dataclass
class ParsedFormula:
    steps: List[FormulaStep] = field(default_factory=list)
    operators: List[Operator] = field(default_factory=list)
    modifiers: List[FormulaModifier] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "steps": [step.column_key for step in self.steps],
            "operators": [op.value for op in self.operators],
            "modifiers": [
                {"type": mod.type.value, "operator": mod.operator, "value": mod.value}
                for mod in self.modifiers
            ],
        }


# Display symbols used by the readable formula format.
OPERATOR_SYMBOLS: Dict[Operator, str] = {
    Operator.ADD: "+",
    Operator.SUBTRACT: MINUS_SIGN,
    Operator.MULTIPLY: "×",
    Operator.DIVIDE: "÷",
    Operator.MODULO: "%",
    Operator.POWER: "^",
}

_SYMBOL_TO_OPERATOR: Dict[str, Operator] = {
    **{symbol: op for op, symbol in OPERATOR_SYMBOLS.items()},
    "-": Operator.SUBTRACT,
    "*": Operator.MULTIPLY,
    "/": Operator.DIVIDE,
}

_MODIFIERS_WITH_VALUE = {
    ModifierType.PERCENTAGE,
    ModifierType.FIXED,
    ModifierType.ROUND,
    ModifierType.MIN,
    ModifierType.MAX,
}

_MODIFIER_LABELS: Dict[ModifierType, str] = {
    ModifierType.PERCENTAGE: "% Percentage",
    ModifierType.FIXED: "# Fixed Number",
    ModifierType.ROUND: "≈ Round",
    ModifierType.ABS: "|x| Absolute",
    ModifierType.CEIL: "⌈x⌉ Ceil",
    ModifierType.FLOOR: "⌊x⌋ Floor",
    ModifierType.MIN: "↓ Min Cap",
    ModifierType.MAX: "↑ Max Cap",
}

# Function wrappers peeled from the outside in, e.g. ABS(ROUND(x, 2)).
_FUNCTION_PATTERNS = (
    (re.compile(r"^ROUND\((.+),\s*(\d+)\)$"), ModifierType.ROUND),
    (re.compile(r"^ABS\((.+)\)$"), ModifierType.ABS),
    (re.compile(r"^CEIL\((.+)\)$"), ModifierType.CEIL),
    (re.compile(r"^FLOOR\((.+)\)$"), ModifierType.FLOOR),
    # MAX(x, n) keeps the result at or above n: the "min" cap
    (re.compile(r"^MAX\((.+),\s*([\d.]+)\)$"), ModifierType.MIN),
    (re.compile(r"^MIN\((.+),\s*([\d.]+)\)$"), ModifierType.MAX),
)
_PERCENT_PATTERN = re.compile(r"^(.+)\s+([+\-−])\s+([\d.]+)%$")
# a trailing fixed amount only follows a parenthesised core or a function call
_FIXED_PATTERN = re.compile(r"^((?:[A-Z]+)?\(.+\))\s+([+\-−])\s+([\d.]+)$")


def parse_number(value: object) -> float:
    """Tolerant numeric parse: leading numeric prefix, anything else is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    match = _NUMBER_PREFIX.match(str(value))
    if not match:
        return 0.0
    try:
        number = float(match.group(0))
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def _number_text(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _quantize(value: float, places: int) -> Decimal:
    number = Decimal(repr(value))
    with localcontext() as ctx:
        # quantize fails once the result needs more digits than the context holds
        ctx.prec = max(ctx.prec, number.adjusted() + places + 2)
        return number.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def _round_half_up(value: float, places: int) -> float:
    return float(_quantize(value, places))


def format_result(value: float) -> str:
    if not math.isfinite(value):
        return NO_VALUE
    if value.is_integer():
        return str(int(value))
    return str(_quantize(value, 2))


# --------------------------------------------------------------------------
# Parsing
# --------------------------------------------------------------------------


def parse_formula(text: Optional[str]) -> Optional[ParsedFormula]:
    """Parse a stored formula string.

    Two encodings are accepted: the legacy JSON object
    ``{"steps": [...], "operators": [...], "modifiers": [...]}`` and the
    readable form built from column keys, e.g. ``ROUND((qty × rate) + 10%, 2)``.
    Returns ``None`` for empty or malformed input.
    """
    if not text:
        return None
    trimmed = text.strip()
    if not trimmed:
        return None

    if trimmed.startswith("{"):
        return _parse_json_formula(trimmed)

    try:
        parsed = _parse_readable_formula(trimmed)
    except ValueError:
        return None
    if parsed.steps and len(parsed.operators) != len(parsed.steps) - 1:
        return None
    return parsed


def _parse_json_formula(text: str) -> Optional[ParsedFormula]:
    try:
        raw = json.loads(text)
    except ValueError:
        return None
    if not isinstance(raw, dict) or not isinstance(raw.get("steps"), list):
        return None
    try:
        steps = [
            FormulaStep(step["columnKey"] if isinstance(step, dict) else str(step))
            for step in raw["steps"]
        ]
        operators = [Operator(op) for op in raw.get("operators") or []]
        modifiers = [
            FormulaModifier(
                type=ModifierType(mod["type"]),
                value=parse_number(mod.get("value", 0)),
                operator="-" if mod.get("operator") in ("-", MINUS_SIGN) else "+",
            )
            for mod in raw.get("modifiers") or []
        ]
    except (KeyError, TypeError, ValueError):
        return None
    if steps and len(operators) != len(steps) - 1:
        return None
    return ParsedFormula(steps=steps, operators=operators, modifiers=modifiers)


def _parse_readable_formula(formula: str) -> ParsedFormula:
    modifiers: List[FormulaModifier] = []
    expr = formula.strip()

    # peel the outermost modifier each pass; inner ones apply first
    while True:
        modifier = None
        for pattern, modifier_type in _FUNCTION_PATTERNS:
            match = pattern.match(expr)
            if match and _wraps_all(expr[expr.index("("):]):
                value = float(match.group(2)) if match.lastindex and match.lastindex > 1 else 0.0
                modifier = FormulaModifier(type=modifier_type, value=value)
                break
        if modifier is None:
            for pattern, modifier_type in (
                (_PERCENT_PATTERN, ModifierType.PERCENTAGE),
                (_FIXED_PATTERN, ModifierType.FIXED),
            ):
                match = pattern.match(expr)
                if match:
                    modifier = FormulaModifier(
                        type=modifier_type,
                        value=float(match.group(3)),
                        operator="+" if match.group(2) == "+" else "-",
                    )
                    break
        if modifier is None:
            break
        modifiers.insert(0, modifier)
        expr = match.group(1).strip()

    while expr.startswith("(") and expr.endswith(")") and _wraps_all(expr):
        expr = expr[1:-1].strip()

    steps: List[FormulaStep] = []
    operators: List[Operator] = []
    for token in expr.split():
        op = _SYMBOL_TO_OPERATOR.get(token)
        if op is not None:
            operators.append(op)
        elif token:
            steps.append(FormulaStep(token))
    return ParsedFormula(steps=steps, operators=operators, modifiers=modifiers)


def _wraps_all(expr: str) -> bool:
    depth = 0
    for index, char in enumerate(expr):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if depth == 0 and index < len(expr) - 1:
            return False
    return True


# --------------------------------------------------------------------------
# Rendering
# --------------------------------------------------------------------------


def _render(parsed: ParsedFormula, name_for: Callable[[str], str]) -> str:
    if not parsed.steps:
        return ""
    parts: List[str] = []
    for index, step in enumerate(parsed.steps):
        name = name_for(step.column_key)
        if index == 0:
            parts.append(name)
            continue
        op = parsed.operators[index - 1] if index - 1 < len(parsed.operators) else Operator.ADD
        parts.append(f"{OPERATOR_SYMBOLS[op]} {name}")
    expression = " ".join(parts)

    if parsed.modifiers:
        expression = f"({expression})"

    for mod in parsed.modifiers:
        symbol = "+" if mod.operator == "+" else MINUS_SIGN
        value = _number_text(mod.value)
        if mod.type is ModifierType.PERCENTAGE:
            expression += f" {symbol} {value}%"
        elif mod.type is ModifierType.FIXED:
            expression += f" {symbol} {value}"
        elif mod.type is ModifierType.ROUND:
            expression = f"ROUND({expression}, {value})"
        elif mod.type is ModifierType.ABS:
            expression = f"ABS({expression})"
        elif mod.type is ModifierType.CEIL:
            expression = f"CEIL({expression})"
        elif mod.type is ModifierType.FLOOR:
            expression = f"FLOOR({expression})"
        elif mod.type is ModifierType.MIN:
            expression = f"MAX({expression}, {value})"
        elif mod.type is ModifierType.MAX:
            expression = f"MIN({expression}, {value})"
    return expression


def stringify_formula(parsed: ParsedFormula) -> str:
    """Readable formula using column keys, the format stored by the API."""
    return _render(parsed, lambda key: key)


def formula_preview(parsed: ParsedFormula, columns: Iterable[TemplateColumn]) -> str:
    """Readable formula using column labels, for display."""
    labels = {column.key: column.label for column in columns}
    return _render(parsed, lambda key: labels.get(key) or f"[{key}]")


def validate_formula(parsed: ParsedFormula, columns: Iterable[TemplateColumn]) -> Optional[str]:
    """Return the first problem with a formula under construction, or None."""
    if not parsed.steps:
        return "Please add at least one column to the formula"

    available = {column.key for column in columns}
    for index, step in enumerate(parsed.steps, start=1):
        if not step.column_key:
            return f"Please select a column for step {index}"
        if step.column_key not in available:
            return (
                f'Column "{step.column_key}" in step {index} is not available. '
                "Please select a different column."
            )

    if len(parsed.steps) > 1 and len(parsed.operators) != len(parsed.steps) - 1:
        return "Missing operators between columns"

    for index, op in enumerate(parsed.operators, start=1):
        if not isinstance(op, Operator):
            return f'Invalid operator "{op}" between step {index} and {index + 1}'

    for mod in parsed.modifiers:
        if not isinstance(mod.type, ModifierType):
            return f'Invalid modifier type "{mod.type}"'
        label = _MODIFIER_LABELS[mod.type]
        if mod.type in _MODIFIERS_WITH_VALUE:
            if mod.value is None or not math.isfinite(mod.value):
                return f"Please enter a valid number for the {label} modifier"
            if mod.type is ModifierType.PERCENTAGE and not 0 <= mod.value <= 1000:
                return "Percentage must be between 0 and 1000"
            if mod.type is ModifierType.ROUND and (
                not 0 <= mod.value <= 10 or not float(mod.value).is_integer()
            ):
                return "Round decimals must be a whole number between 0 and 10"
        if mod.type in (ModifierType.PERCENTAGE, ModifierType.FIXED) and mod.operator not in ("+", "-"):
            return f"Please select an operator for the {label} modifier"

    min_cap = next((m for m in parsed.modifiers if m.type is ModifierType.MIN), None)
    max_cap = next((m for m in parsed.modifiers if m.type is ModifierType.MAX), None)
    if min_cap and max_cap and min_cap.value >= max_cap.value:
        return "Min cap value must be less than max cap value"
    return None


# --------------------------------------------------------------------------
# Evaluation
# --------------------------------------------------------------------------


def _checked_power(left: float, right: float) -> float:
    try:
        value = left ** right
    except (OverflowError, ZeroDivisionError):
        return left
    if isinstance(value, complex) or not math.isfinite(value):
        return left
    return value


_ops: Dict[Operator, Callable[[float, float], float]] = {
    Operator.ADD: operator.add,
    Operator.SUBTRACT: operator.sub,
    Operator.MULTIPLY: operator.mul,
    # zero divisors leave the running value untouched
    Operator.DIVIDE: lambda left, right: left / right if right != 0 else left,
    Operator.MODULO: lambda left, right: math.fmod(left, right) if right != 0 else left,
    Operator.POWER: _checked_power,
}


def _apply_modifier(result: float, mod: FormulaModifier) -> float:
    if mod.type is ModifierType.PERCENTAGE:
        pct = result * mod.value / 100
        return result + pct if mod.operator == "+" else result - pct
    if mod.type is ModifierType.FIXED:
        return result + mod.value if mod.operator == "+" else result - mod.value
    if mod.type is ModifierType.ROUND:
        if not math.isfinite(mod.value):
            return result
        places = max(0, min(int(mod.value), 20))
        return _round_half_up(result, places)
    if mod.type is ModifierType.ABS:
        return abs(result)
    if mod.type is ModifierType.CEIL:
        return float(math.ceil(result))
    if mod.type is ModifierType.FLOOR:
        return float(math.floor(result))
    # "min" is a lower bound and "max" an upper bound on the result
    if mod.type is ModifierType.MIN:
        return max(result, mod.value)
    if mod.type is ModifierType.MAX:
        return min(result, mod.value)
    return result


def build_number_context(
    columns: Iterable[TemplateColumn], row_values: Mapping[str, str]
) -> Dict[str, float]:
    """Map NUMBER column keys to parsed values; row values are keyed by column id or key."""
    context: Dict[str, float] = {}
    for column in columns:
        if column.data_type is not ColumnDataType.NUMBER:
            continue
        raw = row_values.get(column.id)
        if raw is None:
            raw = row_values.get(column.key)
        context[column.key] = parse_number(raw) if raw else 0.0
    return context


def evaluate(
    formula: Optional[ParsedFormula],
    columns: Iterable[TemplateColumn],
    row_values: Mapping[str, str],
) -> str:
    """Compute a formula cell for one row. Never raises."""
    if formula is None or not formula.steps:
        return NO_VALUE

    context = build_number_context(columns, row_values)
    result = context.get(formula.steps[0].column_key, 0.0)

    for index in range(1, len(formula.steps)):
        if index - 1 >= len(formula.operators):
            break
        op = formula.operators[index - 1]
        value = context.get(formula.steps[index].column_key, 0.0)
        apply = _ops.get(op)
        if apply is not None:
            result = apply(result, value)

    for mod in formula.modifiers:
        if not math.isfinite(result):
            break
        result = _apply_modifier(result, mod)

    return format_result(result)


def evaluate_column(
    column: TemplateColumn,
    columns: Iterable[TemplateColumn],
    row_values: Mapping[str, str],
) -> str:
    """Evaluate a FORMULA column's stored formula string."""
    if not column.formula:
        return NO_VALUE
    return evaluate(parse_formula(column.formula), columns, row_values)


def evaluate_row(
    columns: List[TemplateColumn], row_values: Mapping[str, str]
) -> Dict[str, str]:
    """Derived values for every FORMULA column of a row, keyed by column id."""
    return {
        column.id: evaluate_column(column, columns, row_values)
        for column in columns
        if column.data_type is ColumnDataType.FORMULA
    }
