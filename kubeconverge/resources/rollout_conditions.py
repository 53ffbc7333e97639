"""Custom-resource rollout conditions.

A CustomResourceDefinition can describe how to judge its instances with
the ``instance-rollout-conditions`` annotation. The value is either
``"true"`` (use the defaults below) or a JSON document::

    {
      "success_conditions": [
        {"path": "$.status.conditions[?(@.type == \\"Ready\\")].status", "value": "True"}
      ],
      "failure_conditions": [
        {"path": "$.status.phase", "value": "Error",
         "error_msg_path": "$.status.message"}
      ]
    }

Paths use a small JSONPath subset, compiled once into a tuple of steps:

    $                   -- the instance root
    .name / ['name']    -- mapping key
    [0]                 -- list index (negative counts from the end)
    .* / [*]            -- every child
    [?(<expr>)]         -- children for which <expr> holds

Filter expressions compare ``@``-relative paths with ``==`` / ``!=``
against string, number, boolean or null literals, may test a bare path
for presence, and combine with ``&&``, ``||`` and parentheses.

An instance succeeded when *every* success condition matches, and failed
when *any* failure condition matches.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from kubeconverge.errors import RolloutConditionsError

# ---------------------------------------------------------------------------
# Path AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldStep:
    name: str


@dataclass(frozen=True)
class IndexStep:
    index: int


@dataclass(frozen=True)
class WildcardStep:
    pass


@dataclass(frozen=True)
class Comparison:
    path: tuple[str, ...]
    op: str
    literal: Any


@dataclass(frozen=True)
class Exists:
    path: tuple[str, ...]


@dataclass(frozen=True)
class BoolOp:
    op: str  # "&&" or "||"
    left: Expr
    right: Expr


Expr = Comparison | Exists | BoolOp


@dataclass(frozen=True)
class FilterStep:
    expr: Expr


Step = FieldStep | IndexStep | WildcardStep | FilterStep

_MISSING = object()


def _relative(data: Any, path: tuple[str, ...]) -> Any:
    current = data
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def _evaluate(expr: Expr, item: Any) -> bool:
    if isinstance(expr, BoolOp):
        if expr.op == "&&":
            return _evaluate(expr.left, item) and _evaluate(expr.right, item)
        return _evaluate(expr.left, item) or _evaluate(expr.right, item)
    value = _relative(item, expr.path)
    if isinstance(expr, Exists):
        return value is not _MISSING
    if value is _MISSING:
        return expr.op == "!="
    equal = bool(value == expr.literal)
    return equal if expr.op == "==" else not equal


def _children(node: Any) -> list[Any]:
    if isinstance(node, dict):
        return list(node.values())
    if isinstance(node, list):
        return list(node)
    return []


class JsonPath:
    """A compiled path expression."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.steps: tuple[Step, ...] = _PathParser(source).parse()

    def __repr__(self) -> str:
        return f"JsonPath({self.source!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, JsonPath) and other.steps == self.steps

    def __hash__(self) -> int:
        return hash(self.steps)

    def values(self, data: Any) -> list[Any]:
        nodes = [data]
        for step in self.steps:
            matched: list[Any] = []
            for node in nodes:
                if isinstance(step, FieldStep):
                    if isinstance(node, dict) and step.name in node:
                        matched.append(node[step.name])
                elif isinstance(step, IndexStep):
                    if isinstance(node, list) and -len(node) <= step.index < len(node):
                        matched.append(node[step.index])
                elif isinstance(step, WildcardStep):
                    matched.extend(_children(node))
                else:
                    matched.extend(child for child in _children(node) if _evaluate(step.expr, child))
            nodes = matched
        return nodes

    def first(self, data: Any) -> Any:
        found = self.values(data)
        return found[0] if found else None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

_NAME = re.compile(r"[A-Za-z0-9_\-]+")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_KEYWORDS: dict[str, Any] = {"true": True, "false": False, "null": None}


class _PathParser:
    def __init__(self, source: str) -> None:
        self._src = source.strip()
        self._pos = 0

    def parse(self) -> tuple[Step, ...]:
        if not self._src.startswith("$"):
            raise ValueError(f"path must start with '$': {self._src!r}")
        self._pos = 1
        steps: list[Step] = []
        while self._pos < len(self._src):
            ch = self._src[self._pos]
            if ch == ".":
                self._pos += 1
                if self._peek() == ".":
                    raise ValueError("recursive descent '..' is not supported")
                if self._peek() == "*":
                    self._pos += 1
                    steps.append(WildcardStep())
                else:
                    steps.append(FieldStep(self._name()))
            elif ch == "[":
                self._pos += 1
                steps.append(self._bracket())
                self._expect("]")
            else:
                raise ValueError(f"unexpected {ch!r} at offset {self._pos}")
        return tuple(steps)

    # -- helpers -------------------------------------------------------

    def _peek(self) -> str:
        return self._src[self._pos] if self._pos < len(self._src) else ""

    def _skip_ws(self) -> None:
        while self._peek().isspace():
            self._pos += 1

    def _expect(self, token: str) -> None:
        self._skip_ws()
        if not self._src.startswith(token, self._pos):
            raise ValueError(f"expected {token!r} at offset {self._pos}")
        self._pos += len(token)

    def _name(self) -> str:
        match = _NAME.match(self._src, self._pos)
        if match is None:
            raise ValueError(f"expected a field name at offset {self._pos}")
        self._pos = match.end()
        return match.group()

    def _string(self) -> str:
        quote = self._peek()
        end = self._src.find(quote, self._pos + 1)
        if end == -1:
            raise ValueError(f"unterminated string at offset {self._pos}")
        value = self._src[self._pos + 1 : end]
        self._pos = end + 1
        return value

    def _bracket(self) -> Step:
        self._skip_ws()
        ch = self._peek()
        if ch == "*":
            self._pos += 1
            return WildcardStep()
        if ch in ("'", '"'):
            return FieldStep(self._string())
        if ch == "?":
            self._pos += 1
            self._expect("(")
            expr = self._or()
            self._expect(")")
            return FilterStep(expr)
        match = _NUMBER.match(self._src, self._pos)
        if match is None or "." in match.group():
            raise ValueError(f"expected index, '*', name or filter at offset {self._pos}")
        self._pos = match.end()
        return IndexStep(int(match.group()))

    def _or(self) -> Expr:
        left = self._and()
        while True:
            self._skip_ws()
            if not self._src.startswith("||", self._pos):
                return left
            self._pos += 2
            left = BoolOp("||", left, self._and())

    def _and(self) -> Expr:
        left = self._primary()
        while True:
            self._skip_ws()
            if not self._src.startswith("&&", self._pos):
                return left
            self._pos += 2
            left = BoolOp("&&", left, self._primary())

    def _primary(self) -> Expr:
        self._skip_ws()
        if self._peek() == "(":
            self._pos += 1
            expr = self._or()
            self._expect(")")
            return expr
        path = self._relative_path()
        self._skip_ws()
        for op in ("==", "!="):
            if self._src.startswith(op, self._pos):
                self._pos += 2
                return Comparison(path, op, self._literal())
        return Exists(path)

    def _relative_path(self) -> tuple[str, ...]:
        self._expect("@")
        keys: list[str] = []
        while True:
            ch = self._peek()
            if ch == ".":
                self._pos += 1
                keys.append(self._name())
            elif ch == "[":
                self._pos += 1
                self._skip_ws()
                if self._peek() not in ("'", '"'):
                    raise ValueError("filter paths only support quoted keys")
                keys.append(self._string())
                self._expect("]")
            else:
                return tuple(keys)

    def _literal(self) -> Any:
        self._skip_ws()
        ch = self._peek()
        if ch in ("'", '"'):
            return self._string()
        number = _NUMBER.match(self._src, self._pos)
        if number is not None:
            self._pos = number.end()
            text = number.group()
            return float(text) if "." in text else int(text)
        for word, value in _KEYWORDS.items():
            if self._src.startswith(word, self._pos):
                self._pos += len(word)
                return value
        raise ValueError(f"expected a literal at offset {self._pos}")


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

_SUCCESS_KEYS: tuple[str, ...] = ("path", "value")
_FAILURE_KEYS: tuple[str, ...] = ("path", "value", "error_msg_path", "custom_error_msg")


@dataclass(frozen=True)
class Condition:
    """One ``path == value`` test, plus optional failure message sources."""

    path: JsonPath | None
    value: Any
    keys: frozenset[str]
    error_msg_path: JsonPath | None = None
    custom_error_msg: str | None = None

    def matches(self, instance: dict[str, Any]) -> bool:
        return self.path is not None and "value" in self.keys and self.path.first(instance) == self.value

    def message(self, instance: dict[str, Any]) -> str | None:
        if self.custom_error_msg:
            return self.custom_error_msg
        if self.error_msg_path is not None:
            found = self.error_msg_path.first(instance)
            return None if found is None else str(found)
        return None


def _compile(entry: Any, allowed: tuple[str, ...]) -> Condition:
    if not isinstance(entry, dict):
        return Condition(path=None, value=None, keys=frozenset())
    kept = {k: entry[k] for k in allowed if k in entry}
    path = JsonPath(str(kept["path"])) if "path" in kept else None
    error_path = JsonPath(str(kept["error_msg_path"])) if "error_msg_path" in kept else None
    custom = kept.get("custom_error_msg")
    return Condition(
        path=path,
        value=kept.get("value"),
        keys=frozenset(kept),
        error_msg_path=error_path,
        custom_error_msg=None if custom is None else str(custom),
    )


def _compile_list(raw: Any, allowed: tuple[str, ...]) -> Any:
    if not isinstance(raw, list):
        return raw
    return [_compile(entry, allowed) for entry in raw]


class RolloutConditions:
    """Success and failure conditions for instances of one custom kind."""

    def __init__(self, success_conditions: Any = None, failure_conditions: Any = None) -> None:
        self.success_conditions = [] if success_conditions is None else success_conditions
        self.failure_conditions = [] if failure_conditions is None else failure_conditions

    @classmethod
    def default(cls) -> RolloutConditions:
        return cls(
            success_conditions=[
                Condition(
                    path=JsonPath('$.status.conditions[?(@.type == "Ready")].status'),
                    value="True",
                    keys=frozenset(_SUCCESS_KEYS),
                )
            ],
            failure_conditions=[
                Condition(
                    path=JsonPath('$.status.conditions[?(@.type == "Failed")].status'),
                    value="True",
                    keys=frozenset({"path", "value", "error_msg_path"}),
                    error_msg_path=JsonPath('$.status.conditions[?(@.type == "Failed")].message'),
                )
            ],
        )

    @classmethod
    def from_annotation(cls, raw: str) -> RolloutConditions:
        """Parse an annotation value.

        Raises:
            RolloutConditionsError: on invalid JSON or an unparseable path.
        """
        if raw.strip().lower() == "true":
            return cls.default()
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RolloutConditionsError(f"Rollout conditions are not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise RolloutConditionsError("Rollout conditions must be a JSON object")
        try:
            return cls(
                success_conditions=_compile_list(document.get("success_conditions"), _SUCCESS_KEYS),
                failure_conditions=_compile_list(document.get("failure_conditions"), _FAILURE_KEYS),
            )
        except ValueError as exc:
            raise RolloutConditionsError(
                f"Error parsing rollout conditions. This is most likely caused by an invalid path "
                f"expression. Failed with: {exc}"
            ) from exc

    def rollout_successful(self, instance: dict[str, Any]) -> bool:
        return all(condition.matches(instance) for condition in self.success_conditions)

    def rollout_failed(self, instance: dict[str, Any]) -> bool:
        return any(condition.matches(instance) for condition in self.failure_conditions)

    def failure_messages(self, instance: dict[str, Any]) -> list[str]:
        messages: list[str] = []
        for condition in self.failure_conditions:
            if condition.matches(instance):
                message = condition.message(instance)
                if message:
                    messages.append(message)
        return messages

    def validate(self) -> None:
        """Raise :class:`RolloutConditionsError` describing every structural problem."""
        errors = self._validate_list(self.success_conditions, "success_conditions", required=True)
        errors += self._validate_list(self.failure_conditions, "failure_conditions", required=False)
        if errors:
            raise RolloutConditionsError(", ".join(errors))

    @staticmethod
    def _validate_list(conditions: Any, source_key: str, *, required: bool) -> list[str]:
        if not conditions and not required:
            return []
        if not isinstance(conditions, list):
            return [f"{source_key} should be Array but found {type(conditions).__name__}"]
        if not conditions:
            return [f"{source_key} must contain at least one entry"]
        errors: list[str] = []
        singular = source_key.removesuffix("s")
        for condition in conditions:
            missing = [key for key in _SUCCESS_KEYS if key not in condition.keys]
            if missing:
                errors.append(f"Missing required key(s) for {singular}: {missing}")
        return errors
