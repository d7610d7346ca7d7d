"""rule_grammar.py — Workflow rule parsing and predicate evaluation.

Rules pair a validation predicate with one or more actions. Both sides are
parsed once into small AST nodes; evaluation never re-reads the text.

Predicate grammar (newline-separated lines are AND-ed):

    or_expr   := and_expr ("or" and_expr)*
    and_expr  := not_expr ("and" not_expr)*
    not_expr  := "not" not_expr | atom
    atom      := "(" or_expr ")"
               | path ("=" | "==" | "!=") literal
               | path ["not"] "in" "(" literal ("," literal)* ")"
    path      := ["document" "."] TypeIdentifier "." attr ("." attr)*
    literal   := "..." | '...' | number | true | false

Actions (newline or ";" separated):

    process.T                       ensure T exists; queue it when dormant
    create.T                        ensure T exists
    [document.]T.field = literal    set a form field
    hide|show|disable|enable.T.field
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from docflow_shared.errors import RuleSetError, RuleSyntaxError

__all__ = [
    "And",
    "Comparison",
    "FieldFlagAction",
    "InSet",
    "Not",
    "Or",
    "ParsedRule",
    "Path",
    "ProcessAction",
    "CreateAction",
    "SetFieldAction",
    "evaluate",
    "parse_actions",
    "parse_predicate",
    "parse_rule",
    "prepare_rules",
]


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

Literal = Union[str, int, float, bool]


@dataclass(frozen=True)
class Path:
    doc_type: str
    attribute: Tuple[str, ...]

    def __str__(self) -> str:
        return ".".join((self.doc_type,) + self.attribute)


@dataclass(frozen=True)
class Comparison:
    path: Path
    op: str  # "=" or "!="
    value: Literal


@dataclass(frozen=True)
class InSet:
    path: Path
    values: Tuple[Literal, ...]
    negated: bool = False


@dataclass(frozen=True)
class And:
    items: Tuple[Any, ...]


@dataclass(frozen=True)
class Or:
    items: Tuple[Any, ...]


@dataclass(frozen=True)
class Not:
    item: Any


@dataclass(frozen=True)
class ProcessAction:
    doc_type: str


@dataclass(frozen=True)
class CreateAction:
    doc_type: str


@dataclass(frozen=True)
class SetFieldAction:
    doc_type: str
    field: str
    value: Literal


@dataclass(frozen=True)
class FieldFlagAction:
    verb: str  # hide | show | disable | enable
    doc_type: str
    field: str


Action = Union[ProcessAction, CreateAction, SetFieldAction, FieldFlagAction]

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>[ \t\r]+)
  | (?P<newline>\n)
  | (?P<string>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')
  | (?P<number>-?\d+(?:\.\d+)?(?![A-Za-z_]))
  | (?P<op>==|!=|=)
  | (?P<punct>[(),.;])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "in", "true", "false"}
_FLAG_VERBS = {"hide", "show", "disable", "enable"}


@dataclass
class _Token:
    kind: str
    text: str
    pos: int

    @property
    def keyword(self) -> Optional[str]:
        if self.kind == "ident" and self.text.lower() in _KEYWORDS:
            return self.text.lower()
        return None


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise RuleSyntaxError(f"unexpected character {text[pos]!r} at {pos}", text=text, position=pos)
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(_Token("eof", "", len(text)))
    return tokens


def _unquote(raw: str) -> str:
    return re.sub(r"\\(.)", r"\1", raw[1:-1])


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    # -- token helpers -----------------------------------------------------

    @property
    def tok(self) -> _Token:
        return self.tokens[self.i]

    def _advance(self) -> _Token:
        tok = self.tokens[self.i]
        if tok.kind != "eof":
            self.i += 1
        return tok

    def _error(self, message: str, tok: Optional[_Token] = None) -> RuleSyntaxError:
        tok = tok or self.tok
        shown = tok.text if tok.kind != "eof" else "end of input"
        return RuleSyntaxError(f"{message} (got {shown!r} at {tok.pos})", text=self.text, position=tok.pos)

    def _expect_punct(self, ch: str) -> _Token:
        if self.tok.kind == "punct" and self.tok.text == ch:
            return self._advance()
        raise self._error(f"expected {ch!r}")

    def _at_punct(self, ch: str) -> bool:
        return self.tok.kind == "punct" and self.tok.text == ch

    def _skip_separators(self, seps: Tuple[str, ...]) -> None:
        while self.tok.kind == "newline" or (self.tok.kind == "punct" and self.tok.text in seps):
            self._advance()

    def _at_line_end(self, seps: Tuple[str, ...] = ()) -> bool:
        return self.tok.kind in ("newline", "eof") or (self.tok.kind == "punct" and self.tok.text in seps)

    # -- shared productions --------------------------------------------------

    def _ident(self, what: str) -> str:
        if self.tok.kind != "ident" or self.tok.keyword:
            raise self._error(f"expected {what}")
        return self._advance().text

    def _segments(self) -> List[str]:
        parts = [self._ident("document type identifier")]
        while self._at_punct("."):
            self._advance()
            parts.append(self._ident("attribute name"))
        return parts

    def _path_from(self, parts: List[str], start: _Token) -> Path:
        if len(parts) >= 3 and parts[0].lower() == "document":
            parts = parts[1:]
        if len(parts) < 2:
            raise self._error("expected <Type>.<attribute>", start)
        return Path(parts[0], tuple(parts[1:]))

    def _literal(self) -> Literal:
        tok = self.tok
        if tok.kind == "string":
            self._advance()
            return _unquote(tok.text)
        if tok.kind == "number":
            self._advance()
            return float(tok.text) if "." in tok.text else int(tok.text)
        if tok.keyword in ("true", "false"):
            self._advance()
            return tok.keyword == "true"
        raise self._error("expected a literal")

    # -- predicate -----------------------------------------------------------

    def parse_predicate(self) -> Any:
        lines = []
        self._skip_separators(())
        while self.tok.kind != "eof":
            lines.append(self._or())
            if not self._at_line_end():
                raise self._error("unexpected token")
            self._skip_separators(())
        if not lines:
            raise RuleSyntaxError("empty validation", text=self.text, position=0)
        return lines[0] if len(lines) == 1 else And(tuple(lines))

    def _or(self) -> Any:
        items = [self._and()]
        while self.tok.keyword == "or":
            self._advance()
            items.append(self._and())
        return items[0] if len(items) == 1 else Or(tuple(items))

    def _and(self) -> Any:
        items = [self._not()]
        while self.tok.keyword == "and":
            self._advance()
            items.append(self._not())
        return items[0] if len(items) == 1 else And(tuple(items))

    def _not(self) -> Any:
        if self.tok.keyword == "not":
            self._advance()
            return Not(self._not())
        return self._atom()

    def _atom(self) -> Any:
        if self._at_punct("("):
            self._advance()
            inner = self._or()
            self._expect_punct(")")
            return inner

        start = self.tok
        path = self._path_from(self._segments(), start)

        if self.tok.kind == "op":
            op = self._advance().text
            return Comparison(path, "!=" if op == "!=" else "=", self._literal())

        negated = False
        if self.tok.keyword == "not":
            self._advance()
            negated = True
        if self.tok.keyword != "in":
            raise self._error("expected '=', '!=' or 'in'")
        self._advance()
        self._expect_punct("(")
        values = [self._literal()]
        while self._at_punct(","):
            self._advance()
            values.append(self._literal())
        self._expect_punct(")")
        return InSet(path, tuple(values), negated)

    # -- actions -------------------------------------------------------------

    def parse_actions(self) -> List[Action]:
        seps = (";",)
        actions: List[Action] = []
        self._skip_separators(seps)
        while self.tok.kind != "eof":
            actions.append(self._action())
            if not self._at_line_end(seps):
                raise self._error("unexpected token after action")
            self._skip_separators(seps)
        if not actions:
            raise RuleSyntaxError("empty action", text=self.text, position=0)
        return actions

    def _action(self) -> Action:
        start = self.tok
        parts = self._segments()

        if self.tok.kind == "op":
            op = self._advance().text
            if op != "=":
                raise self._error("actions assign with '='", start)
            path = self._path_from(parts, start)
            if len(path.attribute) != 1:
                raise self._error("actions can only set top-level fields", start)
            return SetFieldAction(path.doc_type, path.attribute[0], self._literal())

        verb = parts[0].lower()
        if verb == "process" and len(parts) == 2:
            return ProcessAction(parts[1])
        if verb == "create" and len(parts) == 2:
            return CreateAction(parts[1])
        if verb in _FLAG_VERBS and len(parts) == 3:
            return FieldFlagAction(verb, parts[1], parts[2])
        raise self._error("unrecognized action", start)


def parse_predicate(text: str) -> Any:
    return _Parser(str(text or "")).parse_predicate()


def parse_actions(text: str) -> List[Action]:
    return _Parser(str(text or "")).parse_actions()


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _norm(value: Any) -> Optional[str]:
    """Compare form values and literals as strings (booleans as true/false)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate(node: Any, lookup: Callable[[Path], Any]) -> bool:
    """Evaluate a predicate; ``lookup`` returns the attribute value or None."""
    if isinstance(node, Comparison):
        actual = _norm(lookup(node.path))
        if actual is None:
            return node.op == "!="
        equal = actual == _norm(node.value)
        return equal if node.op == "=" else not equal
    if isinstance(node, InSet):
        actual = _norm(lookup(node.path))
        if actual is None:
            return node.negated
        member = actual in {_norm(v) for v in node.values}
        return not member if node.negated else member
    if isinstance(node, And):
        return all(evaluate(item, lookup) for item in node.items)
    if isinstance(node, Or):
        return any(evaluate(item, lookup) for item in node.items)
    if isinstance(node, Not):
        return not evaluate(node.item, lookup)
    raise TypeError(f"not a predicate node: {node!r}")


def referenced_types(node: Any) -> List[str]:
    """Document type identifiers a predicate reads, in first-seen order."""
    out: List[str] = []

    def walk(n: Any) -> None:
        if isinstance(n, (Comparison, InSet)):
            if n.path.doc_type not in out:
                out.append(n.path.doc_type)
        elif isinstance(n, (And, Or)):
            for item in n.items:
                walk(item)
        elif isinstance(n, Not):
            walk(n.item)

    walk(node)
    return out


def action_types(actions: List[Action]) -> List[str]:
    out: List[str] = []
    for action in actions:
        if action.doc_type not in out:
            out.append(action.doc_type)
    return out


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass
class ParsedRule:
    id: str
    index: int
    validation: str
    action: str
    predicate: Any
    actions: List[Action]
    depends_on: List[str] = field(default_factory=list)
    produces: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.validation} -> {self.action}"


def _rule_dict(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RuleSyntaxError(f"rule is not valid JSON: {exc.msg}", text=raw, position=exc.pos) from exc
        if isinstance(data, dict):
            return data
    raise RuleSyntaxError("rule must be a JSON object", text=str(raw))


def parse_rule(raw: Any, index: int = 0) -> ParsedRule:
    """Parse one stored rule (JSON string or dict). Raises RuleSyntaxError."""
    try:
        data = _rule_dict(raw)
        validation = str(data.get("validation") or "").strip()
        action = str(data.get("action") or "").strip()
        if not validation:
            raise RuleSyntaxError("rule has no validation")
        if not action:
            raise RuleSyntaxError("rule has no action")
        predicate = parse_predicate(validation)
        actions = parse_actions(action)
    except RuleSyntaxError as exc:
        exc.rule_index = index
        raise

    depends_on = data.get("dependsOn")
    if not isinstance(depends_on, list) or not all(isinstance(t, str) for t in depends_on):
        depends_on = referenced_types(predicate)
    return ParsedRule(
        id=str(data.get("id") or f"rule-{index + 1}"),
        index=index,
        validation=validation,
        action=action,
        predicate=predicate,
        actions=actions,
        depends_on=list(depends_on),
        produces=action_types(actions),
    )


def prepare_rules(rules: List[Any]) -> List[Dict[str, Any]]:
    """Normalize rules for storage: ids assigned, dependsOn/produces stamped.

    Every rule is checked; all failures are reported together as RuleSetError.
    """
    prepared: List[Dict[str, Any]] = []
    failures: List[RuleSyntaxError] = []
    for index, raw in enumerate(rules or []):
        try:
            data = dict(_rule_dict(raw))
            data.pop("dependsOn", None)
            parsed = parse_rule(data, index)
        except RuleSyntaxError as exc:
            exc.rule_index = index
            failures.append(exc)
            continue
        data["id"] = str(data.get("id") or f"rule-{uuid.uuid4().hex[:12]}")
        data["validation"] = parsed.validation
        data["action"] = parsed.action
        data["dependsOn"] = parsed.depends_on
        data["produces"] = parsed.produces
        prepared.append(data)
    if failures:
        raise RuleSetError(failures)
    return prepared
