"""test_rule_grammar.py — Parsing and evaluation of workflow rules.

Run: python3 -m pytest test_rule_grammar.py -v
"""

from __future__ import annotations

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))

from docflow_shared.errors import RuleSetError, RuleSyntaxError
from rule_grammar import (
    And,
    Comparison,
    CreateAction,
    FieldFlagAction,
    InSet,
    Not,
    Or,
    Path,
    ProcessAction,
    SetFieldAction,
    evaluate,
    parse_actions,
    parse_predicate,
    parse_rule,
    prepare_rules,
)


def _lookup(values):
    return lambda path: values.get(str(path))


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def test_in_set_with_document_prefix():
    node = parse_predicate('document.BuildingPermit.status in ("completed","notrequired")')
    assert node == InSet(Path("BuildingPermit", ("status",)), ("completed", "notrequired"))


def test_comparison_operators_and_literals():
    assert parse_predicate("A.count = 3") == Comparison(Path("A", ("count",)), "=", 3)
    assert parse_predicate("A.ratio == 1.5") == Comparison(Path("A", ("ratio",)), "=", 1.5)
    assert parse_predicate("A.ok != true") == Comparison(Path("A", ("ok",)), "!=", True)
    assert parse_predicate("A.name = 'it\\'s'") == Comparison(Path("A", ("name",)), "=", "it's")


def test_nested_attribute_path():
    node = parse_predicate('Survey.site.zone = "R1"')
    assert node.path == Path("Survey", ("site", "zone"))


def test_precedence_and_parentheses():
    node = parse_predicate('A.x = 1 or B.y = 2 and not C.z = 3')
    assert isinstance(node, Or)
    assert isinstance(node.items[1], And)
    assert isinstance(node.items[1].items[1], Not)

    grouped = parse_predicate('(A.x = 1 or B.y = 2) and C.z = 3')
    assert isinstance(grouped, And)
    assert isinstance(grouped.items[0], Or)


def test_lines_are_anded():
    node = parse_predicate('A.status = "completed"\n\nB.status not in ("blocked")\n')
    assert isinstance(node, And)
    assert node.items[1] == InSet(Path("B", ("status",)), ("blocked",), negated=True)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "A.status",
        "A = 1",
        'A.status = "open',
        "A.status in ()",
        "A.status in (1, 2",
        "A.status = 1 B.status = 2",
        "A.status = 1 and",
        "A.status ~ 1",
        "(A.status = 1",
    ],
)
def test_predicate_syntax_errors(text):
    with pytest.raises(RuleSyntaxError):
        parse_predicate(text)


def test_syntax_error_reports_position():
    with pytest.raises(RuleSyntaxError) as info:
        parse_predicate("A.status = = 1")
    assert info.value.position == 11


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def test_evaluate_compares_as_strings():
    values = {"A.count": 3, "A.flag": True, "A.ratio": 2.0}
    assert evaluate(parse_predicate('A.count = "3"'), _lookup(values))
    assert evaluate(parse_predicate("A.flag = true"), _lookup(values))
    assert evaluate(parse_predicate('A.flag = "true"'), _lookup(values))
    assert evaluate(parse_predicate("A.ratio = 2"), _lookup(values))
    assert not evaluate(parse_predicate("A.count != 3"), _lookup(values))


def test_evaluate_missing_values():
    empty = _lookup({})
    assert not evaluate(parse_predicate('A.status = "x"'), empty)
    assert evaluate(parse_predicate('A.status != "x"'), empty)
    assert not evaluate(parse_predicate('A.status in ("x")'), empty)
    assert evaluate(parse_predicate('A.status not in ("x")'), empty)


def test_evaluate_boolean_structure():
    values = {"A.status": "completed", "B.status": "pending"}
    lookup = _lookup(values)
    assert evaluate(parse_predicate('A.status = "completed" and not B.status = "completed"'), lookup)
    assert evaluate(parse_predicate('A.status = "x" or B.status in ("pending", "blocked")'), lookup)
    assert not evaluate(parse_predicate('A.status = "completed"\nB.status = "completed"'), lookup)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def test_parse_actions_all_kinds():
    actions = parse_actions(
        "process.EnvironmentalAssessment; create.SitePlan\n"
        'document.SitePlan.owner = "city"\n'
        "hide.SitePlan.notes; enable.SitePlan.approve"
    )
    assert actions == [
        ProcessAction("EnvironmentalAssessment"),
        CreateAction("SitePlan"),
        SetFieldAction("SitePlan", "owner", "city"),
        FieldFlagAction("hide", "SitePlan", "notes"),
        FieldFlagAction("enable", "SitePlan", "approve"),
    ]


@pytest.mark.parametrize(
    "text",
    ["", ";", "process", "process.A.b", "launch.A", "A.b != 1", "A.b.c = 1", "hide.A", "A.b = 1 extra"],
)
def test_action_syntax_errors(text):
    with pytest.raises(RuleSyntaxError):
        parse_actions(text)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def test_parse_rule_from_json_string():
    raw = json.dumps({"id": "r1", "validation": 'A.status = "done"', "action": "process.B\nprocess.C"})
    rule = parse_rule(raw, 4)
    assert rule.id == "r1"
    assert rule.index == 4
    assert rule.depends_on == ["A"]
    assert rule.produces == ["B", "C"]
    assert rule.label == 'A.status = "done" -> process.B\nprocess.C'


def test_parse_rule_defaults_id_and_honors_depends_on():
    rule = parse_rule({"validation": "A.x = 1", "action": "process.B", "dependsOn": ["A", "Z"]}, 2)
    assert rule.id == "rule-3"
    assert rule.depends_on == ["A", "Z"]


@pytest.mark.parametrize(
    "raw",
    [
        "not json {",
        "[1, 2]",
        {"validation": "", "action": "process.B"},
        {"validation": "A.x = 1"},
        {"validation": "A.x =", "action": "process.B"},
    ],
)
def test_parse_rule_errors_carry_index(raw):
    with pytest.raises(RuleSyntaxError) as info:
        parse_rule(raw, 7)
    assert info.value.rule_index == 7


def test_prepare_rules_stamps_dependencies():
    prepared = prepare_rules(
        [
            {"validation": ' A.status = "done" ', "action": "process.B", "dependsOn": ["stale"]},
            json.dumps({"id": "keep", "validation": "B.x = 1 or C.y = 2", "action": "hide.D.f"}),
        ]
    )
    assert prepared[0]["id"].startswith("rule-")
    assert prepared[0]["validation"] == 'A.status = "done"'
    assert prepared[0]["dependsOn"] == ["A"]
    assert prepared[0]["produces"] == ["B"]
    assert prepared[1]["id"] == "keep"
    assert prepared[1]["dependsOn"] == ["B", "C"]
    assert prepared[1]["produces"] == ["D"]


def test_prepare_rules_reports_every_failure():
    with pytest.raises(RuleSetError) as info:
        prepare_rules(
            [
                {"validation": "A.x = 1", "action": "process.B"},
                {"validation": "A.x = ", "action": "process.B"},
                "nope",
            ]
        )
    assert [f.rule_index for f in info.value.failures] == [1, 2]
    assert str(info.value).startswith("rule 1:")
