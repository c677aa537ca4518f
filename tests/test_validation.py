import json

import pytest

from engines.validation import (
    CaseValidationError,
    check_publish_readiness,
    ensure_publishable,
    validate_case,
)
from helpers import build_case, node, question_case
from scenario_graph import ScenarioGraph, case_from_mapping, load_case_file, next_node
from schemas import Case, NodeType


def test_question_case_is_valid():
    result = validate_case(question_case())
    assert result.is_valid
    assert result.warnings == []


def test_new_case_has_opening_and_ending():
    case = Case.new("Interview", "Quarterly review")
    assert [n.type for n in case.nodes] == [NodeType.OPENING, NodeType.ENDING]
    assert next_node(case, case.start_node_id) == case.nodes[1].id
    assert ensure_publishable(case).is_valid


def test_linear_node_with_two_exits_is_rejected():
    case = build_case(
        [node("opening", "opening"), node("a", "ending"), node("b", "ending")],
        [("opening", "a"), ("opening", "b")],
    )
    result = validate_case(case)
    assert not result.is_valid
    assert "2 outgoing connections" in result.errors[0]


def test_branch_may_have_many_exits():
    case = build_case(
        [node("opening", "opening"), node("branch", "branch"), node("a", "ending"), node("b", "ending")],
        [("opening", "branch"), ("branch", "a"), ("branch", "b")],
    )
    assert validate_case(case).is_valid


def test_unknown_start_and_edge_targets_are_errors():
    case = build_case([node("opening", "opening")], [("opening", "ghost")], start="missing")
    errors = validate_case(case).errors
    assert any("Start node 'missing'" in e for e in errors)
    assert any("unknown node 'ghost'" in e for e in errors)


def test_duplicate_node_ids_are_errors():
    case = build_case([node("opening", "opening"), node("opening", "ending")], [])
    assert any("more than one node" in e for e in validate_case(case).errors)


def test_structural_gaps_are_warnings():
    case = build_case(
        [
            node("opening", "opening"),
            node("talk", "dialogue"),
            node("orphan", "ending"),
            node("end", "ending"),
        ],
        [("opening", "talk"), ("end", "talk")],
    )
    result = validate_case(case)
    assert result.is_valid
    assert any("'Talk' has no outgoing connection" in w for w in result.warnings)
    assert any("'Orphan' is not reachable" in w for w in result.warnings)
    assert any("'End' has outgoing connections" in w for w in result.warnings)


def test_publish_requires_name_and_ending():
    case = build_case([node("opening", "opening"), node("talk", "dialogue")], [("opening", "talk")])
    case.name = ""
    with pytest.raises(CaseValidationError) as excinfo:
        ensure_publishable(case)
    assert "Case must have a name" in excinfo.value.errors
    assert "Case must have an ending node" in excinfo.value.errors
    assert excinfo.value.warnings


def test_objective_with_unknown_node_blocks_publish():
    case = question_case()
    case.learning_objectives = []
    from schemas import LearningObjective

    case.learning_objectives.append(LearningObjective(id="o", title="Listen", node_ids=["nowhere"]))
    assert any("unknown node 'nowhere'" in p for p in check_publish_readiness(case))


def test_graph_queries():
    graph = ScenarioGraph(question_case())
    assert graph.next_node("opening") == "question"
    assert graph.next_node("ending") is None
    assert [e.source_node_id for e in graph.incoming("ending")] == ["question"]
    assert graph.reachable_from("question") == {"question", "ending"}
    assert graph.is_path(["opening", "question", "ending"])
    assert not graph.is_path(["opening", "ending"])


def test_camel_case_authoring_payload():
    payload = {
        "id": "case-1",
        "name": "Imported",
        "startNodeId": "n1",
        "nodes": [
            {"id": "n1", "type": "opening", "content": "Hi", "metadata": {"posX": 10}},
            {"id": "n2", "type": "ending", "content": "Bye"},
        ],
        "edges": [{"id": "e1", "sourceNodeId": "n1", "targetNodeId": "n2"}],
        "learningObjectives": [{"id": "o1", "title": "Greet", "nodeIds": ["n2"]}],
    }
    case = case_from_mapping(payload)
    assert case.start_node_id == "n1"
    assert case.edges[0].target_node_id == "n2"
    assert case.nodes[0].metadata == {"posX": 10}
    assert case.learning_objectives[0].node_ids == ["n2"]


def test_load_case_file_reads_json_and_yaml(tmp_path):
    json_path = tmp_path / "case.json"
    json_path.write_text(json.dumps(question_case().model_dump(mode="json")), encoding="utf-8")
    assert load_case_file(json_path).start_node_id == "opening"

    yaml_path = tmp_path / "case.yaml"
    yaml_path.write_text(
        "name: Yaml case\n"
        "startNodeId: a\n"
        "nodes:\n"
        "  - {id: a, type: opening, content: Hi}\n"
        "  - {id: b, type: ending, content: Bye}\n"
        "edges:\n"
        "  - {sourceNodeId: a, targetNodeId: b}\n",
        encoding="utf-8",
    )
    case = load_case_file(yaml_path)
    assert case.name == "Yaml case"
    assert next_node(case, "a") == "b"

    text_path = tmp_path / "case.txt"
    text_path.write_text("name: nope", encoding="utf-8")
    with pytest.raises(ValueError):
        load_case_file(text_path)
