import json

import pytest

from comfyexec.comfyui.errors import WorkflowValidationError
from comfyexec.comfyui.validation import (MAX_JSON_DEPTH, check_json_bounds, get_object_depth, safe_json_parse,
                                          validate_output_binary_key, validate_url, validate_workflow,
                                          validate_workflow_data, validate_workflow_object)


def test_valid_workflow():
    workflow = {"3": {"class_type": "KSampler", "inputs": {"seed": 5, "model": ["4", 0]}},
                "4": {"class_type": "CheckpointLoaderSimple", "inputs": {}}}
    result = validate_workflow(json.dumps(workflow))

    assert result.valid
    assert result.error is None


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_empty_workflow_text(text):
    result = validate_workflow(text)
    assert not result.valid
    assert result.error == "Workflow JSON is empty"


def test_malformed_json():
    result = validate_workflow('{"3": {"class_type": ')
    assert not result.valid
    assert result.error.startswith("Workflow JSON is invalid")


@pytest.mark.parametrize("workflow, error", [
    ([], "Workflow must be an object with node IDs as keys"),
    ("text", "Workflow must be an object with node IDs as keys"),
    ({}, "Workflow must contain at least one node"),
    ({"1": "node"}, "Node 1 must be an object"),
    ({"1": {"inputs": {}}}, "Node 1 must have a class_type property"),
    ({"1": {"class_type": ""}}, "Node 1 must have a class_type property"),
    ({"1": {"class_type": 5}}, "Node 1 must have a class_type property"),
    ({"1": {"class_type": "A", "inputs": []}}, "Node 1 inputs must be an object"),
    ({"1": {"class_type": "A", "widgets_values": {}}}, "Node 1 widgets_values must be an array"),
])
def test_structural_errors(workflow, error):
    result = validate_workflow_data(workflow)
    assert not result.valid
    assert result.error == error


def test_first_violation_is_reported():
    workflow = {"1": {"class_type": "A"}, "2": {"inputs": {}}, "3": "bad"}
    assert validate_workflow_data(workflow).error == "Node 2 must have a class_type property"


def test_inputs_may_be_omitted():
    assert validate_workflow_data({"1": {"class_type": "A"}}).valid


def test_oversized_json_is_rejected():
    text = json.dumps({"1": {"class_type": "A", "inputs": {"text": "x" * (1024 * 1024)}}})
    result = validate_workflow(text)
    assert not result.valid
    assert "exceeds maximum size" in result.error


def test_deep_json_is_rejected():
    text = "[" * 150 + "]" * 150
    with pytest.raises(WorkflowValidationError) as e:
        safe_json_parse(text, "Parameters")
    assert "exceeds maximum depth" in str(e.value)
    assert str(e.value).startswith("Parameters")


def nested_workflow(levels: int) -> dict:
    value: dict = {"leaf": "x"}
    for _ in range(levels):
        value = {"next": value}
    return {"1": {"class_type": "A", "inputs": {"text": value}}}


def test_oversized_workflow_object_is_rejected():
    workflow = {"1": {"class_type": "A", "inputs": {"text": "x" * (2 * 1024 * 1024)}}}

    result = validate_workflow_object(workflow)

    assert not result.valid
    assert result.error.startswith("Workflow JSON exceeds maximum size of 1MB")


def test_deep_workflow_object_is_rejected():
    result = validate_workflow_object(nested_workflow(150))

    assert not result.valid
    assert result.error.startswith("Workflow JSON exceeds maximum depth of 100")


def test_workflow_object_within_bounds():
    assert validate_workflow_object(nested_workflow(10)).valid
    assert validate_workflow_object({}).error == "Workflow must contain at least one node"


def test_check_json_bounds_returns_value():
    value = {"a": [1, 2, {"b": None}]}
    assert check_json_bounds(value, "Parameters") is value

    with pytest.raises(WorkflowValidationError) as e:
        check_json_bounds({"when": object()}, "Parameters")
    assert str(e.value).startswith("Parameters is not JSON serializable")


def test_object_depth():
    assert get_object_depth(5) == 1
    assert get_object_depth({}) == 1
    assert get_object_depth({"a": {"b": [1]}}) == 4
    assert get_object_depth([[[[]]]]) == 4

    deep: list = []
    for _ in range(MAX_JSON_DEPTH + 10):
        deep = [deep]
    assert get_object_depth(deep) > MAX_JSON_DEPTH


@pytest.mark.parametrize("url, valid", [
    ("http://example.com/a.png", True),
    ("https://example.com", True),
    ("ftp://example.com/a.png", False),
    ("example.com/a.png", False),
    ("", False),
    (None, False),
])
def test_validate_url(url, valid):
    assert validate_url(url) is valid


def test_output_binary_key():
    assert validate_output_binary_key(None) == "data"
    assert validate_output_binary_key("  ") == "data"
    assert validate_output_binary_key(" result_1 ") == "result_1"
    assert validate_output_binary_key("out-put") == "out-put"

    with pytest.raises(WorkflowValidationError):
        validate_output_binary_key("bad key")
    with pytest.raises(WorkflowValidationError):
        validate_output_binary_key("k" * 101)
