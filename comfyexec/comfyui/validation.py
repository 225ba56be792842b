"""
Structural checks for API-format workflow JSON.

Size and nesting depth are bounded before the per-node checks run, so oversized or adversarial input is
rejected cheaply. Validation is fail-fast: the first violation found is reported.
"""
import json
import re
from typing import Any, Optional
from urllib.parse import urlparse

from comfyexec.comfyui.errors import WorkflowValidationError
from comfyexec.data.workflows import ValidationResult

MAX_JSON_SIZE = 1 * 1024 * 1024
MAX_JSON_DEPTH = 100
MAX_JSON_NODES = 10000

DEFAULT_OUTPUT_BINARY_KEY = 'data'
MAX_OUTPUT_KEY_LENGTH = 100
OUTPUT_KEY_REGEX = re.compile(r"^[a-zA-Z0-9_-]+$")


def get_object_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, max_nodes: int = MAX_JSON_NODES) -> int:
    """
    Depth of a parsed JSON value, counting leaves as a level. Iterative, and stops early once max_depth is
    exceeded or max_nodes values have been visited.
    """
    if not isinstance(obj, (dict, list)):
        return 1

    stack: list[tuple[Any, int]] = [(obj, 1)]
    deepest = 1
    visited = 0

    while stack:
        value, depth = stack.pop()
        visited += 1
        if visited > max_nodes:
            return deepest

        deepest = max(deepest, depth)
        if deepest > max_depth:
            return deepest

        if isinstance(value, dict):
            stack.extend((child, depth + 1) for child in value.values())
        elif isinstance(value, list):
            stack.extend((child, depth + 1) for child in value)

    return deepest


def safe_json_parse(json_string: str, context: str = 'JSON') -> Any:
    """
    Parse JSON text with size and depth bounds.
    :raises WorkflowValidationError: if the text is empty, too large, malformed or too deep.
    """
    if not isinstance(json_string, str):
        raise WorkflowValidationError(f"{context} must be a string")

    if len(json_string) == 0:
        raise WorkflowValidationError(f"{context} is empty")

    _check_size(len(json_string.encode('utf-8')), context)

    try:
        parsed = json.loads(json_string)
    except json.JSONDecodeError as e:
        raise WorkflowValidationError(f"{context} is invalid: {e}") from e
    except RecursionError as e:
        raise WorkflowValidationError(f"{context} exceeds maximum depth of {MAX_JSON_DEPTH}") from e

    _check_depth(parsed, context)
    return parsed


def check_json_bounds(obj: Any, context: str = 'JSON') -> Any:
    """
    Apply the size and depth bounds of safe_json_parse to an already parsed value. The size is that of its
    compact JSON encoding.
    :raises WorkflowValidationError: if the value is too deep, too large or not JSON serializable.
    """
    _check_depth(obj, context)

    try:
        encoded = json.dumps(obj, separators=(',', ':'))
    except RecursionError as e:
        raise WorkflowValidationError(f"{context} exceeds maximum depth of {MAX_JSON_DEPTH}") from e
    except (TypeError, ValueError) as e:
        raise WorkflowValidationError(f"{context} is not JSON serializable: {e}") from e

    _check_size(len(encoded.encode('utf-8')), context)
    return obj


def _check_size(size: int, context: str) -> None:
    if size > MAX_JSON_SIZE:
        raise WorkflowValidationError(
            f"{context} exceeds maximum size of {MAX_JSON_SIZE // 1024 // 1024}MB "
            f"(actual: {size / 1024 / 1024:.2f}MB)")


def _check_depth(obj: Any, context: str) -> None:
    depth = get_object_depth(obj)
    if depth > MAX_JSON_DEPTH:
        raise WorkflowValidationError(f"{context} exceeds maximum depth of {MAX_JSON_DEPTH} (actual: {depth})")


def validate_url(url: Optional[str]) -> bool:
    """True for absolute http/https URLs."""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def validate_workflow_data(workflow: Any) -> ValidationResult:
    """
    Check an already parsed workflow.
    """
    if not isinstance(workflow, dict):
        return ValidationResult(valid=False, error="Workflow must be an object with node IDs as keys")

    if len(workflow) == 0:
        return ValidationResult(valid=False, error="Workflow must contain at least one node")

    for node_id, node in workflow.items():
        if not isinstance(node, dict):
            return ValidationResult(valid=False, error=f"Node {node_id} must be an object")

        class_type = node.get('class_type')
        if not class_type or not isinstance(class_type, str):
            return ValidationResult(valid=False, error=f"Node {node_id} must have a class_type property")

        if 'inputs' in node and not isinstance(node['inputs'], dict):
            return ValidationResult(valid=False, error=f"Node {node_id} inputs must be an object")

        if 'widgets_values' in node and not isinstance(node['widgets_values'], list):
            return ValidationResult(valid=False, error=f"Node {node_id} widgets_values must be an array")

    return ValidationResult(valid=True)


def validate_workflow(workflow_json: str) -> ValidationResult:
    """
    Validate that a JSON string is an API-format ComfyUI workflow.
    :param workflow_json: Raw workflow text.
    :return: ValidationResult carrying the first violation found, if any.
    """
    if not workflow_json or not isinstance(workflow_json, str) or workflow_json.strip() == '':
        return ValidationResult(valid=False, error="Workflow JSON is empty")

    try:
        workflow = safe_json_parse(workflow_json, 'Workflow JSON')
    except WorkflowValidationError as e:
        return ValidationResult(valid=False, error=str(e))

    return validate_workflow_data(workflow)


def validate_workflow_object(workflow: Any) -> ValidationResult:
    """
    Validate a workflow given as a parsed object, under the same size and depth bounds as workflow text.
    """
    try:
        check_json_bounds(workflow, 'Workflow JSON')
    except WorkflowValidationError as e:
        return ValidationResult(valid=False, error=str(e))

    return validate_workflow_data(workflow)


def validate_output_binary_key(key: Optional[str]) -> str:
    """
    Normalise the caller's primary output key.
    :return: The trimmed key, or 'data' when none was given.
    :raises WorkflowValidationError: if the key has illegal characters or is too long.
    """
    if not key or not isinstance(key, str) or not key.strip():
        return DEFAULT_OUTPUT_BINARY_KEY

    key = key.strip()
    if not OUTPUT_KEY_REGEX.match(key):
        raise WorkflowValidationError(
            "Output binary key can only contain letters, numbers, underscores, and hyphens")

    if len(key) > MAX_OUTPUT_KEY_LENGTH:
        raise WorkflowValidationError(
            f"Output binary key is too long (max {MAX_OUTPUT_KEY_LENGTH} characters, got {len(key)})")

    return key
