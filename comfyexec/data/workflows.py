from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from comfyexec.comfyui.errors import (CancellationError, ExecutionError, ExecutionTimeoutError,
                                      WorkflowValidationError)
from comfyexec.utils.files import IMAGE_MIME_TYPES, VIDEO_MIME_TYPES, generate_unique_filename, get_extension

# Extension used for image artifacts whose filename carries none, keyed by the artifact's storage type.
IMAGE_TYPE_EXTENSIONS = {
    'input': 'png',
    'output': 'png',
    'temp': 'png',
}


class ValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None


class NodeRef(BaseModel):
    """
    A link to output slot 'slot' of node 'node_id'. On the wire this is the pair [node_id, slot].
    """
    model_config = ConfigDict(frozen=True)

    node_id: str
    slot: int

    def to_wire(self) -> list[Any]:
        return [self.node_id, self.slot]


def coerce_input_value(value: Any) -> Any:
    """
    Turn a [str, int] pair into a NodeRef. Every other value is returned unchanged.
    """
    if isinstance(value, NodeRef):
        return value
    if (isinstance(value, (list, tuple)) and len(value) == 2 and isinstance(value[0], str)
            and isinstance(value[1], int) and not isinstance(value[1], bool)):
        return NodeRef(node_id=value[0], slot=value[1])
    return value


def _to_wire(value: Any) -> Any:
    return value.to_wire() if isinstance(value, NodeRef) else value


class WorkflowNode(BaseModel):
    """
    One node of an API-format workflow.
    """
    model_config = ConfigDict(populate_by_name=True)

    class_type: str = Field(min_length=1)
    inputs: dict[str, Any] = Field(default_factory=dict)
    widgets_values: Optional[list[Any]] = None
    meta: Optional[dict[str, Any]] = Field(default=None, alias="_meta")

    @field_validator('inputs', mode='before')
    @classmethod
    def parse_node_refs(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {name: coerce_input_value(v) for name, v in value.items()}
        return value

    def links(self) -> dict[str, NodeRef]:
        return {name: v for name, v in self.inputs.items() if isinstance(v, NodeRef)}


class WorkflowGraph(BaseModel):
    """
    Mapping of node ID to node, as accepted by the ComfyUI /prompt endpoint.
    """
    nodes: dict[str, WorkflowNode]

    @classmethod
    def from_prompt(cls, prompt: dict[str, Any]) -> "WorkflowGraph":
        return cls(nodes=prompt)

    def to_prompt(self) -> dict[str, dict[str, Any]]:
        prompt: dict[str, dict[str, Any]] = {}
        for node_id, node in self.nodes.items():
            entry: dict[str, Any] = {
                "inputs": {name: _to_wire(v) for name, v in node.inputs.items()},
                "class_type": node.class_type,
            }
            if node.meta:
                entry["_meta"] = node.meta
            prompt[node_id] = entry
        return prompt

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __getitem__(self, node_id: str) -> WorkflowNode:
        return self.nodes[node_id]

    def __len__(self) -> int:
        return len(self.nodes)


# Image references

class InlineBinary(BaseModel):
    """Base64 encoded file content supplied by the caller."""
    source: Literal["binary"] = "binary"
    data: Any = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


class RemoteUrl(BaseModel):
    source: Literal["url"] = "url"
    url: str


class BinaryProperty(BaseModel):
    """Names an InlineBinary passed next to the overrides, the way a host passes binary input items."""
    source: Literal["property"] = "property"
    name: str = "data"


ImageReference = Annotated[Union[InlineBinary, RemoteUrl, BinaryProperty], Field(discriminator="source")]


# Parameter overrides

class TextValue(BaseModel):
    type: Literal["text"] = "text"
    value: Optional[str] = None


class NumberValue(BaseModel):
    type: Literal["number"] = "number"
    value: Optional[Union[int, float]] = None


class BooleanValue(BaseModel):
    type: Literal["boolean"] = "boolean"
    value: Any = None


class ImageValue(BaseModel):
    type: Literal["image"] = "image"
    ref: ImageReference


TypedValue = Annotated[Union[TextValue, NumberValue, BooleanValue, ImageValue], Field(discriminator="type")]


class SingleOverride(BaseModel):
    mode: Literal["single"] = "single"
    node_id: str
    param_name: str
    value: TypedValue


class BulkOverride(BaseModel):
    mode: Literal["bulk"] = "bulk"
    node_id: str
    parameters: Union[str, dict[str, Any]]


ParameterOverride = Annotated[Union[SingleOverride, BulkOverride], Field(discriminator="mode")]


class NodeParameterConfig(BaseModel):
    """
    Flat override record as entered in a host's parameter form. Converted to a typed override before use.
    """
    node_id: str = ""
    parameter_mode: Literal["single", "multiple"] = "single"
    parameters_json: Optional[str] = None
    param_name: Optional[str] = None
    type: str = "text"
    value: Optional[str] = None
    number_value: Optional[Union[int, float]] = None
    boolean_value: Any = False
    image_source: Literal["binary", "url"] = "binary"
    image_url: Optional[str] = None

    def to_override(self, index: int) -> Union[SingleOverride, BulkOverride]:
        """
        :param index: 1-based position of the record, used in error messages.
        """
        prefix = f"override #{index}"
        if not self.node_id:
            raise WorkflowValidationError(f"{prefix}: missing node ID")

        if self.parameter_mode == "multiple" and self.parameters_json:
            return BulkOverride(node_id=self.node_id, parameters=self.parameters_json)

        if self.parameter_mode == "single" and self.param_name:
            if self.type == "text":
                value = TextValue(value=self.value)
            elif self.type == "number":
                value = NumberValue(value=self.number_value)
            elif self.type == "boolean":
                value = BooleanValue(value=self.boolean_value)
            elif self.type == "image":
                if self.image_source == "url":
                    if not self.image_url:
                        raise WorkflowValidationError(
                            f"{prefix}: image URL is required when the image source is 'url'")
                    value = ImageValue(ref=RemoteUrl(url=self.image_url))
                else:
                    value = ImageValue(ref=BinaryProperty(name=self.value or "data"))
            else:
                raise WorkflowValidationError(f"{prefix}: unknown type '{self.type}'")
            return SingleOverride(node_id=self.node_id, param_name=self.param_name, value=value)

        raise WorkflowValidationError(
            f"{prefix}: invalid configuration. For multiple parameters mode provide parameters JSON, "
            f"for single parameter mode provide a parameter name and value")


# Execution

class ExecutionState(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ExecutionHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_id: str
    client_id: str


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    state: ExecutionState
    images: list[str] = Field(default_factory=list)
    videos: list[str] = Field(default_factory=list)
    raw_output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    elapsed_s: float = 0.0
    handle: Optional[ExecutionHandle] = None

    def raise_for_status(self) -> None:
        if self.success:
            return
        message = self.error or f"Workflow execution {self.state.value}"
        if self.state == ExecutionState.TIMED_OUT:
            raise ExecutionTimeoutError(message, elapsed_s=self.elapsed_s)
        if self.state == ExecutionState.CANCELLED:
            raise CancellationError(message)
        raise ExecutionError(message)


class Artifact(BaseModel):
    """
    A file produced by a workflow, addressed by its server relative view path.
    """
    path: str
    kind: Literal["image", "video"]
    filename: str
    extension: str
    mime_type: str

    @classmethod
    def from_path(cls, path: str, kind: Literal["image", "video"]) -> "Artifact":
        parsed = urlparse(path)
        query = parse_qs(parsed.query)
        filename = (query.get('filename') or [''])[0] or parsed.path.rsplit('/', 1)[-1]
        default_ext = 'png' if kind == "image" else 'mp4'
        if not filename:
            filename = generate_unique_filename(default_ext)

        ext = get_extension(filename)
        if ext is None:
            if kind == "image":
                storage_type = (query.get('type') or [''])[0].lower()
                ext = IMAGE_TYPE_EXTENSIONS.get(storage_type, default_ext)
            else:
                ext = default_ext
            filename = f"{filename}.{ext}"

        if kind == "image":
            mime_type = IMAGE_MIME_TYPES.get(ext, 'image/png')
        else:
            mime_type = VIDEO_MIME_TYPES.get(ext, 'video/mp4')

        return cls(path=path, kind=kind, filename=filename, extension=ext, mime_type=mime_type)


class ExtractedOutputs(BaseModel):
    images: list[str] = Field(default_factory=list)
    videos: list[str] = Field(default_factory=list)
    raw_output: dict[str, Any] = Field(default_factory=dict)


class BinaryOutput(BaseModel):
    data: str
    mime_type: str
    file_name: str


class WorkflowOutput(BaseModel):
    json_data: dict[str, Any] = Field(alias="json", serialization_alias="json")
    binary: dict[str, BinaryOutput] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class WorkflowEdge(BaseModel):
    source: str
    target: str
    parameter: str
    slot: int


class WorkflowDescriptor(BaseModel):
    """
    Graph analysis of a workflow
    """
    node_count: int
    edges: list[WorkflowEdge]
    source_ids: list[str]
    sink_ids: list[str]
    external_parameters: dict[str, dict[str, Any]]
    dangling_edges: list[WorkflowEdge] = Field(default_factory=list)
