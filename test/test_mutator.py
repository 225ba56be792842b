import pytest

from comfyexec.comfyui.errors import WorkflowValidationError
from comfyexec.comfyui.mutator import WorkflowMutator
from comfyexec.comfyui.workflow_analysis import parse_workflow
from comfyexec.data.workflows import (BooleanValue, BulkOverride, ImageValue, NodeParameterConfig, NodeRef,
                                      NumberValue, RemoteUrl, SingleOverride, TextValue)

WORKFLOW = {
    "3": {"class_type": "KSampler", "inputs": {"seed": 5, "steps": 20, "model": ["4", 0]}},
    "4": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": "model.safetensors"}},
    "6": {"class_type": "CLIPTextEncode", "inputs": {"text": "a house", "clip": ["4", 1]}},
    "10": {"class_type": "LoadImage", "inputs": {"image": "example.png"}},
}


class DummyImageResolver:
    def __init__(self):
        self.refs = []

    async def resolve(self, ref, index):
        self.refs.append((ref, index))
        return f"uploaded_{index}.png"


@pytest.fixture
def graph():
    return parse_workflow(WORKFLOW)


@pytest.mark.asyncio
async def test_single_overrides(graph):
    mutated = await WorkflowMutator().apply_overrides(graph, [
        SingleOverride(node_id="6", param_name="text", value=TextValue(value="a cat")),
        SingleOverride(node_id="3", param_name="seed", value=NumberValue(value=42)),
        SingleOverride(node_id="3", param_name="denoise", value=NumberValue(value=0.75)),
    ])

    assert mutated["6"].inputs["text"] == "a cat"
    assert mutated["3"].inputs["seed"] == 42
    assert mutated["3"].inputs["denoise"] == 0.75
    assert mutated["3"].inputs["model"] == NodeRef(node_id="4", slot=0)
    # The input graph is left untouched
    assert graph["6"].inputs["text"] == "a house"


@pytest.mark.asyncio
async def test_last_override_wins(graph):
    mutated = await WorkflowMutator().apply_overrides(graph, [
        SingleOverride(node_id="3", param_name="seed", value=NumberValue(value=1)),
        BulkOverride(node_id="3", parameters={"seed": 2, "cfg": 7}),
        SingleOverride(node_id="3", param_name="seed", value=NumberValue(value=3)),
    ])

    assert mutated["3"].inputs["seed"] == 3
    assert mutated["3"].inputs["cfg"] == 7


@pytest.mark.asyncio
async def test_applying_twice_is_idempotent(graph):
    overrides = [SingleOverride(node_id="6", param_name="text", value=TextValue(value="a cat")),
                 BulkOverride(node_id="3", parameters='{"steps": 30}')]
    mutator = WorkflowMutator()

    once = await mutator.apply_overrides(graph, overrides)
    twice = await mutator.apply_overrides(once, overrides)

    assert once.to_prompt() == twice.to_prompt()


@pytest.mark.asyncio
async def test_bulk_override_from_json(graph):
    mutated = await WorkflowMutator().apply_overrides(graph, [
        BulkOverride(node_id="3", parameters='{"steps": 30, "sampler_name": "euler", "model": ["4", 0]}'),
    ])

    assert mutated["3"].inputs["steps"] == 30
    assert mutated["3"].inputs["sampler_name"] == "euler"
    assert mutated["3"].inputs["model"] == NodeRef(node_id="4", slot=0)


@pytest.mark.asyncio
@pytest.mark.parametrize("parameters, message", [
    ('{"steps": ', "override #1: parameters JSON is invalid"),
    ('[1, 2]', "override #1: parameters must be a JSON object"),
])
async def test_bulk_override_errors(graph, parameters, message):
    with pytest.raises(WorkflowValidationError) as e:
        await WorkflowMutator().apply_overrides(graph, [BulkOverride(node_id="3", parameters=parameters)])
    assert str(e.value).startswith(message)


@pytest.mark.asyncio
async def test_missing_node_aborts(graph):
    with pytest.raises(WorkflowValidationError) as e:
        await WorkflowMutator().apply_overrides(graph, [
            SingleOverride(node_id="6", param_name="text", value=TextValue(value="ok")),
            SingleOverride(node_id="99", param_name="text", value=TextValue(value="x")),
        ])
    assert str(e.value).startswith("override #2: node ID '99' not found in workflow")


@pytest.mark.asyncio
async def test_value_defaults(graph):
    mutated = await WorkflowMutator().apply_overrides(graph, [
        SingleOverride(node_id="6", param_name="text", value=TextValue()),
        SingleOverride(node_id="3", param_name="steps", value=NumberValue()),
    ])

    assert mutated["6"].inputs["text"] == ""
    assert mutated["3"].inputs["steps"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("value, expected", [
    (True, True),
    ("true", True),
    (False, False),
    ("false", False),
    ("yes", False),
    (1, False),
    (None, False),
])
async def test_boolean_coercion(graph, value, expected):
    mutated = await WorkflowMutator().apply_overrides(graph, [
        SingleOverride(node_id="3", param_name="add_noise", value=BooleanValue(value=value)),
    ])
    assert mutated["3"].inputs["add_noise"] is expected


@pytest.mark.asyncio
async def test_image_override_uses_resolver(graph):
    resolver = DummyImageResolver()
    mutated = await WorkflowMutator(resolver).apply_overrides(graph, [
        SingleOverride(node_id="6", param_name="text", value=TextValue(value="a cat")),
        SingleOverride(node_id="10", param_name="image",
                       value=ImageValue(ref=RemoteUrl(url="https://example.com/cat.png"))),
    ])

    assert mutated["10"].inputs["image"] == "uploaded_2.png"
    assert resolver.refs[0][0].url == "https://example.com/cat.png"


@pytest.mark.asyncio
async def test_image_override_without_resolver(graph):
    with pytest.raises(WorkflowValidationError):
        await WorkflowMutator().apply_overrides(graph, [
            SingleOverride(node_id="10", param_name="image",
                           value=ImageValue(ref=RemoteUrl(url="https://example.com/cat.png"))),
        ])


@pytest.mark.asyncio
async def test_host_records_are_converted(graph):
    resolver = DummyImageResolver()
    mutated = await WorkflowMutator(resolver).apply_overrides(graph, [
        NodeParameterConfig(node_id="6", param_name="text", type="text", value="a dog"),
        NodeParameterConfig(node_id="3", param_name="seed", type="number", number_value=7),
        NodeParameterConfig(node_id="3", parameter_mode="multiple", parameters_json='{"cfg": 8}'),
        NodeParameterConfig(node_id="10", param_name="image", type="image", image_source="binary", value="photo"),
    ])

    assert mutated["6"].inputs["text"] == "a dog"
    assert mutated["3"].inputs["seed"] == 7
    assert mutated["3"].inputs["cfg"] == 8
    assert resolver.refs[0][0].name == "photo"


@pytest.mark.parametrize("record, message", [
    (NodeParameterConfig(param_name="text"), "override #3: missing node ID"),
    (NodeParameterConfig(node_id="6"), "override #3: invalid configuration"),
    (NodeParameterConfig(node_id="6", param_name="x", type="color"), "override #3: unknown type 'color'"),
    (NodeParameterConfig(node_id="6", param_name="x", type="image", image_source="url"),
     "override #3: image URL is required"),
])
def test_invalid_host_records(record, message):
    with pytest.raises(WorkflowValidationError) as e:
        record.to_override(3)
    assert str(e.value).startswith(message)
