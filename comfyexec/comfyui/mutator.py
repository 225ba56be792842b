from typing import Any, Iterable, Optional, Union

from loguru import logger

from comfyexec.comfyui.errors import WorkflowValidationError
from comfyexec.comfyui.images import ImageResolver
from comfyexec.comfyui.validation import safe_json_parse
from comfyexec.data.workflows import (BooleanValue, BulkOverride, ImageValue, NodeParameterConfig, NumberValue,
                                      SingleOverride, TextValue, WorkflowGraph, coerce_input_value)

OverrideLike = Union[SingleOverride, BulkOverride, NodeParameterConfig]


class WorkflowMutator:
    """
    Applies parameter overrides to the inputs of workflow nodes.

    Overrides are applied in the order given, so a later override of the same node input wins. The first
    invalid override aborts the whole operation.
    """

    def __init__(self, image_resolver: Optional[ImageResolver] = None, log=None):
        """
        :param image_resolver: Needed only when image overrides are present.
        :param log: Optional logger, defaults to the package logger.
        """
        self._image_resolver = image_resolver
        self._log = log or logger

    async def apply_overrides(self, graph: WorkflowGraph, overrides: Iterable[OverrideLike]) -> WorkflowGraph:
        """
        :param graph: Workflow to modify. It is not changed; a modified copy is returned.
        :param overrides: Typed overrides or flat host records.
        :return: The modified workflow.
        """
        mutated = graph.model_copy(deep=True)
        count = 0
        for count, override in enumerate(overrides, start=1):
            if isinstance(override, NodeParameterConfig):
                override = override.to_override(count)
            await self._apply(mutated, override, count)

        self._log.debug(f"Applied {count} parameter override(s)")
        return mutated

    async def _apply(self, graph: WorkflowGraph, override: Union[SingleOverride, BulkOverride], index: int):
        prefix = f"override #{index}"
        if not override.node_id:
            raise WorkflowValidationError(f"{prefix}: missing node ID")
        if override.node_id not in graph:
            raise WorkflowValidationError(
                f"{prefix}: node ID '{override.node_id}' not found in workflow. Please check your workflow JSON")

        node = graph[override.node_id]

        if isinstance(override, BulkOverride):
            parameters = self._parse_parameters(override.parameters, prefix)
            self._log.debug(f"Applying {len(parameters)} parameters to node {override.node_id}")
            for name, value in parameters.items():
                node.inputs[name] = coerce_input_value(value)
            return

        if not override.param_name:
            raise WorkflowValidationError(f"{prefix}: parameter name is required for single parameter mode")

        value = await self._coerce(override, index)
        node.inputs[override.param_name] = value
        self._log.debug(f"Set {override.node_id}.{override.param_name} = {value!r}")

    @staticmethod
    def _parse_parameters(parameters: Union[str, dict[str, Any]], prefix: str) -> dict[str, Any]:
        if isinstance(parameters, str):
            parameters = safe_json_parse(parameters, f"{prefix}: parameters JSON")

        if not isinstance(parameters, dict):
            raise WorkflowValidationError(f"{prefix}: parameters must be a JSON object")
        return parameters

    async def _coerce(self, override: SingleOverride, index: int) -> Any:
        typed = override.value
        if isinstance(typed, TextValue):
            return typed.value if typed.value is not None else ''
        if isinstance(typed, NumberValue):
            return typed.value if typed.value is not None else 0
        if isinstance(typed, BooleanValue):
            return typed.value is True or typed.value == 'true'
        if isinstance(typed, ImageValue):
            if self._image_resolver is None:
                raise WorkflowValidationError(f"override #{index}: image parameters need an image resolver")
            return await self._image_resolver.resolve(typed.ref, index)

        raise WorkflowValidationError(f"override #{index}: unknown type '{getattr(typed, 'type', typed)}'")
