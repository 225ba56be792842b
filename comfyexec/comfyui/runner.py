from typing import Any, Iterable, Mapping, Optional, Union

import aiohttp

from comfyexec.comfyui.client import ComfyUIClient
from comfyexec.comfyui.errors import WorkflowValidationError
from comfyexec.comfyui.images import ImageResolver
from comfyexec.comfyui.mutator import OverrideLike, WorkflowMutator
from comfyexec.comfyui.progress import ProgressCallback
from comfyexec.comfyui.results import process_results
from comfyexec.comfyui.validation import (check_json_bounds, safe_json_parse, validate_output_binary_key,
                                          validate_workflow)
from comfyexec.comfyui.workflow_analysis import analyze_workflow, parse_workflow
from comfyexec.config import ComfyUISettings
from comfyexec.data.workflows import InlineBinary, WorkflowGraph, WorkflowOutput
from comfyexec.utils.logger_config import get_client_logger


def load_workflow(workflow: Union[str, dict[str, Any], WorkflowGraph]) -> WorkflowGraph:
    """
    Validate and parse a workflow given as JSON text, a parsed dict or a graph.
    :raises WorkflowValidationError: if the workflow is invalid.
    """
    if isinstance(workflow, WorkflowGraph):
        return workflow

    if isinstance(workflow, str):
        result = validate_workflow(workflow)
        if not result.valid:
            raise WorkflowValidationError(result.error)
        workflow = safe_json_parse(workflow, "Workflow JSON")
    else:
        check_json_bounds(workflow, "Workflow JSON")

    return parse_workflow(workflow)


async def run_workflow(
        workflow: Union[str, dict[str, Any], WorkflowGraph],
        overrides: Iterable[OverrideLike] = (),
        binaries: Optional[Mapping[str, InlineBinary]] = None,
        output_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
        include_binary: bool = True,
        settings: Optional[ComfyUISettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        progress_callback: Optional[ProgressCallback] = None,
        **client_options,
) -> WorkflowOutput:
    """
    Run a workflow end to end: validate it, apply the overrides, execute it on a fresh client and collect
    the produced files.

    :param workflow: API-format workflow as JSON text, dict or graph.
    :param overrides: Parameter overrides, applied in order.
    :param binaries: Named inline payloads referenced by image overrides.
    :param output_key: Binary key for the primary output (default 'data').
    :param timeout_s: Maximum execution time.
    :param include_binary: Download the produced files into the output.
    :param settings: Client settings, defaults to the environment settings.
    :param session: Externally managed aiohttp session.
    :param progress_callback: Optional coroutine receiving progress events.
    :param client_options: Passed on to ComfyUIClient.
    :raises ComfyUIError: on any failure.
    """
    log = get_client_logger()
    graph = load_workflow(workflow)
    primary_key = validate_output_binary_key(output_key)

    descriptor = analyze_workflow(graph)
    log.debug(f"Workflow has {descriptor.node_count} nodes, {len(descriptor.edges)} links and outputs "
              f"{descriptor.sink_ids}")
    if descriptor.dangling_edges:
        missing = sorted({edge.source for edge in descriptor.dangling_edges})
        log.warning(f"Workflow links to missing nodes {missing}, the server will probably reject it")

    async with ComfyUIClient(settings=settings, session=session, progress_callback=progress_callback,
                             log=log, **client_options) as client:
        resolver = ImageResolver(client, binaries, timeout_s=timeout_s, log=log)
        graph = await WorkflowMutator(resolver, log=log).apply_overrides(graph, overrides)

        result = await client.execute_workflow(graph, timeout_s=timeout_s)
        result.raise_for_status()

        return await process_results(client, result, primary_key, include_binary)
