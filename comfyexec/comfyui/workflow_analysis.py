from typing import Any

from pydantic import ValidationError

from comfyexec.comfyui.errors import WorkflowValidationError
from comfyexec.comfyui.validation import validate_workflow_data
from comfyexec.data.workflows import WorkflowDescriptor, WorkflowEdge, WorkflowGraph


def parse_workflow(workflow: dict[str, Any]) -> WorkflowGraph:
    """
    Build a typed graph from a parsed API-format workflow. Link inputs ([node_id, slot] pairs) become NodeRefs.
    :raises WorkflowValidationError: if the workflow is structurally invalid.
    """
    # There are two kinds of workflow definitions in ComfyUI: UI and API JSON files. Only API definitions can
    # be queued. UI definitions are recognised by their top level 'nodes' list.
    if isinstance(workflow, dict) and isinstance(workflow.get('nodes'), list) and 'links' in workflow:
        raise WorkflowValidationError(
            "Workflow is in UI format. Please export the workflow in API format from ComfyUI.")

    result = validate_workflow_data(workflow)
    if not result.valid:
        raise WorkflowValidationError(result.error)

    try:
        return WorkflowGraph.from_prompt(workflow)
    except ValidationError as e:
        raise WorkflowValidationError(f"Invalid workflow: {e}") from e


def analyze_workflow(graph: WorkflowGraph) -> WorkflowDescriptor:
    """
    Performs graph analysis on a workflow.
    Returns a descriptor containing:
      - edges: one edge per link input.
      - sources: node ids with inputs but no incoming edges.
      - sinks: node ids with no outgoing edges (usually the save/preview nodes).
      - external_parameters: per node, the inputs provided as literals.
      - dangling_edges: links whose source node is not part of the graph.
    """
    edges: list[WorkflowEdge] = []
    dangling: list[WorkflowEdge] = []
    incoming = {node_id: 0 for node_id in graph.nodes}
    outgoing = {node_id: 0 for node_id in graph.nodes}

    # Build the edge list by iterating over every node's link inputs.
    for node_id, node in graph.nodes.items():
        for param, ref in node.links().items():
            edge = WorkflowEdge(source=ref.node_id, target=node_id, parameter=param, slot=ref.slot)
            edges.append(edge)
            # Increase counters only if the referenced node exists.
            if ref.node_id in incoming:
                incoming[node_id] += 1
                outgoing[ref.node_id] += 1
            else:
                dangling.append(edge)

    sources = [node_id for node_id, count in incoming.items() if count == 0 and graph[node_id].inputs]
    sinks = [node_id for node_id, count in outgoing.items() if count == 0]

    # Any input value that is not a link is assumed to be externally set.
    external_parameters = {}
    for node_id, node in graph.nodes.items():
        links = node.links()
        ext_params = {param: value for param, value in node.inputs.items() if param not in links}
        if ext_params:
            external_parameters[node_id] = ext_params

    return WorkflowDescriptor(node_count=len(graph), edges=edges, source_ids=sources, sink_ids=sinks,
                              external_parameters=external_parameters, dangling_edges=dangling)
