"""
Turn the outputs of a finished workflow into view paths, and those into binary outputs.
"""
import asyncio
from typing import Any, Literal, TYPE_CHECKING
from urllib.parse import urlencode

from comfyexec.comfyui.images import VIEW_ROUTE
from comfyexec.data.workflows import Artifact, BinaryOutput, ExecutionResult, ExtractedOutputs, WorkflowOutput
from comfyexec.utils.files import encode_base64

if TYPE_CHECKING:
    from comfyexec.comfyui.client import ComfyUIClient

# Node output keys holding file descriptors. Animated outputs (gifs) are treated as videos.
MEDIA_KEYS: dict[str, Literal["image", "video"]] = {
    "images": "image",
    "videos": "video",
    "gifs": "video",
}


def build_view_path(descriptor: dict[str, Any]) -> str:
    query = urlencode({
        "filename": descriptor["filename"],
        "subfolder": descriptor.get("subfolder") or "",
        "type": descriptor.get("type") or "output",
    })
    return f"{VIEW_ROUTE}?{query}"


def _is_file_descriptor(item: Any) -> bool:
    return isinstance(item, dict) and isinstance(item.get("filename"), str) and bool(item["filename"])


def extract_results(outputs: dict[str, Any]) -> ExtractedOutputs:
    """
    Collect the image and video view paths from the 'outputs' of a history record, in node order.
    Everything else a node produced (text, numbers, descriptors without a filename) is kept in raw_output.
    """
    extracted = ExtractedOutputs()
    if not isinstance(outputs, dict):
        return extracted

    for node_id, node_output in outputs.items():
        if not isinstance(node_output, dict):
            extracted.raw_output[node_id] = node_output
            continue

        raw: dict[str, Any] = {}
        for key, value in node_output.items():
            kind = MEDIA_KEYS.get(key)
            if kind is None or not isinstance(value, list):
                raw[key] = value
                continue

            target = extracted.images if kind == "image" else extracted.videos
            leftovers = []
            for item in value:
                if _is_file_descriptor(item):
                    target.append(build_view_path(item))
                else:
                    leftovers.append(item)
            if leftovers:
                raw[key] = leftovers

        if raw:
            extracted.raw_output[node_id] = raw

    return extracted


def assign_output_keys(images: list[str], videos: list[str], primary_key: str) -> list[tuple[str, Artifact]]:
    """
    The first image gets the primary key and later images image_1, image_2, ...
    Videos are named video_0, video_1, ... unless there is no image, then the first video takes the primary key.
    """
    assigned = []
    for i, path in enumerate(images):
        assigned.append((primary_key if i == 0 else f"image_{i}", Artifact.from_path(path, "image")))

    for i, path in enumerate(videos):
        key = primary_key if not images and i == 0 else f"video_{i}"
        assigned.append((key, Artifact.from_path(path, "video")))
    return assigned


def build_summary(result: ExecutionResult, base_url: str) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "success": result.success,
        "prompt_id": result.handle.prompt_id if result.handle else None,
        "images": list(result.images),
        "image_urls": [f"{base_url}{path}" for path in result.images],
        "image_count": len(result.images),
        "videos": list(result.videos),
        "video_urls": [f"{base_url}{path}" for path in result.videos],
        "video_count": len(result.videos),
    }
    if result.raw_output:
        summary["data"] = result.raw_output
    return summary


async def process_results(client: "ComfyUIClient", result: ExecutionResult, primary_key: str = "data",
                          include_binary: bool = True) -> WorkflowOutput:
    """
    Build the output of a successful execution, downloading every artifact concurrently.
    :param client: The client that ran the workflow.
    :param result: A successful execution result.
    :param primary_key: Binary key of the first image, or of the first video when there is no image.
    :param include_binary: When False only the JSON summary is returned.
    """
    summary = build_summary(result, client.base_url)
    if not include_binary:
        return WorkflowOutput(json=summary)

    assigned = assign_output_keys(result.images, result.videos, primary_key)
    buffers = await asyncio.gather(*(
        client.get_image_buffer(artifact.path) if artifact.kind == "image" else client.get_video_buffer(artifact.path)
        for _, artifact in assigned
    ))

    binary = {
        key: BinaryOutput(data=encode_base64(buffer), mime_type=artifact.mime_type, file_name=artifact.filename)
        for (key, artifact), buffer in zip(assigned, buffers)
    }
    return WorkflowOutput(json=summary, binary=binary)
