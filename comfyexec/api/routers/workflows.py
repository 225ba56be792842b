from typing import Any, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException

from comfyexec.comfyui.errors import (CancellationError, ComfyUIError, DataError, ExecutionTimeoutError,
                                      WorkflowValidationError)
from comfyexec.comfyui.runner import load_workflow, run_workflow
from comfyexec.comfyui.validation import validate_workflow, validate_workflow_object
from comfyexec.comfyui.workflow_analysis import analyze_workflow
from comfyexec.config import ComfyUISettings, get_comfyui_settings
from comfyexec.data.workflows import InlineBinary, NodeParameterConfig, WorkflowDescriptor

router = APIRouter(
    prefix="/workflows",
    tags=["workflows"],
    responses={404: {"description": "Not found"}},
)


class ValidateWorkflowRequest(BaseModel):
    workflow: Union[str, dict[str, Any]]


class ValidateWorkflowResponse(BaseModel):
    valid: bool
    error: Optional[str] = None
    descriptor: Optional[WorkflowDescriptor] = None


class ExecuteWorkflowRequest(BaseModel):
    workflow: Union[str, dict[str, Any]]
    overrides: list[NodeParameterConfig] = Field(default_factory=list)
    binaries: dict[str, InlineBinary] = Field(default_factory=dict)
    output_key: Optional[str] = None
    timeout_s: Optional[float] = Field(default=None, gt=0)
    include_binary: bool = True


def to_http_exception(error: ComfyUIError) -> HTTPException:
    if isinstance(error, (WorkflowValidationError, DataError)):
        status_code = 400
    elif isinstance(error, ExecutionTimeoutError):
        status_code = 504
    elif isinstance(error, CancellationError):
        status_code = 409
    else:
        status_code = 502
    return HTTPException(status_code=status_code, detail=str(error))


@router.post("/validate")
async def validate(request: ValidateWorkflowRequest) -> ValidateWorkflowResponse:
    """
    Validate a workflow without running it and describe its graph.
    """
    if isinstance(request.workflow, str):
        result = validate_workflow(request.workflow)
    else:
        result = validate_workflow_object(request.workflow)
    if not result.valid:
        return ValidateWorkflowResponse(valid=False, error=result.error)

    try:
        descriptor = analyze_workflow(load_workflow(request.workflow))
    except WorkflowValidationError as e:
        return ValidateWorkflowResponse(valid=False, error=str(e))
    return ValidateWorkflowResponse(valid=True, descriptor=descriptor)


@router.post("/execute")
async def execute(request: ExecuteWorkflowRequest,
                  settings: ComfyUISettings = Depends(get_comfyui_settings)) -> dict[str, Any]:
    """
    Run a workflow on the ComfyUI server and return its outputs. Binary outputs are base64 encoded.
    """
    try:
        output = await run_workflow(request.workflow, request.overrides, binaries=request.binaries,
                                    output_key=request.output_key, timeout_s=request.timeout_s,
                                    include_binary=request.include_binary, settings=settings)
    except ComfyUIError as e:
        raise to_http_exception(e) from e

    return output.model_dump(by_alias=True)
