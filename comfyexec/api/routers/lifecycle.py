from fastapi import APIRouter, Depends
from starlette.responses import JSONResponse

from comfyexec.comfyui.client import ComfyUIClient
from comfyexec.comfyui.errors import NetworkError
from comfyexec.config import ComfyUISettings, get_comfyui_settings

router = APIRouter(
    prefix="/lifecycle",
    tags=["lifecycle"],
    responses={404: {"description": "Not found"}},
)


@router.get("/status")
async def status_comfyui(settings: ComfyUISettings = Depends(get_comfyui_settings)):
    """
    Report whether the ComfyUI server is reachable, with its system stats when it is.
    """
    async with ComfyUIClient(settings=settings) as client:
        try:
            system_info = await client.get_system_info()
        except NetworkError as e:
            return JSONResponse(content={"status": "unreachable", "base_url": client.base_url, "error": str(e)},
                                status_code=502)

    return {"status": "running", "base_url": client.base_url, "system": system_info}
