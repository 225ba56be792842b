from fastapi import FastAPI, Depends
import uvicorn

from comfyexec.api.auth import validate_api_key
from comfyexec.api.routers import workflows, lifecycle
from comfyexec.config import get_app_settings, get_comfyui_settings

from comfyexec.utils.logger_config import configure_logging

app = FastAPI(title="comfyexec")


app.include_router(workflows.router, dependencies=[Depends(validate_api_key)])
app.include_router(lifecycle.router, dependencies=[Depends(validate_api_key)])

comfyui_settings = get_comfyui_settings()
configure_logging(comfyui_settings.log_level, comfyui_settings.log_file)


if __name__ == "__main__":
    app_settings = get_app_settings()
    uvicorn.run(app, host=app_settings.listen_address, port=app_settings.listen_port)
