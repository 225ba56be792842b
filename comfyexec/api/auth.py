from fastapi import Depends, Security, HTTPException, status
from fastapi.security import APIKeyHeader

from comfyexec.config import AppSettings, get_app_settings

api_key_header = APIKeyHeader(name="X-API-Key")


def check_api_key(api_key: str, app_settings: AppSettings) -> bool:
    return api_key == app_settings.api_key


async def validate_api_key(api_key_header: str = Security(api_key_header),
                           app_settings: AppSettings = Depends(get_app_settings)):
    if check_api_key(api_key_header, app_settings):
        return api_key_header
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing or invalid API key"
    )
