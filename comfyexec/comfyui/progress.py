"""
Progress events from the ComfyUI websocket.

Only the history endpoint decides when an execution is finished; the websocket is an optional source of
progress notifications and its failures never affect the outcome of an execution.
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from loguru import logger
from pydantic import BaseModel, Field

PROGRESS_EVENT_TYPES = ("execution_start", "execution_cached", "executing", "progress", "executed",
                        "execution_success", "execution_error", "execution_interrupted")

FINAL_EVENT_TYPES = ("execution_success", "execution_error", "execution_interrupted")

MAX_CONNECT_ATTEMPTS = 3
RETRY_DELAY_S = 2


class ProgressEvent(BaseModel):
    type: str
    prompt_id: str
    node: Optional[str] = None
    value: Optional[int] = None
    max: Optional[int] = None
    data: dict[str, Any] = Field(default_factory=dict)


ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]


def parse_progress_event(message: Union[str, bytes], prompt_id: str) -> Optional[ProgressEvent]:
    """
    Parse one websocket message. Binary frames (previews), unknown event types and events of other
    prompts yield None.
    """
    if not isinstance(message, str):
        return None
    try:
        payload = json.loads(message)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    event_type = payload.get("type")
    data = payload.get("data")
    if event_type not in PROGRESS_EVENT_TYPES or not isinstance(data, dict):
        return None
    if data.get("prompt_id") != prompt_id:
        return None

    node = data.get("node", data.get("node_id"))
    return ProgressEvent(type=event_type, prompt_id=prompt_id, node=str(node) if node is not None else None,
                         value=data.get("value"), max=data.get("max"), data=data)


class ProgressWatcher:
    """
    Listens on the ComfyUI websocket and forwards the events of one prompt to a callback.
    """

    def __init__(self, ws_url: str, callback: ProgressCallback, prompt_id_getter: Callable[[], Optional[str]],
                 log=None, max_attempts: int = MAX_CONNECT_ATTEMPTS, retry_delay_s: float = RETRY_DELAY_S):
        """
        :param ws_url: Websocket URL including the clientId query parameter.
        :param callback: Coroutine called with every matching event.
        :param prompt_id_getter: Returns the prompt ID once the prompt has been queued.
        """
        self._ws_url = ws_url
        self._callback = callback
        self._prompt_id_getter = prompt_id_getter
        self._log = log or logger
        self._max_attempts = max_attempts
        self._retry_delay_s = retry_delay_s

    async def run(self) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with websockets.connect(self._ws_url) as websocket:
                    self._log.debug(f"Connected to progress socket {self._ws_url}")
                    async for message in websocket:
                        if await self._dispatch(message):
                            return
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.warning(f"Attempt {attempt}: progress socket failed: {e}")
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_delay_s * attempt)

        self._log.warning("Giving up on progress events, completion is still tracked through history polling")

    async def _dispatch(self, message: Union[str, bytes]) -> bool:
        prompt_id = self._prompt_id_getter()
        if prompt_id is None:
            return False
        event = parse_progress_event(message, prompt_id)
        if event is None:
            return False

        try:
            await self._callback(event)
        except Exception:
            self._log.exception(f"Progress callback failed for event {event.type}")
        return event.type in FINAL_EVENT_TYPES
