"""
ComfyUI execution client.

One client instance owns one HTTP session and performs at most one workflow submission:

    IDLE -> SUBMITTED -> POLLING -> COMPLETED | FAILED | TIMED_OUT | CANCELLED

Any state can move to CANCELLED through cancel(), and destroy() moves it to DESTROYED. A cancelled or
destroyed client rejects every further operation with ClientStateError.

Prompt submission, history polling and artifact downloads are retried with exponential back-off. Uploads
are never retried. Time and sleep are injectable so the retry and polling schedule can be driven by a fake
clock in tests.
"""
import asyncio
import json
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Optional, TypeVar, Union
from urllib.parse import urlparse

import aiohttp

from comfyexec.comfyui.errors import (CancellationError, ClientStateError, DataError, NetworkError,
                                      error_from_status)
from comfyexec.comfyui.progress import ProgressCallback, ProgressWatcher
from comfyexec.comfyui.results import extract_results
from comfyexec.comfyui.validation import validate_url
from comfyexec.config import ComfyUISettings, MAX_WAIT_TIME_S, get_comfyui_settings
from comfyexec.data.workflows import ExecutionHandle, ExecutionResult, ExecutionState, WorkflowGraph
from comfyexec.utils.files import format_bytes, get_extension, mime_type_for_extension
from comfyexec.utils.logger_config import get_client_logger

T = TypeVar("T")


class ClientState(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    DESTROYED = "destroyed"


class _DeadlineReached(Exception):
    """Raised inside an execution when the caller's timeout runs out."""


def execution_error_message(status: dict[str, Any]) -> str:
    """
    Pull the exception message out of a failed history status record.
    """
    for message in status.get("messages") or []:
        if isinstance(message, (list, tuple)) and len(message) == 2 and message[0] == "execution_error":
            data = message[1] if isinstance(message[1], dict) else {}
            text = data.get("exception_message") or str(data)
            node_id = data.get("node_id")
            return f"node {node_id}: {text}" if node_id else text
    return f"status {status.get('status_str', 'unknown')}"


class ComfyUIClient:
    """
    Submits a workflow to a ComfyUI server, waits for it to finish and retrieves the files it produced.
    """

    def __init__(
            self,
            settings: Optional[ComfyUISettings] = None,
            base_url: Optional[str] = None,
            client_id: Optional[str] = None,
            session: Optional[aiohttp.ClientSession] = None,
            time_function: Optional[Callable[[], float]] = None,
            sleep_function: Optional[Callable[[float], Awaitable[None]]] = None,
            progress_callback: Optional[ProgressCallback] = None,
            log=None,
    ):
        """
        Initialize the client.

        :param settings: Connection, retry and polling settings. Defaults to the environment settings.
        :param base_url: Overrides the server URL from the settings.
        :param client_id: Session identifier sent with the prompt. Generated when omitted.
        :param session: Externally managed aiohttp session. The client does not close it.
        :param time_function: Returns the current time in seconds (default: time.monotonic).
        :param sleep_function: Coroutine used for every back-off and poll delay (default: asyncio.sleep).
        :param progress_callback: Optional coroutine receiving progress events from the server's websocket.
        :param log: Optional logger, defaults to the ComfyUI client logger.
        """
        settings = settings or get_comfyui_settings()
        if base_url is not None and not validate_url(base_url):
            raise ValueError(f"ComfyUI URL must be a valid HTTP/HTTPS URL, got '{base_url}'")

        self.base_url = (base_url or settings.base_url).rstrip('/')
        self.client_id = client_id or f"client_{uuid.uuid4().hex}"
        self.max_file_size_bytes = settings.max_file_size_bytes

        self._request_timeout_s = settings.request_timeout_s
        self._max_retries = settings.max_retries
        self._retry_delay_s = settings.retry_delay_s
        self._max_backoff_s = settings.max_backoff_s
        self._poll_interval_s = settings.poll_interval_s
        self._max_wait_s = settings.max_wait_s

        self._session = session
        self._owns_session = session is None
        self._time = time_function if time_function is not None else time.monotonic
        self._sleep = sleep_function if sleep_function is not None else asyncio.sleep
        self._progress_callback = progress_callback
        self._log = (log or get_client_logger()).bind(client_id=self.client_id)

        self._state = ClientState.IDLE
        self._handle: Optional[ExecutionHandle] = None
        self._cancel_event = asyncio.Event()
        self._inflight: set[asyncio.Task] = set()
        self._progress_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def handle(self) -> Optional[ExecutionHandle]:
        return self._handle

    def is_destroyed(self) -> bool:
        return self._state == ClientState.DESTROYED

    async def __aenter__(self) -> "ComfyUIClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.destroy()

    def cancel(self) -> None:
        """
        Abort the in-flight request or delay and stop any retry or polling loop.
        """
        if self._state == ClientState.DESTROYED:
            return
        self._cancel_event.set()
        self._state = ClientState.CANCELLED
        for task in list(self._inflight):
            if not task.done():
                task.cancel()

    async def destroy(self) -> None:
        """
        Cancel outstanding work and release the session. Safe to call any number of times.
        """
        if self.is_destroyed():
            return
        self.cancel()
        self._state = ClientState.DESTROYED
        await self._stop_progress_watcher()

        # Let cancelled requests unwind before their session goes away
        pending = [task for task in self._inflight if task is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._log.debug("Client destroyed")

    async def execute_workflow(self, workflow: Union[WorkflowGraph, dict[str, Any]],
                               timeout_s: Optional[float] = None) -> ExecutionResult:
        """
        Queue a workflow and wait until the server reports it finished.

        Network failures, timeouts and cancellation are reported through the returned result rather than
        raised; call raise_for_status() on it to turn a failure into an exception.

        :param workflow: The workflow graph, typed or in wire format.
        :param timeout_s: Maximum time to wait for completion. Bounded by MAX_WAIT_TIME_S.
        :return: The execution result.
        :raises ClientStateError: if the client was cancelled, destroyed or already used.
        """
        self._ensure_usable()
        if self._state != ClientState.IDLE:
            raise ClientStateError(
                f"Client already executed a workflow (state: {self._state.value}); use a new client per execution")

        prompt = workflow.to_prompt() if isinstance(workflow, WorkflowGraph) else workflow
        timeout = min(timeout_s or self._max_wait_s, MAX_WAIT_TIME_S)
        start = self._time()
        deadline = start + timeout

        self._start_progress_watcher()
        try:
            self._state = ClientState.SUBMITTED
            self._log.debug(f"Sending workflow with {len(prompt)} nodes to {self.base_url}")
            try:
                response = await self._retry_request(
                    lambda: self._request("POST", "/prompt", json={"prompt": prompt, "client_id": self.client_id},
                                          context="Failed to queue workflow"),
                    "Queue prompt", deadline=deadline)
            except NetworkError as e:
                return self._finish(ExecutionState.FAILED, start, error=self._format_error(e))

            prompt_id = response.get("prompt_id") if isinstance(response, dict) else None
            if not prompt_id:
                return self._finish(ExecutionState.FAILED, start,
                                    error="Failed to execute workflow: No prompt_id returned")

            self._handle = ExecutionHandle(prompt_id=prompt_id, client_id=self.client_id)
            self._log.info(f"Workflow queued with prompt ID {prompt_id}")
            self._state = ClientState.POLLING
            return await self._wait_for_execution(prompt_id, start, deadline)

        except _DeadlineReached:
            return self._finish(ExecutionState.TIMED_OUT, start,
                                error=f"Workflow execution timed out after {self._time() - start:.1f}s")
        except CancellationError as e:
            return self._finish(ExecutionState.CANCELLED, start, error=str(e))
        finally:
            await self._stop_progress_watcher()

    async def _wait_for_execution(self, prompt_id: str, start: float, deadline: float) -> ExecutionResult:
        last_status = None
        while True:
            self._ensure_not_cancelled()
            if self._time() >= deadline:
                raise _DeadlineReached()

            try:
                history = await self._retry_request(
                    lambda: self._request("GET", f"/history/{prompt_id}", context="Failed to query history"),
                    "History query", deadline=deadline)
            except NetworkError as e:
                return self._finish(ExecutionState.FAILED, start,
                                    error=self._format_error(e, "Workflow execution failed while polling"))

            record = history.get(prompt_id) if isinstance(history, dict) else None
            if isinstance(record, dict):
                status = record.get("status") or {}
                if status.get("completed"):
                    extracted = extract_results(record.get("outputs") or {})
                    return self._finish(ExecutionState.COMPLETED, start, images=extracted.images,
                                        videos=extracted.videos, raw_output=extracted.raw_output)

                if status.get("status_str") == "error":
                    return self._finish(ExecutionState.FAILED, start,
                                        error=f"Workflow execution failed: {execution_error_message(status)}")

                if status.get("status_str") != last_status:
                    last_status = status.get("status_str")
                    self._log.debug(f"Prompt {prompt_id} status: {last_status}")

            remaining = deadline - self._time()
            if remaining > 0:
                await self._track(self._sleep(min(self._poll_interval_s, remaining)))

    def _finish(self, state: ExecutionState, start: float, **fields) -> ExecutionResult:
        if self._state not in (ClientState.CANCELLED, ClientState.DESTROYED):
            self._state = ClientState(state.value)

        result = ExecutionResult(success=state == ExecutionState.COMPLETED, state=state,
                                 elapsed_s=self._time() - start, handle=self._handle, **fields)
        if result.success:
            self._log.info(f"Workflow finished in {result.elapsed_s:.1f}s with {len(result.images)} image(s) "
                           f"and {len(result.videos)} video(s)")
        else:
            self._log.error(f"Workflow {state.value}: {result.error}")
        return result

    async def get_history(self, prompt_id: Optional[str] = None, limit: int = 100) -> dict[str, Any]:
        """
        Fetch execution history, for a single prompt or the most recent ones.
        """
        self._ensure_usable()
        if prompt_id:
            return await self._retry_request(
                lambda: self._request("GET", f"/history/{prompt_id}", context="Failed to query history"),
                "History query")
        return await self._retry_request(
            lambda: self._request("GET", "/history", params={"max_items": str(limit)},
                                  context="Failed to query history"),
            "History query")

    async def get_system_info(self) -> dict[str, Any]:
        self._ensure_usable()
        return await self._retry_request(
            lambda: self._request("GET", "/system_stats", context="Failed to get system info"),
            "System info")

    async def interrupt(self) -> None:
        """
        Ask the server to stop the prompt it is currently running.
        """
        self._ensure_usable()
        await self._track(self._request("POST", "/interrupt", expect="none", context="Failed to interrupt"))

    async def upload_image(self, data: bytes, filename: str, overwrite: bool = False) -> str:
        """
        Upload an image to the server's input directory. Never retried.
        :param data: File content.
        :param filename: Requested filename. The server may rename the file.
        :param overwrite: Replace an existing file with the same name.
        :return: The filename assigned by the server, prefixed with its subfolder if any.
        """
        self._ensure_usable()
        if not isinstance(data, (bytes, bytearray)):
            raise DataError("Invalid image data: expected bytes")
        if len(data) == 0:
            raise DataError("Invalid image data: buffer is empty")
        if len(data) > self.max_file_size_bytes:
            raise DataError(f"Image size ({format_bytes(len(data))}) exceeds maximum allowed size of "
                            f"{format_bytes(self.max_file_size_bytes)}")

        self._ensure_not_cancelled()
        self._log.debug(f"Uploading image {filename} ({format_bytes(len(data))})")

        form = aiohttp.FormData()
        form.add_field("image", bytes(data), filename=filename,
                       content_type=mime_type_for_extension(get_extension(filename)))
        form.add_field("overwrite", "true" if overwrite else "false")

        response = await self._track(self._request("POST", "/upload/image", data=form,
                                                   context="Failed to upload image"))
        name = response.get("name") if isinstance(response, dict) else None
        if not name:
            raise NetworkError("Failed to upload image: the server did not return a filename", details=response)

        subfolder = response.get("subfolder")
        return f"{subfolder.rstrip('/')}/{name}" if subfolder else name

    async def download(self, url: str, headers: Optional[dict[str, str]] = None,
                       timeout_s: Optional[float] = None) -> bytes:
        """
        Fetch the raw bytes of an external URL. Single attempt.
        """
        self._ensure_usable()
        self._ensure_not_cancelled()
        return await self._track(self._request("GET", url, headers=headers, expect="bytes", timeout_s=timeout_s,
                                               context="Failed to download file"))

    async def get_image_buffer(self, image_path: str) -> bytes:
        return await self._get_buffer(image_path, "image")

    async def get_video_buffer(self, video_path: str) -> bytes:
        return await self._get_buffer(video_path, "video")

    async def get_image_buffers(self, image_paths: list[str]) -> list[bytes]:
        return list(await asyncio.gather(*(self.get_image_buffer(path) for path in image_paths)))

    async def get_video_buffers(self, video_paths: list[str]) -> list[bytes]:
        return list(await asyncio.gather(*(self.get_video_buffer(path) for path in video_paths)))

    async def _get_buffer(self, path: str, resource_type: Literal["image", "video"]) -> bytes:
        self._ensure_usable()
        buffer = await self._retry_request(
            lambda: self._request("GET", path, expect="bytes", context=f"Failed to get {resource_type} buffer"),
            f"Fetch {resource_type}")

        if len(buffer) > self.max_file_size_bytes:
            raise DataError(f"{resource_type.capitalize()} size ({format_bytes(len(buffer))}) exceeds maximum "
                            f"allowed size of {format_bytes(self.max_file_size_bytes)}")
        return buffer

    async def _retry_request(self, operation: Callable[[], Awaitable[T]], description: str,
                             deadline: Optional[float] = None) -> T:
        """
        Run an idempotent request, retrying network failures with exponential back-off.

        The first retry waits retry_delay_s and every further retry doubles the delay, capped at
        max_backoff_s. Cancellation between attempts stops immediately.

        :param deadline: Optional time (on the client's clock) by which the request must have succeeded.
            Each attempt and back-off delay is cut short at the deadline, and reaching it raises
            _DeadlineReached instead of a NetworkError.
        """
        attempts = self._max_retries + 1
        delay = self._retry_delay_s

        for attempt in range(1, attempts + 1):
            self._ensure_not_cancelled()
            try:
                if deadline is None:
                    return await self._track(operation())
                remaining = self._remaining(deadline)
                try:
                    return await self._track(asyncio.wait_for(operation(), timeout=remaining))
                except asyncio.TimeoutError:
                    raise _DeadlineReached() from None
            except NetworkError as e:
                if deadline is not None and self._remaining(deadline, strict=False) <= 0:
                    raise _DeadlineReached() from e
                if attempt == attempts:
                    suffix = "attempt" if attempt == 1 else "attempts"
                    raise NetworkError(f"{e.message} (after {attempt} {suffix})", status_code=e.status_code,
                                       details=e.details, hint=e.hint) from e

                wait = delay if deadline is None else min(delay, self._remaining(deadline))
                self._log.warning(f"{description} attempt {attempt}/{attempts} failed, retrying in {wait}s: {e}")
                self._ensure_not_cancelled()
                await self._track(self._sleep(wait))
                delay = min(delay * 2, self._max_backoff_s)

        raise AssertionError("unreachable")

    def _remaining(self, deadline: float, strict: bool = True) -> float:
        """
        Seconds left until the deadline. With strict, an expired deadline raises _DeadlineReached.
        """
        remaining = deadline - self._time()
        if strict and remaining <= 0:
            raise _DeadlineReached()
        return remaining

    async def _track(self, awaitable: Awaitable[T]) -> T:
        """
        Await a request or delay as a task that cancel() can abort.
        """
        task = asyncio.ensure_future(awaitable)
        self._inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_event.is_set():
                raise CancellationError("Request was cancelled") from None
            raise
        finally:
            self._inflight.discard(task)

    async def _request(self, method: str, path_or_url: str, *, context: str,
                       expect: Literal["json", "bytes", "none"] = "json", timeout_s: Optional[float] = None,
                       **kwargs) -> Any:
        """
        Perform one HTTP request. Every transport and HTTP error is turned into a NetworkError here.
        """
        if path_or_url.startswith(("http://", "https://")):
            url = path_or_url
        else:
            url = f"{self.base_url}{path_or_url}"

        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=timeout_s or self._request_timeout_s)
        try:
            async with session.request(method, url, timeout=timeout, **kwargs) as response:
                if response.status >= 400:
                    body = await response.text()
                    error = error_from_status(response.status, response.reason, context, details=body[:2000])
                    detail = _error_detail(body)
                    if detail:
                        error.message = f"{error.message} - {detail}"
                    raise error

                if expect == "bytes":
                    return await response.read()
                if expect == "none":
                    return None
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise NetworkError(f"{context}: {e.__class__.__name__} {e}".rstrip(), details=str(e)) from e
        except asyncio.TimeoutError as e:
            raise NetworkError(f"{context}: request timed out after {timeout.total}s") from e
        except json.JSONDecodeError as e:
            raise NetworkError(f"{context}: invalid JSON response ({e})") from e

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _ensure_usable(self) -> None:
        if self._state in (ClientState.CANCELLED, ClientState.DESTROYED):
            raise ClientStateError(f"Client has been {self._state.value}")

    def _ensure_not_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise CancellationError("Request was cancelled")

    @staticmethod
    def _format_error(error: NetworkError, context: Optional[str] = None) -> str:
        message = f"{context}: {error}" if context else str(error)
        if error.hint:
            message = f"{message}. {error.hint}"
        return message

    def _websocket_url(self) -> str:
        parsed = urlparse(self.base_url)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        return parsed._replace(scheme=scheme).geturl() + f"/ws?clientId={self.client_id}"

    def _start_progress_watcher(self) -> None:
        if self._progress_callback is None:
            return
        watcher = ProgressWatcher(self._websocket_url(), self._progress_callback,
                                  lambda: self._handle.prompt_id if self._handle else None, log=self._log)
        self._progress_task = asyncio.create_task(watcher.run())

    async def _stop_progress_watcher(self) -> None:
        task, self._progress_task = self._progress_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def _error_detail(body: str) -> Optional[str]:
    """
    Short description from a ComfyUI error body such as {"error": {"message": ...}, "node_errors": {...}}.
    """
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    message = error.get("message") if isinstance(error, dict) else error
    node_errors = payload.get("node_errors")
    if isinstance(node_errors, dict) and node_errors:
        message = f"{message or 'node errors'} (nodes: {', '.join(sorted(map(str, node_errors)))})"
    return str(message) if message else None
