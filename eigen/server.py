import asyncio
import logging
from pathlib import Path
from typing import Any, List, Optional

import httpx

from .catalog import LEGACY_MODEL_ID, ModelCatalog, get_model_paths, resolve_model_paths, scan_models_dir
from .errors import EigenError, ResourceError, ServerSpawnError, ServerStartupTimeout
from .events import EventBus
from .state import RuntimeState

logger = logging.getLogger("uvicorn.error")

HEALTH_POLL_INTERVAL_S = 0.5
DEFAULT_READINESS_TIMEOUT_S = 120
_KILL_WAIT_S = 5.0


def build_server_args(
    binary: str,
    model_path: Path,
    mmproj_path: Optional[Path],
    *,
    host: str,
    port: int,
    ctx_size: int,
    max_tokens: int,
) -> List[str]:
    args = [
        binary,
        "-m",
        str(model_path),
        "--host",
        host,
        "--port",
        str(port),
        "--ctx-size",
        str(ctx_size),
        "--n-predict",
        str(max_tokens),
    ]
    if mmproj_path is not None:
        args.extend(["--mmproj", str(mmproj_path)])
    return args


class ServerLifecycleManager:
    """Spawns, probes, switches and stops the local inference server.

    The process handle in :class:`RuntimeState` is only ever written here. After
    the server reached Ready there is no watchdog: if it dies, the next chat
    request fails at the network layer.
    """

    def __init__(
        self,
        state: RuntimeState,
        bus: EventBus,
        *,
        binary: str = "llama-server",
        host: str = "127.0.0.1",
        port: int = 8080,
        readiness_timeout_s: int = DEFAULT_READINESS_TIMEOUT_S,
        poll_interval_s: float = HEALTH_POLL_INTERVAL_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.state = state
        self.bus = bus
        self.binary = binary
        self.host = host
        self.port = port
        self.readiness_timeout_s = readiness_timeout_s
        self.poll_interval_s = poll_interval_s
        self.client = client or httpx.AsyncClient(timeout=5.0)
        self._drain_tasks: List[asyncio.Task] = []

    async def _emit_switching(self, model_id: Optional[str], status: str, error: Optional[str] = None) -> None:
        payload = {"modelId": model_id, "status": status}
        if error is not None:
            payload["error"] = error
        await self.bus.emit("model:switching", payload)

    async def _spawn_process(self, args: List[str]) -> Any:
        return await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _kill(self, process: Any) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            return
        except Exception as exc:
            logger.warning("Failed to kill llama-server (pid %s): %s", getattr(process, "pid", "?"), exc)
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=_KILL_WAIT_S)
        except asyncio.TimeoutError:
            logger.warning("llama-server (pid %s) did not exit after kill", getattr(process, "pid", "?"))
        except Exception as exc:
            logger.warning("Waiting for llama-server exit failed: %s", exc)

    async def _drain(self, stream: Any, label: str) -> None:
        if stream is None:
            return
        try:
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                if label == "stderr":
                    logger.warning("[llama-server] %s", line)
                else:
                    logger.info("[llama-server] %s", line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("llama-server %s drain stopped: %s", label, exc)

    def _start_drains(self, process: Any) -> None:
        self._drain_tasks = [task for task in self._drain_tasks if not task.done()]
        for label in ("stdout", "stderr"):
            stream = getattr(process, label, None)
            if stream is not None:
                self._drain_tasks.append(asyncio.create_task(self._drain(stream, label)))

    async def start_or_switch(
        self,
        model_path: Path,
        mmproj_path: Optional[Path],
        ctx_size: int,
        max_tokens: int,
        model_id: Optional[str] = None,
    ) -> None:
        await self._emit_switching(model_id, "stopping")
        previous = await self.state.swap_process(None)
        self.state.mark_not_ready()
        if previous is not None:
            await self._kill(previous)
            logger.info("Killed existing llama-server")

        await self.state.set_selection(model_id, model_path, mmproj_path)
        await self._emit_switching(model_id, "starting")

        args = build_server_args(
            self.binary,
            model_path,
            mmproj_path,
            host=self.host,
            port=self.port,
            ctx_size=ctx_size,
            max_tokens=max_tokens,
        )
        logger.info("Starting llama-server: %s", " ".join(args))
        try:
            process = await self._spawn_process(args)
        except (OSError, ValueError) as exc:
            message = f"Failed to spawn llama-server: {exc}"
            logger.error(message)
            await self._emit_switching(model_id, "error", message)
            raise ServerSpawnError(message) from exc

        stale = await self.state.swap_process(process)
        if stale is not None and stale is not process:
            await self._kill(stale)
        self._start_drains(process)

    async def wait_until_ready(self, timeout_s: Optional[float] = None) -> None:
        timeout = self.readiness_timeout_s if timeout_s is None else timeout_s
        health_url = f"{self.state.server_url}/health"
        loop = asyncio.get_running_loop()
        start = loop.time()
        while True:
            if loop.time() - start > timeout:
                raise ServerStartupTimeout()
            try:
                resp = await self.client.get(health_url)
                if resp.is_success:
                    self.state.mark_ready()
                    await self.bus.emit("model:ready", {"modelId": await self.state.current_model_id()})
                    return
            except httpx.HTTPError:
                pass
            await asyncio.sleep(self.poll_interval_s)

    async def stop(self) -> None:
        process = await self.state.swap_process(None)
        self.state.mark_not_ready()
        if process is None:
            return
        await self._kill(process)
        logger.info("Stopped llama-server")

    async def switch_model(self, model_id: str, catalog: ModelCatalog) -> None:
        model_path, mmproj_path = resolve_model_paths(catalog, self.state.models_dir, model_id)
        settings = await self.state.get_settings()
        await self.start_or_switch(
            model_path,
            mmproj_path,
            settings.behavior.context_length,
            settings.behavior.max_tokens,
            model_id=model_id,
        )
        try:
            await self.wait_until_ready()
        except ResourceError as exc:
            await self._emit_switching(model_id, "error", str(exc))
            raise
        await self._emit_switching(model_id, "ready")
        logger.info("llama-server ready with model: %s", model_id)

    def pick_default_model(self, catalog: ModelCatalog, preferred_id: Optional[str]) -> Optional[str]:
        models_dir = self.state.models_dir
        if preferred_id:
            entry = catalog.find(preferred_id)
            if entry and get_model_paths(models_dir, entry):
                return entry.id
        for entry in catalog.models:
            if get_model_paths(models_dir, entry):
                return entry.id
        if scan_models_dir(models_dir):
            return LEGACY_MODEL_ID
        return None

    async def start_default_model(self, catalog: ModelCatalog) -> Optional[str]:
        settings = await self.state.get_settings()
        model_id = self.pick_default_model(catalog, settings.defaults.model_id)
        if model_id is None:
            logger.info("No model installed, app will start without a model")
            await self.bus.emit("model:no_model", {})
            return None
        await self.bus.emit("model:loading", {"modelId": model_id})
        try:
            await self.switch_model(model_id, catalog)
        except EigenError as exc:
            await self.bus.emit("model:error", {"modelId": model_id, "error": str(exc)})
            return None
        return model_id

    async def close(self) -> None:
        await self.stop()
        for task in self._drain_tasks:
            if not task.done():
                task.cancel()
        await self.client.aclose()
