import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import FrozenSet, Optional, Sequence, Tuple

import httpx

from .catalog import LEGACY_MODEL_ID, ModelCatalog, ModelFile, checked_model_dir, is_model_downloaded
from .errors import (
    ActiveModelDeletion,
    DownloadCancelled,
    DownloadError,
    DownloadInProgress,
    EigenError,
    PolicyError,
    ResourceError,
    UnknownModel,
)
from .events import EventBus
from .state import CancellationToken, RuntimeState

logger = logging.getLogger("uvicorn.error")

PROGRESS_STEP_BYTES = 100 * 1024
WATCH_INTERVAL_S = 1.0

Snapshot = FrozenSet[Tuple[str, int]]


def download_percent(downloaded: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return min(100.0, round(downloaded / total * 100.0, 4))


def models_snapshot(models_dir: Path) -> Snapshot:
    """Relative path and size of every file under ``models_dir``."""
    if not models_dir.is_dir():
        return frozenset()
    entries = set()
    for path in models_dir.rglob("*"):
        try:
            if path.is_file():
                entries.add((path.relative_to(models_dir).as_posix(), path.stat().st_size))
        except OSError:
            # removed between listing and stat
            continue
    return frozenset(entries)


class DownloadManager:
    """Fetches model artifacts into ``<models_dir>/<model_id>/``.

    A download either completes with every file on disk or leaves no directory
    behind: cancellation, HTTP errors and I/O errors all remove the partial
    directory and clear the tracking entries in :class:`RuntimeState`.
    Installed models are never overwritten; delete them first.
    """

    def __init__(
        self,
        state: RuntimeState,
        bus: EventBus,
        *,
        client: Optional[httpx.AsyncClient] = None,
        chunk_size: Optional[int] = None,
    ) -> None:
        self.state = state
        self.bus = bus
        self.client = client or httpx.AsyncClient(follow_redirects=True, timeout=httpx.Timeout(30.0, read=None))
        self.chunk_size = chunk_size
        self._snapshot: Optional[Snapshot] = None

    async def _emit_progress(self, model_id: str, downloaded: int, total: int, started: float) -> None:
        elapsed = max(time.monotonic() - started, 1e-6)
        await self.bus.emit(
            "download:progress",
            {
                "modelId": model_id,
                "downloadedBytes": downloaded,
                "totalBytes": total,
                "percent": download_percent(downloaded, total),
                "speedBps": int(downloaded / elapsed),
            },
        )

    async def _models_changed(self) -> None:
        self._snapshot = models_snapshot(self.state.models_dir)
        await self.bus.emit("models:changed", {})

    async def _cleanup(self, model_id: str, target_dir: Path) -> None:
        if target_dir.exists():
            try:
                shutil.rmtree(target_dir)
            except OSError as exc:
                logger.warning("Failed to remove partial download %s: %s", target_dir, exc)
        await self.state.finish_download(model_id)
        await self._models_changed()

    async def _fetch_file(
        self,
        model_id: str,
        file: ModelFile,
        dest: Path,
        token: CancellationToken,
        downloaded: int,
        total: int,
        started: float,
    ) -> int:
        logger.info("Downloading %s -> %s", file.url, dest)
        async with self.client.stream("GET", file.url) as response:
            if not response.is_success:
                raise DownloadError(f"Download failed with status: {response.status_code}")
            file_downloaded = 0
            last_step = 0
            with open(dest, "wb") as handle:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    if token.cancelled:
                        raise DownloadCancelled()
                    handle.write(chunk)
                    file_downloaded += len(chunk)
                    downloaded += len(chunk)
                    await self.state.set_download_progress(model_id, download_percent(downloaded, total))
                    step = file_downloaded // PROGRESS_STEP_BYTES
                    if step > last_step:
                        last_step = step
                        await self._emit_progress(model_id, downloaded, total, started)
            if token.cancelled:
                raise DownloadCancelled()
        return downloaded

    async def download(self, model_id: str, files: Sequence[ModelFile], total_bytes: int) -> None:
        target_dir = checked_model_dir(self.state.models_dir, model_id)
        token = await self.state.register_download(model_id)
        started = time.monotonic()
        downloaded = 0
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            for file in files:
                if token.cancelled:
                    raise DownloadCancelled()
                downloaded = await self._fetch_file(
                    model_id, file, target_dir / file.filename, token, downloaded, total_bytes, started
                )
        except DownloadCancelled:
            logger.info("Download of %s cancelled", model_id)
            await self._cleanup(model_id, target_dir)
            raise
        except asyncio.CancelledError:
            await self._cleanup(model_id, target_dir)
            raise
        except EigenError as exc:
            logger.error("Download of %s failed: %s", model_id, exc)
            await self._cleanup(model_id, target_dir)
            raise
        except (httpx.HTTPError, OSError) as exc:
            logger.error("Download of %s failed: %s", model_id, exc)
            await self._cleanup(model_id, target_dir)
            raise DownloadError(f"Download failed: {exc}") from exc

        await self.state.finish_download(model_id)
        await self.bus.emit("download:complete", {"modelId": model_id})
        await self._models_changed()
        logger.info("Download of %s complete (%s bytes)", model_id, downloaded)

    async def download_model(self, model_id: str, catalog: ModelCatalog) -> None:
        entry = catalog.find(model_id)
        if entry is None:
            raise UnknownModel(f"Model {model_id} not found in catalog")
        if is_model_downloaded(self.state.models_dir, entry):
            raise PolicyError("Model is already downloaded")
        await self.download(model_id, entry.file_list(), entry.total_bytes())

    async def cancel(self, model_id: str) -> bool:
        return await self.state.cancel_download(model_id)

    async def delete_model(self, model_id: str) -> None:
        if model_id == LEGACY_MODEL_ID:
            raise PolicyError("Cannot delete legacy model via this method")
        target_dir = checked_model_dir(self.state.models_dir, model_id)
        if await self.state.current_model_id() == model_id:
            raise ActiveModelDeletion()
        if await self.state.is_downloading(model_id):
            raise DownloadInProgress()
        if not target_dir.exists():
            return
        try:
            shutil.rmtree(target_dir)
        except OSError as exc:
            raise ResourceError(f"Failed to delete model {model_id}: {exc}") from exc
        logger.info("Deleted model %s", model_id)
        await self._models_changed()

    async def watch(self, interval_s: float = WATCH_INTERVAL_S) -> None:
        """Emit ``models:changed`` whenever files under the models directory change.

        Polls at ``interval_s``, so bursts of writes produce at most one event
        per interval. Runs until cancelled.
        """
        models_dir = self.state.models_dir
        if self._snapshot is None:
            self._snapshot = models_snapshot(models_dir)
        logger.info("Watching models directory: %s", models_dir)
        while True:
            await asyncio.sleep(interval_s)
            current = await asyncio.to_thread(models_snapshot, models_dir)
            if current != self._snapshot:
                logger.info("Models directory changed")
                await self._models_changed()

    async def close(self) -> None:
        await self.client.aclose()
