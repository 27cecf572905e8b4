import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import AppSettings
from .errors import DownloadInProgress


class CancellationToken:
    """Cooperative cancel flag shared between the caller and the observer."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ModelSelection:
    model_id: Optional[str] = None
    model_path: Optional[Path] = None
    mmproj_path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "model_path": str(self.model_path) if self.model_path else None,
            "mmproj_path": str(self.mmproj_path) if self.mmproj_path else None,
        }


class RuntimeState:
    """Process-wide coordination hub.

    Every field has its own lock so a progress query never waits on another
    component's work. Locks are only held for the read or write itself and are
    always released before the caller awaits anything else.
    """

    def __init__(
        self,
        server_url: str,
        models_dir: Path,
        settings: AppSettings,
        *,
        selection: Optional[ModelSelection] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.models_dir = models_dir
        self._ready = False
        self._process: Any = None
        self._process_lock = asyncio.Lock()
        self._selection = selection or ModelSelection()
        self._selection_lock = asyncio.Lock()
        self._active_downloads: Dict[str, CancellationToken] = {}
        self._downloads_lock = asyncio.Lock()
        self._download_progress: Dict[str, float] = {}
        self._progress_lock = asyncio.Lock()
        self._generations: Dict[str, CancellationToken] = {}
        self._generations_lock = asyncio.Lock()
        self._settings = settings
        self._settings_lock = asyncio.Lock()

    # readiness

    @property
    def ready(self) -> bool:
        return self._ready

    def mark_ready(self) -> None:
        self._ready = True

    def mark_not_ready(self) -> None:
        self._ready = False

    # process handle, only touched by the lifecycle manager

    async def swap_process(self, process: Any) -> Any:
        async with self._process_lock:
            previous = self._process
            self._process = process
            return previous

    async def get_process(self) -> Any:
        async with self._process_lock:
            return self._process

    # model selection

    async def set_selection(
        self,
        model_id: Optional[str],
        model_path: Optional[Path],
        mmproj_path: Optional[Path],
    ) -> None:
        async with self._selection_lock:
            self._selection = ModelSelection(model_id=model_id, model_path=model_path, mmproj_path=mmproj_path)

    async def get_selection(self) -> ModelSelection:
        async with self._selection_lock:
            return ModelSelection(
                model_id=self._selection.model_id,
                model_path=self._selection.model_path,
                mmproj_path=self._selection.mmproj_path,
            )

    async def current_model_id(self) -> Optional[str]:
        async with self._selection_lock:
            return self._selection.model_id

    # downloads

    async def register_download(self, model_id: str) -> CancellationToken:
        async with self._downloads_lock:
            if model_id in self._active_downloads:
                raise DownloadInProgress()
            token = CancellationToken()
            self._active_downloads[model_id] = token
        async with self._progress_lock:
            self._download_progress[model_id] = 0.0
        return token

    async def finish_download(self, model_id: str) -> None:
        async with self._downloads_lock:
            self._active_downloads.pop(model_id, None)
        async with self._progress_lock:
            self._download_progress.pop(model_id, None)

    async def cancel_download(self, model_id: str) -> bool:
        async with self._downloads_lock:
            token = self._active_downloads.get(model_id)
        if token is None:
            return False
        token.cancel()
        return True

    async def is_downloading(self, model_id: str) -> bool:
        async with self._downloads_lock:
            return model_id in self._active_downloads

    async def active_download_ids(self) -> List[str]:
        async with self._downloads_lock:
            return list(self._active_downloads.keys())

    async def set_download_progress(self, model_id: str, percent: float) -> None:
        async with self._progress_lock:
            self._download_progress[model_id] = percent

    async def download_progress(self) -> Dict[str, float]:
        async with self._progress_lock:
            return dict(self._download_progress)

    # chat generations, keyed by chat id

    async def begin_generation(self, chat_id: str) -> CancellationToken:
        token = CancellationToken()
        async with self._generations_lock:
            self._generations[chat_id] = token
        return token

    async def end_generation(self, chat_id: str, token: CancellationToken) -> None:
        async with self._generations_lock:
            if self._generations.get(chat_id) is token:
                self._generations.pop(chat_id, None)

    async def cancel_generation(self, chat_id: Optional[str] = None) -> int:
        async with self._generations_lock:
            if chat_id is None:
                tokens = list(self._generations.values())
            else:
                token = self._generations.get(chat_id)
                tokens = [token] if token else []
        for token in tokens:
            token.cancel()
        return len(tokens)

    # settings

    async def get_settings(self) -> AppSettings:
        async with self._settings_lock:
            return self._settings.model_copy(deep=True)

    async def replace_settings(self, settings: AppSettings) -> None:
        async with self._settings_lock:
            self._settings = settings
