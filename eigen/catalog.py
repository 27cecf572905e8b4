import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import PolicyError, UnknownModel

logger = logging.getLogger("uvicorn.error")

CATALOG_FILENAME = "model-catalog.json"
LEGACY_MODEL_ID = "legacy"


class ModelCapabilities(BaseModel):
    vision: bool = False
    thinking: bool = False


class ModelFile(BaseModel):
    filename: str
    url: str
    size_bytes: int = 0


class ModelFiles(BaseModel):
    model: ModelFile
    mmproj: Optional[ModelFile] = None


class ModelCatalogEntry(BaseModel):
    id: str
    name: str
    description: str = ""
    size_label: str = ""
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)
    files: ModelFiles

    def file_list(self) -> List[ModelFile]:
        files = [self.files.model]
        if self.files.mmproj:
            files.append(self.files.mmproj)
        return files

    def total_bytes(self) -> int:
        return sum(f.size_bytes for f in self.file_list())


class ModelCatalog(BaseModel):
    version: int = 1
    models: List[ModelCatalogEntry] = Field(default_factory=list)

    def find(self, model_id: str) -> Optional[ModelCatalogEntry]:
        for entry in self.models:
            if entry.id == model_id:
                return entry
        return None


class ModelInfo(BaseModel):
    id: str
    name: str
    description: str = ""
    size_label: str = ""
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)
    download_status: str = "not_downloaded"
    download_percent: Optional[float] = None
    is_current: bool = False


def load_or_create_catalog(models_dir: Path, bundled_path: Optional[Path] = None) -> ModelCatalog:
    """Load the user catalog, seeding it from the bundled copy on first run."""
    models_dir.mkdir(parents=True, exist_ok=True)
    catalog_path = models_dir / CATALOG_FILENAME
    if catalog_path.exists():
        return ModelCatalog(**json.loads(catalog_path.read_text(encoding="utf-8")))
    if bundled_path and bundled_path.exists():
        content = bundled_path.read_text(encoding="utf-8")
        catalog_path.write_text(content, encoding="utf-8")
        logger.info("Copied bundled catalog to %s", catalog_path)
        return ModelCatalog(**json.loads(content))
    catalog = ModelCatalog()
    catalog_path.write_text(catalog.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
    logger.info("Created default catalog at %s", catalog_path)
    return catalog


def model_dir(models_dir: Path, model_id: str) -> Path:
    return models_dir / model_id


def checked_model_dir(models_dir: Path, model_id: str) -> Path:
    """Return the model directory, refusing ids that would leave ``models_dir``."""
    target = model_dir(models_dir, model_id)
    if not model_id or "/" in model_id or "\\" in model_id or target.resolve().parent != models_dir.resolve():
        raise PolicyError(f"Invalid model id: {model_id!r}")
    return target


def get_model_paths(models_dir: Path, entry: ModelCatalogEntry) -> Optional[Tuple[Path, Optional[Path]]]:
    base = model_dir(models_dir, entry.id)
    model_path = base / entry.files.model.filename
    if not model_path.exists():
        return None
    mmproj_path = base / entry.files.mmproj.filename if entry.files.mmproj else None
    if mmproj_path is not None and not mmproj_path.exists():
        return None
    return model_path, mmproj_path


def is_model_downloaded(models_dir: Path, entry: ModelCatalogEntry) -> bool:
    return get_model_paths(models_dir, entry) is not None


def scan_models_dir(directory: Path) -> Optional[Tuple[Path, Optional[Path]]]:
    """Find a flat ``.gguf`` model (and optional ``mmproj``) directly in ``directory``."""
    if not directory.is_dir():
        return None
    main_model: Optional[Path] = None
    mmproj: Optional[Path] = None
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() != ".gguf":
            continue
        if "mmproj" in path.name.lower():
            mmproj = path
        elif main_model is None:
            main_model = path
    if main_model is None:
        return None
    return main_model, mmproj


def detect_legacy_model(models_dir: Path) -> Optional[str]:
    found = scan_models_dir(models_dir)
    if found and found[0].parent == models_dir:
        return LEGACY_MODEL_ID
    return None


def resolve_model_paths(
    catalog: ModelCatalog,
    models_dir: Path,
    model_id: str,
) -> Tuple[Path, Optional[Path]]:
    if model_id == LEGACY_MODEL_ID:
        found = scan_models_dir(models_dir)
        if not found:
            raise UnknownModel("Legacy model not found")
        return found
    entry = catalog.find(model_id)
    if entry is None:
        raise UnknownModel(f"Model {model_id} not found in catalog")
    paths = get_model_paths(models_dir, entry)
    if paths is None:
        raise UnknownModel(f"Model {model_id} is not downloaded")
    return paths


def list_models(
    catalog: ModelCatalog,
    models_dir: Path,
    current_model_id: Optional[str],
    progress: Dict[str, float],
) -> List[ModelInfo]:
    models: List[ModelInfo] = []
    for entry in catalog.models:
        if entry.id in progress:
            status = "downloading"
        elif is_model_downloaded(models_dir, entry):
            status = "downloaded"
        else:
            status = "not_downloaded"
        models.append(
            ModelInfo(
                id=entry.id,
                name=entry.name,
                description=entry.description,
                size_label=entry.size_label,
                capabilities=entry.capabilities,
                download_status=status,
                download_percent=progress.get(entry.id),
                is_current=current_model_id == entry.id,
            )
        )
    if detect_legacy_model(models_dir):
        model_path, mmproj_path = scan_models_dir(models_dir)  # type: ignore[misc]
        models.insert(
            0,
            ModelInfo(
                id=LEGACY_MODEL_ID,
                name=model_path.stem or "Legacy Model",
                description="Existing model from previous installation",
                capabilities=ModelCapabilities(vision=mmproj_path is not None, thinking=False),
                download_status="downloaded",
                is_current=current_model_id == LEGACY_MODEL_ID,
            ),
        )
    return models
