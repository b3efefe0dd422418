import mimetypes
import shutil
from pathlib import Path
from typing import BinaryIO

from shareaudit.models import ObjectMetadata, ResourceRef

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class LocalObjectStore:
    """Directory-backed object storage laid out as ``<root>/<account>/<bucket>/<key>``."""

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)

    def init(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _object_path(self, ref: ResourceRef) -> Path | None:
        root = self.root.resolve()
        candidate = (root / ref.account_id / ref.bucket / ref.object_key.lstrip("/")).resolve()
        if not candidate.is_relative_to(root):
            return None
        return candidate

    def resource_exists(self, ref: ResourceRef) -> bool:
        path = self._object_path(ref)
        return path is not None and path.is_file()

    def resource_metadata(self, ref: ResourceRef) -> ObjectMetadata | None:
        if not self.resource_exists(ref):
            return None
        path = self._object_path(ref)
        content_type, _ = mimetypes.guess_type(ref.filename)
        return ObjectMetadata(
            filename=ref.filename,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            size=path.stat().st_size,
        )

    def open_path(self, ref: ResourceRef) -> Path | None:
        if not self.resource_exists(ref):
            return None
        return self._object_path(ref)

    def put_object(self, ref: ResourceRef, source: BinaryIO) -> ObjectMetadata:
        path = self._object_path(ref)
        if path is None:
            raise ValueError("object key escapes the storage root")
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as f:
            shutil.copyfileobj(source, f, 1024 * 1024)
        return self.resource_metadata(ref)
