"""
Blob storage for receipts and other record attachments.

Stored paths follow one versioned schema, built and validated up front:

    v1/{entity}/{entity_id}/{category}/{timestamp}_{filename}

Older uploads were keyed by uploader instead of record
(``fund_deposits/{uid}/{timestamp}_{name}``) or kept as hosted download URLs;
`parse_legacy_path` and `storage_path_from_url` read those for migration.
"""
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote, urlparse

from treasury.logging_config import logger
from treasury.models.enums import AttachmentCategory, RecordKind
from treasury.services.errors import StorageError

SCHEMA_VERSION = "v1"

ENTITY_FOR_KIND = {
    RecordKind.REIMBURSEMENT: "reimbursements",
    RecordKind.DEPOSIT: "fund_deposits",
}
KIND_FOR_ENTITY = {entity: kind for kind, entity in ENTITY_FOR_KIND.items()}

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")
_FILE_RE = re.compile(r"^(?P<timestamp>\d+)_(?P<filename>.+)$")
_LEGACY_RE = re.compile(
    r"^(?P<entity>fund_deposits|reimbursements)/(?P<owner>[^/]+)/(?P<timestamp>\d+)_(?P<filename>[^/]+)$"
)
_HOSTED_URL_RE = re.compile(r"/o/(?P<path>[^?]+)")

MAX_FILENAME_LENGTH = 200


class StoragePathError(ValueError):
    """A string does not describe a valid storage path."""


def sanitize_filename(filename: str) -> str:
    """Keep letters, digits, dot, dash and underscore; everything else becomes '_'."""
    name = Path(filename or "").name
    name = _UNSAFE_CHARS_RE.sub("_", name).lstrip(".")
    name = name[-MAX_FILENAME_LENGTH:]
    if not name.strip("_"):
        raise StoragePathError(f"Unusable filename: {filename!r}")
    return name


@dataclass(frozen=True)
class StoragePath:
    """A validated location in the blob store."""
    entity: str
    entity_id: str
    category: str
    timestamp: int
    filename: str
    version: str = SCHEMA_VERSION

    def __post_init__(self):
        if self.version != SCHEMA_VERSION:
            raise StoragePathError(f"Unsupported path schema version: {self.version}")
        if self.entity not in KIND_FOR_ENTITY:
            raise StoragePathError(f"Unknown entity: {self.entity}")
        if not _ID_RE.match(self.entity_id or ""):
            raise StoragePathError(f"Invalid entity id: {self.entity_id!r}")
        if self.category not in {c.value for c in AttachmentCategory}:
            raise StoragePathError(f"Unknown category: {self.category}")
        if self.timestamp < 0:
            raise StoragePathError("Timestamp must be non-negative")
        if sanitize_filename(self.filename) != self.filename:
            raise StoragePathError(f"Filename is not sanitized: {self.filename!r}")

    @classmethod
    def build(
        cls,
        kind: RecordKind,
        entity_id: str,
        category: AttachmentCategory,
        filename: str,
        timestamp: Optional[int] = None
    ) -> "StoragePath":
        if timestamp is None:
            timestamp = int(time.time() * 1000)
        return cls(
            entity=ENTITY_FOR_KIND[kind],
            entity_id=entity_id,
            category=getattr(category, "value", category),
            timestamp=timestamp,
            filename=sanitize_filename(filename),
        )

    @classmethod
    def parse(cls, text: str) -> "StoragePath":
        parts = (text or "").split("/")
        if len(parts) != 5:
            raise StoragePathError(f"Not a {SCHEMA_VERSION} storage path: {text!r}")
        version, entity, entity_id, category, leaf = parts
        match = _FILE_RE.match(leaf)
        if not match:
            raise StoragePathError(f"Missing timestamp prefix in {leaf!r}")
        return cls(
            entity=entity,
            entity_id=entity_id,
            category=category,
            timestamp=int(match.group("timestamp")),
            filename=match.group("filename"),
            version=version,
        )

    @classmethod
    def is_valid(cls, text: str) -> bool:
        try:
            cls.parse(text)
        except StoragePathError:
            return False
        return True

    @property
    def kind(self) -> RecordKind:
        return KIND_FOR_ENTITY[self.entity]

    def __str__(self) -> str:
        return f"{self.version}/{self.entity}/{self.entity_id}/{self.category}/{self.timestamp}_{self.filename}"


@dataclass(frozen=True)
class LegacyPath:
    """An uploader-keyed path from before records owned their files."""
    entity: str
    owner_id: str
    timestamp: int
    filename: str
    raw: str


def storage_path_from_url(url: str) -> Optional[str]:
    """Recover the storage key from a hosted download URL (``.../o/<encoded key>?alt=media``)."""
    parsed = urlparse(url)
    if not parsed.scheme:
        return None
    match = _HOSTED_URL_RE.search(parsed.path)
    if not match:
        return None
    return unquote(match.group("path"))


def parse_legacy_path(text: str) -> Optional[LegacyPath]:
    """Classify a stored reference as a legacy path, unwrapping download URLs first."""
    raw = text
    if "://" in text:
        text = storage_path_from_url(text) or ""
    match = _LEGACY_RE.match(text)
    if not match:
        return None
    return LegacyPath(
        entity=match.group("entity"),
        owner_id=match.group("owner"),
        timestamp=int(match.group("timestamp")),
        filename=match.group("filename"),
        raw=raw,
    )


class LocalBlobStore:
    """Blob store on the local filesystem, served under `base_url`."""

    def __init__(self, root: Union[str, Path], base_url: str):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def _resolve(self, key: Union[StoragePath, str]) -> Path:
        target = (self.root / str(key)).resolve()
        if target != self.root and self.root not in target.parents:
            raise StorageError("Storage key escapes the storage root", {"key": str(key)})
        return target

    def url_for(self, key: Union[StoragePath, str]) -> str:
        return f"{self.base_url}/{key}"

    def exists(self, key: Union[StoragePath, str]) -> bool:
        return self._resolve(key).is_file()

    def read(self, key: Union[StoragePath, str]) -> bytes:
        try:
            return self._resolve(key).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}", {"key": str(key)}) from e

    def upload(self, key: StoragePath, data: bytes) -> str:
        target = self._resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"Upload failed for {key}: {e}")
            raise StorageError(f"Failed to upload {key.filename}", {"key": str(key)}) from e
        logger.info(f"Stored {len(data)} bytes at {key}")
        return self.url_for(key)

    def delete(self, key: Union[StoragePath, str]) -> bool:
        """Remove a blob. Returns False if it was already gone."""
        target = self._resolve(key)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.warning(f"Blob already missing: {key}")
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}", {"key": str(key)}) from e
        return True

    def move(self, src: Union[StoragePath, str], dst: StoragePath) -> str:
        source, target = self._resolve(src), self._resolve(dst)
        if not source.is_file():
            raise StorageError(f"Source blob not found: {src}", {"key": str(src)})
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
        except OSError as e:
            raise StorageError(f"Failed to move {src} to {dst}: {e}", {"key": str(src)}) from e
        return self.url_for(dst)
