"""
Migration of legacy uploader-keyed files to record-keyed storage paths.

Files uploaded before records owned their storage live under
``{collection}/{uploader}/{timestamp}_{name}`` (or are referenced by a hosted
download URL). Each one is moved to its schema path under the record that
references it, and the reference is rewritten.
"""
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from treasury.logging_config import logger
from treasury.models.domain import Attachment, LineItem
from treasury.models.enums import AttachmentCategory, RecordKind
from treasury.services.errors import StorageError
from treasury.services.storage import LocalBlobStore, StoragePath, StoragePathError, parse_legacy_path


@dataclass
class MigrationItem:
    """One reference that would move."""
    kind: str
    record_id: str
    category: str
    field: str
    old_path: str
    new_path: str
    attachment_id: Optional[int] = None
    line_item_id: Optional[int] = None


@dataclass
class MigrationResult:
    success: bool = True
    migrated_files: int = 0
    skipped_files: int = 0
    updated_records: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


class MigrationService:
    """Preview and run the legacy path migration."""

    def __init__(self, db: Session, blob_store: LocalBlobStore):
        self.db = db
        self.blob_store = blob_store

    def preview(self) -> List[MigrationItem]:
        """Every legacy reference and where it would go. Nothing is written."""
        items, _skipped = self._scan()
        return items

    def migrate(self) -> MigrationResult:
        """
        Move every legacy blob and rewrite its references.

        Each file is committed on its own, so one failure does not undo the
        files already moved. Failures are collected in `errors`.
        """
        result = MigrationResult()
        items, result.skipped_files = self._scan()
        touched = set()
        moved: Dict[str, str] = {}

        logger.info(f"Starting file migration: {len(items)} legacy references")
        for item in items:
            try:
                self._migrate_item(item, moved)
            except (StorageError, StoragePathError) as e:
                self.db.rollback()
                result.errors.append(f"{item.old_path}: {e}")
                logger.error(f"Migration of {item.old_path} failed: {e}")
                continue
            result.migrated_files += 1
            touched.add((item.kind, item.record_id))

        result.updated_records = len(touched)
        result.success = not result.errors
        logger.info(
            f"File migration finished: {result.migrated_files} migrated, "
            f"{result.skipped_files} skipped, {len(result.errors)} errors"
        )
        return result

    def _migrate_item(self, item: MigrationItem, moved: Dict[str, str]) -> None:
        # A receipt is usually referenced twice (line item and attachment row)
        if item.old_path in moved:
            new_path = moved[item.old_path]
        else:
            source = self._source_key(item.old_path)
            if not self.blob_store.exists(source):
                raise StorageError(f"Source file not found: {source}", {"key": source})
            new_path = item.new_path
            self.blob_store.move(source, StoragePath.parse(new_path))
            moved[item.old_path] = new_path

        if item.attachment_id is not None:
            row = self.db.query(Attachment).filter(Attachment.id == item.attachment_id).first()
            row.path = new_path
        else:
            row = self.db.query(LineItem).filter(LineItem.id == item.line_item_id).first()
            row.receipt = new_path
        self.db.commit()
        logger.info(f"Migrated {item.old_path} → {new_path}")

    def _scan(self):
        items: List[MigrationItem] = []
        skipped = 0

        for attachment in self.db.query(Attachment).order_by(Attachment.id).all():
            record = attachment.record
            item = self._plan(
                record.kind, record.id, attachment.category, "path", attachment.path,
                attachment_id=attachment.id,
            )
            if item is None:
                skipped += 1
            else:
                items.append(item)

        line_items = (
            self.db.query(LineItem)
            .filter(LineItem.receipt.isnot(None))
            .order_by(LineItem.id)
            .all()
        )
        for line_item in line_items:
            item = self._plan(
                RecordKind.REIMBURSEMENT, line_item.reimbursement_id, AttachmentCategory.RECEIPT,
                "receipt", line_item.receipt, line_item_id=line_item.id,
            )
            if item is None:
                skipped += 1
            else:
                items.append(item)

        return items, skipped

    @staticmethod
    def _plan(kind, record_id, category, field_name, path, **ids) -> Optional[MigrationItem]:
        legacy = parse_legacy_path(path)
        if legacy is None:
            return None
        try:
            new_path = StoragePath.build(kind, record_id, category, legacy.filename, timestamp=legacy.timestamp)
        except StoragePathError as e:
            logger.warning(f"Cannot plan a schema path for {path}: {e}")
            return None
        return MigrationItem(
            kind=kind.value,
            record_id=record_id,
            category=getattr(category, "value", category),
            field=field_name,
            old_path=path,
            new_path=str(new_path),
            **ids,
        )

    @staticmethod
    def _source_key(path: str) -> str:
        legacy = parse_legacy_path(path)
        return f"{legacy.entity}/{legacy.owner_id}/{legacy.timestamp}_{legacy.filename}"
