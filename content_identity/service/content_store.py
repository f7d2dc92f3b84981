import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, UniqueConstraint, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from content_identity.config import Config
from content_identity.errors import ContentStoreError
from content_identity.models.records import (
    ContentState,
    Manifest,
    PlatformBinding,
    RegistryEntry,
    UploadResult,
    VerificationOutcome,
    VerificationRecord,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class UploadRow(Base):
    __tablename__ = "uploads"

    id = Column(Integer, primary_key=True)
    content_hash = Column(String(66), nullable=False, index=True)
    cid = Column(String(255), nullable=False)
    provider = Column(String(100), nullable=False)
    attempts = Column(Integer, nullable=False)
    elapsed = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<UploadRow(content_hash={self.content_hash}, provider={self.provider})>"


class ManifestRow(Base):
    __tablename__ = "manifests"

    id = Column(Integer, primary_key=True)
    digest = Column(String(66), unique=True, nullable=False, index=True)
    content_hash = Column(String(66), nullable=False, index=True)
    manifest_uri = Column(String(512), nullable=True, index=True)
    document = Column(Text, nullable=False)
    stored_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_manifest(self) -> Manifest:
        return Manifest(**json.loads(self.document))


class RegistryEntryRow(Base):
    __tablename__ = "registry_entries"

    id = Column(Integer, primary_key=True)
    content_hash = Column(String(66), unique=True, nullable=False, index=True)
    identity = Column(String(255), nullable=False)
    transaction_hash = Column(String(66), nullable=True)
    anchored_at = Column(DateTime(timezone=True), nullable=False)

    def to_entry(self) -> RegistryEntry:
        return RegistryEntry(
            content_hash=self.content_hash,
            identity=self.identity,
            anchored_at=_utc(self.anchored_at),
            transaction_hash=self.transaction_hash,
        )


class BindingRow(Base):
    __tablename__ = "platform_bindings"
    __table_args__ = (UniqueConstraint("platform", "external_id", name="uq_platform_external_id"),)

    id = Column(Integer, primary_key=True)
    platform = Column(String(50), nullable=False)
    external_id = Column(String(255), nullable=False)
    proof_location = Column(String(1024), nullable=False)
    manifest_uri = Column(String(512), nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=False)

    def to_binding(self) -> PlatformBinding:
        return PlatformBinding(
            platform=self.platform,
            external_id=self.external_id,
            proof_location=self.proof_location,
            manifest_uri=self.manifest_uri,
            submitted_at=_utc(self.submitted_at),
        )


class VerificationRow(Base):
    __tablename__ = "verification_records"

    id = Column(Integer, primary_key=True)
    platform = Column(String(50), nullable=True, index=True)
    external_id = Column(String(255), nullable=True, index=True)
    source_url = Column(String(1024), nullable=False)
    manifest_uri = Column(String(512), nullable=False)
    outcome = Column(String(20), nullable=False)
    reason = Column(String(50), nullable=True)
    detail = Column(Text, nullable=True)
    recovered_signer = Column(String(42), nullable=True)
    content_hash = Column(String(66), nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=False)

    def to_record(self) -> VerificationRecord:
        return VerificationRecord(
            source_url=self.source_url,
            manifest_uri=self.manifest_uri,
            outcome=VerificationOutcome(self.outcome),
            checked_at=_utc(self.checked_at),
            platform=self.platform,
            external_id=self.external_id,
            reason=self.reason,
            detail=self.detail,
            recovered_signer=self.recovered_signer,
            content_hash=self.content_hash,
        )


class ContentItemRow(Base):
    __tablename__ = "content_items"

    content_hash = Column(String(66), primary_key=True)
    state = Column(String(30), nullable=False)
    cid = Column(String(255), nullable=True)
    manifest_uri = Column(String(512), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class ContentStore:
    """SQLAlchemy persistence for pipeline artifacts.

    Registry entries are insert-once per content hash, bindings are upserted
    on (platform, external_id) and verification records are append-only.
    """

    def __init__(self, database_url: str = None):
        database_url = database_url or Config.DATABASE_URL
        kwargs = {}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
        self.engine = create_engine(database_url, **kwargs)
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Content store {operation} failed: {e}")
            raise ContentStoreError(operation, str(e)) from e
        finally:
            session.close()

    def record_upload(self, content_hash: str, result: UploadResult) -> None:
        with self._session("record_upload") as session:
            session.add(
                UploadRow(
                    content_hash=content_hash,
                    cid=result.cid,
                    provider=result.provider,
                    attempts=result.attempts,
                    elapsed=result.elapsed,
                )
            )

    def save_manifest(self, manifest: Manifest, manifest_uri: Optional[str] = None) -> None:
        with self._session("save_manifest") as session:
            row = session.query(ManifestRow).filter_by(digest=manifest.digest).first()
            if row is None:
                session.add(
                    ManifestRow(
                        digest=manifest.digest,
                        content_hash=manifest.content_hash,
                        manifest_uri=manifest_uri,
                        document=json.dumps(manifest.to_document()),
                    )
                )
            elif manifest_uri and not row.manifest_uri:
                row.manifest_uri = manifest_uri

    def get_manifest(self, content_hash: str) -> Optional[Manifest]:
        with self._session("get_manifest") as session:
            row = (
                session.query(ManifestRow)
                .filter_by(content_hash=content_hash)
                .order_by(ManifestRow.id.desc())
                .first()
            )
            return row.to_manifest() if row else None

    def get_manifest_uri(self, content_hash: str) -> Optional[str]:
        with self._session("get_manifest_uri") as session:
            row = (
                session.query(ManifestRow)
                .filter(ManifestRow.content_hash == content_hash, ManifestRow.manifest_uri.isnot(None))
                .order_by(ManifestRow.id.desc())
                .first()
            )
            return row.manifest_uri if row else None

    def save_registry_entry(self, entry: RegistryEntry) -> RegistryEntry:
        """Insert once; an existing entry for the content hash wins."""
        with self._session("save_registry_entry") as session:
            row = session.query(RegistryEntryRow).filter_by(content_hash=entry.content_hash).first()
            if row is not None:
                return row.to_entry()
            session.add(
                RegistryEntryRow(
                    content_hash=entry.content_hash,
                    identity=entry.identity,
                    transaction_hash=entry.transaction_hash,
                    anchored_at=entry.anchored_at,
                )
            )
            return entry

    def get_registry_entry(self, content_hash: str) -> Optional[RegistryEntry]:
        with self._session("get_registry_entry") as session:
            row = session.query(RegistryEntryRow).filter_by(content_hash=content_hash).first()
            return row.to_entry() if row else None

    def upsert_binding(self, binding: PlatformBinding) -> PlatformBinding:
        with self._session("upsert_binding") as session:
            row = (
                session.query(BindingRow)
                .filter_by(platform=binding.platform, external_id=binding.external_id)
                .first()
            )
            if row is None:
                session.add(
                    BindingRow(
                        platform=binding.platform,
                        external_id=binding.external_id,
                        proof_location=binding.proof_location,
                        manifest_uri=binding.manifest_uri,
                        submitted_at=binding.submitted_at,
                    )
                )
            else:
                logger.info(f"Binding {binding.platform}/{binding.external_id} superseded by new submission")
                row.proof_location = binding.proof_location
                row.manifest_uri = binding.manifest_uri
                row.submitted_at = binding.submitted_at
            return binding

    def get_binding(self, platform: str, external_id: str) -> Optional[PlatformBinding]:
        with self._session("get_binding") as session:
            row = session.query(BindingRow).filter_by(platform=platform, external_id=external_id).first()
            return row.to_binding() if row else None

    def append_verification(self, record: VerificationRecord) -> int:
        with self._session("append_verification") as session:
            row = VerificationRow(
                platform=record.platform,
                external_id=record.external_id,
                source_url=record.source_url,
                manifest_uri=record.manifest_uri,
                outcome=record.outcome.value,
                reason=record.reason,
                detail=record.detail,
                recovered_signer=record.recovered_signer,
                content_hash=record.content_hash,
                checked_at=record.checked_at,
            )
            session.add(row)
            session.flush()
            return row.id

    def list_verifications(self, platform: str, external_id: str) -> List[VerificationRecord]:
        with self._session("list_verifications") as session:
            rows = (
                session.query(VerificationRow)
                .filter_by(platform=platform, external_id=external_id)
                .order_by(VerificationRow.id.asc())
                .all()
            )
            return [row.to_record() for row in rows]

    def get_state(self, content_hash: str) -> Optional[ContentState]:
        with self._session("get_state") as session:
            row = session.get(ContentItemRow, content_hash)
            return ContentState(row.state) if row else None

    def advance_state(
        self,
        content_hash: str,
        target: ContentState,
        cid: Optional[str] = None,
        manifest_uri: Optional[str] = None,
    ) -> ContentState:
        """Move a content item along its lifecycle; invalid transitions raise ValueError."""
        with self._session("advance_state") as session:
            row = session.get(ContentItemRow, content_hash)
            if row is None:
                if target != ContentState.UPLOADED:
                    raise ValueError(f"Content {content_hash[:18]}... must be uploaded before {target.value}")
                row = ContentItemRow(content_hash=content_hash, state=target.value)
                session.add(row)
            else:
                current = ContentState(row.state)
                if not current.can_advance_to(target):
                    raise ValueError(f"Cannot move content from {current.value} to {target.value}")
                row.state = target.value
            if cid:
                row.cid = cid
            if manifest_uri:
                row.manifest_uri = manifest_uri
            return target
