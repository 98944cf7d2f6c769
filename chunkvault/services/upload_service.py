# services/upload_service.py
import boto3
import redis
import json
import logging
import tempfile
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from datetime import datetime
from uuid import uuid4
from typing import Optional, List, Set

from chunkvault.chunker import part_range, total_parts as count_parts
from chunkvault.config import Settings, settings
from chunkvault.exceptions import (
    CompletionInProgress,
    FileTooLarge,
    IncompleteOnComplete,
    InvalidPart,
    MergeError,
    SessionInitError,
    SessionNotFound,
    SessionStateError,
    CredentialRejected,
    TransferFailed,
    UploadError,
)
from chunkvault.hashing import StreamingHasher, hash_bytes
from chunkvault.models.upload_models import *
from chunkvault.services.credential_service import CredentialService

logger = logging.getLogger(__name__)

SPOOL_MAX_MEMORY = 64 * 1024 * 1024


def make_s3_client(config: Settings = settings):
    return boto3.client(
        "s3",
        region_name=config.AWS_REGION,
        endpoint_url=config.S3_ENDPOINT_URL,
        aws_access_key_id=config.AWS_ACCESS_KEY or None,
        aws_secret_access_key=config.AWS_SECRET_KEY or None,
        config=Config(signature_version='s3v4')
    )


def make_redis_client(config: Settings = settings):
    return redis.Redis(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        password=config.REDIS_PASSWORD or None,
        decode_responses=False,  # Keep as False for binary data safety
        socket_connect_timeout=5,
        health_check_interval=30,
        db=config.REDIS_DB
    )


def session_key(session_id: str) -> str:
    return f"upload_session:{session_id}"


def parts_key(session_id: str) -> str:
    return f"upload_session:{session_id}:parts"


def lock_key(session_id: str) -> str:
    return f"upload_session:{session_id}:lock"


def part_object_key(session_id: str, part_number: int) -> str:
    return f"parts/{session_id}/{part_number:06d}"


def object_key(content_hash: str) -> str:
    return f"objects/{content_hash}"


class UploadService:
    """
    Session store and merge for chunked uploads.

    Session records live in Redis; received part numbers are a Redis set
    that only this service mutates. Part bytes and merged objects live in S3.
    """

    def __init__(self, s3_client=None, redis_client=None, config: Settings = settings):
        self.config = config
        self.s3_client = s3_client or make_s3_client(config)
        self.bucket_name = config.BUCKET_NAME
        self.redis_client = redis_client or make_redis_client(config)
        self.credentials = CredentialService(self.redis_client, config.CREDENTIAL_TTL_SECONDS)
        self.session_ttl = config.SESSION_TTL_SECONDS

    async def init_session(self, request: InitUploadRequest) -> InitUploadResponse:
        """Create or re-attach an upload session, or short-circuit on known content"""
        if request.size > self.config.MAX_FILE_SIZE:
            raise FileTooLarge(
                f"File of {request.size} bytes exceeds the {self.config.MAX_FILE_SIZE} byte limit"
            )

        expected_parts = count_parts(request.size, request.chunk_size)
        if request.total_parts != expected_parts:
            raise SessionInitError(
                f"total_parts {request.total_parts} does not match size {request.size} "
                f"with chunk size {request.chunk_size} (expected {expected_parts})"
            )

        try:
            stored = await self.get_stored_object(request.hash)
            if stored:
                file = await self._create_file(
                    request.name, stored.size, request.hash, request.parent_id, instant=True
                )
                logger.info(f"Instant upload of {request.name}: content {request.hash[:16]} already stored")
                return InitUploadResponse(
                    instant=True,
                    chunk_size=request.chunk_size,
                    total_parts=expected_parts,
                    file=file
                )

            session = await self._attach_session(request)
            if session is None:
                session = await self._create_session(request, expected_parts)

            credential = self.credentials.issue(session.session_id, session.content_hash)
        except redis.RedisError as e:
            logger.error(f"Session store unavailable while initializing {request.name}: {e}")
            raise SessionInitError(f"Session store unavailable: {e}") from e

        return InitUploadResponse(
            instant=False,
            session_id=session.session_id,
            credential=credential,
            chunk_size=session.chunk_size,
            total_parts=session.total_parts
        )

    async def get_received_parts(self, session_id: str) -> Set[int]:
        await self._require_session(session_id)
        return {int(p) for p in self.redis_client.smembers(parts_key(session_id))}

    async def put_part(self, session_id: str, part_number: int, data: bytes, credential: Optional[str]):
        """
        Store one part and record it as received.

        Re-sending a part overwrites the stored object with the same bytes,
        so retries and resumes are idempotent.
        """
        session = await self._require_session(session_id)
        self.credentials.validate(credential, session_id)

        if session.status in (UploadStatus.COMPLETING, UploadStatus.COMPLETED):
            raise SessionStateError(
                f"Upload session is {session.status.value}", session_id=session_id, part_number=part_number
            )

        try:
            expected = part_range(session.file_size, session.chunk_size, part_number)
        except ValueError as e:
            raise InvalidPart(str(e), session_id=session_id, part_number=part_number) from e

        if len(data) != expected.length:
            raise InvalidPart(
                f"Part {part_number} must be {expected.length} bytes, got {len(data)}",
                session_id=session_id,
                part_number=part_number
            )

        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=part_object_key(session_id, part_number),
                Body=data,
                Metadata={
                    'session-id': session_id,
                    'part-number': str(part_number),
                    'sha256': hash_bytes(data)
                }
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to store part {part_number} for session {session_id}: {e}")
            raise TransferFailed(
                f"Could not store part {part_number}: {e}", session_id=session_id, part_number=part_number
            ) from e

        current = await self._require_session(session_id)
        if current.status in (UploadStatus.COMPLETING, UploadStatus.COMPLETED):
            logger.warning(f"Session {session_id} became {current.status.value} while part {part_number} was stored")
            raise SessionStateError(
                f"Upload session is {current.status.value}", session_id=session_id, part_number=part_number
            )
        session = current

        self.redis_client.sadd(parts_key(session_id), part_number)
        self.redis_client.expire(parts_key(session_id), self.session_ttl)

        if session.status != UploadStatus.IN_PROGRESS:
            logger.info(f"Session {session_id} moved from {session.status.value} to in_progress")
            session.status = UploadStatus.IN_PROGRESS
        session.updated_at = datetime.now()
        await self._store_session(session)

        logger.info(f"Stored part {part_number}/{session.total_parts} ({len(data)} bytes) for session {session_id}")

    async def refresh_credential(self, session_id: str, content_hash: str) -> str:
        session = await self._require_session(session_id)
        if session.content_hash != content_hash:
            raise CredentialRejected("Content hash does not match the upload session", session_id=session_id)
        if session.status == UploadStatus.COMPLETED:
            raise SessionStateError("Upload session is already completed", session_id=session_id)
        return self.credentials.issue(session_id, content_hash)

    async def complete_session(self, session_id: str, total_parts: int, content_hash: str) -> FileMetadata:
        """
        Merge all parts into a content-addressed object and register the file.

        Only one caller can hold the completion lock for a session. Missing
        parts or a failed merge leave the session and its parts in place.
        """
        session = await self._require_session(session_id)

        if session.status == UploadStatus.COMPLETED and session.file_id:
            file = await self.get_file(session.file_id)
            if file:
                logger.info(f"Session {session_id} already completed")
                return file

        if total_parts != session.total_parts or content_hash != session.content_hash:
            raise UploadError("total_parts or hash does not match the upload session", session_id=session_id)

        lock = self.redis_client.lock(
            lock_key(session_id), timeout=self.config.COMPLETION_LOCK_SECONDS, blocking=False
        )
        if not lock.acquire():
            raise CompletionInProgress("Upload session is already being completed", session_id=session_id)

        try:
            # another caller may have completed it before the lock was taken
            session = await self._require_session(session_id)
            if session.status == UploadStatus.COMPLETED and session.file_id:
                file = await self.get_file(session.file_id)
                if file:
                    logger.info(f"Session {session_id} completed by another caller")
                    return file

            received = await self.get_received_parts(session_id)
            missing = set(range(1, session.total_parts + 1)) - received
            if missing:
                logger.info(f"Missing parts for session {session_id}: {sorted(missing)}")
                raise IncompleteOnComplete(
                    f"{len(missing)} of {session.total_parts} parts missing",
                    session_id=session_id,
                    missing_parts=sorted(missing)
                )

            session.status = UploadStatus.COMPLETING
            session.updated_at = datetime.now()
            await self._store_session(session)

            try:
                return await self._merge(session)
            except Exception as e:
                logger.error(f"Failed to complete upload for session {session_id}: {e}")
                session.status = UploadStatus.IN_PROGRESS
                session.updated_at = datetime.now()
                await self._store_session(session)
                if isinstance(e, MergeError):
                    raise
                raise MergeError(f"Merge failed: {e}", session_id=session_id) from e
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                logger.warning(f"Completion lock for session {session_id} expired before release: {e}")

    async def abort_session(self, session_id: str):
        """Mark an upload as abandoned; received parts are kept for a later resume"""
        session = await self._require_session(session_id)
        if session.status in (UploadStatus.COMPLETING, UploadStatus.COMPLETED):
            raise SessionStateError(f"Cannot abort session in {session.status.value} state", session_id=session_id)

        session.status = UploadStatus.ABORTED
        session.updated_at = datetime.now()
        await self._store_session(session)
        logger.info(f"Aborted upload session {session_id}; received parts kept")

    async def get_session(self, session_id: str) -> Optional[UploadSession]:
        """Get session by ID"""
        session_data = self.redis_client.get(session_key(session_id))
        if not session_data:
            return None

        data = json.loads(session_data)
        return UploadSession(**data)

    async def get_active_sessions(self) -> List[UploadSession]:
        """Get all sessions that can still receive parts"""
        sessions = []
        for key in self.redis_client.keys("upload_session:*"):
            if isinstance(key, bytes):
                key = key.decode()
            # skip the :parts and :lock companions
            if key.count(":") != 1:
                continue
            session = await self.get_session(key.split(":", 1)[1])
            if session and session.status not in (UploadStatus.COMPLETED, UploadStatus.ABORTED):
                sessions.append(session)

        return sorted(sessions, key=lambda s: s.created_at)

    async def get_file(self, file_id: str) -> Optional[FileMetadata]:
        data = self.redis_client.get(f"file:{file_id}")
        if not data:
            return None
        return FileMetadata(**json.loads(data))

    async def get_stored_object(self, content_hash: str) -> Optional[StoredObject]:
        data = self.redis_client.get(f"stored_object:{content_hash}")
        if not data:
            return None
        return StoredObject(**json.loads(data))

    async def _require_session(self, session_id: str) -> UploadSession:
        session = await self.get_session(session_id)
        if not session:
            raise SessionNotFound("Upload session not found", session_id=session_id)
        return session

    def _pending_key(self, content_hash: str, size: int, chunk_size: int, parent_id: str) -> str:
        return f"upload_pending:{content_hash}:{size}:{chunk_size}:{parent_id}"

    async def _attach_session(self, request: InitUploadRequest) -> Optional[UploadSession]:
        """Find a live session for the same content and destination"""
        existing = self.redis_client.get(
            self._pending_key(request.hash, request.size, request.chunk_size, request.parent_id)
        )
        if not existing:
            return None

        session_id = existing.decode() if isinstance(existing, bytes) else existing
        session = await self.get_session(session_id)
        if not session or session.status in (UploadStatus.COMPLETING, UploadStatus.COMPLETED):
            return None

        if session.status == UploadStatus.ABORTED:
            session.status = UploadStatus.IN_PROGRESS
            session.updated_at = datetime.now()
            await self._store_session(session)

        logger.info(f"Re-attached to upload session {session_id} for {request.name}")
        return session

    async def _create_session(self, request: InitUploadRequest, expected_parts: int) -> UploadSession:
        now = datetime.now()
        session = UploadSession(
            session_id=str(uuid4()),
            filename=request.name,
            content_hash=request.hash,
            file_size=request.size,
            chunk_size=request.chunk_size,
            total_parts=expected_parts,
            parent_id=request.parent_id,
            status=UploadStatus.INITIALIZING,
            created_at=now,
            updated_at=now
        )
        await self._store_session(session)

        logger.info(
            f"Initialized upload session {session.session_id} for {request.name} ({expected_parts} parts)"
        )
        return session

    async def _merge(self, session: UploadSession) -> FileMetadata:
        session_id = session.session_id
        if await self.get_stored_object(session.content_hash) is None:
            hasher = StreamingHasher()
            with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as spool:
                for part_number in range(1, session.total_parts + 1):
                    response = self.s3_client.get_object(
                        Bucket=self.bucket_name,
                        Key=part_object_key(session_id, part_number)
                    )
                    data = response["Body"].read()
                    hasher.update(data)
                    spool.write(data)

                computed_hash = hasher.hexdigest()
                if computed_hash != session.content_hash or hasher.size != session.file_size:
                    # a resume must re-send every part
                    self.redis_client.delete(parts_key(session_id))
                    raise MergeError(
                        f"File integrity check failed: expected {session.content_hash} "
                        f"({session.file_size} bytes), got {computed_hash} ({hasher.size} bytes)",
                        session_id=session_id
                    )

                spool.seek(0)
                self.s3_client.upload_fileobj(
                    spool,
                    self.bucket_name,
                    object_key(session.content_hash),
                    ExtraArgs={"Metadata": {"sha256": session.content_hash}}
                )
            logger.info(f"Merged {session.total_parts} parts of session {session_id} into {object_key(session.content_hash)}")
            await self._register_stored_object(session)
        else:
            logger.info(f"Content {session.content_hash[:16]} of session {session_id} already stored; skipping merge")

        file = await self._create_file(
            session.filename, session.file_size, session.content_hash, session.parent_id, instant=False
        )

        now = datetime.now()
        session.status = UploadStatus.COMPLETED
        session.completed_at = now
        session.updated_at = now
        session.file_id = file.id
        await self._store_session(session, ttl=self.config.COMPLETED_SESSION_TTL_SECONDS)
        self.redis_client.delete(
            self._pending_key(session.content_hash, session.file_size, session.chunk_size, session.parent_id)
        )
        self._discard_parts(session)

        logger.info(f"Completed upload session {session_id}: file {file.id}")
        return file

    async def _register_stored_object(self, session: UploadSession) -> StoredObject:
        stored = StoredObject(
            content_hash=session.content_hash,
            size=session.file_size,
            key=object_key(session.content_hash),
            created_at=datetime.now()
        )
        created = self.redis_client.set(
            f"stored_object:{session.content_hash}", stored.model_dump_json(), nx=True
        )
        if not created:
            return await self.get_stored_object(session.content_hash)
        return stored

    async def _create_file(self, name: str, size: int, content_hash: str, parent_id: str,
                           instant: bool) -> FileMetadata:
        file = FileMetadata(
            id=str(uuid4()),
            name=name,
            size=size,
            content_hash=content_hash,
            parent_id=parent_id,
            created_at=datetime.now(),
            instant=instant
        )
        self.redis_client.set(f"file:{file.id}", file.model_dump_json())
        return file

    def _discard_parts(self, session: UploadSession):
        """Drop part objects after a merge; leftovers are removed by the cleanup service"""
        for part_number in range(1, session.total_parts + 1):
            try:
                self.s3_client.delete_object(
                    Bucket=self.bucket_name,
                    Key=part_object_key(session.session_id, part_number)
                )
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Failed to delete part {part_number} of session {session.session_id}: {e}")
        self.redis_client.delete(parts_key(session.session_id))

    async def _store_session(self, session: UploadSession, ttl: Optional[int] = None):
        """Store session in Redis; an open session keeps its attach key alive for as long as the record"""
        self.redis_client.setex(
            session_key(session.session_id),
            ttl or self.session_ttl,
            session.model_dump_json()
        )
        if session.status != UploadStatus.COMPLETED:
            self.redis_client.setex(
                self._pending_key(session.content_hash, session.file_size, session.chunk_size, session.parent_id),
                ttl or self.session_ttl,
                session.session_id
            )
