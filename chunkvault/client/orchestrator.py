"""
Upload orchestrator

Drives one upload through hashing, session init, the instant-upload
short-circuit or a part-by-part transfer, and completion. Every step is a
state with a handler that returns the next state, so a run can be
inspected (``state``, ``session_id``, ``error``) after it stops.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from chunkvault import chunker
from chunkvault.chunker import ByteRange, DEFAULT_CHUNK_SIZE
from chunkvault.client.credentials import CredentialRefresher
from chunkvault.client.resume import ResumeResolver
from chunkvault.exceptions import AuthExpired, ReadError, TransferFailed, UploadCancelled, UploadError
from chunkvault.hashing import compute_content_hash

logger = logging.getLogger(__name__)


class UploadState(str, Enum):
    HASHING = "hashing"
    SESSION_INIT = "session_init"
    TRANSFER_LOOP = "transfer_loop"
    COMPLETING = "completing"
    DONE = "done"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = {UploadState.DONE, UploadState.FAILED, UploadState.ABORTED}
CANCELLABLE_STATES = {UploadState.HASHING, UploadState.SESSION_INIT, UploadState.TRANSFER_LOOP}


class PartAttempt(str, Enum):
    """Per-part transfer states; an expiry in RETRYING has nowhere left to go."""
    SENDING = "sending"
    REFRESHING = "refreshing"
    RETRYING = "retrying"


@dataclass
class UploadResult:
    session_id: Optional[str]
    content_hash: str
    instant: bool
    file: Dict[str, Any]
    parts_transferred: List[int] = field(default_factory=list)
    parts_skipped: List[int] = field(default_factory=list)


class UploadOrchestrator:
    """Uploads one file. Create a new orchestrator per run."""

    def __init__(self, api, source: Union[str, Path], parent_id: str = "",
                 chunk_size: int = DEFAULT_CHUNK_SIZE, name: Optional[str] = None,
                 on_progress: Optional[Callable[[float], None]] = None,
                 abort_on_cancel: bool = True):
        self.api = api
        self.source = Path(source)
        self.name = name or self.source.name
        self.parent_id = parent_id
        self.chunk_size = chunk_size
        self.on_progress = on_progress
        self.abort_on_cancel = abort_on_cancel

        self.resolver = ResumeResolver(api)
        self.refresher = CredentialRefresher(api)

        self.state = UploadState.HASHING
        self.error: Optional[Exception] = None
        self.session_id: Optional[str] = None
        self.content_hash: Optional[str] = None
        self.size = 0
        self.plan: List[ByteRange] = []
        self.result: Optional[UploadResult] = None

        self._cancelled = threading.Event()
        self._progress = 0.0
        self._transferred: List[int] = []
        self._skipped: List[int] = []
        self._handlers = {
            UploadState.HASHING: self._hash,
            UploadState.SESSION_INIT: self._init_session,
            UploadState.TRANSFER_LOOP: self._transfer,
            UploadState.COMPLETING: self._complete,
        }

    def cancel(self):
        """Stop before the next network call. Stored parts stay on the server."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self) -> UploadResult:
        while self.state not in TERMINAL_STATES:
            handler = self._handlers[self.state]
            try:
                next_state = handler()
            except UploadCancelled as e:
                self._abort(e)
                raise
            except UploadError as e:
                self.error = e
                if e.session_id is None:
                    e.session_id = self.session_id
                logger.error(f"Upload of {self.name} failed in {self.state.value}: {e}")
                self.state = UploadState.FAILED
                raise
            logger.debug(f"{self.name}: {self.state.value} -> {next_state.value}")
            self.state = next_state
        return self.result

    def _checkpoint(self):
        if self._cancelled.is_set() and self.state in CANCELLABLE_STATES:
            raise UploadCancelled(
                f"Upload of {self.name} cancelled during {self.state.value}", session_id=self.session_id
            )

    def _abort(self, e: UploadCancelled):
        self.error = e
        self.state = UploadState.ABORTED
        logger.info(f"Upload of {self.name} cancelled; session {self.session_id} left resumable")
        if self.session_id and self.abort_on_cancel:
            try:
                self.api.abort_upload(self.session_id)
            except Exception as abort_error:
                logger.warning(f"Could not notify server of abort for session {self.session_id}: {abort_error}")

    def _hash(self) -> UploadState:
        self._checkpoint()
        try:
            self.size = self.source.stat().st_size
        except OSError as e:
            raise ReadError(f"Cannot read upload source {self.source}: {e}") from e
        self.content_hash = compute_content_hash(self.source)
        self.plan = chunker.split(self.size, self.chunk_size)
        logger.info(f"Hashed {self.name}: {self.content_hash[:16]}... ({self.size} bytes, {len(self.plan)} parts)")
        return UploadState.SESSION_INIT

    def _init_session(self) -> UploadState:
        self._checkpoint()
        response = self.api.init_upload(
            self.name, self.size, self.content_hash, len(self.plan), self.parent_id, self.chunk_size
        )
        if response.get("instant"):
            logger.info(f"Instant upload of {self.name}: content already stored")
            self._report(100.0)
            self.result = UploadResult(
                session_id=None, content_hash=self.content_hash, instant=True, file=response["file"]
            )
            return UploadState.DONE

        self.session_id = response["session_id"]
        self.refresher.credential = response.get("credential")
        logger.info(f"Upload session {self.session_id} for {self.name}")
        return UploadState.TRANSFER_LOOP

    def _transfer(self) -> UploadState:
        self._checkpoint()
        received = self.resolver.resolve(self.session_id)
        total = len(self.plan)
        done = 0

        try:
            with open(self.source, "rb") as f:
                for byte_range in self.plan:
                    if byte_range.part_number in received:
                        self._skipped.append(byte_range.part_number)
                    else:
                        self._checkpoint()
                        f.seek(byte_range.start)
                        data = f.read(byte_range.length)
                        if len(data) != byte_range.length:
                            raise ReadError(
                                f"Source {self.source} changed while uploading part {byte_range.part_number}",
                                session_id=self.session_id,
                                part_number=byte_range.part_number
                            )
                        self._send_part(byte_range.part_number, data)
                        self._transferred.append(byte_range.part_number)
                    done += 1
                    self._report(done / total * 100)
        except OSError as e:
            raise ReadError(f"Cannot read upload source {self.source}: {e}", session_id=self.session_id) from e

        if not total:
            self._report(100.0)
        return UploadState.COMPLETING

    def _send_part(self, part_number: int, data: bytes):
        attempt = PartAttempt.SENDING
        while True:
            if attempt is PartAttempt.REFRESHING:
                self._checkpoint()
                self.refresher.refresh(self.session_id, self.content_hash)
                attempt = PartAttempt.RETRYING
                continue

            try:
                self.api.upload_part(self.session_id, part_number, data, self.refresher.credential)
                return
            except AuthExpired as e:
                if attempt is PartAttempt.RETRYING:
                    raise TransferFailed(
                        f"Credential expired again for part {part_number} after refresh",
                        session_id=self.session_id,
                        part_number=part_number
                    ) from e
                logger.info(f"Credential expired on part {part_number} of session {self.session_id}")
                attempt = PartAttempt.REFRESHING

    def _complete(self) -> UploadState:
        file = self.api.complete_upload(self.session_id, len(self.plan), self.content_hash)
        self.result = UploadResult(
            session_id=self.session_id,
            content_hash=self.content_hash,
            instant=False,
            file=file,
            parts_transferred=list(self._transferred),
            parts_skipped=list(self._skipped)
        )
        logger.info(
            f"Completed upload of {self.name} (session {self.session_id}): "
            f"{len(self._transferred)} parts sent, {len(self._skipped)} already stored"
        )
        return UploadState.DONE

    def _report(self, percent: float):
        if percent < self._progress:
            return
        self._progress = percent
        if self.on_progress:
            self.on_progress(percent)


def upload_file(api, source: Union[str, Path], parent_id: str = "", chunk_size: int = DEFAULT_CHUNK_SIZE,
                on_progress: Optional[Callable[[float], None]] = None) -> UploadResult:
    """Upload ``source`` into ``parent_id``; re-running after a failure resumes it."""
    return UploadOrchestrator(
        api, source, parent_id=parent_id, chunk_size=chunk_size, on_progress=on_progress
    ).run()
