import logging
from typing import Optional

logger = logging.getLogger(__name__)


class CredentialRefresher:
    """Holds the current upload credential and replaces it on expiry."""

    def __init__(self, api, credential: Optional[str] = None):
        self.api = api
        self.credential = credential
        self.refresh_count = 0

    def refresh(self, session_id: str, content_hash: str) -> str:
        self.credential = self.api.refresh_credential(session_id, content_hash)
        self.refresh_count += 1
        logger.info(f"Refreshed upload credential for session {session_id}")
        return self.credential
