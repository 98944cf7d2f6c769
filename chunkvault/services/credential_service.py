# services/credential_service.py
import json
import logging
import secrets

from chunkvault.exceptions import CredentialExpired, CredentialRejected

logger = logging.getLogger(__name__)


class CredentialService:
    """Short-lived upload credentials kept in Redis; expiry is key expiry."""

    def __init__(self, redis_client, ttl_seconds: int):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    def issue(self, session_id: str, content_hash: str) -> str:
        token = secrets.token_urlsafe(32)
        self.redis_client.setex(
            f"upload_credential:{token}",
            self.ttl_seconds,
            json.dumps({"session_id": session_id, "content_hash": content_hash}),
        )
        logger.info(f"Issued upload credential for session {session_id} (ttl {self.ttl_seconds}s)")
        return token

    def validate(self, token: str, session_id: str) -> dict:
        """Return the credential's claims or raise if it cannot authorize this session."""
        if not token:
            raise CredentialExpired("Upload credential missing or expired", session_id=session_id)

        raw = self.redis_client.get(f"upload_credential:{token}")
        if not raw:
            raise CredentialExpired("Upload credential missing or expired", session_id=session_id)

        claims = json.loads(raw)
        if claims["session_id"] != session_id:
            logger.warning(f"Credential for session {claims['session_id']} presented for session {session_id}")
            raise CredentialRejected("Upload credential does not belong to this session", session_id=session_id)
        return claims
