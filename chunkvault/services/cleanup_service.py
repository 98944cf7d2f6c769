# services/cleanup_service.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone

import redis
from botocore.exceptions import BotoCoreError, ClientError

from chunkvault.config import Settings, settings
from chunkvault.services.upload_service import make_redis_client, make_s3_client, session_key

logger = logging.getLogger(__name__)


class CleanupService:
    def __init__(self, s3_client=None, redis_client=None, config: Settings = settings):
        self.config = config
        self.s3_client = s3_client or make_s3_client(config)
        self.bucket_name = config.BUCKET_NAME
        self.redis_client = redis_client or make_redis_client(config)

    async def start_cleanup_scheduler(self):
        """Start the cleanup scheduler"""
        while True:
            try:
                await self.cleanup_orphaned_session_keys()
                await self.cleanup_orphaned_parts()

                await asyncio.sleep(self.config.CLEANUP_INTERVAL_SECONDS)

            except asyncio.CancelledError:
                logger.info("Cleanup scheduler cancelled")
                break
            except Exception as e:
                logger.error(f"Error in cleanup scheduler: {e}")
                await asyncio.sleep(60)  # Wait 1 minute before retrying

    async def cleanup_orphaned_session_keys(self) -> int:
        """Delete :parts and :lock companions whose session record has expired"""
        try:
            self.redis_client.ping()
        except redis.RedisError as redis_error:
            logger.warning(f"Redis unavailable for cleanup: {redis_error}")
            return 0

        cleaned_count = 0
        for key in self.redis_client.keys("upload_session:*:*"):
            name = key.decode() if isinstance(key, bytes) else key
            session_id = name.split(":")[1]
            if not self.redis_client.exists(session_key(session_id)):
                self.redis_client.delete(key)
                cleaned_count += 1
                logger.info(f"Deleted orphaned key {name}")

        logger.info(f"Session key cleanup completed. Cleaned {cleaned_count} keys")
        return cleaned_count

    async def cleanup_orphaned_parts(self) -> int:
        """Delete stored parts of sessions that no longer exist and are past the session TTL"""
        logger.info("Starting orphaned part cleanup")

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.config.SESSION_TTL_SECONDS)
        cleanup_count = 0
        live_sessions = {}

        paginator = self.s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix="parts/"):
            for obj in page.get("Contents", []):
                session_id = obj["Key"].split("/")[1]
                if session_id not in live_sessions:
                    live_sessions[session_id] = bool(self.redis_client.exists(session_key(session_id)))
                if live_sessions[session_id]:
                    continue

                # Convert S3 datetime to aware datetime for comparison
                modified = obj["LastModified"]
                if modified.tzinfo is None:
                    modified = modified.replace(tzinfo=timezone.utc)
                if modified >= cutoff:
                    continue

                try:
                    self.s3_client.delete_object(Bucket=self.bucket_name, Key=obj["Key"])
                    cleanup_count += 1
                except (BotoCoreError, ClientError) as e:
                    logger.error(f"Failed to delete orphaned part {obj['Key']}: {e}")

        logger.info(f"Cleaned up {cleanup_count} orphaned parts")
        return cleanup_count
