"""
Publishing collaborators.

``StatusPublisher`` posts a status to an HTTP endpoint with a bearer token.
Error payloads of the form ``{"errors": [{"code": 187, "message": ...}]}``
become PlatformError so the retry controller can decide from the codes
whether another attempt is worthwhile. ``repost_recent`` reposts another
account's recent posts. ``DryRunPublisher`` only logs.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import requests

from .config import PublisherConfig
from .errors import FatalError, PlatformError, TransientError
from .filters import parse_datetime
from .messages import MAX_MESSAGE_LENGTH

logger = logging.getLogger(__name__)

# Timeline timestamps look like "Wed Oct 10 20:19:24 +0000 2018"
TIMELINE_TIME_FORMAT = "%a %b %d %H:%M:%S %z %Y"
TIMELINE_COUNT = 10


def parse_post_time(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        try:
            return datetime.strptime(value, TIMELINE_TIME_FORMAT)
        except ValueError:
            pass
    return parse_datetime(value)


@dataclass
class Receipt:
    """Acknowledgement of a published status."""
    id: str
    message: str
    posted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def check_length(message: str) -> None:
    if len(message) > MAX_MESSAGE_LENGTH:
        raise FatalError(f"Message too long ({len(message)} > {MAX_MESSAGE_LENGTH}): {message}")


class StatusPublisher:
    """Posts status updates to the configured endpoint."""

    def __init__(self, config: PublisherConfig, session: Optional[requests.Session] = None):
        if not config.endpoint:
            raise ValueError("publisher.endpoint is required unless dry_run is enabled")
        self.config = config
        self._session = session or requests.Session()
        if config.token:
            self._session.headers.update({"Authorization": f"Bearer {config.token}"})

    def publish_sync(self, message: str) -> Receipt:
        check_length(message)

        try:
            response = self._session.post(
                self.config.endpoint,
                json={"status": message},
                timeout=self.config.timeout,
            )
        except requests.Timeout:
            raise TransientError(f"Publish timed out after {self.config.timeout}s")
        except requests.RequestException as e:
            raise TransientError(f"Publish request failed: {e}")

        payload = self._json(response)
        codes = self._error_codes(payload)

        if codes:
            details = "; ".join(
                f"{err.get('code')}: {err.get('message', '')}" for err in payload["errors"]
            )
            raise PlatformError(f"Platform rejected status ({details})", codes)
        if response.status_code >= 500:
            raise TransientError(f"Publish failed with HTTP {response.status_code}")
        if response.status_code >= 400:
            raise PlatformError(f"Publish failed with HTTP {response.status_code}", [response.status_code])

        status_id = str(payload.get("id_str") or payload.get("id") or "") if isinstance(payload, dict) else ""
        logger.info(f"Sent status {status_id}")
        return Receipt(id=status_id, message=message)

    async def publish(self, message: str) -> Receipt:
        return await asyncio.to_thread(self.publish_sync, message)

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {}

    @staticmethod
    def _error_codes(payload: Any) -> List[int]:
        if not isinstance(payload, dict) or not isinstance(payload.get("errors"), list):
            return []
        return [
            int(err["code"]) for err in payload["errors"]
            if isinstance(err, dict) and isinstance(err.get("code"), int)
        ]

    # =========================================================================
    # Reposts
    # =========================================================================

    def repost_recent_sync(
        self,
        account_id: str,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Repost ``account_id``'s posts newer than ``window``.

        Returns the ids that were reposted. A failed repost is logged and
        the remaining posts are still tried.
        """
        if not self.config.timeline_endpoint or not self.config.repost_endpoint:
            raise FatalError("publisher.timeline_endpoint and publisher.repost_endpoint are required for reposts")
        now = now or datetime.now(timezone.utc)

        try:
            response = self._session.get(
                self.config.timeline_endpoint,
                params={"user_id": account_id, "count": TIMELINE_COUNT, "exclude_replies": "true"},
                timeout=self.config.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransientError(f"Timeline request for {account_id} failed: {e}")

        posts = self._json(response)
        if not isinstance(posts, list):
            raise TransientError(f"Timeline for {account_id} is not a list of posts")

        reposted = []
        for post in posts:
            if not isinstance(post, dict):
                continue
            post_id = str(post.get("id_str") or post.get("id") or "")
            posted_at = parse_post_time(post.get("created_at"))
            if not post_id or posted_at is None or now - posted_at >= window:
                continue
            try:
                repost = self._session.post(
                    self.config.repost_endpoint.format(id=post_id),
                    json={},
                    timeout=self.config.timeout,
                )
                repost.raise_for_status()
            except requests.RequestException as e:
                logger.error(f"Failed to repost {post_id}: {e}")
                continue
            logger.info(f"Reposted {post_id} from {account_id}")
            reposted.append(post_id)
        return reposted

    async def repost_recent(self, account_id: str, window: timedelta) -> List[str]:
        return await asyncio.to_thread(self.repost_recent_sync, account_id, window)

    def close(self) -> None:
        self._session.close()


class DryRunPublisher:
    """Logs messages instead of posting them."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.sent: List[Receipt] = []

    async def publish(self, message: str) -> Receipt:
        check_length(message)
        receipt = Receipt(id=f"dry-run-{next(self._ids)}", message=message)
        self.sent.append(receipt)
        logger.info(f"[dry run] {message}")
        return receipt

    async def repost_recent(self, account_id: str, window: timedelta) -> List[str]:
        logger.info(f"[dry run] repost posts from {account_id} newer than {window}")
        return []

    def close(self) -> None:
        pass


def create_publisher(config: PublisherConfig):
    if config.dry_run:
        return DryRunPublisher()
    return StatusPublisher(config)
