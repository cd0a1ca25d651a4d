"""
Case Repository
===============
Idempotent create/merge of case records and the retry-tolerant lookup
used by every other component.

The Record Store makes writes durable immediately but a read issued from
another request can lag behind, so lookups retry a bounded number of
times with a fixed delay before reporting a miss.
"""

import asyncio
import re
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from database import CaseStore
from errors import CaseNotFound, InvalidFormat, InvalidToken, MissingField, StoreFailure
from schemas.case_definitions import (
    Case,
    CaseEventType,
    CaseProjection,
    SaveResult,
    utcnow,
)
from services.event_log import log_event
from settings import Settings

logger = structlog.get_logger().bind(component="case_repository")

TOKEN_PREFIX = "case_"
TOKEN_PATTERN = re.compile(r"^case_[A-Za-z0-9_-]+$")
MASK_CHAR = "*"


# =============================================================================
# TOKENS & PROJECTION
# =============================================================================

def normalize_token(token: Any) -> str:
    """Trim surrounding whitespace. Matching stays case-sensitive."""
    if token is None:
        return ""
    return str(token).strip()


def validate_token(token: Any) -> str:
    normalized = normalize_token(token)
    if not normalized:
        raise MissingField("Token is required")
    if not TOKEN_PATTERN.match(normalized):
        raise InvalidToken("Invalid token format", details={"expected_prefix": TOKEN_PREFIX})
    return normalized


def mask_email(email: Optional[str]) -> Optional[str]:
    """jane.doe@example.com -> ja******@example.com"""
    if not email:
        return None
    parts = email.split("@")
    if len(parts) != 2:
        return None
    local, domain = parts
    if len(local) > 2:
        local = local[:2] + MASK_CHAR * (len(local) - 2)
    return f"{local}@{domain}"


def project_case(case: Case) -> CaseProjection:
    return CaseProjection(
        id=case.id,
        token=case.token,
        email=mask_email(case.email),
        unlocked=case.unlocked,
        status=case.status,
        created_at=case.created_at,
        payload=case.payload,
    )


# =============================================================================
# REPOSITORY FACADE
# =============================================================================

class CaseRepository:
    """
    Facade over the Record Store.

    Example:
        repo = CaseRepository(store, settings)
        result = await repo.save_case("case_abc123", {"name": "Jane"})
        case = await repo.get_case("case_abc123")
    """

    def __init__(
        self,
        store: CaseStore,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.settings = settings
        self._sleep = sleep

    async def save_case(self, token: Any, fragment: Optional[Dict[str, Any]]) -> SaveResult:
        """Create the case or shallow-merge fragment over its payload."""
        token = validate_token(token)
        if fragment is None:
            raise MissingField("Token and payload are required")
        if not isinstance(fragment, dict):
            raise InvalidFormat("Payload must be an object")

        try:
            case, created = await self.store.upsert_merge(token, fragment)
        except Exception as e:
            logger.error("case_write_failed", token=token[:16], error=str(e))
            raise StoreFailure("Failed to save case data") from e

        verified = await self._verify_visible(token)

        logger.info(
            "case_created" if created else "case_updated",
            token=token[:16],
            payload_keys=len(fragment),
            verified=verified,
        )

        await log_event(
            self.store,
            token,
            CaseEventType.CASE_CREATED if created else CaseEventType.CASE_UPDATED,
            {
                "payload_keys": sorted(fragment.keys()),
                "timestamp": utcnow().isoformat(),
            },
        )

        return SaveResult(case=case, created=created, verified=verified)

    async def _verify_visible(self, token: str) -> bool:
        """Best-effort read-back after a write. Never raises."""
        try:
            found = await self.store.get_by_token(token)
        except Exception as e:
            logger.warning("case_readback_error", token=token[:16], error=str(e))
            return False

        if found is None:
            logger.error("case_readback_missing", token=token[:16])
            return False
        return True

    async def get_case(self, token: Any) -> Case:
        """
        Exact-match lookup with bounded retry.

        Retries up to lookup_max_retries times, lookup_retry_delay_seconds
        apart, on a miss or a store error.

        Raises:
            MissingField: token empty after trimming
            CaseNotFound: not visible after every retry
            StoreFailure: the final lookup attempt errored
        """
        normalized = normalize_token(token)
        if not normalized:
            raise MissingField("Token is required")

        max_retries = max(0, self.settings.lookup_max_retries)
        delay = self.settings.lookup_retry_delay_seconds
        last_error: Optional[Exception] = None

        for attempt in range(max_retries + 1):
            if attempt > 0:
                logger.info("case_lookup_retry", token=normalized[:16], attempt=attempt, max_retries=max_retries)
                await self._sleep(delay)

            try:
                case = await self.store.get_by_token(normalized)
            except Exception as e:
                last_error = e
                logger.warning("case_lookup_error", token=normalized[:16], attempt=attempt + 1, error=str(e))
                continue

            last_error = None
            if case is not None and normalize_token(case.token) == normalized:
                return case

        if last_error is not None:
            logger.error("case_lookup_failed", token=normalized[:16], attempts=max_retries + 1, error=str(last_error))
            raise StoreFailure("Database query failed after retries") from last_error

        logger.info("case_not_found", token=normalized[:16], attempts=max_retries + 1)
        raise CaseNotFound("Case not found", details={"token": normalized})
