"""
Background renewal engine for provider subscriptions.

Each pass (``tick``) renews every subscription whose expiration falls inside the
lookahead window and removes subscriptions that already expired:

1. Select records expiring in ``[now, now + lookahead]`` and records already
   past ``now``
2. Drop expired records locally (the provider has discarded them too)
3. Renew each in-window record with the provider, then persist the
   provider-confirmed expiration

Failures are isolated per subscription: a 404 removes the record, an expired
login skips the rest of that user's records, anything else leaves the record
untouched for the next pass. Only a failed selection aborts a pass.

Users are processed in parallel (bounded); one user's records are processed
sequentially under the per-user lock shared with admission.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from webhook_renewal.config import Settings
from webhook_renewal.db.repositories import SubscriptionRecord, SubscriptionRepository
from webhook_renewal.errors import (
    AuthExpiredError,
    PersistenceError,
    ProviderRejectedError,
    SubscriptionNotFoundError,
    TransientNetworkError,
)
from webhook_renewal.services.graph_client import GraphClient
from webhook_renewal.services.token_manager import TokenManager
from webhook_renewal.utils.locks import KeyedLocks
from webhook_renewal.utils.time import Clock, utcnow

logger = structlog.get_logger(__name__)


class EngineState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class TickReport:
    """Outcome counts for one renewal pass."""

    started_at: datetime
    selected: int = 0
    renewed: int = 0
    failed: int = 0
    removed: int = 0
    expired: int = 0
    skipped: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "selected": self.selected,
            "renewed": self.renewed,
            "failed": self.failed,
            "removed": self.removed,
            "expired": self.expired,
            "skipped": self.skipped,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class _UserBatch:
    expired: List[SubscriptionRecord]
    expiring: List[SubscriptionRecord]


class RenewalEngine:
    """
    Scheduled renewal of provider subscriptions.

    ``start()`` and ``stop()`` move the engine between STOPPED and RUNNING and
    are no-ops when the engine is already in the target state. ``tick()`` and
    ``manual_check()`` run one pass regardless of state; passes never overlap.
    """

    def __init__(
        self,
        settings: Settings,
        repository: SubscriptionRepository,
        token_manager: TokenManager,
        graph_client: GraphClient,
        locks: KeyedLocks,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.repository = repository
        self.token_manager = token_manager
        self.graph_client = graph_client
        self.locks = locks
        self.clock = clock

        self.tick_interval = settings.tick_interval
        self.lookahead = settings.lookahead_window
        self.lease = settings.lease_duration
        self.max_concurrent_users = settings.renewal_max_concurrent_users

        self._state = EngineState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self.last_report: Optional[TickReport] = None

        # Statistics for monitoring
        self.stats = {
            "ticks_completed": 0,
            "ticks_aborted": 0,
            "subscriptions_renewed": 0,
            "renewal_failures": 0,
            "subscriptions_removed": 0,
            "subscriptions_expired": 0,
            "last_tick_time": None,
        }

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EngineState.RUNNING

    # ===== Lifecycle =====

    async def start(self) -> None:
        """Start the scheduled loop. The first pass runs immediately."""
        if self.is_running:
            logger.debug("Renewal engine already running")
            return

        self._state = EngineState.RUNNING
        self._task = asyncio.create_task(self._run_loop())

        logger.info(
            "Renewal engine started",
            tick_interval_seconds=int(self.tick_interval.total_seconds()),
            lookahead_hours=self.lookahead.total_seconds() / 3600,
            lease_minutes=int(self.lease.total_seconds() // 60),
        )

    async def stop(self) -> None:
        """Stop the scheduled loop, cancelling an in-flight pass."""
        if not self.is_running:
            logger.debug("Renewal engine not running")
            return

        self._state = EngineState.STOPPED
        task, self._task = self._task, None

        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("Renewal engine stopped")

    async def _run_loop(self) -> None:
        logger.info("Renewal loop starting")

        while self.is_running:
            try:
                await self.tick()
            except Exception as e:
                # Selection failed; the next pass starts from scratch
                logger.error("Scheduled renewal pass aborted", error=str(e))

            await asyncio.sleep(self.tick_interval.total_seconds())

    # ===== Renewal passes =====

    async def manual_check(self) -> TickReport:
        """Run exactly one pass now, through the same path as the scheduler."""
        logger.info("Manual renewal check requested")
        return await self.tick()

    async def tick(self) -> TickReport:
        """
        Run one renewal pass.

        Raises:
            PersistenceError: The selection query failed; nothing was changed
        """
        async with self._tick_lock:
            return await self._perform_pass()

    async def _perform_pass(self) -> TickReport:
        now = self.clock()
        report = TickReport(started_at=now)
        start_time = time.monotonic()

        try:
            expired = await self.repository.find_expired(now)
            expiring = await self.repository.find_expiring(now, now + self.lookahead)
        except PersistenceError as e:
            self.stats["ticks_aborted"] += 1
            logger.error(
                "Renewal selection failed, pass aborted",
                error=str(e),
                window_start=now.isoformat(),
            )
            raise

        report.selected = len(expiring)

        batches: Dict[str, _UserBatch] = defaultdict(lambda: _UserBatch([], []))
        for record in expired:
            batches[record.user_id].expired.append(record)
        for record in expiring:
            batches[record.user_id].expiring.append(record)

        if batches:
            logger.info(
                "Renewal pass starting",
                expiring=len(expiring),
                expired=len(expired),
                users=len(batches),
            )

        semaphore = asyncio.Semaphore(self.max_concurrent_users)
        await asyncio.gather(
            *(
                self._process_user(user_id, batch, now, report, semaphore)
                for user_id, batch in batches.items()
            )
        )

        report.duration_ms = (time.monotonic() - start_time) * 1000
        self._update_statistics(report)
        return report

    async def _process_user(
        self,
        user_id: str,
        batch: _UserBatch,
        now: datetime,
        report: TickReport,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            async with self.locks.hold(user_id):
                for record in batch.expired:
                    await self._remove_expired(record, now, report)

                for index, record in enumerate(batch.expiring):
                    try:
                        await self._renew_one(record, now, report)
                    except AuthExpiredError as e:
                        remaining = len(batch.expiring) - index - 1
                        report.failed += 1
                        report.skipped += remaining
                        logger.warning(
                            "User must re-authenticate, skipping their renewals",
                            user_id=user_id,
                            subscription_id=record.subscription_id,
                            skipped=remaining,
                            reason=e.reason,
                        )
                        break

    async def _remove_expired(
        self, record: SubscriptionRecord, now: datetime, report: TickReport
    ) -> None:
        try:
            # Admission may have replaced the record since selection
            current = await self.repository.get(record.subscription_id)
            if current is None or current.expiration_date_time >= now:
                report.skipped += 1
                logger.info(
                    "Expired subscription replaced since selection, skipping",
                    subscription_id=record.subscription_id,
                    user_id=record.user_id,
                )
                return
            await self.repository.delete(record.subscription_id)
        except PersistenceError as e:
            logger.error(
                "Failed to remove expired subscription",
                subscription_id=record.subscription_id,
                user_id=record.user_id,
                error=str(e),
            )
            return

        report.expired += 1
        logger.info(
            "Expired subscription removed",
            subscription_id=record.subscription_id,
            user_id=record.user_id,
            expired_at=record.expiration_date_time.isoformat(),
        )

    async def _renew_one(
        self, record: SubscriptionRecord, now: datetime, report: TickReport
    ) -> None:
        """
        Renew a single subscription, absorbing every failure except AuthExpiredError.

        The repository is written only after the provider confirms the renewal.
        """
        log = logger.bind(
            subscription_id=record.subscription_id, user_id=record.user_id
        )

        try:
            if await self.repository.get(record.subscription_id) is None:
                report.skipped += 1
                log.info("Subscription removed since selection, skipping")
                return

            access_token = await self.token_manager.get_valid_access_token(
                record.user_id
            )
            confirmed = await self.graph_client.update_subscription(
                access_token, record.subscription_id, now + self.lease
            )
            updated = await self.repository.update_expiration(
                record.subscription_id, confirmed.expiration_date_time
            )
        except AuthExpiredError:
            raise
        except SubscriptionNotFoundError:
            await self._remove_missing(record, report)
            return
        except (ProviderRejectedError, TransientNetworkError) as e:
            report.failed += 1
            log.warning(
                "Subscription renewal failed, will retry next pass",
                error_type=type(e).__name__,
                status_code=getattr(e, "status_code", None),
                error=str(e),
            )
            return
        except PersistenceError as e:
            report.failed += 1
            log.error("Subscription renewal could not be persisted", error=str(e))
            return
        except Exception as e:
            report.failed += 1
            log.exception("Unexpected error renewing subscription", error=str(e))
            return

        if not updated:
            log.warning("Subscription record vanished after renewal")

        report.renewed += 1
        log.info(
            "Subscription renewed",
            previous_expiration=record.expiration_date_time.isoformat(),
            expiration=confirmed.expiration_date_time.isoformat(),
        )

    async def _remove_missing(
        self, record: SubscriptionRecord, report: TickReport
    ) -> None:
        """The provider no longer knows the subscription; forget it locally."""
        try:
            await self.repository.delete(record.subscription_id)
        except PersistenceError as e:
            report.failed += 1
            logger.error(
                "Failed to remove subscription unknown to provider",
                subscription_id=record.subscription_id,
                user_id=record.user_id,
                error=str(e),
            )
            return

        report.removed += 1
        logger.warning(
            "Subscription no longer exists at provider, removed locally",
            subscription_id=record.subscription_id,
            user_id=record.user_id,
        )

    def _update_statistics(self, report: TickReport) -> None:
        self.last_report = report
        self.stats["ticks_completed"] += 1
        self.stats["subscriptions_renewed"] += report.renewed
        self.stats["renewal_failures"] += report.failed
        self.stats["subscriptions_removed"] += report.removed
        self.stats["subscriptions_expired"] += report.expired
        self.stats["last_tick_time"] = report.started_at.isoformat()

        logger.info(
            "Renewal pass completed",
            selected=report.selected,
            renewed=report.renewed,
            failed=report.failed,
            removed=report.removed,
            expired=report.expired,
            skipped=report.skipped,
            duration_ms=round(report.duration_ms, 2),
        )

    def get_stats(self) -> Dict[str, Any]:
        """Engine state and counters for monitoring."""
        return {
            **self.stats,
            "state": self._state.value,
            "last_report": self.last_report.to_dict() if self.last_report else None,
            "config": {
                "tick_interval_seconds": int(self.tick_interval.total_seconds()),
                "lookahead_hours": self.lookahead.total_seconds() / 3600,
                "lease_minutes": int(self.lease.total_seconds() // 60),
                "max_concurrent_users": self.max_concurrent_users,
            },
        }
