"""
Realtime Fanout Engine.

Every timer mutation is turned into a recipient set (the acting user, everyone
the timer is or was shared with, and the owner when different), which is then
resolved to live connections through the Connection Directory. The engine keeps
no state of its own; all joins are all-settled so one failing recipient, edge
or socket never aborts the rest of the operation.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from bubble_timer.connections import ConnectionDirectory, ConnectionGoneError, SocketRegistry
from bubble_timer.errors import DependencyError, NotFoundError
from bubble_timer.models import (
    Connection,
    DeliveryResult,
    FanoutReport,
    ShareResult,
    Timer,
    TimerPayload,
    TimerReference,
)
from bubble_timer.notifications import NotificationDispatcher
from bubble_timer.timers import SharingStore, TimerStore

logger = logging.getLogger(__name__)


def _unique(values: Iterable[str]) -> list[str]:
    """Drop duplicates and blanks, keeping first-seen order."""
    return list(dict.fromkeys(v for v in values if v))


class FanoutEngine:
    def __init__(
        self,
        timers: TimerStore,
        sharing: SharingStore,
        connections: ConnectionDirectory,
        sockets: SocketRegistry,
        notifications: NotificationDispatcher,
    ):
        self.timers = timers
        self.sharing = sharing
        self.connections = connections
        self.sockets = sockets
        self.notifications = notifications

    # ============================================================
    # DELIVERY
    # ============================================================

    async def _send(self, connection: Connection, frame: dict) -> DeliveryResult:
        try:
            await self.sockets.post_to_connection(connection.connection_id, frame)
        except ConnectionGoneError:
            # Served by another process, or not yet registered here; the row stays
            logger.debug(
                "No local socket for connection %s of user %s",
                connection.connection_id,
                connection.user_id,
            )
            return DeliveryResult(
                user_id=connection.user_id,
                device_id=connection.device_id,
                connection_id=connection.connection_id,
                success=False,
                status="no local socket",
            )
        except Exception as e:
            logger.warning(
                "Failed to send %s to user %s device %s (connection %s): %r",
                frame.get("type", "frame"),
                connection.user_id,
                connection.device_id,
                connection.connection_id,
                e,
            )
            await self.connections.clear_connection(
                connection.user_id, connection.device_id, connection.connection_id
            )
            return DeliveryResult(
                user_id=connection.user_id,
                device_id=connection.device_id,
                connection_id=connection.connection_id,
                success=False,
                status="stale connection removed",
            )
        return DeliveryResult(
            user_id=connection.user_id,
            device_id=connection.device_id,
            connection_id=connection.connection_id,
            success=True,
            status="sent",
        )

    async def broadcast_to_user(
        self, user_id: str, frame: dict, exclude_device_id: str | None = None
    ) -> list[DeliveryResult]:
        """Send `frame` to every live connection of one user, optionally skipping a device."""
        connections = [
            c
            for c in await self.connections.get_live_connections(user_id)
            if c.device_id != exclude_device_id
        ]
        if not connections:
            logger.debug("No live connections for user %s", user_id)
            return []
        return list(await asyncio.gather(*(self._send(c, frame) for c in connections)))

    async def fanout(
        self,
        recipients: set[str],
        frame: dict,
        acting_user_id: str | None = None,
        exclude_device_id: str | None = None,
    ) -> list[DeliveryResult]:
        """
        Deliver `frame` to every live connection of every recipient.

        `exclude_device_id` only applies to the acting user, whose originating
        device already has the state it just sent.
        """
        users = sorted(recipients)
        outcomes = await asyncio.gather(
            *(
                self.broadcast_to_user(
                    user, frame, exclude_device_id if user == acting_user_id else None
                )
                for user in users
            ),
            return_exceptions=True,
        )

        deliveries: list[DeliveryResult] = []
        for user, outcome in zip(users, outcomes, strict=True):
            if isinstance(outcome, Exception):
                logger.error("Fanout to user %s failed: %r", user, outcome)
                continue
            deliveries.extend(outcome)

        logger.info(
            "Fanout of %s reached %d of %d connections across %d users",
            frame.get("type", "frame"),
            sum(d.success for d in deliveries),
            len(deliveries),
            len(users),
        )
        return deliveries

    # ============================================================
    # RELATIONSHIP RECONCILIATION
    # ============================================================

    @staticmethod
    async def _settle(
        operation: Callable[[str, str], Awaitable[bool]], timer_id: str, users: list[str]
    ) -> tuple[list[str], list[str]]:
        """Apply an edge operation to each user independently; split into done/failed."""
        outcomes = await asyncio.gather(
            *(operation(timer_id, user) for user in users), return_exceptions=True
        )
        done, failed = [], []
        for user, outcome in zip(users, outcomes, strict=True):
            (done if outcome is True else failed).append(user)
        return done, failed

    # ============================================================
    # OPERATIONS
    # ============================================================

    async def stop_timer(
        self,
        timer_id: str,
        acting_user_id: str,
        timer_data: TimerReference | None = None,
        frame: dict | None = None,
        exclude_device_id: str | None = None,
    ) -> FanoutReport:
        """
        Delete a timer, drop all of its sharing edges and tell everyone involved.

        The owner can only be notified when it is known before the delete: from
        the stored timer, or else from `timer_data`. Without either it is left
        out of the fanout.
        """
        shared_users = await self.sharing.get_shared_users(timer_id)
        stored = await self.timers.get_timer(timer_id)
        owner = stored.user_id if stored else (timer_data.user_id if timer_data else None)
        if owner is None:
            logger.info("Owner of timer %s is unknown; owner is not notified", timer_id)

        deleted = await self.timers.delete_timer(timer_id)
        removed, failed_removes = await self._settle(
            self.sharing.remove_relationship, timer_id, shared_users
        )

        recipients = {acting_user_id, *shared_users}
        if owner and owner != acting_user_id:
            recipients.add(owner)

        frame = frame or {"type": "stopTimer", "timerId": timer_id}
        deliveries = await self.fanout(recipients, frame, acting_user_id, exclude_device_id)

        logger.info(
            "Timer %s stopped by %s; %d relationships removed, %d failed",
            timer_id,
            acting_user_id,
            len(removed),
            len(failed_removes),
        )
        return FanoutReport(
            recipients=recipients,
            deliveries=deliveries,
            persisted=deleted,
            removed=removed,
            failed_removes=failed_removes,
        )

    async def update_timer(
        self,
        payload: TimerPayload,
        acting_user_id: str,
        share_with: list[str] | None = None,
        frame: dict | None = None,
        exclude_device_id: str | None = None,
    ) -> FanoutReport:
        """
        Persist a timer, reconcile its share list with `share_with` and fan out.

        An omitted `share_with` clears all sharing. Updates never transfer
        ownership: an existing timer keeps its owner, a new one belongs to the
        acting user.
        """
        existing = await self.timers.get_timer(payload.id)
        owner = existing.user_id if existing else acting_user_id
        timer = Timer(**payload.model_dump(exclude={"user_id"}), user_id=owner)

        persisted = await self.timers.save_timer(timer)
        if not persisted:
            logger.error("Timer %s was not saved; continuing with fanout", timer.id)

        current = await self.sharing.get_shared_users(timer.id)
        desired = _unique(share_with or [])
        to_add = [u for u in desired if u not in current]
        to_remove = [u for u in current if u not in desired]

        (added, failed_adds), (removed, failed_removes) = await asyncio.gather(
            self._settle(self.sharing.add_relationship, timer.id, to_add),
            self._settle(self.sharing.remove_relationship, timer.id, to_remove),
        )

        recipients = {acting_user_id, *current, *to_add}
        for candidate in (owner, payload.user_id):
            if candidate and candidate != acting_user_id:
                recipients.add(candidate)

        frame = frame or {"type": "updateTimer", "timer": timer.to_wire(), "shareWith": desired}
        deliveries = await self.fanout(recipients, frame, acting_user_id, exclude_device_id)

        return FanoutReport(
            recipients=recipients,
            deliveries=deliveries,
            persisted=persisted,
            added=added,
            removed=removed,
            failed_adds=failed_adds,
            failed_removes=failed_removes,
        )

    async def share_timer_with_users(
        self,
        timer_id: str,
        sharer_user_id: str,
        target_user_ids: list[str],
        timer_fallback: TimerPayload | None = None,
    ) -> ShareResult:
        """
        Share a timer and send each target a push invitation.

        Raises NotFoundError when the timer does not exist and no fallback data
        was given. Every other failure is reported per target.
        """
        timer = await self.timers.get_timer(timer_id)
        if timer is None:
            if timer_fallback is None:
                raise NotFoundError("Timer not found")
            timer = Timer(
                **timer_fallback.model_dump(exclude={"id", "user_id"}),
                id=timer_id,
                user_id=timer_fallback.user_id or sharer_user_id,
            )
            if not await self.timers.save_timer(timer):
                logger.warning("Fallback timer %s could not be saved", timer_id)

        targets = _unique(target_user_ids)
        outcomes = await asyncio.gather(
            *(self._share_with(timer, sharer_user_id, target) for target in targets),
            return_exceptions=True,
        )

        result = ShareResult()
        for target, outcome in zip(targets, outcomes, strict=True):
            if isinstance(outcome, Exception):
                logger.warning("Sharing timer %s with %s failed: %s", timer_id, target, outcome)
                result.failed.append(target)
            else:
                result.success.append(target)
        return result

    async def _share_with(self, timer: Timer, sharer_user_id: str, target_user_id: str):
        if not await self.sharing.add_relationship(timer.id, target_user_id):
            raise DependencyError("Failed to add sharing relationship", "add_relationship")
        await self.notifications.send_sharing_invitation(
            target_user_id, timer.id, sharer_user_id, timer.name
        )
