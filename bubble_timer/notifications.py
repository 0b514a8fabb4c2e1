"""
Notification Dispatcher.

Owns the device-token table: one row per (user, device) holding the FCM token,
the platform and the user's notification preferences. Sharing invitations are
delivered to every registered device through Firebase Cloud Messaging unless
the user opted out or is inside their quiet hours.
"""

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime

import firebase_admin
from firebase_admin import credentials, messaging

from bubble_timer.config import Settings
from bubble_timer.errors import DependencyError
from bubble_timer.models import DeviceToken, NotificationPreferences, PushResult, utc_now_iso
from bubble_timer.storage import Item, MemoryTable

logger = logging.getLogger(__name__)

INVITATION_TITLE = "Timer Invitation"


# ============================================================
# PUSH GATEWAY
# ============================================================


class FirebasePushGateway:
    """Sends single-device messages through FCM."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._app: firebase_admin.App | None = None

    def _get_app(self) -> firebase_admin.App | None:
        """Lazy-init the Firebase app. Returns None if push is disabled or has no credentials."""
        if self._app is not None:
            return self._app
        if not self.settings.push_enabled:
            return None
        cred_path = self.settings.google_application_credentials or os.environ.get(
            "GOOGLE_APPLICATION_CREDENTIALS", ""
        )
        if not cred_path:
            logger.debug("Push disabled: no GOOGLE_APPLICATION_CREDENTIALS")
            return None
        try:
            self._app = firebase_admin.initialize_app(credentials.Certificate(cred_path))
        except ValueError:
            # Default app already initialized in this process
            self._app = firebase_admin.get_app()
        return self._app

    async def send(self, token: str, title: str, body: str, data: dict[str, str]) -> str:
        app = self._get_app()
        if app is None:
            raise DependencyError("Push delivery is not configured", "push_send")
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data=data,
            token=token,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(sound="default"),
            ),
        )
        return await asyncio.to_thread(messaging.send, message, app=app)


# ============================================================
# DISPATCHER
# ============================================================


def _minutes(clock_time: str) -> int:
    hours, minutes = clock_time.split(":")
    return int(hours) * 60 + int(minutes)


def _item_to_device_token(item: Item) -> DeviceToken:
    return DeviceToken(
        user_id=item["user_id"],
        device_id=item["device_id"],
        fcm_token=item["fcm_token"],
        platform=item.get("platform", "android"),
        created_at=item.get("created_at", ""),
        last_used=item.get("last_used", ""),
        preferences=NotificationPreferences.model_validate(
            item.get("notification_preferences") or {}
        ),
    )


def _preferences_to_item(preferences: NotificationPreferences) -> Item:
    item = {"timer_invitations": preferences.timer_invitations_enabled}
    if preferences.quiet_hours_start:
        item["quiet_hours_start"] = preferences.quiet_hours_start
    if preferences.quiet_hours_end:
        item["quiet_hours_end"] = preferences.quiet_hours_end
    return item


class NotificationDispatcher:
    def __init__(
        self,
        table: MemoryTable,
        gateway: FirebasePushGateway,
        clock: Callable[[], datetime] | None = None,
    ):
        self.table = table
        self.gateway = gateway
        self.clock = clock or (lambda: datetime.now(UTC))

    async def register_device_token(
        self, user_id: str, device_id: str, fcm_token: str, platform: str = "android"
    ) -> DeviceToken:
        now = utc_now_iso()
        token = DeviceToken(
            user_id=user_id,
            device_id=device_id,
            fcm_token=fcm_token,
            platform=platform,
            created_at=now,
            last_used=now,
        )
        try:
            await self.table.put(
                {
                    "user_id": user_id,
                    "device_id": device_id,
                    "fcm_token": fcm_token,
                    "platform": platform,
                    "created_at": now,
                    "last_used": now,
                    "notification_preferences": _preferences_to_item(token.preferences),
                }
            )
        except Exception as e:
            logger.exception("Failed to register device token for user %s", user_id)
            raise DependencyError("Failed to register device token", "register") from e
        logger.info("Registered device token for user %s device %s", user_id, device_id)
        return token

    async def remove_device_token(self, user_id: str, device_id: str) -> None:
        try:
            await self.table.delete({"user_id": user_id, "device_id": device_id})
        except Exception as e:
            logger.exception("Failed to remove device token for user %s", user_id)
            raise DependencyError("Failed to remove device token", "remove") from e
        logger.info("Removed device token for user %s device %s", user_id, device_id)

    async def get_device_tokens(self, user_id: str) -> list[DeviceToken]:
        try:
            items = await self.table.query(user_id)
        except Exception as e:
            logger.exception("Failed to read device tokens for user %s", user_id)
            raise DependencyError("Failed to read device tokens", "get_device_tokens") from e
        return [_item_to_device_token(item) for item in items]

    async def get_notification_preferences(self, user_id: str) -> NotificationPreferences:
        """Preferences are kept in sync across devices; the first device is authoritative."""
        tokens = await self.get_device_tokens(user_id)
        if not tokens:
            return NotificationPreferences()
        return tokens[0].preferences

    async def update_preferences(self, user_id: str, preferences: NotificationPreferences) -> int:
        """Rewrite the preferences on every device of the user. Returns the device count."""
        tokens = await self.get_device_tokens(user_id)
        values = {
            "notification_preferences": _preferences_to_item(preferences),
            "last_used": utc_now_iso(),
        }
        results = await asyncio.gather(
            *(
                self.table.update({"user_id": user_id, "device_id": t.device_id}, values)
                for t in tokens
            ),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            logger.error(
                "Failed to update preferences on %d of %d devices for user %s",
                len(errors),
                len(tokens),
                user_id,
            )
            raise DependencyError("Failed to update notification preferences", "preferences")
        return len(tokens)

    @staticmethod
    def is_in_quiet_hours(preferences: NotificationPreferences, now: datetime) -> bool:
        if not preferences.quiet_hours_start or not preferences.quiet_hours_end:
            return False

        current = now.hour * 60 + now.minute
        start = _minutes(preferences.quiet_hours_start)
        end = _minutes(preferences.quiet_hours_end)

        if start <= end:
            return start <= current <= end
        # Window wraps past midnight, e.g. 22:00 to 08:00
        return current >= start or current <= end

    async def send_sharing_invitation(
        self,
        target_user_id: str,
        timer_id: str,
        sharer_name: str,
        timer_name: str,
        sharer_avatar_url: str | None = None,
    ) -> list[PushResult]:
        """
        Push a timer invitation to every device of `target_user_id`.

        Returns one result per device attempted; an empty list means nothing was
        sent (no devices, opted out, or quiet hours). Per-device failures are
        reported in the results. A failing token lookup raises DependencyError.
        """
        tokens = await self.get_device_tokens(target_user_id)
        if not tokens:
            logger.warning("No device tokens found for user %s", target_user_id)
            return []

        preferences = tokens[0].preferences
        if not preferences.timer_invitations_enabled:
            logger.info("User %s has disabled timer invitation notifications", target_user_id)
            return []
        if self.is_in_quiet_hours(preferences, self.clock()):
            logger.info("Invitation for user %s blocked by quiet hours", target_user_id)
            return []

        body = f'{sharer_name} invited you to join timer "{timer_name}"'
        data = {
            "timerId": timer_id,
            "action": "accept",
            "sharerName": sharer_name,
            "timerName": timer_name,
            "sharerAvatarUrl": sharer_avatar_url or "",
        }
        outcomes = await asyncio.gather(
            *(self._send_to_device(t, INVITATION_TITLE, body, data) for t in tokens),
            return_exceptions=True,
        )

        results = []
        for token, outcome in zip(tokens, outcomes, strict=True):
            if isinstance(outcome, Exception):
                logger.warning(
                    "Invitation push failed for user %s device %s: %s",
                    target_user_id,
                    token.device_id,
                    outcome,
                )
                results.append(
                    PushResult(device_id=token.device_id, success=False, status=str(outcome))
                )
            else:
                results.append(PushResult(device_id=token.device_id, success=True, status="sent"))

        logger.info(
            "Sharing invitation for timer %s sent to %d of %d devices of user %s",
            timer_id,
            sum(r.success for r in results),
            len(results),
            target_user_id,
        )
        return results

    async def _send_to_device(self, token: DeviceToken, title: str, body: str, data: dict) -> str:
        message_id = await self.gateway.send(token.fcm_token, title, body, data)
        await self._touch_last_used(token)
        return message_id

    async def _touch_last_used(self, token: DeviceToken):
        try:
            await self.table.update(
                {"user_id": token.user_id, "device_id": token.device_id},
                {"last_used": utc_now_iso()},
            )
        except Exception:
            logger.exception("Failed to update last used timestamp for device %s", token.device_id)
