"""
Push and SMS delivery for visit reminders and other notifications.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

import requests

from mamacare.config import Settings
from mamacare.errors import BadRequest, PartialFailure, PermanentSend, SendError, TransientSend
from mamacare.schemas import BatchResult, ItemFailure, PushProvider, Visit

logger = logging.getLogger(__name__)

EXPO_TOKEN_PREFIX = "ExponentPushToken["


def validate_expo_token(token: str) -> bool:
    return bool(token) and token.startswith(EXPO_TOKEN_PREFIX) and token.endswith("]")


def reminder_message(visit: Visit, days_until: int) -> str:
    if days_until <= 0:
        when = "today"
    elif days_until == 1:
        when = "tomorrow"
    else:
        when = f"in {days_until} days"
    visit_type = visit.visit_type.value.replace("_", " ")
    return (f"Reminder: you have a {visit_type} visit {when} "
            f"({visit.scheduled_time:%d %b %Y} at {visit.scheduled_time:%H:%M}).")


class NotificationService:
    """Delivers notifications through Expo, Firebase or an SMS gateway."""

    def __init__(self, store, settings: Settings, session: Optional[requests.Session] = None,
                 default_provider: PushProvider = PushProvider.EXPO):
        self.store = store
        self.settings = settings
        self.session = session or requests.Session()
        self.default_provider = default_provider
        self.providers = {
            PushProvider.EXPO: self._send_expo,
            PushProvider.FIREBASE: self._send_firebase,
        }

    def _post(self, url: str, payload: Any, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = self.session.post(
                url, json=payload, headers=headers or {}, timeout=self.settings.request_timeout_seconds
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientSend(f"notification provider unreachable: {e}", {"url": url})
        except requests.RequestException as e:
            raise PermanentSend(f"notification request failed: {e}", {"url": url})

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSend(f"provider returned {response.status_code}", {"url": url})
        if response.status_code >= 400:
            raise PermanentSend(f"provider rejected notification with {response.status_code}", {"url": url})
        try:
            return response.json()
        except ValueError:
            return {}

    def _send_expo(self, tokens: Sequence[str], title: str, body: str, data: Dict[str, Any]) -> Dict[str, Any]:
        valid = [t for t in tokens if validate_expo_token(t)]
        if not valid:
            raise PermanentSend("no valid Expo push tokens")
        messages = [
            {"to": token, "title": title, "body": body, "data": data, "sound": "default"}
            for token in valid
        ]
        return self._post(self.settings.expo_push_url, messages)

    def _send_firebase(self, tokens: Sequence[str], title: str, body: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if not self.settings.firebase_push_url or not self.settings.firebase_server_key:
            raise PermanentSend("firebase push is not configured")
        payload = {
            "registration_ids": list(tokens),
            "notification": {"title": title, "body": body},
            "data": data,
        }
        headers = {"Authorization": f"key={self.settings.firebase_server_key}"}
        return self._post(self.settings.firebase_push_url, payload, headers)

    def send_push(
        self,
        user_id: UUID,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        provider: Optional[PushProvider] = None,
    ) -> Dict[str, Any]:
        """Send to every device token registered for the user with ``provider``."""
        provider = PushProvider(provider) if provider else self.default_provider
        tokens = [t.token for t in self.store.device_tokens(user_id) if t.provider == provider]
        if not tokens:
            raise PermanentSend("no device tokens found for user", {"user_id": str(user_id)})

        result = self.providers[provider](tokens, title, body, data or {})
        logger.info("Sent %s push to user %s (%d devices)", provider.value, user_id, len(tokens))
        return result

    def send_to_users(
        self,
        user_ids: Sequence[UUID],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        provider: Optional[PushProvider] = None,
    ) -> BatchResult:
        """Push to several users; raises ``PartialFailure`` if any delivery failed."""
        if not user_ids:
            raise BadRequest("no user IDs provided")

        result = BatchResult()
        for user_id in user_ids:
            try:
                self.send_push(user_id, title, body, data, provider)
                result.succeeded.append(str(user_id))
            except SendError as e:
                logger.error("Failed to send notification to user %s: %s", user_id, e)
                result.failed.append(ItemFailure(item_id=str(user_id), reason=e.message))

        if result.failed:
            raise PartialFailure(f"{len(result.failed)} of {result.total} notifications failed", result)
        return result

    def send_sms(self, phone_number: str, message: str) -> Dict[str, Any]:
        if not phone_number:
            raise PermanentSend("phone number is required for SMS")
        if not self.settings.sms_api_url:
            raise PermanentSend("SMS gateway is not configured")
        headers = {}
        if self.settings.sms_api_key:
            headers["Authorization"] = f"Bearer {self.settings.sms_api_key}"
        result = self._post(self.settings.sms_api_url, {"to": phone_number, "message": message}, headers)
        logger.info("Sent SMS to %s", phone_number)
        return result

    def send_visit_reminder(self, visit: Visit, mother_id: UUID, days_until: int) -> None:
        """Remind a mother of an upcoming visit by push, falling back to SMS."""
        mother = self.store.get_mother(mother_id)
        user = self.store.get_user(mother.user_id)
        message = reminder_message(visit, days_until)
        data = {"type": "visit_reminder", "visit_id": str(visit.id), "days_until": days_until}

        errors: List[SendError] = []
        try:
            self.send_push(user.id, "Upcoming visit", message, data)
            return
        except SendError as e:
            errors.append(e)

        if user.phone_number:
            try:
                self.send_sms(user.phone_number, message)
                return
            except SendError as e:
                errors.append(e)

        # Retryable if any channel failed transiently
        if any(e.retryable for e in errors):
            raise TransientSend(f"reminder for visit {visit.id} not delivered", {"visit_id": str(visit.id)})
        raise PermanentSend(f"reminder for visit {visit.id} not delivered", {"visit_id": str(visit.id)})
