# donor_alerts/infra/push_gateway.py
"""
Push gateways.

Token-addressed delivery goes through PushGateway.send(message) where
`message` is the FCM v1 message dict built by build_push_message().
Tag-addressed delivery (audience picked by stored tags) goes through
TagGateway.send_to_tags().

Both are blocking (requests); async callers run them in a worker thread.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import google.auth.exceptions
import requests
from google.auth.transport.requests import Request as AuthRequest
from google.oauth2 import service_account

from donor_alerts.errors import GatewayError
from donor_alerts.models.queued_notification import Priority, QueuedNotification

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
ONESIGNAL_URL = "https://onesignal.com/api/v1/notifications"

ANDROID_CHANNEL_ID = "high_importance_channel"

# FCM errorCode values that will not get better by sending again
PERMANENT_FCM_ERRORS = {
    "UNREGISTERED",
    "INVALID_ARGUMENT",
    "SENDER_ID_MISMATCH",
    "THIRD_PARTY_AUTH_ERROR",
}
TRANSIENT_ERROR_CODES = {
    "timeout",
    "connection_error",
    "provider_unavailable",
    "rate_limited",
    "unauthenticated",
    "auth_error",
}


def build_push_message(record: QueuedNotification) -> Dict[str, Any]:
    """
    Token message with the platform blocks the mobile client expects:
    android sound/channel/priority and an apns alert with sound and badge.
    """
    return {
        "token": record.token,
        "notification": {
            "title": record.title,
            "body": record.body,
        },
        "data": {k: str(v) for k, v in record.data.items()},
        "android": {
            "priority": "high" if record.priority == Priority.HIGH else "normal",
            "notification": {
                "sound": "default",
                "channel_id": ANDROID_CHANNEL_ID,
            },
        },
        "apns": {
            "payload": {
                "aps": {
                    "alert": {
                        "title": record.title,
                        "body": record.body,
                    },
                    "sound": "default",
                    "badge": 1,
                },
            },
        },
    }


class PushGateway(ABC):
    @abstractmethod
    def send(self, message: Dict[str, Any]) -> Any:
        """Returns the gateway's response, raises GatewayError."""


class LoggingPushGateway(PushGateway):
    """Used when no real gateway is configured: logs and reports success."""

    def send(self, message: Dict[str, Any]) -> Any:
        token = message.get("token") or ""
        logger.info(
            "Push disabled; would send %r to token %s...",
            message.get("notification", {}).get("title"),
            token[:8],
        )
        return f"logged-{uuid.uuid4()}"


def _fcm_error_code(body: Dict[str, Any]) -> Optional[str]:
    for detail in body.get("error", {}).get("details", []) or []:
        if "errorCode" in detail:
            return detail["errorCode"]
    return body.get("error", {}).get("status")


def load_fcm_credentials(path: str) -> service_account.Credentials:
    return service_account.Credentials.from_service_account_file(path, scopes=[FCM_SCOPE])


def _error_body(r) -> Dict[str, Any]:
    try:
        return r.json()
    except ValueError:
        return {}


class FcmPushGateway(PushGateway):
    """
    FCM HTTP v1 sender. OAuth2 access tokens come from service-account
    credentials and are refreshed when they expire or when FCM answers 401.
    """

    def __init__(self, project_id: str, credentials, timeout: float = 10.0):
        self.url = FCM_SEND_URL.format(project_id=project_id)
        self.credentials = credentials
        self.timeout = timeout
        # sends run in worker threads; one refresh at a time
        self._lock = threading.Lock()

    def _access_token(self, force_refresh: bool = False) -> str:
        with self._lock:
            if force_refresh or not self.credentials.valid:
                try:
                    self.credentials.refresh(AuthRequest())
                except google.auth.exceptions.TransportError as e:
                    raise GatewayError(f"FCM token refresh failed: {e}", code="connection_error") from e
                except google.auth.exceptions.RefreshError as e:
                    raise GatewayError(f"FCM token refresh rejected: {e}", code="auth_error") from e
            return self.credentials.token

    def _post(self, message: Dict[str, Any], token: str):
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json; UTF-8",
        }
        try:
            return requests.post(
                self.url, json={"message": message}, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise GatewayError(f"FCM request timed out: {e}", code="timeout") from e
        except requests.exceptions.ConnectionError as e:
            raise GatewayError(f"FCM connection failed: {e}", code="connection_error") from e
        except requests.exceptions.RequestException as e:
            raise GatewayError(f"FCM request failed: {e}", code="request_error") from e

    def send(self, message: Dict[str, Any]) -> Any:
        r = self._post(message, self._access_token())
        if r.status_code == 401 and _fcm_error_code(_error_body(r)) != "THIRD_PARTY_AUTH_ERROR":
            logger.info("FCM rejected the access token, refreshing")
            r = self._post(message, self._access_token(force_refresh=True))

        if r.status_code == 200:
            return r.json().get("name")

        body = _error_body(r)
        detail = body.get("error", {}).get("message") or r.text
        fcm_code = _fcm_error_code(body)
        logger.warning("FCM send %s (%s): %s", r.status_code, fcm_code, detail)

        if r.status_code == 429:
            raise GatewayError(detail, code="rate_limited")
        if r.status_code >= 500:
            raise GatewayError(detail, code="provider_unavailable")
        if r.status_code == 401 and fcm_code != "THIRD_PARTY_AUTH_ERROR":
            # still refused with a fresh token
            raise GatewayError(detail, code="unauthenticated")
        code = (fcm_code or f"http_{r.status_code}").lower()
        raise GatewayError(
            detail,
            code=code,
            permanent=(fcm_code in PERMANENT_FCM_ERRORS) or r.status_code in (400, 401, 403, 404),
        )


def build_tag_filters(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """[{tag city = X}, {AND}, {tag bloodType = Y}, ...]"""
    filters: List[Dict[str, str]] = []
    for key, value in tags.items():
        if filters:
            filters.append({"operator": "AND"})
        filters.append({"field": "tag", "key": key, "relation": "=", "value": value})
    return filters


class TagGateway(ABC):
    @abstractmethod
    def send_to_tags(
        self, heading: str, content: str, tags: Dict[str, str], data: Dict[str, str]
    ) -> Any:
        ...


class OneSignalTagGateway(TagGateway):
    """Audience by tag match through the OneSignal REST API."""

    def __init__(self, app_id: str, api_key: str, timeout: float = 10.0):
        self.app_id = app_id
        self.api_key = api_key
        self.timeout = timeout

    def send_to_tags(
        self, heading: str, content: str, tags: Dict[str, str], data: Dict[str, str]
    ) -> Any:
        payload = {
            "app_id": self.app_id,
            "headings": {"en": heading},
            "contents": {"en": content},
            "filters": build_tag_filters(tags),
            "data": data,
        }
        headers = {
            "Content-Type": "application/json; charset=utf-8",
            "Authorization": f"Basic {self.api_key}",
        }
        try:
            r = requests.post(ONESIGNAL_URL, json=payload, headers=headers, timeout=self.timeout)
            r.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise GatewayError(f"OneSignal request timed out: {e}", code="timeout") from e
        except requests.exceptions.HTTPError as e:
            logger.error("OneSignal %s: %s", r.status_code, r.text)
            raise GatewayError(
                f"OneSignal rejected notification: {r.text}",
                code=f"http_{r.status_code}",
                permanent=r.status_code < 500 and r.status_code != 429,
            ) from e
        except requests.exceptions.RequestException as e:
            raise GatewayError(f"OneSignal request failed: {e}", code="connection_error") from e
        return r.json()
