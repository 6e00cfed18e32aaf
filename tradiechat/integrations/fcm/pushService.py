"""
Firebase Cloud Messaging (FCM) Push Service
===========================================

Low-level integration with the Firebase Admin SDK for chat push
notifications.  Sends one notification to every device token of a
recipient using multicast batches.

Initialization:
  The Firebase Admin SDK is initialised lazily on first use.  Credentials
  come from settings, in order of preference:
    - ``FIREBASE_SERVICE_ACCOUNT_PATH``  -- path to a JSON service account file
    - ``FIREBASE_CREDENTIALS_JSON``      -- raw JSON string of the service account

Token invalidation:
  When FCM reports a token as unregistered or invalid, the token string is
  included in ``BatchSendResult.invalid_tokens`` so the owner of the device
  token table can prune it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import InvalidArgumentError, NotFoundError

from tradiechat.core.config import settings

logger = logging.getLogger(__name__)

FCM_BATCH_LIMIT: int = 500  # Firebase allows max 500 tokens per multicast
ANDROID_CHANNEL_ID: str = "tradiechat_messages"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class SendResult:
    """Result of sending to a single device."""
    success: bool
    message_id: str | None = None
    error: str | None = None
    invalid_token: bool = False


@dataclass
class BatchSendResult:
    """Aggregate result of sending to multiple devices."""
    success_count: int = 0
    failure_count: int = 0
    results: list[SendResult] = field(default_factory=list)
    invalid_tokens: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Firebase Admin SDK initialisation (lazy singleton)
# ---------------------------------------------------------------------------

_firebase_app: firebase_admin.App | None = None


def _ensure_firebase_initialised() -> firebase_admin.App:
    """Initialise the Firebase Admin SDK if it has not been already.

    Raises:
        RuntimeError: If no credentials are configured.
    """
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    try:
        _firebase_app = firebase_admin.get_app()
        logger.info("Using existing Firebase Admin app")
        return _firebase_app
    except ValueError:
        pass  # No default app yet

    if settings.firebase_service_account_path:
        logger.info(
            "Initialising Firebase Admin SDK from service account file: %s",
            settings.firebase_service_account_path,
        )
        cred = credentials.Certificate(settings.firebase_service_account_path)
    elif settings.firebase_credentials_json:
        logger.info("Initialising Firebase Admin SDK from JSON setting")
        cred = credentials.Certificate(json.loads(settings.firebase_credentials_json))
    else:
        raise RuntimeError(
            "Firebase credentials not configured. Set either "
            "FIREBASE_SERVICE_ACCOUNT_PATH or FIREBASE_CREDENTIALS_JSON."
        )

    _firebase_app = firebase_admin.initialize_app(cred)
    logger.info("Firebase Admin SDK initialised successfully")
    return _firebase_app


def _is_invalid_token_error(exc: Exception) -> bool:
    """Return True if the error indicates the device token is invalid."""
    if isinstance(exc, (InvalidArgumentError, NotFoundError)):
        return True
    error_str = str(exc).lower()
    return any(
        indicator in error_str
        for indicator in ["unregistered", "not-registered", "invalid-registration"]
    )


def _build_multicast(
    tokens: list[str],
    title: str,
    body: str,
    data: dict[str, str] | None,
    sound: str,
) -> messaging.MulticastMessage:
    return messaging.MulticastMessage(
        tokens=tokens,
        notification=messaging.Notification(title=title, body=body),
        data=data,
        apns=messaging.APNSConfig(
            headers={"apns-priority": "10"},
            payload=messaging.APNSPayload(aps=messaging.Aps(sound=sound)),
        ),
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(
                sound=sound,
                channel_id=ANDROID_CHANNEL_ID,
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def send_to_multiple(
    device_tokens: list[str],
    title: str,
    body: str,
    data: dict[str, str] | None = None,
    sound: str = "default",
) -> BatchSendResult:
    """Send a push notification to multiple devices.

    Firebase multicast is limited to 500 tokens per call, so larger lists
    are batched.  The blocking SDK call runs in a worker thread.
    """
    if not device_tokens:
        logger.warning("send_to_multiple called with empty token list")
        return BatchSendResult()

    logger.info("Sending push notification to %d devices: title=%r", len(device_tokens), title)

    _ensure_firebase_initialised()

    str_data: dict[str, str] | None = None
    if data:
        str_data = {k: str(v) for k, v in data.items()}

    batch_result = BatchSendResult()

    for batch_start in range(0, len(device_tokens), FCM_BATCH_LIMIT):
        batch_tokens = device_tokens[batch_start : batch_start + FCM_BATCH_LIMIT]
        multicast = _build_multicast(batch_tokens, title, body, str_data, sound)

        try:
            response: messaging.BatchResponse = await asyncio.to_thread(
                messaging.send_each_for_multicast, multicast
            )
        except Exception as exc:
            logger.error("Batch send failed for %d tokens: %s", len(batch_tokens), exc)
            batch_result.failure_count += len(batch_tokens)
            batch_result.results.extend(
                SendResult(success=False, error=str(exc)) for _ in batch_tokens
            )
            continue

        for idx, send_response in enumerate(response.responses):
            if send_response.success:
                batch_result.success_count += 1
                batch_result.results.append(
                    SendResult(success=True, message_id=send_response.message_id)
                )
                continue

            batch_result.failure_count += 1
            error = send_response.exception
            is_invalid = _is_invalid_token_error(error) if error else False
            if is_invalid:
                batch_result.invalid_tokens.append(batch_tokens[idx])
            batch_result.results.append(
                SendResult(
                    success=False,
                    error=str(error) if error else "Unknown error",
                    invalid_token=is_invalid,
                )
            )

    if batch_result.invalid_tokens:
        logger.warning("Batch send found %d invalid tokens", len(batch_result.invalid_tokens))

    logger.info(
        "Batch send complete: %d success, %d failures",
        batch_result.success_count,
        batch_result.failure_count,
    )
    return batch_result
