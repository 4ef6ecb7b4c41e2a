"""
Push Fan-out Service
Best-effort web push delivery to members who may be offline.

VAPID keys are generated on first start and kept in the ``AppSetting`` table.
Delivery never raises: expired subscriptions (404/410) are removed, every
other failure is logged at warning level and dropped.
"""

import json
import logging
import threading
from typing import Dict, Iterable, Optional

from cryptography.hazmat.primitives import serialization
from py_vapid import Vapid
from py_vapid.utils import b64urlencode
from pywebpush import webpush, WebPushException

from ..models import db, AppSetting, PushSubscription

logger = logging.getLogger(__name__)

VAPID_PUBLIC_KEY_SETTING = 'vapidPublicKey'
VAPID_PRIVATE_KEY_SETTING = 'vapidPrivateKey'
EXPIRED_STATUS_CODES = (404, 410)
PUSH_TTL_SECONDS = 60 * 60 * 24


class PushService:
    """Web push sender bound to the persisted VAPID key pair"""

    def __init__(self, claim_email: str):
        self.claim_email = claim_email
        self._vapid: Optional[Vapid] = None
        self._public_key: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._vapid is not None

    def init(self):
        """Load the VAPID key pair, generating and persisting it on first start"""
        with self._lock:
            public_key = AppSetting.get_value(VAPID_PUBLIC_KEY_SETTING)
            private_key = AppSetting.get_value(VAPID_PRIVATE_KEY_SETTING)

            if public_key and private_key:
                self._vapid = Vapid.from_string(private_key=private_key)
                self._public_key = public_key
                logger.info("Push service initialized with stored VAPID keys")
                return

            vapid = Vapid()
            vapid.generate_keys()
            private_der = vapid.private_key.private_bytes(
                encoding=serialization.Encoding.DER,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            public_raw = vapid.public_key.public_bytes(
                encoding=serialization.Encoding.X962,
                format=serialization.PublicFormat.UncompressedPoint,
            )
            private_key = b64urlencode(private_der)
            public_key = b64urlencode(public_raw)

            AppSetting.set_value(VAPID_PUBLIC_KEY_SETTING, public_key)
            AppSetting.set_value(VAPID_PRIVATE_KEY_SETTING, private_key)
            db.session.commit()

            self._vapid = vapid
            self._public_key = public_key
            logger.info("Generated new VAPID keys; push service initialized")

    def get_public_key(self) -> Optional[str]:
        return self._public_key

    def subscribe(self, user_id: str, endpoint: str, p256dh: str, auth: str) -> PushSubscription:
        """Upsert a subscription by endpoint; the endpoint moves to ``user_id``"""
        subscription = PushSubscription.query.filter_by(endpoint=endpoint).first()
        if subscription is None:
            subscription = PushSubscription(endpoint=endpoint)
            db.session.add(subscription)
        subscription.user_id = user_id
        subscription.p256dh = p256dh
        subscription.auth = auth
        db.session.commit()
        return subscription

    def unsubscribe(self, user_id: str, endpoint: str) -> bool:
        deleted = (PushSubscription.query
                   .filter_by(endpoint=endpoint, user_id=user_id)
                   .delete(synchronize_session=False))
        db.session.commit()
        return deleted > 0

    def send_push_to_users(self, user_ids: Iterable[str], payload: Dict[str, str]) -> int:
        """
        Deliver ``payload`` ({title, body, url}) to every subscription of the users.

        Returns the number of successful deliveries.
        """
        if self._vapid is None:
            return 0

        user_ids = list(user_ids)
        if not user_ids:
            return 0

        subscriptions = PushSubscription.query.filter(PushSubscription.user_id.in_(user_ids)).all()
        data = json.dumps(payload)
        delivered = 0
        expired = []

        for subscription in subscriptions:
            try:
                webpush(
                    subscription_info=subscription.subscription_info(),
                    data=data,
                    vapid_private_key=self._vapid,
                    # webpush adds aud/exp to the claims dict, so pass a fresh one
                    vapid_claims={'sub': self.claim_email},
                    ttl=PUSH_TTL_SECONDS,
                )
                delivered += 1
            except WebPushException as e:
                status = getattr(e.response, 'status_code', None)
                if status in EXPIRED_STATUS_CODES:
                    expired.append(subscription.endpoint)
                else:
                    logger.warning(f"Push delivery failed for user {subscription.user_id}: {e}")
            except Exception as e:
                logger.warning(f"Push delivery error for user {subscription.user_id}: {e}")

        if expired:
            (PushSubscription.query
             .filter(PushSubscription.endpoint.in_(expired))
             .delete(synchronize_session=False))
            db.session.commit()
            logger.info(f"Removed {len(expired)} expired push subscription(s)")

        return delivered
