"""
Broadcast engine: fan one message out to every member over push and SMS.

Deliveries go out one member at a time, in roster order, push first and then
SMS. A failure for one recipient is counted and the loop moves on; nothing is
retried. Members whose push subscription the push service reports as gone are
collected during the push pass and cleaned up once it finishes.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from relay.delivery import PushSender, SmsSender, build_push_payload
from relay.metrics import record_broadcast, record_delivery
from relay.models import CleanupPolicy, DeliveryStatus, MemberRecord, MessageRecord
from relay.storage import MessageLog, RosterStore

logger = logging.getLogger(__name__)


@dataclass
class BroadcastResult:
    message: MessageRecord
    push_sent: int = 0
    push_failed: int = 0
    push_no_subscription: int = 0
    sms_sent: int = 0
    sms_failed: int = 0
    # Members whose push subscription was reported expired
    expired: List[str] = field(default_factory=list)


class BroadcastEngine:
    """
    Runs one broadcast end to end.

    The engine appends the message to the log itself, then collects the ids
    of expired push subscriptions during the push pass and hands them to the
    roster store in a single write once the pass is over.
    """

    def __init__(
        self,
        roster: RosterStore,
        messages: MessageLog,
        push_sender: PushSender,
        sms_sender: Optional[SmsSender] = None,
        app_name: str = "Code-Baba",
        cleanup_policy: CleanupPolicy = CleanupPolicy.CLEAR,
    ):
        self._roster = roster
        self._messages = messages
        self._push = push_sender
        self._sms = sms_sender
        self._app_name = app_name
        self._cleanup_policy = cleanup_policy

    @property
    def sms_enabled(self) -> bool:
        return self._sms is not None

    def broadcast(self, text: str, sender_name: Optional[str] = None) -> BroadcastResult:
        """
        Log the message, deliver it to the current roster and prune expired
        push subscriptions.

        Every call appends one message and delivers again; there is no
        deduplication of repeated sends.
        """
        record = self._messages.append(text, sender_name)
        members = self._roster.list()
        result = BroadcastResult(message=record)

        logger.info(f"Broadcasting message {record.id} to {len(members)} members")

        payload = build_push_payload(sender_name or self._app_name, text, record.sent_at)
        self._push_pass(members, payload, result)
        if result.expired:
            self._cleanup(result.expired)

        if self._sms is not None:
            self._sms_pass(members, f"{self._app_name} from {record.sender}: {text}", result)

        record_broadcast()
        logger.info(
            f"Broadcast {record.id} done: push sent={result.push_sent} failed={result.push_failed} "
            f"none={result.push_no_subscription}, sms sent={result.sms_sent} failed={result.sms_failed}"
        )
        return result

    def _push_pass(self, members: Sequence[Tuple[str, MemberRecord]], payload: str, result: BroadcastResult) -> None:
        for member_id, member in members:
            if not member.has_push:
                result.push_no_subscription += 1
                record_delivery("push", "no_subscription")
                logger.info(f"Skipped {member.name} (no push subscription)")
                continue

            status = self._push.send(member.push_subscription, payload)
            record_delivery("push", status.value)
            if status is DeliveryStatus.SENT:
                result.push_sent += 1
                logger.info(f"Push sent to {member.name}")
                continue

            result.push_failed += 1
            logger.error(f"Push failed for {member.name} ({status.value})")
            if status is DeliveryStatus.EXPIRED:
                result.expired.append(member_id)

    def _sms_pass(self, members: Sequence[Tuple[str, MemberRecord]], body: str, result: BroadcastResult) -> None:
        for _, member in members:
            if not member.has_phone:
                continue

            status = self._sms.send(member.phone, body)
            record_delivery("sms", status.value)
            if status is DeliveryStatus.SENT:
                result.sms_sent += 1
                logger.info(f"SMS sent to {member.name} ({member.phone})")
            else:
                result.sms_failed += 1
                logger.error(f"SMS failed for {member.name} ({member.phone})")

    def _cleanup(self, member_ids: List[str]) -> None:
        if self._cleanup_policy is CleanupPolicy.REMOVE:
            removed = self._roster.remove_many(member_ids)
            logger.info(f"Removed {removed} members with expired push subscriptions")
        else:
            cleared = self._roster.clear_push_endpoints(member_ids)
            logger.info(f"Cleared {cleared} expired push subscriptions")
