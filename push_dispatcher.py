"""Concurrent Web Push fan-out to students."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence

from student_store import Student


DEFAULT_PUSH_TIMEOUT_S = 5.0


@dataclass
class DispatchOutcome:
    success_count: int = 0
    fail_count: int = 0

    @property
    def attempted(self) -> int:
        return self.success_count + self.fail_count

    def to_dict(self) -> Dict[str, int]:
        return {"success_count": self.success_count, "fail_count": self.fail_count}


class PushTransport(Protocol):
    async def send(self, subscription_info: Dict[str, Any], data: str) -> None:
        """Deliver ``data`` to one subscription, raising on any failure."""
        ...


def subscription_info_for(subscription: Any) -> Dict[str, Any]:
    """Decode a stored subscription into the dict pywebpush expects."""
    if isinstance(subscription, str):
        subscription = json.loads(subscription)
    if not isinstance(subscription, dict) or not subscription.get("endpoint"):
        raise ValueError("subscription has no endpoint")
    return subscription


class WebPushTransport:
    """Sends through pywebpush with the service's VAPID credentials."""

    def __init__(self, vapid_private_key: str, vapid_subject: str, ttl: int = 0):
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._ttl = ttl

    @property
    def configured(self) -> bool:
        return bool(self._vapid_private_key)

    def _send_sync(self, subscription_info: Dict[str, Any], data: str) -> None:
        from pywebpush import webpush, WebPushException

        try:
            webpush(
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=self._vapid_private_key,
                vapid_claims={"sub": self._vapid_subject},
                ttl=self._ttl,
            )
        except WebPushException as e:
            if e.response is not None and e.response.status_code in (404, 410):
                print(f"[push] subscription expired: {subscription_info.get('endpoint')}")
            raise

    async def send(self, subscription_info: Dict[str, Any], data: str) -> None:
        if not self.configured:
            raise RuntimeError("VAPID keys not configured")
        # pywebpush is blocking; keep the event loop free while it posts
        await asyncio.to_thread(self._send_sync, subscription_info, data)


class PushDispatcher:
    """Delivers one payload to many students, one attempt each.

    A failure for one student never cancels or delays the others, and
    ``send`` only returns once every attempt has settled.
    """

    def __init__(self, transport: PushTransport, timeout_s: Optional[float] = DEFAULT_PUSH_TIMEOUT_S):
        self.transport = transport
        self.timeout_s = timeout_s

    async def _deliver(self, student: Student, data: str) -> bool:
        try:
            info = subscription_info_for(student.subscription)
            if self.timeout_s is None:
                await self.transport.send(info, data)
            else:
                await asyncio.wait_for(self.transport.send(info, data), timeout=self.timeout_s)
            return True
        except asyncio.TimeoutError:
            print(f"[push] student {student.id}: timed out after {self.timeout_s}s")
        except Exception as exc:
            print(f"[push] student {student.id}: {exc}")
        return False

    async def send(
        self,
        students: Sequence[Student],
        payload: Dict[str, Any],
        context: str,
    ) -> DispatchOutcome:
        outcome = DispatchOutcome()
        if not students:
            return outcome
        data = json.dumps(payload)
        results = await asyncio.gather(*(self._deliver(s, data) for s in students))
        for ok in results:
            if ok:
                outcome.success_count += 1
            else:
                outcome.fail_count += 1
        print(
            f'[push] finished for "{context}" -> '
            f"ok={outcome.success_count} failed={outcome.fail_count}"
        )
        return outcome


__all__ = [
    "DEFAULT_PUSH_TIMEOUT_S",
    "DispatchOutcome",
    "PushDispatcher",
    "PushTransport",
    "WebPushTransport",
    "subscription_info_for",
]
