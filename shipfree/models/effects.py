"""Side effects produced by the reconciliation engine."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar

from shipfree.models.events import Provider, SubjectType


class EmailTemplate(str, Enum):
    WELCOME = "welcome"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    FINAL_NOTICE = "final_notice"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    CANCELLATION_CONFIRMED = "cancellation_confirmed"
    PLAN_CHANGED = "plan_changed"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    PURCHASE_RECEIPT = "purchase_receipt"
    PAYMENT_RECEIPT = "payment_receipt"
    REFUND_CONFIRMATION = "refund_confirmation"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_ACTION_REQUIRED = "payment_action_required"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_METHOD_UPDATED = "payment_method_updated"
    OPERATOR_ALERT = "operator_alert"


@dataclass(frozen=True)
class GrantAccess:
    type: ClassVar[str] = "grant_access"

    provider: Provider
    subject_type: SubjectType
    subject_id: str
    user_id: str | None


@dataclass(frozen=True)
class RevokeAccess:
    type: ClassVar[str] = "revoke_access"

    provider: Provider
    subject_type: SubjectType
    subject_id: str
    user_id: str | None


@dataclass(frozen=True)
class SendEmail:
    type: ClassVar[str] = "send_email"

    template: EmailTemplate
    recipient: str | None
    user_id: str | None
    params: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class RecordPayment:
    type: ClassVar[str] = "record_payment"

    provider: Provider
    subject_type: SubjectType
    subject_id: str
    kind: str
    amount: int | None
    currency: str | None
    user_id: str | None = None


@dataclass(frozen=True)
class NotifyOperator:
    type: ClassVar[str] = "notify_operator"

    reason: str
    details: dict[str, Any] = field(default_factory=dict, hash=False)


Effect = GrantAccess | RevokeAccess | SendEmail | RecordPayment | NotifyOperator

_EFFECT_TYPES: dict[str, type] = {
    cls.type: cls for cls in (GrantAccess, RevokeAccess, SendEmail, RecordPayment, NotifyOperator)
}


def effect_to_dict(effect: Effect) -> dict[str, Any]:
    """Return a JSON-safe dict tagged with the effect type."""
    payload = {"type": effect.type}
    for key, value in asdict(effect).items():
        payload[key] = value.value if isinstance(value, Enum) else value
    return payload


def effect_from_dict(payload: dict[str, Any]) -> Effect:
    data = dict(payload)
    effect_type = data.pop("type", None)
    cls = _EFFECT_TYPES.get(effect_type or "")
    if cls is None:
        raise ValueError(f"Unknown effect type: {effect_type!r}")
    if "provider" in data:
        data["provider"] = Provider(data["provider"])
    if "subject_type" in data:
        data["subject_type"] = SubjectType(data["subject_type"])
    if "template" in data:
        data["template"] = EmailTemplate(data["template"])
    return cls(**data)


def serialize_effects(effects: Iterable[Effect]) -> list[dict[str, Any]]:
    return [effect_to_dict(effect) for effect in effects]


def deserialize_effects(payloads: Iterable[dict[str, Any]]) -> list[Effect]:
    return [effect_from_dict(payload) for payload in payloads]
