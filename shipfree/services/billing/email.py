"""Transactional email rendering and SMTP delivery for billing notices."""

from __future__ import annotations

import logging
import smtplib
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Any, Protocol
from urllib.parse import unquote, urlparse

from shipfree.config import Settings
from shipfree.models.effects import EmailTemplate
from shipfree.observability.metrics import metrics
from shipfree.services.billing.errors import (
    ConfigurationError,
    EmailRejected,
    TransientEffectFailure,
)

logger = logging.getLogger(__name__)

DEFAULT_SMTP_TIMEOUT = 15.0

TEMPLATES: dict[EmailTemplate, tuple[str, str]] = {
    EmailTemplate.WELCOME: (
        "Welcome to {app_name}! 🚀",
        "Thanks for subscribing. Your {plan_label} plan is active.\n\n"
        "Get started: {site_url}/dashboard",
    ),
    EmailTemplate.PAYMENT_FAILED: (
        "Action needed: your payment failed",
        "We could not charge your payment method{attempt_label}. Your access stays "
        "active while we retry.\n\nUpdate your billing details: {site_url}/billing",
    ),
    EmailTemplate.PAYMENT_RECOVERED: (
        "Payment received - you're all set",
        "Your payment of {amount_display} went through and your subscription is "
        "active again.",
    ),
    EmailTemplate.FINAL_NOTICE: (
        "Your subscription has been suspended",
        "We were unable to collect payment after several attempts, so access to "
        "{app_name} has been paused.\n\nReactivate: {site_url}/billing",
    ),
    EmailTemplate.CANCELLATION_SCHEDULED: (
        "Your subscription will end soon",
        "Your subscription is set to cancel at the end of the current period"
        "{period_label}. You keep full access until then.",
    ),
    EmailTemplate.CANCELLATION_CONFIRMED: (
        "Your subscription has been cancelled",
        "Your subscription has ended and access has been removed. We'd love to "
        "have you back: {site_url}/pricing",
    ),
    EmailTemplate.PLAN_CHANGED: (
        "Your plan has been updated",
        "You're now on the {plan_label} plan.",
    ),
    EmailTemplate.SUBSCRIPTION_PAUSED: (
        "Your subscription is paused",
        "Your subscription is paused and billing has stopped. Resume anytime: "
        "{site_url}/billing",
    ),
    EmailTemplate.SUBSCRIPTION_RESUMED: (
        "Welcome back! Your subscription is active",
        "Your subscription has been resumed and access is restored.",
    ),
    EmailTemplate.PURCHASE_RECEIPT: (
        "Payment Successful - Thank You!",
        "Thank you for your purchase of {amount_display}. Your access is ready: "
        "{site_url}/dashboard",
    ),
    EmailTemplate.PAYMENT_RECEIPT: (
        "Payment Successful - Thank You!",
        "We received your subscription payment of {amount_display}.",
    ),
    EmailTemplate.REFUND_CONFIRMATION: (
        "Your refund has been processed",
        "A refund of {amount_display} is on its way to your original payment method.",
    ),
    EmailTemplate.TRIAL_ENDING: (
        "Your trial ends soon",
        "Your free trial ends{trial_label}. Add a payment method to keep access: "
        "{site_url}/billing",
    ),
    EmailTemplate.PAYMENT_ACTION_REQUIRED: (
        "Please confirm your payment",
        "Your bank needs you to confirm the latest payment. Complete it here: "
        "{site_url}/billing",
    ),
    EmailTemplate.PAYMENT_REMINDER: (
        "Upcoming renewal",
        "Your subscription renews soon{period_label}.",
    ),
    EmailTemplate.PAYMENT_METHOD_UPDATED: (
        "Your payment method was updated",
        "A new payment method was added to your account. If this wasn't you, "
        "contact support.",
    ),
    EmailTemplate.OPERATOR_ALERT: (
        "[{app_name}] billing alert: {reason}",
        "A billing event needs attention.\n\n{details}",
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _amount_display(params: dict[str, Any]) -> str:
    amount = params.get("amount")
    if amount is None:
        return "your payment"
    currency = str(params.get("currency") or "").upper()
    return f"{int(amount) / 100:.2f} {currency}".strip()


def render_email(
    template: EmailTemplate | str,
    params: dict[str, Any],
    *,
    app_name: str,
    site_url: str,
) -> tuple[str, str]:
    """Return (subject, text body) for a template kind."""
    try:
        subject, body = TEMPLATES[EmailTemplate(template)]
    except (KeyError, ValueError) as exc:
        raise EmailRejected(f"Unknown email template: {template}") from exc
    context = _Defaults(params)
    context.update(
        app_name=app_name,
        site_url=site_url.rstrip("/"),
        amount_display=_amount_display(params),
        plan_label=params.get("plan_id") or "current",
        attempt_label=f" (attempt {params['attempt_count']})"
        if params.get("attempt_count")
        else "",
        period_label=f" ({params['current_period_end'][:10]})"
        if params.get("current_period_end")
        else "",
        trial_label=f" on {params['trial_end'][:10]}" if params.get("trial_end") else " soon",
    )
    return subject.format_map(context), body.format_map(context)


class EmailSender(Protocol):
    """Outbound email collaborator: `send(template, recipient, params)`."""

    def send(self, template: EmailTemplate | str, recipient: str, params: dict[str, Any]) -> None:
        ...


@dataclass(frozen=True)
class SMTPConfig:
    host: str
    port: int
    username: str | None
    password: str | None
    use_ssl: bool
    disable_tls: bool
    from_address: str
    timeout: float = DEFAULT_SMTP_TIMEOUT


def parse_smtp_url(
    smtp_url: str,
    *,
    from_address: str,
    disable_tls: bool = False,
    timeout: float = DEFAULT_SMTP_TIMEOUT,
) -> SMTPConfig:
    parsed = urlparse(smtp_url)
    if parsed.scheme not in {"smtp", "smtps", "smtp+ssl"}:
        raise ConfigurationError("EMAIL_SMTP_URL must start with smtp:// or smtps://")
    use_ssl = parsed.scheme in {"smtps", "smtp+ssl"}
    return SMTPConfig(
        host=parsed.hostname or "localhost",
        port=parsed.port or (465 if use_ssl else 587),
        username=unquote(parsed.username) if parsed.username else None,
        password=unquote(parsed.password) if parsed.password else None,
        use_ssl=use_ssl,
        disable_tls=disable_tls,
        from_address=from_address,
        timeout=timeout,
    )


class SMTPEmailSender:
    """Delivers rendered billing emails over SMTP, one message per recipient."""

    def __init__(self, config: SMTPConfig, *, app_name: str, site_url: str) -> None:
        self._config = config
        self._app_name = app_name
        self._site_url = site_url

    def send(self, template: EmailTemplate | str, recipient: str, params: dict[str, Any]) -> None:
        subject, body = render_email(
            template, params, app_name=self._app_name, site_url=self._site_url
        )
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._config.from_address
        message["To"] = recipient
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid()
        message.set_content(body)

        template_name = EmailTemplate(template).value
        start = time.perf_counter()
        try:
            client = self._create_client()
        except OSError as exc:
            raise TransientEffectFailure(
                f"SMTP connect failed for {self._config.host}:{self._config.port}: {exc}"
            ) from exc
        try:
            if not self._config.use_ssl:
                client.ehlo()
                if not self._config.disable_tls:
                    client.starttls()
                    client.ehlo()
            if self._config.username:
                client.login(self._config.username, self._config.password or "")
            client.send_message(message, to_addrs=[recipient])
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused) as exc:
            logger.error(
                "billing.email.rejected",
                extra={"template": template_name, "host": self._config.host, "error": str(exc)},
            )
            raise EmailRejected(f"SMTP server refused {template_name} email") from exc
        except smtplib.SMTPResponseException as exc:
            if exc.smtp_code >= 500:
                raise EmailRejected(
                    f"SMTP server rejected {template_name} email ({exc.smtp_code})"
                ) from exc
            raise TransientEffectFailure(
                f"SMTP server deferred {template_name} email ({exc.smtp_code})"
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "billing.email.error",
                extra={"template": template_name, "host": self._config.host, "error": str(exc)},
            )
            raise TransientEffectFailure(f"SMTP delivery failed: {exc}") from exc
        finally:
            try:
                client.quit()
            except (smtplib.SMTPException, OSError):  # pragma: no cover - best-effort cleanup
                logger.debug("SMTP quit failed", exc_info=True)

        metrics.increment("email.sent", tags={"template": template_name})
        metrics.timing(
            "email.duration_ms",
            (time.perf_counter() - start) * 1000,
            tags={"template": template_name},
        )
        logger.info(
            "billing.email.sent",
            extra={"template": template_name, "message_id": message["Message-ID"]},
        )

    def _create_client(self) -> smtplib.SMTP:
        if self._config.use_ssl:
            return smtplib.SMTP_SSL(
                self._config.host, self._config.port, timeout=self._config.timeout
            )
        return smtplib.SMTP(self._config.host, self._config.port, timeout=self._config.timeout)


class LoggingEmailSender:
    """Used when SMTP is not configured: renders and logs instead of sending."""

    def __init__(self, *, app_name: str, site_url: str) -> None:
        self._app_name = app_name
        self._site_url = site_url

    def send(self, template: EmailTemplate | str, recipient: str, params: dict[str, Any]) -> None:
        subject, _ = render_email(
            template, params, app_name=self._app_name, site_url=self._site_url
        )
        logger.info(
            "billing.email.suppressed",
            extra={"template": EmailTemplate(template).value, "subject": subject},
        )


def build_email_sender(config: Settings) -> EmailSender:
    if not config.email_smtp_url or not config.email_from:
        logger.info("billing.email.initialized", extra={"backend": "log"})
        return LoggingEmailSender(app_name=config.app_name, site_url=config.site_url)
    smtp = parse_smtp_url(
        config.email_smtp_url,
        from_address=config.email_from,
        disable_tls=config.email_disable_tls,
        timeout=config.email_timeout_seconds,
    )
    logger.info("billing.email.initialized", extra={"backend": "smtp", "host": smtp.host})
    return SMTPEmailSender(smtp, app_name=config.app_name, site_url=config.site_url)
