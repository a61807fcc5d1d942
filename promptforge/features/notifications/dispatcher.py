"""
promptforge/features/notifications/dispatcher.py

Fan-out of notification envelopes to the configured channels.

Order per envelope:
1. store in the backend's notifications table (failures logged only)
2. Slack incoming webhook (failures raise)
3. Telegram bot message when enabled (failures raise)
4. GitHub issue for critical/high or escalated envelopes (failures logged only)
5. escalation: zero-delay rules send an ESCALATED copy inline; delayed
   rules are only logged for the external escalation policy
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from html import escape
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from promptforge.core.errors import UpstreamError
from promptforge.core.metrics import notifications_sent_total
from promptforge.core.supabase import SupabaseRest
from promptforge.features.notifications.models import (
    EscalationLevel,
    NotificationEnvelope,
    NotificationSeverity,
    NotificationType,
)

logger = logging.getLogger(__name__)

TYPE_EMOJI: Mapping[NotificationType, str] = {
    NotificationType.SECURITY: "🔒",
    NotificationType.PERFORMANCE: "⚡",
    NotificationType.ERROR: "❌",
    NotificationType.WARNING: "⚠️",
    NotificationType.INFO: "ℹ️",
    NotificationType.SUCCESS: "✅",
}

SEVERITY_COLOR: Mapping[NotificationSeverity, str] = {
    NotificationSeverity.CRITICAL: "#ff0000",
    NotificationSeverity.HIGH: "#ff6600",
    NotificationSeverity.MEDIUM: "#ffcc00",
    NotificationSeverity.LOW: "#00cc00",
}

SLACK_CHANNELS: Mapping[NotificationType, str] = {
    NotificationType.SECURITY: "#security-alerts",
    NotificationType.PERFORMANCE: "#performance-monitoring",
    NotificationType.ERROR: "#error-tracking",
    NotificationType.WARNING: "#warnings",
    NotificationType.INFO: "#info",
    NotificationType.SUCCESS: "#success",
}

GITHUB_LABELS: Mapping[NotificationType, Tuple[str, ...]] = {
    NotificationType.SECURITY: ("security", "incident", "urgent"),
    NotificationType.PERFORMANCE: ("performance", "monitoring"),
    NotificationType.ERROR: ("bug", "error", "urgent"),
    NotificationType.WARNING: ("warning", "monitoring"),
    NotificationType.INFO: ("info", "documentation"),
    NotificationType.SUCCESS: ("success", "deployment"),
}

GITHUB_ASSIGNEES: Mapping[EscalationLevel, Tuple[str, ...]] = {
    EscalationLevel.NONE: (),
    EscalationLevel.TEAM_LEAD: ("team-lead-1", "team-lead-2"),
    EscalationLevel.DEVOPS: ("devops-1", "devops-2"),
    EscalationLevel.SECURITY: ("security-1", "security-2"),
    EscalationLevel.EMERGENCY: ("emergency-1", "emergency-2", "oncall"),
}

ESCALATION_SLACK_CHANNELS: Mapping[EscalationLevel, str] = {
    EscalationLevel.TEAM_LEAD: "#team-leads",
    EscalationLevel.DEVOPS: "#devops-alerts",
    EscalationLevel.SECURITY: "#security-incidents",
    EscalationLevel.EMERGENCY: "#emergency-response",
}


@dataclass(frozen=True)
class EscalationRule:
    name: str
    level: EscalationLevel
    delay_minutes: int
    matches: Callable[[NotificationEnvelope], bool]


ESCALATION_RULES: Tuple[EscalationRule, ...] = (
    EscalationRule(
        "security_critical",
        EscalationLevel.SECURITY,
        0,
        lambda n: n.type == NotificationType.SECURITY and n.severity == NotificationSeverity.CRITICAL,
    ),
    EscalationRule(
        "performance_high",
        EscalationLevel.DEVOPS,
        30,
        lambda n: n.type == NotificationType.PERFORMANCE and n.severity == NotificationSeverity.HIGH,
    ),
    EscalationRule(
        "error_critical",
        EscalationLevel.TEAM_LEAD,
        15,
        lambda n: n.type == NotificationType.ERROR and n.severity == NotificationSeverity.CRITICAL,
    ),
    EscalationRule(
        "warning_high",
        EscalationLevel.TEAM_LEAD,
        60,
        lambda n: n.type == NotificationType.WARNING and n.severity == NotificationSeverity.HIGH,
    ),
    EscalationRule(
        "critical_emergency_tag",
        EscalationLevel.EMERGENCY,
        0,
        lambda n: n.severity == NotificationSeverity.CRITICAL and "emergency" in n.tags,
    ),
)


def find_escalation_rule(
    envelope: NotificationEnvelope,
    rules: Tuple[EscalationRule, ...] = ESCALATION_RULES,
) -> Optional[EscalationRule]:
    """First matching rule, in declaration order."""
    for rule in rules:
        if rule.matches(envelope):
            return rule
    return None


def should_open_issue(envelope: NotificationEnvelope) -> bool:
    return (
        envelope.severity in (NotificationSeverity.CRITICAL, NotificationSeverity.HIGH)
        or envelope.escalation_level != EscalationLevel.NONE
    )


@dataclass
class ChannelConfig:
    slack_webhook_url: Optional[str] = None
    slack_default_channel: str = "#general"
    telegram_enabled: bool = False
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    telegram_team_chat_ids: Dict[EscalationLevel, str] = field(default_factory=dict)
    github_token: Optional[str] = None
    github_owner: str = "your-org"
    github_repo: str = "promptforge"
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings_obj) -> "ChannelConfig":
        team_ids = {
            EscalationLevel.TEAM_LEAD: settings_obj.TELEGRAM_TEAM_LEAD_CHAT_ID,
            EscalationLevel.DEVOPS: settings_obj.TELEGRAM_DEVOPS_CHAT_ID,
            EscalationLevel.SECURITY: settings_obj.TELEGRAM_SECURITY_CHAT_ID,
            EscalationLevel.EMERGENCY: settings_obj.TELEGRAM_EMERGENCY_CHAT_ID,
        }
        return cls(
            slack_webhook_url=settings_obj.SLACK_WEBHOOK_URL,
            slack_default_channel=settings_obj.SLACK_DEFAULT_CHANNEL,
            telegram_enabled=settings_obj.TELEGRAM_ENABLED,
            telegram_bot_token=settings_obj.TELEGRAM_BOT_TOKEN,
            telegram_chat_id=settings_obj.TELEGRAM_CHAT_ID,
            telegram_team_chat_ids={level: chat for level, chat in team_ids.items() if chat},
            github_token=settings_obj.GITHUB_TOKEN,
            github_owner=settings_obj.GITHUB_OWNER,
            github_repo=settings_obj.GITHUB_REPO,
            timeout_seconds=settings_obj.NOTIFICATION_TIMEOUT_SECONDS,
        )


@dataclass
class DispatchResult:
    notification_id: str
    channels: List[str] = field(default_factory=list)
    escalation_level: EscalationLevel = EscalationLevel.NONE
    escalation_delay_minutes: Optional[int] = None
    escalated: bool = False
    github_issue_url: Optional[str] = None


# Formatting

def _details_json(details: Any) -> str:
    return json.dumps(details, indent=2, default=str, ensure_ascii=False)


def format_slack_message(envelope: NotificationEnvelope, channel: str) -> Dict[str, Any]:
    emoji = TYPE_EMOJI.get(envelope.type, "📢")
    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": f"{emoji} {envelope.title}", "emoji": True}},
        {"type": "section", "text": {"type": "mrkdwn", "text": envelope.message}},
        {
            "type": "context",
            "elements": [{
                "type": "mrkdwn",
                "text": f"*Severity:* {envelope.severity.value.upper()} | *Source:* {envelope.source}",
            }],
        },
    ]
    if envelope.details:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Details:*\n```{_details_json(envelope.details)}```"},
        })
    if envelope.escalation_level != EscalationLevel.NONE:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Escalation:* {envelope.escalation_level.value.upper()}"},
        })
    if envelope.tags:
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": "*Tags:* " + " ".join(f"`{tag}`" for tag in envelope.tags)}],
        })
    return {
        "channel": channel,
        "text": f"{emoji} {envelope.title}: {envelope.message}",
        "attachments": [{"color": SEVERITY_COLOR.get(envelope.severity, "#cccccc")}],
        "blocks": blocks,
    }


def format_telegram_text(envelope: NotificationEnvelope) -> str:
    emoji = TYPE_EMOJI.get(envelope.type, "📢")
    lines = [
        f"<b>{emoji} {escape(envelope.title)}</b>",
        "",
        escape(envelope.message),
        "",
        f"<b>Severity:</b> {envelope.severity.value.upper()}",
        f"<b>Source:</b> {escape(envelope.source)}",
    ]
    if envelope.escalation_level != EscalationLevel.NONE:
        lines.append(f"<b>Escalation:</b> {envelope.escalation_level.value.upper()}")
    if envelope.tags:
        lines.append("<b>Tags:</b> " + " ".join(f"#{escape(tag)}" for tag in envelope.tags))
    if envelope.details:
        lines += ["", "<b>Details:</b>", f"<code>{escape(_details_json(envelope.details))}</code>"]
    return "\n".join(lines)


def format_issue_body(envelope: NotificationEnvelope) -> str:
    parts = [f"## {envelope.title}", "", envelope.message, ""]
    if envelope.details:
        parts += ["## Details", "```json", _details_json(envelope.details), "```", ""]
    parts += [
        "## Metadata",
        f"- **Type:** {envelope.type.value}",
        f"- **Severity:** {envelope.severity.value}",
        f"- **Source:** {envelope.source}",
        f"- **Timestamp:** {envelope.timestamp.isoformat()}",
        f"- **Escalation Level:** {envelope.escalation_level.value}",
    ]
    if envelope.tags:
        parts.append(f"- **Tags:** {', '.join(envelope.tags)}")
    if envelope.metadata:
        parts += ["", "## Additional Metadata", "```json", _details_json(envelope.metadata), "```"]
    return "\n".join(parts)


def escalated_copy(envelope: NotificationEnvelope, level: EscalationLevel, now: datetime) -> NotificationEnvelope:
    metadata = dict(envelope.metadata or {})
    metadata.update({
        "escalated_from": envelope.id,
        "escalation_team": level.value,
        "escalation_time": now.isoformat(),
    })
    return envelope.model_copy(update={
        "id": f"{envelope.id}-escalated",
        "title": f"ESCALATED: {envelope.title}",
        "message": f"Notification escalated to {level.value} team",
        "escalation_level": level,
        "tags": tuple(envelope.tags) + ("escalated", level.value),
        "metadata": metadata,
    })


class NotificationDispatcher:
    def __init__(
        self,
        config: ChannelConfig,
        backend: Optional[SupabaseRest] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        rules: Tuple[EscalationRule, ...] = ESCALATION_RULES,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.backend = backend
        self.transport = transport
        self.rules = rules
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def _post(self, url: str, payload: Dict[str, Any], *, channel: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        try:
            with httpx.Client(timeout=self.config.timeout_seconds, transport=self.transport) as client:
                response = client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"{channel} API error: {e.response.status_code}",
                code="notification_channel_error",
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{channel} unreachable", code="notification_channel_error") from e

    # Channels

    def store(self, envelope: NotificationEnvelope) -> bool:
        if self.backend is None:
            return False
        try:
            self.backend.insert("notifications", envelope.to_row())
            return True
        except UpstreamError:
            logger.warning(
                "notification.store_failed",
                extra={"notification_id": envelope.id, "error_code": "backend_error"},
            )
            return False

    def send_slack(self, envelope: NotificationEnvelope, channel: Optional[str] = None) -> bool:
        if not self.config.slack_webhook_url:
            logger.debug("Slack webhook not configured, skipping")
            return False
        target = channel or SLACK_CHANNELS.get(envelope.type) or self.config.slack_default_channel
        self._post(self.config.slack_webhook_url, format_slack_message(envelope, target), channel="Slack")
        return True

    def send_telegram(self, envelope: NotificationEnvelope, chat_id: Optional[str] = None) -> bool:
        if not (self.config.telegram_enabled and self.config.telegram_bot_token):
            return False
        target = chat_id or self.config.telegram_chat_id
        if not target:
            logger.warning("Telegram enabled without a chat id, skipping")
            return False
        payload = {
            "chat_id": target,
            "text": format_telegram_text(envelope),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        url = f"https://api.telegram.org/bot{self.config.telegram_bot_token}/sendMessage"
        self._post(url, payload, channel="Telegram")
        return True

    def open_issue(self, envelope: NotificationEnvelope) -> Optional[str]:
        if not self.config.github_token:
            return None
        payload = {
            "title": f"[{envelope.severity.value.upper()}] {envelope.title}",
            "body": format_issue_body(envelope),
            "labels": list(GITHUB_LABELS.get(envelope.type, ())),
            "assignees": list(GITHUB_ASSIGNEES.get(envelope.escalation_level, ())),
        }
        url = f"https://api.github.com/repos/{self.config.github_owner}/{self.config.github_repo}/issues"
        headers = {
            "Authorization": f"token {self.config.github_token}",
            "Accept": "application/vnd.github.v3+json",
        }
        try:
            response = self._post(url, payload, channel="GitHub", headers=headers)
        except UpstreamError as e:
            logger.warning("notification.github_issue_failed", extra={"notification_id": envelope.id, "error_code": e.code})
            return None
        issue_url = response.json().get("html_url")
        logger.info("notification.github_issue_created", extra={"notification_id": envelope.id, "issue_url": issue_url})
        return issue_url

    # Pipeline

    def send(self, envelope: NotificationEnvelope) -> DispatchResult:
        result = DispatchResult(notification_id=envelope.id)

        if self.store(envelope):
            result.channels.append("backend")
        if self.send_slack(envelope):
            result.channels.append("slack")
        if self.send_telegram(envelope):
            result.channels.append("telegram")
        if should_open_issue(envelope):
            result.github_issue_url = self.open_issue(envelope)
            if result.github_issue_url:
                result.channels.append("github")

        rule = find_escalation_rule(envelope, self.rules)
        if rule is not None:
            result.escalation_level = rule.level
            result.escalation_delay_minutes = rule.delay_minutes
            if rule.delay_minutes == 0:
                self._escalate(envelope, rule.level)
                result.escalated = True
            else:
                logger.info(
                    "notification.escalation_pending",
                    extra={
                        "notification_id": envelope.id,
                        "escalation_level": rule.level.value,
                        "delay_minutes": rule.delay_minutes,
                    },
                )

        notifications_sent_total.inc(labels={"type": envelope.type.value, "severity": envelope.severity.value})
        logger.info(
            "notification.sent",
            extra={"notification_id": envelope.id, "event_type": "notification.sent", "channels": result.channels},
        )
        return result

    def _escalate(self, envelope: NotificationEnvelope, level: EscalationLevel) -> None:
        copy = escalated_copy(envelope, level, self._now_fn())
        try:
            self.send_slack(copy, channel=ESCALATION_SLACK_CHANNELS.get(level))
        except UpstreamError as e:
            logger.warning("notification.escalation_slack_failed", extra={"notification_id": copy.id, "error_code": e.code})

        team_chat = self.config.telegram_team_chat_ids.get(level)
        if team_chat:
            try:
                self.send_telegram(copy, chat_id=team_chat)
            except UpstreamError as e:
                logger.warning("notification.escalation_telegram_failed", extra={"notification_id": copy.id, "error_code": e.code})

        if should_open_issue(copy):
            self.open_issue(copy)

    # Stats

    def stats(self) -> Dict[str, Any]:
        """Totals by type, severity and escalation level, plus the last 24h count."""
        if self.backend is None:
            return {}
        rows = self.backend.select("notifications", columns="type,severity,escalation_level,created_at")
        cutoff = self._now_fn() - timedelta(hours=24)

        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        by_escalation: Dict[str, int] = {}
        recent = 0
        for row in rows:
            by_type[row.get("type")] = by_type.get(row.get("type"), 0) + 1
            by_severity[row.get("severity")] = by_severity.get(row.get("severity"), 0) + 1
            level = row.get("escalation_level")
            by_escalation[level] = by_escalation.get(level, 0) + 1
            created = parse_timestamp(row.get("created_at"))
            if created is not None and created > cutoff:
                recent += 1

        return {
            "total": len(rows),
            "byType": by_type,
            "bySeverity": by_severity,
            "byEscalation": by_escalation,
            "recent": recent,
        }


# Postgres trims trailing zeros from fractional seconds; fromisoformat before 3.11 wants 3 or 6 digits
_FRACTION = re.compile(r"\.(\d+)")
_SHORT_OFFSET = re.compile(r"([+-]\d{2})$")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip().replace(" ", "T", 1)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    if "T" in text:
        text = _SHORT_OFFSET.sub(r"\1:00", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
