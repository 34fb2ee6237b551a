"""Rendering of call and message activity notes.

Single place where note titles and bodies are built, shared by the initial
call/message logging and by summary enrichment so an enriched note keeps
the exact header of the original.

Supported output formats: ``markdown`` (default), ``html``, ``plainText``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

DEFAULT_INBOX_NAME = "Phone Line"
DEFAULT_USER_NAME = "Team Member"
AI_HANDLED_STATUS = "Handled by AI agent"


@dataclass(frozen=True)
class Emoji:
    call: str = "☎️"
    message: str = "💬"
    recording: str = "▶️"
    voicemail: str = "➿"


@dataclass(frozen=True)
class FormatOptions:
    method: str
    line_break: str
    line_break_double: str
    emoji: Emoji

    def bold(self, text: str) -> str:
        if self.method == "html":
            return f"<strong>{text}</strong>"
        if self.method == "plainText":
            return text
        return f"**{text}**"

    def link(self, text: str, url: str) -> str:
        if self.method == "html":
            return f'<a href="{url}" target="_blank">{text}</a>'
        if self.method == "plainText":
            return f"{text}: {url}"
        return f"[{text}]({url})"

    def wrap(self, content: str) -> str:
        return f"<span>{content}</span>" if self.method == "html" else content


def get_format_options(method: str | None = "markdown") -> FormatOptions:
    """Format helpers for an output method; unknown methods fall back to markdown."""
    if method == "html":
        return FormatOptions("html", "<br>", "<br><br>", Emoji())
    if method == "plainText":
        return FormatOptions("plainText", "\r\n", "\r\n\r\n", Emoji("", "", "", ""))
    return FormatOptions("markdown", "\n", "\n\n", Emoji())


def format_duration(seconds: float | int | None) -> str:
    """Format seconds as ``m:ss``.

    >>> format_duration(76)
    '1:16'
    """
    if not seconds or seconds < 0:
        return "0:00"
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


def format_call_recordings(
    recordings: list[dict[str, Any]] | None,
    call_duration: float | int | None = None,
    method: str = "markdown",
) -> str | None:
    """Format one or more recordings for the call status line.

    Single: ``[▶️ Recording (1:16)](url)``; multiple:
    ``▶️ Recordings: [Part 1 (0:45)](u1) | [Part 2 (0:30)](u2)``.
    Returns None when there are no recordings.
    """
    if not recordings:
        return None
    options = get_format_options(method)

    if len(recordings) == 1:
        recording = recordings[0]
        duration = format_duration(recording.get("duration") or call_duration or 0)
        if recording.get("url"):
            if method == "plainText":
                return f"Recording ({duration}): {recording['url']}"
            return options.link(f"▶️ Recording ({duration})", recording["url"])
        return f"Recording ({duration})" if method == "plainText" else f"▶️ Recording ({duration})"

    parts: list[str] = []
    for index, recording in enumerate(recordings, start=1):
        label = f"Part {index} ({format_duration(recording.get('duration') or 0)})"
        parts.append(options.link(label, recording["url"]) if recording.get("url") else label)

    prefix = "Recordings:" if method == "plainText" else "▶️ Recordings:"
    return f"{prefix} {' | '.join(parts)}"


# ── Call status ─────────────────────────────────────────────────────────────


def is_answered(call: dict[str, Any]) -> bool:
    """A call counts as answered only when it carries an answered timestamp."""
    return call.get("answeredAt") is not None


def build_call_status(call: dict[str, Any], user_name: str) -> str:
    status = call.get("status")
    direction = call.get("direction")
    answered = is_answered(call)

    if call.get("aiHandled") == "ai-agent":
        return AI_HANDLED_STATUS

    if status == "completed" and answered:
        if direction == "outgoing":
            return f"Outgoing initiated by {user_name}"
        return f"Incoming answered by {user_name}"

    if status in ("no-answer", "missed") or (
        status == "completed" and not answered and direction == "incoming"
    ):
        return "Incoming missed"

    if status == "completed" and not answered and direction == "outgoing":
        return f"Outgoing initiated by {user_name} (not answered)"

    if status == "forwarded":
        forwarded_to = call.get("forwardedTo")
        if forwarded_to:
            return f"Incoming forwarded to {forwarded_to}"
        return "Incoming forwarded by phone menu"

    return f"{'Outgoing' if direction == 'outgoing' else 'Incoming'} {status}"


def build_recording_suffix(call: dict[str, Any], options: FormatOptions) -> str:
    duration = call.get("duration") or 0
    if call.get("status") != "completed" or duration <= 0 or not is_answered(call):
        return ""
    label = f"{options.emoji.recording} Recording" if options.emoji.recording else "Recording"
    return f" / {label} ({format_duration(duration)})"


def build_voicemail_section(voicemail: dict[str, Any] | None, options: FormatOptions) -> str:
    """Voicemail block with an optional link and transcript; empty without a duration."""
    if not voicemail or not voicemail.get("duration"):
        return ""

    duration = format_duration(voicemail["duration"])
    section = options.line_break_double + options.bold("Voicemail:") + options.line_break

    if voicemail.get("url"):
        section += f"• {options.link('Listen to voicemail', voicemail['url'])} ({duration}){options.line_break}"
    else:
        label = f"{options.emoji.voicemail} Voicemail" if options.emoji.voicemail else "Voicemail"
        section += f"• {label} ({duration}){options.line_break}"

    if voicemail.get("transcript"):
        section += options.line_break + options.bold("Transcript:") + options.line_break + voicemail["transcript"]
    return section


def build_deep_link(
    deep_link: str | None,
    options: FormatOptions,
    service_name: str = "Quo",
    activity: str = "call",
) -> str:
    text = f"View the {activity} activity in {service_name}"
    return options.line_break_double + options.link(text, deep_link or "#")


def build_call_content(
    call: dict[str, Any],
    user_name: str,
    deep_link: str | None,
    options: FormatOptions,
    service_name: str = "Quo",
) -> str:
    """Status line, recording suffix, voicemail section and deep link."""
    content = build_call_status(call, user_name)
    content += build_recording_suffix(call, options)
    content += build_voicemail_section(call.get("voicemail"), options)
    content += build_deep_link(deep_link, options, service_name)
    return options.wrap(content)


# ── Titles & names ──────────────────────────────────────────────────────────


def build_call_title(
    call: dict[str, Any],
    inbox_name: str,
    inbox_number: str | None,
    contact_phone: str,
    options: FormatOptions | None = None,
) -> str:
    """Always a single "Call" prefix; enrichment reuses this unchanged."""
    emoji = (options or get_format_options()).emoji.call
    prefix = f"{emoji}  " if emoji else ""
    if call.get("direction") == "outgoing":
        return f"{prefix}Call {inbox_name} {inbox_number} → {contact_phone}"
    return f"{prefix}Call {contact_phone} → {inbox_name} {inbox_number}"


def build_message_title(
    message: dict[str, Any],
    inbox_name: str,
    inbox_number: str | None,
    contact_phone: str,
    options: FormatOptions | None = None,
) -> str:
    emoji = (options or get_format_options()).emoji.message
    prefix = f"{emoji} " if emoji else ""
    if message.get("direction") == "outgoing":
        return f"{prefix}Message {inbox_name} {inbox_number} → {contact_phone}"
    return f"{prefix}Message {contact_phone} → {inbox_name} {inbox_number}"


def build_message_content(
    message: dict[str, Any],
    user_name: str,
    deep_link: str | None,
    options: FormatOptions,
    service_name: str = "Quo",
) -> str:
    text = message.get("text") or "(no text)"
    if message.get("direction") == "outgoing":
        content = f"{user_name} sent: {text}"
    else:
        content = f"Received: {text}"
    content += build_deep_link(deep_link, options, service_name, activity="message")
    return options.wrap(content)


def inbox_name(phone_number: dict[str, Any] | None, default: str = DEFAULT_INBOX_NAME) -> str:
    """``{symbol} {name}`` for a phone line, else its name, else the default."""
    data = (phone_number or {}).get("data") or {}
    if data.get("symbol") and data.get("name"):
        return f"{data['symbol']} {data['name']}"
    return data.get("name") or default


def user_name(user: dict[str, Any] | None, default: str = DEFAULT_USER_NAME) -> str:
    data = (user or {}).get("data") or {}
    full = f"{data.get('firstName') or ''} {data.get('lastName') or ''}".strip()
    return full or default


# ── Summary sections ────────────────────────────────────────────────────────


def build_summary_sections(
    summary: list[str] | None,
    next_steps: list[str] | None,
    jobs: list[dict[str, Any]] | None,
    options: FormatOptions,
) -> str:
    """Summary, next steps and AI job results; each omitted when empty."""
    lb = options.line_break
    content = ""

    if summary:
        content += options.line_break_double + options.bold("Summary:") + lb
        content += "".join(f"• {point}{lb}" for point in summary)

    if next_steps:
        content += lb + options.bold("Next Steps:") + lb
        content += "".join(f"• {step}{lb}" for step in next_steps)

    for job in jobs or []:
        fields = ((job.get("result") or {}).get("data")) or []
        if not fields:
            continue
        heading = " ".join(part for part in (job.get("icon"), job.get("name") or "Job") if part)
        content += lb + options.bold(heading) + lb
        content += "".join(
            f"{options.bold(str(field.get('name')) + ':')} {field.get('value')}{lb}"
            for field in fields
        )

    return content
