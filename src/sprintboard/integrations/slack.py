"""Slack Web API integration."""

from dataclasses import dataclass

STATUS_EMOJI = {
    "TODO": ":white_circle:",
    "IN_PROGRESS": ":large_blue_circle:",
    "READY_TO_TEST": ":test_tube:",
    "BLOCKED": ":red_circle:",
    "DONE": ":white_check_mark:",
    "LIVE": ":rocket:",
}


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def _section(text: str) -> dict:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def format_task_notification(
    task_key: str,
    title: str,
    status: str,
    project: str,
    url: str | None = None,
) -> list[dict]:
    """Format a task update as Slack blocks."""
    emoji = STATUS_EMOJI.get(status, ":grey_question:")
    link = f"\n<{url}|Open task>" if url else ""
    return [
        _section(
            f"{emoji} *Task Update*\n*{title}* (`{task_key}`)\n"
            f"Status: *{status}* | Project: {project}{link}"
        )
    ]


def format_assignment(
    task_key: str,
    title: str,
    assignee: str,
    assigner: str,
    url: str | None = None,
) -> list[dict]:
    link = f"\n<{url}|Open task>" if url else ""
    return [
        _section(
            f":bust_in_silhouette: *{assigner}* assigned *{title}* (`{task_key}`) to *{assignee}*{link}"
        )
    ]


def format_mention(
    task_key: str,
    title: str,
    author: str,
    mentioned: list[str],
    content: str,
) -> list[dict]:
    excerpt = content if len(content) <= 280 else content[:277] + "..."
    who = ", ".join(mentioned)
    return [
        _section(f":speech_balloon: *{author}* mentioned {who} on *{title}* (`{task_key}`)"),
        {"type": "context", "elements": [{"type": "mrkdwn", "text": excerpt}]},
    ]


def format_split_notification(
    source_key: str,
    new_key: str,
    new_title: str,
    target_sprint: str,
) -> list[dict]:
    """Format a task split as Slack blocks."""
    return [
        _section(
            f":scissors: *Task Split*\n`{source_key}` continues as *{new_title}* (`{new_key}`)\n"
            f"Destination: {target_sprint}"
        )
    ]


def format_uat_summary(
    sprint: str,
    action: str,
    closed: int,
    moved: int,
    split: int,
    target_sprint: str | None = None,
) -> list[dict]:
    """Format a sprint-to-UAT transition as Slack blocks."""
    lines = [f":test_tube: *{sprint}* moved to UAT ({action})"]
    if closed:
        lines.append(f":white_check_mark: Closed: {closed}")
    if moved:
        lines.append(f":arrow_right: Moved to {target_sprint}: {moved}")
    if split:
        lines.append(f":scissors: Split into {target_sprint}: {split}")
    if not (closed or moved or split):
        lines.append("No open tasks were left in the sprint.")
    return [_section("\n".join(lines))]


def format_sprint_status(sprint: str, counts: dict[str, int]) -> list[dict]:
    """Format a sprint progress update as Slack blocks."""
    total = sum(counts.values())
    finished = counts.get("DONE", 0) + counts.get("LIVE", 0)
    progress = finished / total * 100 if total > 0 else 0

    parts = " | ".join(
        f"{STATUS_EMOJI[s]} {s.replace('_', ' ').title()}: {counts.get(s, 0)}"
        for s in STATUS_EMOJI
    )
    return [
        _section(
            f":bar_chart: *Sprint Status: {sprint}*\n{parts}\n"
            f"Progress: {progress:.0f}% ({finished}/{total})"
        )
    ]
