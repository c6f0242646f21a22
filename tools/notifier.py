import logging
from datetime import datetime, timezone

from models.release import Release

logger = logging.getLogger(__name__)


def pretty_size(size_bytes: int) -> str:
    """Size in MB with two decimals, or 'Unknown' for non-positive sizes."""
    if size_bytes > 0:
        return f"{size_bytes / 1024 / 1024:.2f} MB"
    return "Unknown"


def format_release_notification(release: Release, matched_queries: list[str], owners: list[str], mention: bool = False) -> str:
    """
    Render the notification text for one delivery target.

    `mention` adds owner pings to the header (shared channels); direct
    messages omit them.
    """
    pre_time = datetime.fromtimestamp(release.preAt, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    lines = [
        "New Release Match!",
        f"Match: {', '.join(matched_queries)}",
    ]
    if mention and owners:
        # community-scoped owner ids are "<community>:<user>"; mention the user
        lines.append(" ".join(f"<@{owner.rpartition(':')[2]}>" for owner in owners))
    lines += [
        f"Release: {release.name}",
        f"Team: {release.team}",
        f"Category: {release.cat}",
        f"Files: {release.files}",
        f"Size: {pretty_size(release.size)}",
        f"Pre Time: {pre_time}",
    ]
    return "\n".join(lines)


def send_notification(target: str, message: str, channel: str = "console"):
    """
    Deliver a rendered notification. Only the console channel exists here;
    anything else is logged like console output.
    """
    logger.info("[NOTIFY] To %s (%s):\n%s", target, channel, message)
    return {"target": target, "message": message, "channel": channel, "published": False}


class ConsoleDeliverer:
    """Deliverer that writes each batched notification to the log."""

    async def deliver(self, target, release: Release, matched_queries: list[str], owners: list[str]) -> bool:
        message = format_release_notification(release, matched_queries, owners, mention=target.kind == "channel")
        send_notification(str(target), message)
        return True
