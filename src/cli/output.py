"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag).
"""

import json
from collections.abc import Sequence

from rich.table import Table

from src.db.models import ModerationLogEntry

# Action color map
ACTION_COLORS = {
    "restrict": "yellow",
    "unrestrict": "green",
    "dismiss_report": "dim",
    "ban": "red",
    "unban": "green",
    "warn": "yellow",
}


def format_moderation_log(
    entries: Sequence[ModerationLogEntry], as_json: bool = False
) -> Table | str:
    """Format moderation log entries as a Rich table or JSON.

    Args:
        entries: Entries, newest first.
        as_json: If True, return a JSON string instead of a table.

    Returns:
        A Rich Table, or a JSON string.
    """
    if as_json:
        return json.dumps(
            [
                {
                    "id": e.id,
                    "created_at": e.created_at,
                    "moderator_id": e.moderator_id,
                    "target_user_id": e.target_user_id,
                    "action": e.action,
                    "title": e.title,
                    "reason": e.reason,
                    "meta": e.meta,
                }
                for e in entries
            ],
            indent=2,
        )

    table = Table(title="Moderation Log", show_lines=True)
    table.add_column("When", no_wrap=True)
    table.add_column("Action")
    table.add_column("Moderator", style="cyan")
    table.add_column("Target", style="cyan")
    table.add_column("Title")
    table.add_column("Reason")

    for e in entries:
        color = ACTION_COLORS.get(e.action, "white")
        table.add_row(
            e.created_at[:19].replace("T", " "),
            f"[{color}]{e.action}[/{color}]",
            e.moderator_id,
            e.target_user_id or "-",
            e.title,
            e.reason or "",
        )
    return table
