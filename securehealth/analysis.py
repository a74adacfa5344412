"""
Compliance reporting over audit entries – decision totals, denials per
attribute and per principal.
"""

from typing import Iterable, List

import pandas as pd

from securehealth.models import AuditEntry

TOP_N = 10

COLUMNS = [
    "timestamp", "principal", "attribute", "action", "outcome",
    "reason", "subject_type", "subject_id", "field",
]


def entries_to_frame(entries: Iterable[AuditEntry]) -> pd.DataFrame:
    rows = [
        {
            "timestamp": e.timestamp,
            "principal": e.principal_identity,
            "attribute": e.attribute,
            "action": e.action,
            "outcome": e.outcome.value,
            "reason": e.reason,
            "subject_type": e.subject_type,
            "subject_id": e.subject_id,
            "field": e.field_name,
        }
        for e in entries
    ]
    return pd.DataFrame(rows, columns=COLUMNS)


def summarize_audit(entries: Iterable[AuditEntry]) -> str:
    """Markdown compliance summary of the given entries."""
    df = entries_to_frame(entries)
    if df.empty:
        return "No audit entries matched."

    lines: List[str] = []
    total = len(df)
    denied = df[df["outcome"] == "denied"]
    lines.append(
        f"Decisions: {total} (granted {total - len(denied)}, denied {len(denied)}, "
        f"denial rate {len(denied) * 100.0 / total:.1f}%)."
    )
    lines.append(
        f"Window: {df['timestamp'].min().isoformat()} to {df['timestamp'].max().isoformat()}."
    )

    by_action = df.groupby(["action", "outcome"]).size().unstack(fill_value=0)
    lines.append("\nDecisions by action:\n" + by_action.to_markdown())

    if denied.empty:
        lines.append("\nNo denials recorded.")
        return "\n".join(lines)

    per_attribute = (
        denied.groupby("attribute").size()
        .sort_values(ascending=False).head(TOP_N)
        .reset_index(name="denials")
    )
    lines.append("\nDenials per attribute:\n" + per_attribute.to_markdown(index=False))

    per_principal = (
        denied.groupby("principal").size()
        .sort_values(ascending=False).head(TOP_N)
        .reset_index(name="denials")
    )
    lines.append("\nDenials per principal:\n" + per_principal.to_markdown(index=False))

    return "\n".join(lines)
