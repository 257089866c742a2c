from __future__ import annotations

from .chart_contract import ChartV1


def can_edit(chart: ChartV1 | None, user_id: str | None) -> bool:
    """Owners and listed editors may edit; anonymous callers and missing charts may not."""
    if not user_id or chart is None:
        return False
    return chart.owner == user_id or user_id in chart.editors


def is_owner(chart: ChartV1 | None, user_id: str | None) -> bool:
    if not user_id or chart is None:
        return False
    return chart.owner == user_id
