from datetime import date, timedelta
from typing import Any, Dict, Optional

from lending.database import Database
from lending.models import LoanState, utcnow


def get_overview(database: Database, today: Optional[date] = None) -> Dict[str, Any]:
    """Dashboard counters plus a zero-filled seven-day borrow trend, bucketed by UTC day."""
    today = today or utcnow().date()
    first_day = today - timedelta(days=6)

    with database.connection() as conn:
        books, total_copies = conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(total_copies), 0) FROM titles"
        ).fetchone()
        borrowed = conn.execute(
            "SELECT COUNT(*) FROM loans WHERE state = ?", (LoanState.OPEN.value,)
        ).fetchone()[0]
        users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        trend_rows = conn.execute(
            """
            SELECT substr(opened_at, 1, 10) AS day, COUNT(*) AS total
            FROM loans
            WHERE substr(opened_at, 1, 10) >= ?
            GROUP BY day
            """,
            (first_day.isoformat(),),
        ).fetchall()

    per_day = {row["day"]: row["total"] for row in trend_rows}
    trend = []
    for offset in range(7):
        day = (first_day + timedelta(days=offset)).isoformat()
        trend.append({"day": day, "total": per_day.get(day, 0)})

    return {
        "books": books,
        "users": users,
        "borrowed": borrowed,
        "in_library": max(0, total_copies - borrowed),
        "borrow_rate": round(borrowed / total_copies * 100, 1) if total_copies > 0 else 0,
        "trend": trend,
    }
