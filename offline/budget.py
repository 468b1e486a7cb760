import logging
from typing import Any, Awaitable, Callable, Literal

from offline.client import ApiClient, ServerUnavailableError
from offline.mirror import LocalMirror, MirrorKind
from offline.models import Entity


logger = logging.getLogger(__name__)


type Trend = Literal["up", "down", "stable"]


def _amount(transaction: Entity) -> float:
    try:
        return float(transaction.get("amount") or 0)
    except (TypeError, ValueError):
        return 0.0


def summarize(transactions: list[Entity], days: int = 30) -> dict[str, Any]:
    total = sum(_amount(t) for t in transactions)
    breakdown: dict[str, float] = {}
    for t in transactions:
        category = t.get("category") or "Other"
        breakdown[category] = breakdown.get(category, 0.0) + _amount(t)
    return {
        "totalSpent": total,
        "categoryBreakdown": breakdown,
        "averagePerDay": total / days if days else 0.0,
        "transactionCount": len(transactions),
    }


def spending_insights(summary: dict[str, Any] | None) -> dict[str, Any]:
    if not summary or not summary.get("categoryBreakdown"):
        return {"topCategory": "None", "trend": "stable", "savingPotential": 0}

    breakdown: dict[str, float] = summary["categoryBreakdown"]
    top_category = max(breakdown.items(), key=lambda item: item[1])[0]

    avg = summary.get("averagePerDay") or 0
    trend: Trend = "up" if avg > 30 else "down" if avg < 20 else "stable"

    return {
        "topCategory": top_category,
        "trend": trend,
        "savingPotential": round(summary.get("totalSpent", 0) * 0.15),
    }


class BudgetTracker:
    """Budget history from the server, or from mirrored transactions offline."""

    def __init__(
        self,
        *,
        api: ApiClient,
        mirror: LocalMirror,
        user_id: Callable[[], Awaitable[str]],
    ) -> None:
        self.api = api
        self.mirror = mirror
        self.user_id = user_id

    async def fetch(self, days: int = 30) -> dict[str, Any]:
        user_id = await self.user_id()
        try:
            data = await self.api.budget(user_id, days=days)
        except ServerUnavailableError as e:
            logger.info("Budget fetch failed, summarising local transactions: %s", e)
            transactions = await self.mirror.list(MirrorKind.transactions)
            return {
                "transactions": transactions,
                "summary": summarize(transactions, days),
                "recommendations": [],
                "offline": True,
            }
        transactions = sorted(
            data.get("transactions") or [],
            key=lambda t: t.get("date") or "",
            reverse=True,
        )
        await self.mirror.replace_confirmed(MirrorKind.transactions, transactions)
        return {
            "transactions": transactions,
            "summary": data.get("summary"),
            "recommendations": data.get("recommendations") or [],
            "offline": False,
        }
