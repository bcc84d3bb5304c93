"""
Conversion Funnel - journey from first visit to confirmed order.

Steps are recorded in funnel_conversions as they happen. Metrics are computed
from those records with pandas; the calculation functions are pure and take a
list of {"user_id", "step", "timestamp"} dicts.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from database import database

logger = logging.getLogger(__name__)

FUNNEL_STEPS: List[Dict[str, str]] = [
    {"step": "homepage_view", "name": "Homepage View", "category": "awareness"},
    {"step": "model_view", "name": "Model View", "category": "awareness"},
    {"step": "estimator_start", "name": "Estimator Started", "category": "interest"},
    {"step": "build_started", "name": "Build Started", "category": "interest"},
    {"step": "customization_complete", "name": "Customization Complete", "category": "consideration"},
    {"step": "pricing_viewed", "name": "Pricing Viewed", "category": "consideration"},
    {"step": "financing_selected", "name": "Financing Selected", "category": "intent"},
    {"step": "buyer_info_complete", "name": "Buyer Info Complete", "category": "intent"},
    {"step": "review_complete", "name": "Review Complete", "category": "action"},
    {"step": "payment_initiated", "name": "Payment Initiated", "category": "action"},
    {"step": "contract_signed", "name": "Contract Signed", "category": "conversion"},
    {"step": "order_confirmed", "name": "Order Confirmed", "category": "conversion"},
]
STEP_ORDER = {s["step"]: i + 1 for i, s in enumerate(FUNNEL_STEPS)}
PRIMARY_GOAL = "order_confirmed"
DROP_OFF_THRESHOLD = 50

STEP_RECOMMENDATIONS = {
    ("model_view", "estimator_start"): [
        'Add a prominent "Start Building" call to action on model pages',
        "Simplify the estimator entry",
    ],
    ("build_started", "customization_complete"): [
        "Improve the customization UI",
        "Add progress indicators",
        "Remind users that builds are saved automatically",
    ],
    ("pricing_viewed", "financing_selected"): [
        "Show monthly payment examples next to the total",
    ],
    ("review_complete", "payment_initiated"): [
        "Optimize the payment flow",
        "Add trust signals near payment options",
        "Offer multiple payment methods",
    ],
}


def drop_off_severity(rate: float) -> str:
    if rate < 10:
        return "critical"
    if rate < 25:
        return "high"
    if rate < 50:
        return "medium"
    return "low"


def drop_off_recommendations(from_step: str, to_step: str, rate: float) -> List[str]:
    recommendations = list(STEP_RECOMMENDATIONS.get((from_step, to_step), []))
    if rate < 25:
        recommendations.append("Consider A/B testing this step")
        recommendations.append("Add an exit survey to understand the barrier")
    return recommendations


def _frame(records: List[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(records, columns=["user_id", "step", "timestamp"])
    df = df[df["step"].isin(list(STEP_ORDER)) & df["user_id"].notna()].copy()
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df


def calculate_funnel_metrics(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Unique users per step, step-to-step conversion and drop-off analysis."""
    df = _frame(records)
    unique_users = df.groupby("step")["user_id"].nunique().to_dict() if not df.empty else {}
    events = df.groupby("step").size().to_dict() if not df.empty else {}

    steps = [
        {
            **s,
            "order": STEP_ORDER[s["step"]],
            "unique_users": int(unique_users.get(s["step"], 0)),
            "total_events": int(events.get(s["step"], 0)),
        }
        for s in FUNNEL_STEPS
    ]

    conversions = []
    for current, nxt in zip(steps, steps[1:]):
        rate = (nxt["unique_users"] / current["unique_users"] * 100) if current["unique_users"] else 0.0
        conversions.append({
            "from": current["step"],
            "to": nxt["step"],
            "rate": round(rate, 2),
            "from_users": current["unique_users"],
            "to_users": nxt["unique_users"],
            "drop_off": current["unique_users"] - nxt["unique_users"],
        })

    top = steps[0]["unique_users"]
    converted = unique_users.get(PRIMARY_GOAL, 0)
    overall = {
        "rate": round(converted / top * 100, 2) if top else 0.0,
        "top_of_funnel": top,
        "conversions": int(converted),
    }

    drop_offs = [
        {
            "step": c["from"],
            "next_step": c["to"],
            "drop_off_rate": round(100 - c["rate"], 2),
            "users_lost": c["drop_off"],
            "severity": drop_off_severity(c["rate"]),
            "recommendations": drop_off_recommendations(c["from"], c["to"], c["rate"]),
        }
        for c in conversions
        if c["from_users"] > 0 and c["rate"] < DROP_OFF_THRESHOLD
    ]
    drop_offs.sort(key=lambda d: d["drop_off_rate"], reverse=True)

    return {"steps": steps, "conversion_rates": conversions, "overall": overall, "drop_offs": drop_offs}


def cohort_analysis(records: List[Dict[str, Any]], period: str = "weekly") -> Dict[str, Any]:
    """Group users by first touch (ISO week or month) and report conversion per cohort."""
    if period not in ("weekly", "monthly"):
        raise ValueError(f"Invalid cohort period: {period}")

    df = _frame(records)
    if df.empty:
        return {"period": period, "cohorts": []}

    per_user = df.groupby("user_id").agg(
        first_touch=("timestamp", "min"),
        last_touch=("timestamp", "max"),
        steps_completed=("step", "nunique"),
        converted=("step", lambda s: PRIMARY_GOAL in set(s)),
    )
    fmt = "%G-W%V" if period == "weekly" else "%Y-%m"
    per_user["cohort"] = per_user["first_touch"].dt.strftime(fmt)
    per_user["days_active"] = (per_user["last_touch"] - per_user["first_touch"]).dt.total_seconds() / 86400

    grouped = per_user.groupby("cohort").agg(
        total_users=("converted", "size"),
        conversions=("converted", "sum"),
        avg_steps_completed=("steps_completed", "mean"),
        avg_days_active=("days_active", "mean"),
    ).sort_index()

    cohorts = [
        {
            "cohort": cohort,
            "total_users": int(row.total_users),
            "conversions": int(row.conversions),
            "conversion_rate": round(row.conversions / row.total_users * 100, 2) if row.total_users else 0.0,
            "avg_steps_completed": round(float(row.avg_steps_completed), 1),
            "avg_days_active": round(float(row.avg_days_active), 1),
        }
        for cohort, row in grouped.iterrows()
    ]
    return {"period": period, "cohorts": cohorts}


def journey_patterns(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Classify each user's path (linear, backtrack, skip, loop) and find where non-converters stop."""
    df = _frame(records)
    counts = {"linear": 0, "backtrack": 0, "skip": 0, "loop": 0}
    abandonment: Dict[str, int] = {}
    if df.empty:
        return {"total_journeys": 0, "patterns": counts, "abandonment_points": []}

    journeys = df.sort_values("timestamp").groupby("user_id")["step"].apply(list)
    for steps in journeys:
        orders = [STEP_ORDER[s] for s in steps]
        pairs = list(zip(orders, orders[1:]))
        if all(b > a for a, b in pairs):
            counts["linear"] += 1
        else:
            if any(b < a for a, b in pairs):
                counts["backtrack"] += 1
            if len(steps) != len(set(steps)):
                counts["loop"] += 1
        distinct = sorted(set(orders))
        if any(b - a > 1 for a, b in zip(distinct, distinct[1:])):
            counts["skip"] += 1
        if PRIMARY_GOAL not in steps:
            abandonment[steps[-1]] = abandonment.get(steps[-1], 0) + 1

    total_abandoned = sum(abandonment.values())
    return {
        "total_journeys": int(len(journeys)),
        "patterns": counts,
        "abandonment_points": [
            {"step": step, "count": count, "percentage": round(count / total_abandoned * 100, 2)}
            for step, count in sorted(abandonment.items(), key=lambda kv: kv[1], reverse=True)
        ],
    }


async def track_conversion(
    user_id: Optional[str],
    session_id: Optional[str],
    step: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if step not in STEP_ORDER:
        raise ValueError(f"Invalid funnel step: {step}")

    db = database.get_db()
    await db.funnel_conversions.insert_one({
        "user_id": user_id,
        "session_id": session_id,
        "step": step,
        "step_order": STEP_ORDER[step],
        "timestamp": datetime.now(timezone.utc),
        "metadata": metadata or {},
    })
    next_steps = [s["step"] for s in FUNNEL_STEPS if STEP_ORDER[s["step"]] == STEP_ORDER[step] + 1]
    return {"tracked": True, "step": step, "step_order": STEP_ORDER[step], "next_steps": next_steps}


async def load_funnel_records(days: int = 30) -> List[Dict[str, Any]]:
    """Funnel records for the window; anonymous visitors are keyed by session."""
    db = database.get_db()
    since = datetime.now(timezone.utc) - timedelta(days=days)
    raw = await db.funnel_conversions.find(
        {"timestamp": {"$gte": since}},
        {"_id": 0, "user_id": 1, "session_id": 1, "step": 1, "timestamp": 1},
    ).to_list(length=100000)
    return [
        {"user_id": r.get("user_id") or r.get("session_id"), "step": r["step"], "timestamp": r["timestamp"]}
        for r in raw
    ]


async def analyze_funnel(days: int = 30, cohort_period: str = "weekly") -> Dict[str, Any]:
    records = await load_funnel_records(days)
    return {
        "funnel": calculate_funnel_metrics(records),
        "cohorts": cohort_analysis(records, cohort_period),
        "journeys": journey_patterns(records),
        "metadata": {
            "days": days,
            "records": len(records),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        },
    }
