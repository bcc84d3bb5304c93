"""
Predictive analytics: revenue forecasting, seasonality and customer lifetime value.

Forecasts are an ensemble of four simple models over a daily revenue series:
linear trend, weekly-seasonal trend, quadratic trend and Holt exponential
smoothing. Everything here is pure; loaders at the bottom pull the inputs
from Mongo.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression
from sklearn.preprocessing import PolynomialFeatures

from database import database
from services.analytics_service import REVENUE_FILTER, daily_revenue_series

logger = logging.getLogger(__name__)

MIN_POINTS = 3
ENSEMBLE_WEIGHTS = {"linear": 0.2, "seasonal": 0.3, "polynomial": 0.2, "exponential": 0.3}
SMOOTHING_ALPHA = 0.3
SMOOTHING_BETA = 0.3
Z_95 = 1.96
HOLDOUT_FRACTION = 0.2
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
SEASONAL_PERIODS = {"weekly": 7, "monthly": 30, "quarterly": 90}

CLV_CONFIG = {
    "discount_rate": 0.1,
    "prediction_months": 36,
    "churn_threshold_days": 180,
    "gross_margin": 0.7,
}


class InsufficientDataError(ValueError):
    """Not enough history to fit the models."""


def prepare_series(series: List[Dict[str, Any]]) -> pd.DataFrame:
    """[{date, revenue|value}] to a date-sorted frame with an integer index column."""
    if not series or len(series) < MIN_POINTS:
        raise InsufficientDataError(f"Insufficient historical data for forecasting (minimum {MIN_POINTS} data points)")
    df = pd.DataFrame({
        "date": pd.to_datetime([row["date"] for row in series]),
        "value": [float(row.get("revenue", row.get("value")) or 0) for row in series],
    })
    active_days = int((df["value"] != 0).sum())
    if active_days < MIN_POINTS:
        raise InsufficientDataError(
            f"Insufficient historical data for forecasting ({active_days} days with revenue, minimum {MIN_POINTS})"
        )
    df = df.sort_values("date").reset_index(drop=True)
    df["index"] = np.arange(len(df))
    return df


def _future_dates(df: pd.DataFrame, periods: int) -> List[pd.Timestamp]:
    last = df["date"].iloc[-1]
    return [last + pd.Timedelta(days=i) for i in range(1, periods + 1)]


def _points(dates: List[pd.Timestamp], values: np.ndarray) -> List[Dict[str, Any]]:
    return [{"date": d.strftime("%Y-%m-%d"), "value": round(float(max(0.0, v)), 2)} for d, v in zip(dates, values)]


def linear_forecast(df: pd.DataFrame, periods: int) -> Dict[str, Any]:
    X = df[["index"]].to_numpy()
    y = df["value"].to_numpy()
    model = LinearRegression().fit(X, y)
    future_X = np.arange(len(df), len(df) + periods).reshape(-1, 1)
    predicted = np.clip(model.predict(future_X), 0, None)
    return {
        "type": "linear",
        "values": predicted,
        "forecast": _points(_future_dates(df, periods), predicted),
        "r2": round(float(model.score(X, y)), 4) if len(df) > 1 else 0.0,
        "slope": round(float(model.coef_[0]), 4),
        "intercept": round(float(model.intercept_), 4),
    }


def weekday_indices(df: pd.DataFrame) -> Dict[int, float]:
    """Day-of-week multipliers relative to the linear trend (1.0 = on trend)."""
    X = df[["index"]].to_numpy()
    fitted = LinearRegression().fit(X, df["value"].to_numpy()).predict(X)
    ratios = pd.DataFrame({"weekday": df["date"].dt.weekday, "actual": df["value"], "fitted": fitted})
    ratios = ratios[ratios["fitted"] > 0]
    if len(df) < 14 or ratios.empty:
        return {d: 1.0 for d in range(7)}

    sums = ratios.groupby("weekday")[["actual", "fitted"]].sum()
    means = sums["actual"] / sums["fitted"]
    indices = {d: float(means.get(d, 1.0)) for d in range(7)}
    scale = np.mean(list(indices.values())) or 1.0
    return {d: v / scale for d, v in indices.items()}


def seasonal_forecast(df: pd.DataFrame, periods: int) -> Dict[str, Any]:
    base = linear_forecast(df, periods)
    indices = weekday_indices(df)
    dates = _future_dates(df, periods)
    adjusted = np.array([v * indices[d.weekday()] for v, d in zip(base["values"], dates)])
    return {
        "type": "seasonal",
        "values": adjusted,
        "forecast": _points(dates, adjusted),
        "weekday_indices": {WEEKDAYS[d]: round(v, 3) for d, v in indices.items()},
    }


def polynomial_forecast(df: pd.DataFrame, periods: int, degree: int = 2) -> Dict[str, Any]:
    poly = PolynomialFeatures(degree=degree, include_bias=False)
    X = poly.fit_transform(df[["index"]].to_numpy())
    model = LinearRegression().fit(X, df["value"].to_numpy())
    future_X = poly.transform(np.arange(len(df), len(df) + periods).reshape(-1, 1))
    predicted = np.clip(model.predict(future_X), 0, None)
    return {
        "type": "polynomial",
        "values": predicted,
        "forecast": _points(_future_dates(df, periods), predicted),
        "degree": degree,
        "coefficients": [round(float(c), 6) for c in model.coef_],
    }


def holt_smoothing(values: np.ndarray, alpha: float = SMOOTHING_ALPHA, beta: float = SMOOTHING_BETA) -> Dict[str, float]:
    level = float(values[0])
    trend = float(values[1] - values[0]) if len(values) > 1 else 0.0
    for y in values[1:]:
        previous_level = level
        level = alpha * float(y) + (1 - alpha) * (level + trend)
        trend = beta * (level - previous_level) + (1 - beta) * trend
    return {"level": level, "trend": trend}


def exponential_forecast(df: pd.DataFrame, periods: int) -> Dict[str, Any]:
    state = holt_smoothing(df["value"].to_numpy())
    predicted = np.clip(np.array([state["level"] + i * state["trend"] for i in range(1, periods + 1)]), 0, None)
    return {
        "type": "exponential_smoothing",
        "values": predicted,
        "forecast": _points(_future_dates(df, periods), predicted),
        "parameters": {"alpha": SMOOTHING_ALPHA, "beta": SMOOTHING_BETA},
        "final_state": {k: round(v, 4) for k, v in state.items()},
    }


def forecast_accuracy(df: pd.DataFrame) -> Optional[Dict[str, float]]:
    """Hold out the last 20% of days and score a linear fit on the rest."""
    holdout = int(len(df) * HOLDOUT_FRACTION)
    if holdout == 0 or len(df) - holdout < 2:
        return None
    train, test = df.iloc[:-holdout], df.iloc[-holdout:]
    predicted = linear_forecast(train.reset_index(drop=True), holdout)["values"]
    actual = test["value"].to_numpy()

    errors = actual - predicted
    mse = float(np.mean(errors ** 2))
    nonzero = actual != 0
    mape = float(np.mean(np.abs(errors[nonzero] / actual[nonzero])) * 100) if nonzero.any() else 0.0
    return {
        "mae": round(float(np.mean(np.abs(errors))), 2),
        "mse": round(mse, 2),
        "rmse": round(math.sqrt(mse), 2),
        "mape": round(mape, 2),
        "validation_days": holdout,
    }


def forecast_revenue(series: List[Dict[str, Any]], periods: int = 30) -> Dict[str, Any]:
    df = prepare_series(series)
    models = {
        "linear": linear_forecast(df, periods),
        "seasonal": seasonal_forecast(df, periods),
        "polynomial": polynomial_forecast(df, periods),
        "exponential": exponential_forecast(df, periods),
    }

    X = df[["index"]].to_numpy()
    residuals = df["value"].to_numpy() - LinearRegression().fit(X, df["value"].to_numpy()).predict(X)
    margin = Z_95 * float(np.std(residuals))

    ensemble_values = sum(ENSEMBLE_WEIGHTS[name] * m["values"] for name, m in models.items())
    dates = _future_dates(df, periods)
    forecast = [
        {
            "date": d.strftime("%Y-%m-%d"),
            "value": round(float(v), 2),
            "lower_bound": round(max(0.0, float(v) - margin), 2),
            "upper_bound": round(float(v) + margin, 2),
        }
        for d, v in zip(dates, ensemble_values)
    ]

    return {
        "forecast": forecast,
        "total_forecast": round(float(ensemble_values.sum()), 2),
        "models": {name: {k: v for k, v in m.items() if k != "values"} for name, m in models.items()},
        "accuracy": forecast_accuracy(df),
        "metadata": {
            "data_points": len(df),
            "forecast_periods": periods,
            "confidence_interval": 0.95,
            "weights": ENSEMBLE_WEIGHTS,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        },
    }


def moving_average(values: np.ndarray, window: int) -> np.ndarray:
    """Centered moving average; edges use the partial window."""
    half = window // 2
    return np.array([values[max(0, i - half):min(len(values), i + half + 1)].mean() for i in range(len(values))])


def cycle_pattern(values: np.ndarray, period: int) -> Optional[List[float]]:
    cycles = len(values) // period
    if cycles < 2:
        return None
    return values[:cycles * period].reshape(cycles, period).mean(axis=0).tolist()


def analyze_seasonality(series: List[Dict[str, Any]]) -> Dict[str, Any]:
    df = prepare_series(series)
    values = df["value"].to_numpy()
    window = max(2, min(7, len(values) // 4))
    trend = moving_average(values, window)
    seasonal = values - trend
    mean_level = float(np.mean(np.abs(values))) or 1.0

    patterns: Dict[str, Optional[Dict[str, Any]]] = {}
    for name, period in SEASONAL_PERIODS.items():
        pattern = cycle_pattern(seasonal, period)
        if pattern is None:
            patterns[name] = None
            continue
        peak, trough = int(np.argmax(pattern)), int(np.argmin(pattern))
        patterns[name] = {
            "period": period,
            "pattern": [round(p, 2) for p in pattern],
            "peak_position": peak,
            "trough_position": trough,
            "strength": round((max(pattern) - min(pattern)) / mean_level, 4),
        }

    by_weekday = df.groupby(df["date"].dt.weekday)["value"].mean()
    overall = float(df["value"].mean()) or 1.0
    weekday_index = {WEEKDAYS[int(d)]: round(float(v) / overall, 3) for d, v in by_weekday.items()}

    recommendations = []
    if weekday_index:
        peak_day = max(weekday_index, key=weekday_index.get)
        slow_day = min(weekday_index, key=weekday_index.get)
        recommendations.append(f"Schedule promotions and follow-ups ahead of {peak_day}, the strongest day")
        if weekday_index[slow_day] < 0.8:
            recommendations.append(f"{slow_day} is consistently slow; use it for production planning")
    if patterns.get("monthly") and patterns["monthly"]["strength"] > 0.5:
        recommendations.append("Strong monthly cycle detected; align deposit reminders with the monthly peak")

    return {
        "decomposition": {
            "window": window,
            "trend": [round(float(v), 2) for v in trend],
            "seasonal": [round(float(v), 2) for v in seasonal],
        },
        "patterns": patterns,
        "weekday_index": weekday_index,
        "peak": {"date": df["date"].iloc[int(np.argmax(values))].strftime("%Y-%m-%d"), "value": round(float(values.max()), 2)},
        "trough": {"date": df["date"].iloc[int(np.argmin(values))].strftime("%Y-%m-%d"), "value": round(float(values.min()), 2)},
        "recommendations": recommendations,
        "data_span": {
            "start": df["date"].iloc[0].strftime("%Y-%m-%d"),
            "end": df["date"].iloc[-1].strftime("%Y-%m-%d"),
            "days": len(df),
        },
    }


def churn_probability(days_since_last: float, threshold_days: float) -> float:
    return 1 / (1 + math.exp(-5 * (days_since_last / threshold_days - 1)))


def predicted_clv(aov: float, frequency: float, churn: float, config: Dict[str, Any] = CLV_CONFIG) -> float:
    retention = 1 - churn
    monthly_discount = 1 + config["discount_rate"] / 12
    return sum(
        aov * frequency * config["gross_margin"] * retention ** m * monthly_discount ** -m
        for m in range(1, config["prediction_months"] + 1)
    )


def clv_segment(clv: float, aov: float, frequency: float) -> str:
    if clv > 10000 and aov > 1000:
        return "VIP"
    if clv > 5000 and frequency > 0.5:
        return "High Value"
    if clv > 2000:
        return "Medium Value"
    if frequency > 0.2:
        return "Frequent"
    return "Standard"


def calculate_clv(customers: List[Dict[str, Any]], now: Optional[datetime] = None, config: Dict[str, Any] = CLV_CONFIG) -> Dict[str, Any]:
    """customers: [{customer_id, transactions: [{amount, date}]}]"""
    now = now or datetime.now(timezone.utc)
    metrics = []
    for customer in customers:
        tx = pd.DataFrame(customer.get("transactions") or [], columns=["amount", "date"])
        if tx.empty:
            continue
        tx["date"] = pd.to_datetime(tx["date"], utc=True)
        total = float(tx["amount"].sum())
        count = len(tx)
        aov = total / count
        first, last = tx["date"].min(), tx["date"].max()
        lifespan_days = (last - first).total_seconds() / 86400
        frequency = count / max(lifespan_days / 30, 1)
        idle_days = (pd.Timestamp(now) - last).total_seconds() / 86400
        churn = churn_probability(idle_days, config["churn_threshold_days"])
        clv = predicted_clv(aov, frequency, churn, config)

        metrics.append({
            "customer_id": customer.get("customer_id"),
            "historical_clv": round(total, 2),
            "predicted_clv": round(clv, 2),
            "avg_order_value": round(aov, 2),
            "purchase_frequency": round(frequency, 4),
            "lifespan_days": round(lifespan_days, 1),
            "churn_probability": round(churn, 4),
            "transaction_count": count,
            "first_purchase": first.to_pydatetime(),
            "last_purchase": last.to_pydatetime(),
            "segment": clv_segment(clv, aov, frequency),
        })

    metrics.sort(key=lambda m: m["predicted_clv"], reverse=True)
    values = np.array([m["predicted_clv"] for m in metrics])
    total_value = float(values.sum()) if len(values) else 0.0

    def top_share(fraction: float) -> float:
        if not total_value:
            return 0.0
        n = max(1, int(math.ceil(len(values) * fraction)))
        return round(float(values[:n].sum()) / total_value * 100, 2)

    segments: Dict[str, int] = {}
    for m in metrics:
        segments[m["segment"]] = segments.get(m["segment"], 0) + 1

    recommendations = []
    for m in metrics:
        if m["segment"] == "VIP":
            recommendations.append({
                "customer_id": m["customer_id"],
                "type": "retention",
                "action": "Assign a dedicated contact and offer priority delivery scheduling",
            })
        if m["churn_probability"] > 0.7:
            recommendations.append({
                "customer_id": m["customer_id"],
                "type": "churn_warning",
                "action": f"High churn risk ({m['churn_probability']:.0%}); reach out with a follow-up offer",
            })

    aggregate = {
        "customers": len(metrics),
        "mean_clv": round(float(values.mean()), 2) if len(values) else 0.0,
        "median_clv": round(float(np.median(values)), 2) if len(values) else 0.0,
        "quartiles": {
            q: round(float(np.percentile(values, p)), 2) if len(values) else 0.0
            for q, p in (("q1", 25), ("q2", 50), ("q3", 75))
        },
        "total_predicted_value": round(total_value, 2),
        "top_10_percent_share": top_share(0.10),
        "top_20_percent_share": top_share(0.20),
    }
    return {
        "customers": metrics,
        "aggregate": aggregate,
        "segments": segments,
        "recommendations": recommendations,
        "config": config,
    }


# ============================================
# LOADERS
# ============================================

async def load_daily_revenue(days: int = 90) -> List[Dict[str, Any]]:
    db = database.get_db()
    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days)
    orders = await db.orders.find(
        {"created_at": {"$gte": start, "$lt": end}, **REVENUE_FILTER},
        {"_id": 0, "created_at": 1, "pricing.total": 1},
    ).to_list(None)
    return daily_revenue_series(orders, start, end)


async def load_customer_transactions() -> List[Dict[str, Any]]:
    db = database.get_db()
    rows = await db.orders.aggregate([
        {"$match": REVENUE_FILTER},
        {"$group": {
            "_id": "$user_id",
            "transactions": {"$push": {"amount": "$pricing.total", "date": "$created_at"}},
        }},
    ]).to_list(None)
    return [{"customer_id": r["_id"], "transactions": r["transactions"]} for r in rows if r.get("_id")]
