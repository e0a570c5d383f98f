"""Financial calculations executed by the calculations queue.

All functions are pure: plain numbers and dicts in, JSON-ready dicts out.
Monetary outputs are rounded to cents.
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Callable, Optional

# Periods beyond this are summarized rather than listed
MAX_SCHEDULE_ROWS = 1200
TRADING_DAYS = 252
RETIREMENT_YEARS = 25


def _money(value: float) -> float:
    return round(value, 2)


def compound_interest(
    principal: float,
    rate: float,
    time: float,
    compound_frequency: int = 1,
) -> dict[str, Any]:
    """Compound ``principal`` at annual ``rate`` for ``time`` years.

    Args:
        principal: Starting amount
        rate: Annual rate as a fraction (0.07 for 7%)
        time: Number of years
        compound_frequency: Compounding periods per year (1 = annual)

    Returns:
        Final amount, total interest and a per-period breakdown
    """
    periods = int(round(compound_frequency * time))
    period_rate = rate / compound_frequency
    amount = principal * math.pow(1 + period_rate, compound_frequency * time)

    breakdown = []
    current = principal
    for period in range(1, min(periods, MAX_SCHEDULE_ROWS) + 1):
        interest = current * period_rate
        current += interest
        breakdown.append(
            {
                "period": period,
                "interest_earned": _money(interest),
                "total_amount": _money(current),
            }
        )

    return {
        "principal": principal,
        "rate": rate,
        "time": time,
        "compound_frequency": compound_frequency,
        "final_amount": _money(amount),
        "total_interest": _money(amount - principal),
        "breakdown": breakdown,
    }


def present_value(future_value: float, rate: float, time: float) -> dict[str, Any]:
    """Discount ``future_value`` back ``time`` years at ``rate``."""
    value = future_value / math.pow(1 + rate, time)
    return {
        "future_value": future_value,
        "rate": rate,
        "time": time,
        "present_value": _money(value),
        "discount_amount": _money(future_value - value),
    }


def future_value(
    present_value: float,
    rate: float,
    time: float,
    periodic_payment: float = 0.0,
) -> dict[str, Any]:
    """Grow ``present_value`` for ``time`` years, plus optional yearly payments."""
    growth = math.pow(1 + rate, time)
    value = present_value * growth
    if periodic_payment:
        if rate == 0:
            value += periodic_payment * time
        else:
            value += periodic_payment * (growth - 1) / rate
    return {
        "present_value": present_value,
        "rate": rate,
        "time": time,
        "periodic_payment": periodic_payment,
        "future_value": _money(value),
        "total_growth": _money(value - present_value - periodic_payment * time),
    }


def loan_payment(principal: float, rate: float, term: int) -> dict[str, Any]:
    """Monthly payment and amortization for a fixed-rate loan.

    Args:
        principal: Amount borrowed
        rate: Annual interest rate as a fraction
        term: Number of monthly payments
    """
    monthly_rate = rate / 12
    if monthly_rate == 0:
        payment = principal / term
    else:
        factor = math.pow(1 + monthly_rate, term)
        payment = principal * monthly_rate * factor / (factor - 1)

    schedule = []
    balance = principal
    for month in range(1, min(term, MAX_SCHEDULE_ROWS) + 1):
        interest = balance * monthly_rate
        principal_part = payment - interest
        balance -= principal_part
        schedule.append(
            {
                "month": month,
                "payment": _money(payment),
                "principal": _money(principal_part),
                "interest": _money(interest),
                "balance": _money(max(0.0, balance)),
            }
        )
        if balance <= 0:
            break

    return {
        "principal": principal,
        "rate": rate,
        "term": term,
        "monthly_payment": _money(payment),
        "total_payments": _money(payment * term),
        "total_interest": _money(payment * term - principal),
        "amortization_schedule": schedule,
    }


def _annuity_factor(rate: float, periods: float) -> float:
    if rate == 0:
        return periods
    return (math.pow(1 + rate, periods) - 1) / rate


def retirement_planning(
    current_age: int,
    retirement_age: int,
    current_savings: float,
    monthly_contribution: float,
    expected_return: float,
    inflation_rate: float,
    desired_income: float,
) -> dict[str, Any]:
    """Project savings at retirement against the savings needed for ``desired_income``.

    ``desired_income`` is monthly, in today's money. Retirement is assumed to
    last 25 years.
    """
    years = retirement_age - current_age
    grown_savings = current_savings * math.pow(1 + expected_return, years)
    monthly_return = expected_return / 12
    contributions = monthly_contribution * _annuity_factor(monthly_return, years * 12)
    projected = grown_savings + contributions

    adjusted_income = desired_income * math.pow(1 + inflation_rate, years)
    required = adjusted_income * 12 * RETIREMENT_YEARS / _annuity_factor(
        expected_return, RETIREMENT_YEARS
    )

    if projected < required:
        gap = required - grown_savings
        recommended = gap / _annuity_factor(monthly_return, years * 12) if years > 0 else gap
    else:
        recommended = monthly_contribution

    return {
        "current_age": current_age,
        "retirement_age": retirement_age,
        "years_to_retirement": years,
        "total_retirement_savings": _money(projected),
        "required_savings": _money(required),
        "shortfall": _money(max(0.0, required - projected)),
        "on_track": projected >= required,
        "recommended_monthly_contribution": _money(recommended),
    }


def _as_day(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()[:10]
    return str(value)[:10]


def _daily_returns(transactions: list[dict[str, Any]]) -> list[float]:
    by_day: dict[str, float] = defaultdict(float)
    for txn in transactions:
        by_day[_as_day(txn.get("date", ""))] += (txn.get("shares") or 0) * (
            txn.get("price") or 0
        )

    returns = []
    previous = 0.0
    for day in sorted(by_day):
        value = by_day[day]
        if previous > 0:
            returns.append((value - previous) / previous)
        previous = value
    return returns


def volatility(returns: list[float]) -> float:
    """Annualized sample volatility of daily returns."""
    if len(returns) < 2:
        return 0.0
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / (len(returns) - 1)
    return math.sqrt(variance * TRADING_DAYS)


def sharpe_ratio(returns: list[float], risk_free_rate: float) -> float:
    if not returns:
        return 0.0
    vol = volatility(returns)
    if vol <= 0:
        return 0.0
    avg = sum(returns) / len(returns)
    return (avg - risk_free_rate / TRADING_DAYS) / (vol / math.sqrt(TRADING_DAYS))


def value_at_risk(returns: list[float], confidence: float = 0.95) -> float:
    if not returns:
        return 0.0
    ordered = sorted(returns)
    index = int(math.floor((1 - confidence) * len(ordered)))
    return ordered[min(index, len(ordered) - 1)]


def max_drawdown(returns: list[float]) -> float:
    peak = 0.0
    cumulative = 1.0
    worst = 0.0
    for ret in returns:
        cumulative *= 1 + ret
        peak = max(peak, cumulative)
        if peak > 0:
            worst = max(worst, (peak - cumulative) / peak)
    return worst


def portfolio_analysis(
    transactions: list[dict[str, Any]],
    risk_free_rate: float = 0.02,
    report_progress: Optional[Callable[[int], None]] = None,
) -> dict[str, Any]:
    """Holdings, performance and risk metrics for a list of trades.

    Each transaction carries ``symbol``, ``type`` (buy/sell), ``shares``,
    ``price``, ``date`` and optionally ``current_price`` and ``category``.
    """
    holdings: dict[str, dict[str, Any]] = {}
    grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for txn in transactions:
        grouped[txn["symbol"]].append(txn)

    for symbol, trades in grouped.items():
        shares = 0.0
        cost = 0.0
        for trade in trades:
            qty = trade.get("shares") or 0
            price = trade.get("price") or 0
            if trade.get("type") == "buy":
                shares += qty
                cost += qty * price
            elif trade.get("type") == "sell" and shares > 0:
                cost -= cost * min(qty / shares, 1.0)
                shares -= qty
        if shares > 0:
            average = cost / shares
            current_price = trades[-1].get("current_price") or average
            current_value = shares * current_price
            holdings[symbol] = {
                "symbol": symbol,
                "category": trades[-1].get("category") or "Other",
                "shares": shares,
                "average_cost": _money(average),
                "total_cost": _money(cost),
                "current_price": current_price,
                "current_value": _money(current_value),
                "gain_loss": _money(current_value - cost),
                "gain_loss_percent": round((current_value - cost) / cost * 100, 4)
                if cost > 0
                else 0.0,
            }

    if report_progress:
        report_progress(40)

    total_value = sum(h["current_value"] for h in holdings.values())
    total_cost = sum(h["total_cost"] for h in holdings.values())
    total_gain = total_value - total_cost

    returns = _daily_returns(transactions)
    yearly = 1.0
    for ret in returns:
        yearly *= 1 + ret
    vol = volatility(returns)
    sharpe = sharpe_ratio(returns, risk_free_rate)

    if report_progress:
        report_progress(80)

    allocation: dict[str, float] = defaultdict(float)
    for holding in holdings.values():
        if total_value > 0:
            allocation[holding["category"]] += holding["current_value"] / total_value * 100

    recommendations = []
    if len(allocation) < 3:
        recommendations.append(
            {
                "type": "diversification",
                "priority": "high",
                "message": "Consider diversifying across more asset classes to reduce risk",
            }
        )
    if vol > 0.25:
        recommendations.append(
            {
                "type": "risk",
                "priority": "medium",
                "message": "Portfolio volatility is high. Consider reducing exposure to high-risk assets",
            }
        )
    if sharpe < 0.5:
        recommendations.append(
            {
                "type": "performance",
                "priority": "medium",
                "message": "Risk-adjusted returns could be improved. Review asset allocation",
            }
        )

    return {
        "summary": {
            "total_value": _money(total_value),
            "total_cost": _money(total_cost),
            "total_gain_loss": _money(total_gain),
            "total_return": round(total_gain / total_cost * 100, 4) if total_cost > 0 else 0.0,
            "holdings_count": len(holdings),
        },
        "holdings": list(holdings.values()),
        "performance": {
            "daily_returns": returns,
            "yearly_return": yearly - 1,
            "volatility": vol,
            "sharpe_ratio": sharpe,
        },
        "risk_metrics": {
            "portfolio_volatility": vol,
            "value_at_risk": value_at_risk(returns),
            "max_drawdown": max_drawdown(returns),
        },
        "asset_allocation": [
            {"category": category, "percentage": round(pct, 4)}
            for category, pct in allocation.items()
        ],
        "recommendations": recommendations,
    }


# Single-filer federal brackets; upper bound None is open-ended
DEFAULT_TAX_BRACKETS = [
    {"min": 0, "max": 11000, "rate": 0.10},
    {"min": 11000, "max": 44725, "rate": 0.12},
    {"min": 44725, "max": 95375, "rate": 0.22},
    {"min": 95375, "max": 182100, "rate": 0.24},
    {"min": 182100, "max": 231250, "rate": 0.32},
    {"min": 231250, "max": 578125, "rate": 0.35},
    {"min": 578125, "max": None, "rate": 0.37},
]
RETIREMENT_401K_LIMIT = 22500
IRA_LIMIT = 6000

RISK_PROFILES = {
    "conservative": {"stocks": 0.3, "bonds": 0.6, "real_estate": 0.05, "commodities": 0.05},
    "moderate": {"stocks": 0.6, "bonds": 0.3, "real_estate": 0.07, "commodities": 0.03},
    "aggressive": {"stocks": 0.8, "bonds": 0.1, "real_estate": 0.07, "commodities": 0.03},
}
ASSET_RISK_WEIGHTS = {"stocks": 0.8, "bonds": 0.2, "real_estate": 0.5, "commodities": 0.7}
ASSET_EXPECTED_RETURNS = {"stocks": 0.10, "bonds": 0.04, "real_estate": 0.08, "commodities": 0.06}
REBALANCE_BAND = 0.05


def calculate_tax(
    income: float, deductions: float = 0.0, tax_brackets: Optional[list[dict[str, Any]]] = None
) -> float:
    """Progressive tax on ``income - deductions`` over ``tax_brackets``."""
    remaining = max(0.0, income - deductions)
    tax = 0.0
    for bracket in sorted(tax_brackets or DEFAULT_TAX_BRACKETS, key=lambda b: b["min"]):
        upper = bracket.get("max")
        width = math.inf if upper is None else max(upper - bracket["min"], 0)
        taxed = min(remaining, width)
        tax += taxed * bracket["rate"]
        remaining -= taxed
        if remaining <= 0:
            break
    return tax


def _contribution_option(
    strategy: str,
    contribution: float,
    income: float,
    deductions: float,
    brackets: Optional[list[dict[str, Any]]],
    current_tax: float,
) -> dict[str, Any]:
    savings = current_tax - calculate_tax(income - contribution, deductions, brackets)
    return {
        "strategy": strategy,
        "additional_contribution": _money(contribution),
        "tax_savings": _money(savings),
        "net_cost": _money(contribution - savings),
    }


def tax_optimization(
    income: float,
    deductions: float = 0.0,
    tax_brackets: Optional[list[dict[str, Any]]] = None,
    investment_accounts: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Estimate tax savings from pre-tax retirement contributions.

    A 401(k) top-up is capped at the annual limit and 10% of income; a
    traditional IRA top-up at its limit and 5% of income. Each option is
    priced independently against the current tax.

    Returns:
        Current tax, one entry per applicable strategy and the total of
        their savings
    """
    accounts = investment_accounts or {}
    current_tax = calculate_tax(income, deductions, tax_brackets)
    optimizations = []

    if accounts.get("has_401k"):
        extra = min(RETIREMENT_401K_LIMIT - (accounts.get("current_401k") or 0), income * 0.10)
        if extra > 0:
            optimizations.append(
                _contribution_option(
                    "401k Contribution", extra, income, deductions, tax_brackets, current_tax
                )
            )

    extra_ira = min(IRA_LIMIT - (accounts.get("current_ira") or 0), income * 0.05)
    if extra_ira > 0:
        optimizations.append(
            _contribution_option(
                "Traditional IRA Contribution",
                extra_ira,
                income,
                deductions,
                tax_brackets,
                current_tax,
            )
        )

    return {
        "current_tax": _money(current_tax),
        "taxable_income": _money(max(0.0, income - deductions)),
        "effective_rate": round(current_tax / income, 6) if income > 0 else 0.0,
        "optimizations": optimizations,
        "total_potential_savings": _money(sum(o["tax_savings"] for o in optimizations)),
    }


def portfolio_optimization(
    holdings: list[dict[str, Any]],
    risk_tolerance: str = "moderate",
    time_horizon: Optional[int] = None,
    goals: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Compare current asset-class weights with the target for ``risk_tolerance``.

    Classes more than five percentage points off target get a buy or sell
    recommendation sized in currency.
    """
    target = RISK_PROFILES.get(risk_tolerance, RISK_PROFILES["moderate"])
    total_value = sum(h.get("current_value") or 0 for h in holdings)

    current: dict[str, float] = {}
    for asset_class in target:
        class_value = sum(
            h.get("current_value") or 0 for h in holdings if h.get("asset_class") == asset_class
        )
        current[asset_class] = class_value / total_value if total_value > 0 else 0.0

    recommendations = []
    for asset_class, target_weight in target.items():
        difference = target_weight - current[asset_class]
        if abs(difference) > REBALANCE_BAND:
            recommendations.append(
                {
                    "asset_class": asset_class,
                    "current_percent": round(current[asset_class] * 100, 4),
                    "target_percent": round(target_weight * 100, 4),
                    "action": "buy" if difference > 0 else "sell",
                    "amount": _money(abs(difference) * total_value),
                }
            )

    return {
        "risk_tolerance": risk_tolerance,
        "time_horizon": time_horizon,
        "goals": goals or [],
        "current_allocation": current,
        "target_allocation": dict(target),
        "rebalance_recommendations": recommendations,
        "total_value": _money(total_value),
        "risk_score": round(
            sum(w * ASSET_RISK_WEIGHTS.get(c, 0.5) for c, w in current.items()), 6
        ),
        "expected_return": round(
            sum(w * ASSET_EXPECTED_RETURNS.get(c, 0.06) for c, w in current.items()), 6
        ),
    }


LARGE_TRANSACTION_AMOUNT = 100.0
HIGH_SEVERITY_AMOUNT = 500.0


def analyze_transaction(
    transaction: dict[str, Any], budget: Optional[dict[str, Any]] = None
) -> dict[str, Any]:
    """Impact of one transaction: alerts, budget usage and a recommendation."""
    amount = float(transaction.get("amount") or 0)
    kind = transaction.get("type")
    results: dict[str, Any] = {}
    alerts = []

    category = transaction.get("category")
    if category:
        results["category_analysis"] = {
            "category": category,
            "suggestion": f"Consider budgeting for {category} expenses",
        }

    if amount > LARGE_TRANSACTION_AMOUNT:
        alerts.append(
            {
                "type": "large_transaction",
                "message": f"Large {kind} of ${amount:,.2f} detected",
                "severity": "high" if amount > HIGH_SEVERITY_AMOUNT else "medium",
            }
        )

    if budget and kind == "expense":
        limit = float(budget["monthly_limit"])
        spent = float(budget.get("spent_this_month") or 0) + amount
        percent_used = spent / limit * 100
        results["budget_impact"] = {
            "monthly_limit": _money(limit),
            "spent_this_month": _money(spent),
            "remaining": _money(limit - spent),
            "percent_used": round(percent_used, 2),
            "is_over_budget": spent > limit,
        }
        if spent > limit:
            alerts.append(
                {
                    "type": "budget_exceeded",
                    "message": f"Monthly budget exceeded by ${spent - limit:,.2f}",
                    "severity": "high",
                }
            )

    if kind == "expense":
        recommendation = {
            "type": "saving_tip",
            "message": f"Consider setting aside {amount * 0.1:.2f} for savings",
            "category": "financial_wellness",
        }
    else:
        recommendation = {
            "type": "investment_tip",
            "message": f"Consider investing {amount * 0.2:.2f} for long-term growth",
            "category": "wealth_building",
        }

    return {
        "transaction_id": transaction.get("id"),
        "analysis_type": "financial_impact",
        "results": results,
        "alerts": alerts,
        "recommendations": [recommendation],
        "priority": "high" if any(a["severity"] == "high" for a in alerts) else "normal",
    }


CALCULATORS: dict[str, Callable[..., dict[str, Any]]] = {
    "compound-interest": compound_interest,
    "present-value": present_value,
    "future-value": future_value,
    "loan-payment": loan_payment,
    "retirement-planning": retirement_planning,
    "tax-optimization": tax_optimization,
    "portfolio-optimization": portfolio_optimization,
}
