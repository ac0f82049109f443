"""
Me Inc. Finance - Time-Series Aggregator

Builds the dashboard series: one record per period (day, week, month, year)
with income, expense, the running capital and cash levels, and the burn-rate
components (ordinary spending, asset depreciation, project amortization and
recurring bills).

Historical balances are never stored day by day, so the levels are rebuilt:
1. Capital now = converted sum of account balances (everything except fixed
   asset accounts); cash now = the same without investment accounts.
2. Capital at start = capital now minus every ledger change dated on or after
   the start date.
3. Replay one day at a time from the start date, then fold days into periods.
"""

import datetime

from models import NON_CASH_ACCOUNT_TYPES, to_date
from valuation import amortize, daily_depreciation, recurring_daily_cost


GRANULARITIES = ('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY')

FLOW_FIELDS = (
    'income',
    'expense',
    'ordinaryCost',
    'depreciationCost',
    'projectCost',
    'recurringCost',
    'cashBurn',
    'totalBurn',
    'netProfit',
)


def period_start(day, granularity):
    """First day of the period containing `day`."""
    if granularity == 'DAILY':
        return day
    if granularity == 'WEEKLY':
        return day - datetime.timedelta(days=day.weekday())
    if granularity == 'MONTHLY':
        return day.replace(day=1)
    if granularity == 'YEARLY':
        return day.replace(month=1, day=1)
    raise ValueError(f"Unknown granularity: {granularity}")


class _LevelTracker:
    """Which accounts count towards capital and cash, and how a row moves them."""

    def __init__(self, accounts, to_base):
        self.to_base = to_base
        self.currency = {a.account_id: a.currency_code for a in accounts}
        self.capital_ids = {a.account_id for a in accounts if a.type != 'ASSET'}
        self.cash_ids = {a.account_id for a in accounts if a.type not in NON_CASH_ACCOUNT_TYPES}

    def current_levels(self, accounts):
        capital = 0.0
        cash = 0.0
        for account in accounts:
            balance = self.to_base(account.current_balance, account.currency_code)
            if account.account_id in self.capital_ids:
                capital += balance
            if account.account_id in self.cash_ids:
                cash += balance
        return capital, cash

    def _effect(self, tx, ids):
        change = 0.0
        if tx.account_id in ids:
            amount = self.to_base(tx.amount, tx.currency_code)
            if tx.type == 'INCOME':
                change += amount
            else:
                change -= amount
        if tx.type == 'TRANSFER' and tx.transfer_to_account_id in ids:
            if tx.target_amount:
                currency = tx.target_currency_code or self.currency.get(tx.transfer_to_account_id, tx.currency_code)
                change += self.to_base(tx.target_amount, currency)
            else:
                change += self.to_base(tx.amount, tx.currency_code)
        return change

    def changes(self, tx):
        """(capital change, cash change) of one ledger row."""
        # Split children repeat money already moved by their parent
        if tx.split_parent_id is not None:
            return 0.0, 0.0
        return self._effect(tx, self.capital_ids), self._effect(tx, self.cash_ids)


def _daily_flows(day_transactions, to_base):
    income = 0.0
    expense = 0.0
    ordinary = 0.0
    cash_burn = 0.0
    for tx in day_transactions:
        if not tx.counts_in_analytics:
            continue
        amount = to_base(tx.amount, tx.currency_code)
        if tx.type == 'INCOME':
            income += amount
        elif tx.type == 'EXPENSE':
            expense += amount
            if tx.project_id is None and tx.investment_id is None:
                cash_burn += amount
                # Recurring bills are already spread daily as recurringCost
                if tx.source != 'RECURRING':
                    ordinary += amount
    return income, expense, ordinary, cash_burn


def build_daily_series(start_date, end_date, transactions, accounts, assets,
                       recurring_rules, projects, project_transactions, to_base, today=None):
    """One self-contained record per day from `start_date` to `end_date` inclusive."""
    start_date = to_date(start_date)
    end_date = to_date(end_date)
    if end_date < start_date:
        return []

    tracker = _LevelTracker(accounts, to_base)
    capital_now, cash_now = tracker.current_levels(accounts)

    net_capital_change = 0.0
    net_cash_change = 0.0
    by_date = {}
    for tx in transactions:
        if tx.date < start_date:
            continue
        capital_change, cash_change = tracker.changes(tx)
        net_capital_change += capital_change
        net_cash_change += cash_change
        by_date.setdefault(tx.date, []).append(tx)

    capital = capital_now - net_capital_change
    cash = cash_now - net_cash_change

    recurring_cost = sum(recurring_daily_cost(rule, to_base) for rule in recurring_rules)

    series = []
    day = start_date
    while day <= end_date:
        day_transactions = by_date.get(day, [])
        for tx in day_transactions:
            capital_change, cash_change = tracker.changes(tx)
            capital += capital_change
            cash += cash_change

        income, expense, ordinary, cash_burn = _daily_flows(day_transactions, to_base)
        depreciation = sum(
            to_base(daily_depreciation(asset, day), asset.currency_code) for asset in assets
        )
        project_cost = sum(
            amortize(project, project_transactions.get(project.project_id, []), day, to_base, today)
            for project in projects
        )
        total_burn = ordinary + depreciation + project_cost + recurring_cost

        series.append({
            'date': day.isoformat(),
            'income': income,
            'expense': expense,
            'capitalLevel': capital,
            'cashLevel': cash,
            'ordinaryCost': ordinary,
            'depreciationCost': depreciation,
            'projectCost': project_cost,
            'recurringCost': recurring_cost,
            'cashBurn': cash_burn,
            'totalBurn': total_burn,
            'netProfit': income - total_burn,
        })
        day += datetime.timedelta(days=1)
    return series


def bucket_series(daily_series, granularity):
    """Fold daily records into periods: flows are summed, levels are end-of-period."""
    if granularity == 'DAILY':
        return [dict(record, days=1) for record in daily_series]

    buckets = []
    current_key = None
    for record in daily_series:
        day = datetime.date.fromisoformat(record['date'])
        key = period_start(day, granularity)
        if key != current_key:
            current_key = key
            bucket = {'date': record['date'], 'days': 0}
            for field in FLOW_FIELDS:
                bucket[field] = 0.0
            buckets.append(bucket)
        bucket = buckets[-1]
        bucket['days'] += 1
        for field in FLOW_FIELDS:
            bucket[field] += record[field]
        bucket['capitalLevel'] = record['capitalLevel']
        bucket['cashLevel'] = record['cashLevel']
    return buckets


def build_series(start_date, end_date, granularity, transactions, accounts, assets,
                 recurring_rules, projects, project_transactions, to_base, today=None):
    """
    Period records between two dates at the requested granularity.

    `transactions` must hold every ledger row dated on or after `start_date`
    (rows after `end_date` are needed to rebuild the starting levels).
    Missing exchange rates only make `to_base` an identity; the series is
    still produced.
    """
    if granularity not in GRANULARITIES:
        raise ValueError(f"Unknown granularity: {granularity}")
    daily = build_daily_series(
        start_date, end_date, transactions, accounts, assets,
        recurring_rules, projects, project_transactions, to_base, today,
    )
    return bucket_series(daily, granularity)


def series_metrics(daily_series, accounts, to_base):
    """Runway figures derived from a daily series."""
    cash_only = sum(
        to_base(a.current_balance, a.currency_code) for a in accounts if a.is_cash
    )
    days = len(daily_series) or 1
    total_cash_burn = sum(record['cashBurn'] for record in daily_series)
    avg_daily_cash_burn = total_cash_burn / days
    runway_months = None
    if avg_daily_cash_burn > 0:
        runway_months = cash_only / avg_daily_cash_burn / 30
    return {
        'cashOnly': cash_only,
        'avgDailyCashBurn': avg_daily_cash_burn,
        'avgDailyTotalBurn': sum(record['totalBurn'] for record in daily_series) / days,
        'runwayMonths': runway_months,
    }
