"""
Me Inc. Finance - Valuation Core

Pure calculations shared by the engine, the time-series builder and the
report summarizer. Nothing here touches the database or the network:

- Currency conversion against an injected rate table
- Account balance reconstruction from the transaction ledger
- Fixed asset depreciation (straight-line and double-declining balance)
- Project cost amortization
- Recurring rule scheduling and daily cost

Amounts are plain floats and callers round for display. The balance fold only
adds and subtracts, so the engine runs it on Decimals read from storage.
"""

import calendar
import datetime
import math
from dataclasses import dataclass

from models import to_date


DAYS_PER_YEAR = 365

# Days in one period of each recurring frequency, used for daily cost spreading
FREQUENCY_DAYS = {
    'DAILY': 1,
    'WEEKLY': 7,
    'MONTHLY': 30,
    'YEARLY': 365,
}


# =============================================================================
# CURRENCY CONVERSION
# =============================================================================

def convert(amount, from_currency, to_currency, rates):
    """
    Convert `amount` from one currency to another.

    `rates` maps a currency code to its price in a common pivot unit (the
    provider quotes everything against USD). A missing rate counts as 1.
    Without a rate table the conversion is the identity: reports degrade to
    1:1 rather than failing.
    """
    if from_currency == to_currency or not rates:
        return amount
    from_rate = rates.get(from_currency) or 1
    to_rate = rates.get(to_currency) or 1
    return amount * (to_rate / from_rate)


def make_converter(rates, base_currency):
    """Return `to_base(amount, currency)` bound to one rate table and base currency."""
    def to_base(amount, currency):
        return convert(amount, currency, base_currency, rates)
    return to_base


# =============================================================================
# ACCOUNT BALANCE
# =============================================================================

def calculate_account_balance(account_id, initial_balance, transactions):
    """
    Fold the ledger into the balance of one account.

    balance = initial + income - expense - transfers out + transfers in

    Transfers in use `target_amount` when present (cross-currency transfer),
    otherwise `amount`. Split children are skipped: the split parent is the
    row that actually moved the money.
    """
    balance = initial_balance
    for tx in transactions:
        if tx.split_parent_id is not None:
            continue
        if tx.account_id == account_id:
            if tx.type == 'INCOME':
                balance += tx.amount
            elif tx.type in ('EXPENSE', 'TRANSFER'):
                balance -= tx.amount
        if tx.type == 'TRANSFER' and tx.transfer_to_account_id == account_id:
            balance += tx.target_amount if tx.target_amount else tx.amount
    return balance


# =============================================================================
# DEPRECIATION
# =============================================================================

@dataclass(frozen=True)
class DepreciationResult:
    book_value: float
    accumulated_depreciation: float
    daily_rate: float
    remaining_life_days: int
    annual_depreciation: float

    def to_dict(self):
        return {
            'book_value': self.book_value,
            'accumulated_depreciation': self.accumulated_depreciation,
            'daily_rate': self.daily_rate,
            'remaining_life_days': self.remaining_life_days,
            'annual_depreciation': self.annual_depreciation,
        }


def _not_depreciating(cost, useful_life_years):
    return DepreciationResult(
        book_value=cost,
        accumulated_depreciation=0.0,
        daily_rate=0.0,
        remaining_life_days=int(useful_life_years * DAYS_PER_YEAR) if useful_life_years > 0 else 0,
        annual_depreciation=0.0,
    )


def _straight_line(cost, salvage, useful_life_years, days_owned):
    depreciable = cost - salvage
    annual = depreciable / useful_life_years
    daily_rate = annual / DAYS_PER_YEAR
    accumulated = min(daily_rate * days_owned, depreciable)
    book_value = max(cost - accumulated, salvage)
    life_days = int(useful_life_years * DAYS_PER_YEAR)
    return DepreciationResult(
        book_value=book_value,
        accumulated_depreciation=accumulated,
        daily_rate=daily_rate,
        remaining_life_days=max(0, life_days - days_owned),
        annual_depreciation=annual,
    )


def _declining_balance(cost, salvage, useful_life_years, days_owned):
    # Double-declining: each year takes 2/life of the remaining book value
    rate = 2.0 / useful_life_years
    years_elapsed = days_owned / DAYS_PER_YEAR
    whole_years = int(math.floor(years_elapsed))

    book_value = cost
    for _ in range(whole_years):
        year_depreciation = min(book_value * rate, book_value - salvage)
        book_value -= year_depreciation
        if book_value <= salvage:
            book_value = salvage
            break

    partial_year = years_elapsed - whole_years
    if partial_year > 0 and book_value > salvage:
        book_value -= min(book_value * rate * partial_year, book_value - salvage)

    book_value = max(book_value, salvage)
    accumulated = min(cost - book_value, cost - salvage)

    life_days = int(useful_life_years * DAYS_PER_YEAR)
    remaining_days = max(0, life_days - days_owned)
    annual = min(book_value * rate, book_value - salvage) if remaining_days > 0 else 0.0
    return DepreciationResult(
        book_value=book_value,
        accumulated_depreciation=accumulated,
        daily_rate=annual / DAYS_PER_YEAR,
        remaining_life_days=remaining_days,
        annual_depreciation=annual,
    )


def depreciate(cost, salvage, useful_life_years, method, start_date, as_of_date):
    """
    Book value of an asset on `as_of_date`.

    Never depreciates below `salvage`. An asset with no useful life, or one
    that is not in service yet (`as_of_date` before `start_date`), has not
    depreciated at all.
    """
    start_date = to_date(start_date)
    as_of_date = to_date(as_of_date)
    salvage = salvage or 0.0
    if not useful_life_years or useful_life_years <= 0 or cost <= salvage:
        return _not_depreciating(cost, useful_life_years or 0)
    if as_of_date < start_date:
        return _not_depreciating(cost, useful_life_years)

    days_owned = (as_of_date - start_date).days
    if method == 'DECLINING_BALANCE':
        return _declining_balance(cost, salvage, useful_life_years, days_owned)
    return _straight_line(cost, salvage, useful_life_years, days_owned)


def asset_schedule(asset, as_of_date):
    """Depreciation schedule of a FixedAsset, or None if it has no schedule."""
    if not asset.has_schedule:
        return None
    return depreciate(
        asset.cost,
        asset.salvage_value,
        asset.useful_life,
        asset.depreciation_type,
        asset.start_date,
        as_of_date,
    )


def asset_book_value(asset, as_of_date):
    """Scheduled book value; assets without a schedule report their recorded value."""
    schedule = asset_schedule(asset, as_of_date)
    if schedule is None:
        return asset.market_value()
    return schedule.book_value


def daily_depreciation(asset, day):
    """
    Display-only depreciation cost attributed to a single day.

    The difference of accumulated depreciation between `day` and the day
    before, so it follows the asset's method and drops to zero once the asset
    is fully depreciated. Assets cost nothing after they were closed or
    written off.
    """
    if not asset.is_asset:
        return 0.0
    day = to_date(day)
    if asset.end_date is not None and day > asset.end_date:
        return 0.0
    if not asset.is_active and asset.end_date is None:
        return 0.0
    today = asset_schedule(asset, day)
    if today is None:
        return 0.0
    yesterday = asset_schedule(asset, to_date(day) - datetime.timedelta(days=1))
    return max(0.0, today.accumulated_depreciation - yesterday.accumulated_depreciation)


# =============================================================================
# PROJECT AMORTIZATION
# =============================================================================

def project_total_cost(transactions, to_base):
    """Net project cost in the base currency: expenses minus income, split parents skipped."""
    total = 0.0
    for tx in transactions:
        if not tx.counts_in_analytics:
            continue
        amount = to_base(tx.amount, tx.currency_code)
        if tx.type == 'EXPENSE':
            total += amount
        elif tx.type == 'INCOME':
            total -= amount
    return total


def project_duration_days(start_date, end_date):
    """Inclusive day count of a project window, at least 1."""
    return max(1, (to_date(end_date) - to_date(start_date)).days + 1)


def amortization_window(project, today=None):
    """
    (effective_start, end) of the amortization window, or None.

    Future projects are spread from `today` onwards so that a deposit paid now
    shows up as cost now instead of being backdated to the project start.
    """
    if not project.start_date or not project.end_date:
        return None
    today = to_date(today) if today else datetime.date.today()
    start = project.start_date
    effective_start = today if start > today else start
    if effective_start > project.end_date:
        return None
    return effective_start, project.end_date


def amortize(project, transactions, as_of_date, to_base, today=None):
    """Amortized cost of `project` on `as_of_date` (0 outside its window)."""
    window = amortization_window(project, today)
    if window is None:
        return 0.0
    effective_start, end = window
    as_of_date = to_date(as_of_date)
    if as_of_date < effective_start or as_of_date > end:
        return 0.0
    total_cost = project_total_cost(transactions, to_base)
    return max(0.0, total_cost / project_duration_days(effective_start, end))


# =============================================================================
# RECURRING RULES
# =============================================================================

def recurring_daily_cost(rule, to_base):
    """Amount of a rule spread over the days of its period."""
    if not rule.is_active:
        return 0.0
    period_days = FREQUENCY_DAYS.get(rule.frequency)
    if not period_days:
        return 0.0
    interval = rule.interval or 1
    return to_base(rule.amount, rule.currency_code) / (period_days * interval)


def _add_months(day, months, anchor_day=None):
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    # Bills due on the 31st land on the last day of shorter months
    last_day = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, min(anchor_day or day.day, last_day))


def rule_anchor_day(rule):
    """Day of the month a rule bills on, taken from its start date."""
    return (rule.start_date or rule.next_run_date).day


def advance_run_date(run_date, frequency, interval=1, anchor_day=None):
    """
    Next run date after `run_date` for a rule of the given frequency.

    Monthly and yearly rules land on `anchor_day` (default: the day of
    `run_date`), clamped to the month end. Passing the rule's anchor keeps a
    bill due on the 31st from sticking to the 29th after February.
    """
    run_date = to_date(run_date)
    interval = interval or 1
    if frequency == 'DAILY':
        return run_date + datetime.timedelta(days=interval)
    if frequency == 'WEEKLY':
        return run_date + datetime.timedelta(days=7 * interval)
    if frequency == 'MONTHLY':
        return _add_months(run_date, interval, anchor_day)
    if frequency == 'YEARLY':
        return _add_months(run_date, 12 * interval, anchor_day)
    raise ValueError(f"Unknown frequency: {frequency}")


def due_occurrences(rule, today):
    """Every run date of `rule` that is due on or before `today`, oldest first."""
    if not rule.is_active:
        return []
    today = to_date(today)
    anchor_day = rule_anchor_day(rule)
    occurrences = []
    run_date = rule.next_run_date
    while run_date <= today:
        occurrences.append(run_date)
        run_date = advance_run_date(run_date, rule.frequency, rule.interval, anchor_day)
    return occurrences
