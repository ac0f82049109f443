"""
Me Inc. Finance - Record Types

Typed views over the rows stored in SQLite. The engine reads rows with
sqlite3.Row, turns them into these records for the pure calculation modules
(valuation, timeseries, reports) and turns them back into plain dicts for JSON.

Investments are a tagged union on `type`:
- FinancialInvestment: STOCK, FUND, DEPOSIT, OTHER (funded from a cash account)
- FixedAsset: ASSET (carries a depreciation schedule)
"""

import datetime
from dataclasses import dataclass, asdict
from typing import Optional, Union


# =============================================================================
# ENUM-LIKE CONSTANTS
# =============================================================================

ACCOUNT_TYPES = ('BANK', 'WALLET', 'CASH', 'CREDIT', 'INVESTMENT', 'ASSET', 'OTHER')
NON_CASH_ACCOUNT_TYPES = ('INVESTMENT', 'ASSET')

TRANSACTION_TYPES = ('INCOME', 'EXPENSE', 'TRANSFER')
TRANSACTION_SOURCES = ('MANUAL', 'AI_SCAN', 'RECURRING', 'SPLIT')

INVESTMENT_TYPES = ('STOCK', 'FUND', 'DEPOSIT', 'ASSET', 'OTHER')
INVESTMENT_STATUSES = ('ACTIVE', 'CLOSED', 'WRITTEN_OFF')
DEPRECIATION_METHODS = ('STRAIGHT_LINE', 'DECLINING_BALANCE')

PROJECT_TYPES = ('TRIP', 'JOB', 'SIDE_HUSTLE', 'EVENT', 'WORK', 'OTHER')
PROJECT_STATUSES = ('PLANNING', 'ACTIVE', 'COMPLETED', 'CANCELLED')

FREQUENCIES = ('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY')
CATEGORY_TYPES = ('INCOME', 'EXPENSE')


# =============================================================================
# CONVERSION HELPERS
# =============================================================================

def to_number(value):
    """Stored money (TEXT, Decimal, None) to float; None and '' become 0.0."""
    if value is None or value == '':
        return 0.0
    return float(value)


def to_number_or_none(value):
    if value is None or value == '':
        return None
    return float(value)


def to_date(value):
    """Accept a date, a datetime or an ISO string and return a date (or None)."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


def date_str(value):
    if value is None:
        return None
    return to_date(value).isoformat()


class _Record:
    """Shared JSON conversion for the dataclasses below."""

    def to_dict(self):
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime.date):
                data[key] = value.isoformat()
        return data


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class Account(_Record):
    account_id: int
    user_id: int
    name: str
    type: str
    initial_balance: float = 0.0
    current_balance: float = 0.0
    currency_code: str = 'CNY'
    is_default: bool = False
    color: Optional[str] = None
    icon: Optional[str] = None

    @property
    def is_cash(self):
        return self.type not in NON_CASH_ACCOUNT_TYPES

    @classmethod
    def from_row(cls, row):
        return cls(
            account_id=row['account_id'],
            user_id=row['user_id'],
            name=row['name'],
            type=row['type'],
            initial_balance=to_number(row['initial_balance']),
            current_balance=to_number(row['current_balance']),
            currency_code=row['currency_code'],
            is_default=bool(row['is_default']),
            color=row['color'],
            icon=row['icon'],
        )


@dataclass
class Transaction(_Record):
    transaction_id: int
    amount: float
    currency_code: str
    type: str
    date: datetime.date
    user_id: Optional[int] = None
    account_id: Optional[int] = None
    transfer_to_account_id: Optional[int] = None
    target_amount: Optional[float] = None
    target_currency_code: Optional[str] = None
    fee: Optional[float] = None
    fee_currency_code: Optional[str] = None
    category_id: Optional[int] = None
    project_id: Optional[int] = None
    investment_id: Optional[int] = None
    split_parent_id: Optional[int] = None
    exclude_from_analytics: bool = False
    merchant: Optional[str] = None
    note: Optional[str] = None
    source: str = 'MANUAL'

    @property
    def counts_in_analytics(self):
        return not self.exclude_from_analytics

    @classmethod
    def from_row(cls, row, money=to_number):
        """`money` reads the TEXT amounts; the engine passes a Decimal reader for ledger math."""
        def optional(value):
            return None if value is None or value == '' else money(value)

        return cls(
            transaction_id=row['transaction_id'],
            user_id=row['user_id'],
            amount=money(row['amount']),
            currency_code=row['currency_code'],
            type=row['type'],
            date=to_date(row['date']),
            account_id=row['account_id'],
            transfer_to_account_id=row['transfer_to_account_id'],
            target_amount=optional(row['target_amount']),
            target_currency_code=row['target_currency_code'],
            fee=optional(row['fee']),
            fee_currency_code=row['fee_currency_code'],
            category_id=row['category_id'],
            project_id=row['project_id'],
            investment_id=row['investment_id'],
            split_parent_id=row['split_parent_id'],
            exclude_from_analytics=bool(row['exclude_from_analytics']),
            merchant=row['merchant'],
            note=row['note'],
            source=row['source'],
        )


@dataclass
class Category(_Record):
    category_id: int
    name: str
    type: str
    icon: Optional[str] = None
    is_default: bool = False

    @classmethod
    def from_row(cls, row):
        return cls(
            category_id=row['category_id'],
            name=row['name'],
            type=row['type'],
            icon=row['icon'],
            is_default=bool(row['is_default']),
        )


@dataclass
class Project(_Record):
    project_id: int
    name: str
    type: str
    status: str
    start_date: Optional[datetime.date]
    end_date: Optional[datetime.date] = None
    total_budget: Optional[float] = None
    currency_code: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            project_id=row['project_id'],
            name=row['name'],
            type=row['type'],
            status=row['status'],
            start_date=to_date(row['start_date']),
            end_date=to_date(row['end_date']),
            total_budget=to_number_or_none(row['total_budget']),
            currency_code=row['currency_code'],
            description=row['description'],
        )


@dataclass
class RecurringRule(_Record):
    rule_id: int
    name: str
    amount: float
    currency_code: str
    frequency: str
    next_run_date: datetime.date
    interval: int = 1
    is_active: bool = True
    category_id: Optional[int] = None
    start_date: Optional[datetime.date] = None
    last_run_date: Optional[datetime.date] = None
    account_id: Optional[int] = None
    merchant: Optional[str] = None
    project_id: Optional[int] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            rule_id=row['rule_id'],
            name=row['name'],
            amount=to_number(row['amount']),
            currency_code=row['currency_code'],
            frequency=row['frequency'],
            next_run_date=to_date(row['next_run_date']),
            interval=row['interval'] or 1,
            is_active=bool(row['is_active']),
            category_id=row['category_id'],
            start_date=to_date(row['start_date']),
            last_run_date=to_date(row['last_run_date']),
            account_id=row['account_id'],
            merchant=row['merchant'],
            project_id=row['project_id'],
        )


# --- Investments: shared base plus one variant per instrument family ---

@dataclass
class InvestmentBase(_Record):
    investment_id: int
    name: str
    type: str
    initial_amount: float
    currency_code: str
    start_date: datetime.date
    status: str = 'ACTIVE'
    current_amount: Optional[float] = None
    account_id: Optional[int] = None
    project_id: Optional[int] = None
    end_date: Optional[datetime.date] = None
    note: Optional[str] = None

    @property
    def is_active(self):
        return self.status == 'ACTIVE'

    @property
    def is_asset(self):
        return self.type == 'ASSET'

    def market_value(self):
        return self.current_amount if self.current_amount else self.initial_amount


@dataclass
class FinancialInvestment(InvestmentBase):
    interest_rate: Optional[float] = None


@dataclass
class FixedAsset(InvestmentBase):
    purchase_price: float = 0.0
    salvage_value: float = 0.0
    useful_life: int = 0
    depreciation_type: str = 'STRAIGHT_LINE'
    last_depreciation_date: Optional[datetime.date] = None
    written_off_date: Optional[datetime.date] = None
    written_off_reason: Optional[str] = None

    @property
    def cost(self):
        return self.purchase_price or self.initial_amount

    @property
    def has_schedule(self):
        return bool(self.purchase_price) and bool(self.useful_life) and self.start_date is not None

    def carrying_amount(self):
        """Value currently held on the ledger (cost less realized depreciation)."""
        if self.current_amount is not None:
            return self.current_amount
        return self.cost


Investment = Union[FinancialInvestment, FixedAsset]


def investment_from_row(row):
    """Build the right investment variant for a stored row."""
    keys = row.keys()
    base = dict(
        investment_id=row['investment_id'],
        name=row['name'],
        type=row['type'],
        initial_amount=to_number(row['initial_amount']),
        currency_code=row['currency_code'],
        start_date=to_date(row['start_date']),
        status=row['status'],
        current_amount=to_number_or_none(row['current_amount']),
        account_id=row['account_id'],
        project_id=row['project_id'],
        end_date=to_date(row['end_date']),
        note=row['note'] if 'note' in keys else None,
    )
    if row['type'] == 'ASSET':
        return FixedAsset(
            purchase_price=to_number(row['purchase_price']),
            salvage_value=to_number(row['salvage_value']),
            useful_life=row['useful_life'] or 0,
            depreciation_type=row['depreciation_type'] or 'STRAIGHT_LINE',
            last_depreciation_date=to_date(row['last_depreciation_date']),
            written_off_date=to_date(row['written_off_date']),
            written_off_reason=row['written_off_reason'],
            **base
        )
    return FinancialInvestment(interest_rate=to_number_or_none(row['interest_rate']), **base)
