"""
Me Inc. Finance - Demo Data Generator

Generates a believable four-month history for demo mode: a salaried persona
with daily spending, savings transfers, a laptop depreciating as a fixed
asset, an index fund, a trip project and a few recurring bills.
"""

import random
from datetime import date, timedelta

from faker import Faker

fake = Faker()


EXPENSE_TEMPLATES = [
    # category, merchants, min, max, average days between purchases
    {"category": "Groceries", "merchants": ["Hema Fresh", "Walmart", "Farmers Market"], "min": 60, "max": 260, "frequency": 5},
    {"category": "Food & Dining", "merchants": ["Noodle House", "Coffee Shop", "Hotpot Place", "Bakery"], "min": 18, "max": 180, "frequency": 2},
    {"category": "Transport", "merchants": ["Metro", "DiDi", "Gas Station"], "min": 4, "max": 120, "frequency": 3},
    {"category": "Entertainment", "merchants": ["Cinema", "Concert Tickets", "Bowling"], "min": 40, "max": 300, "frequency": 12},
    {"category": "Digital & Tech", "merchants": ["App Store", "JD.com"], "min": 6, "max": 400, "frequency": 20},
    {"category": "Medical", "merchants": ["Pharmacy", "Dental Clinic"], "min": 30, "max": 500, "frequency": 30},
]

RECURRING_BILLS = [
    {"name": "Rent", "amount": 4500, "category": "Housing", "frequency": "MONTHLY"},
    {"name": "Phone Plan", "amount": 88, "category": "Digital & Tech", "frequency": "MONTHLY"},
    {"name": "Streaming", "amount": 25, "category": "Entertainment", "frequency": "MONTHLY"},
]


def _data(result, what):
    if not result["success"]:
        raise RuntimeError(f"Demo setup failed while creating {what}: {result['error']}")
    return result["data"]


def generate_demo_data(engine, user_id, today=None, seed=None):
    """
    Fill a freshly registered user with demo history.

    Args:
        engine: FinanceEngine instance
        user_id: the demo user's id
        today: last day of generated history (defaults to today)
        seed: makes the generated history reproducible

    Returns:
        dict: a short description of what was generated
    """
    rng = random.Random(seed)
    if seed is not None:
        Faker.seed(seed)
    today = today or date.today()
    start_date = today - timedelta(days=120)
    print(f"[DEMO] Generating demo data for user {user_id} from {start_date} to {today}")

    categories = {c['name']: c['category_id'] for c in _data(engine.get_categories(user_id), "categories")}

    bank = _data(engine.create_account(user_id, "Bank Card", "BANK", 20000, is_default=True), "bank account")
    wallet = _data(engine.create_account(user_id, "Mobile Wallet", "WALLET", 1500), "wallet")
    credit = _data(engine.create_account(user_id, "Credit Card", "CREDIT", 0), "credit card")
    savings = _data(engine.create_account(user_id, "Savings", "BANK", 50000), "savings account")

    employer = fake.company()
    count = 0

    # Salary on the 10th of every month
    payday = start_date.replace(day=10)
    while payday <= today:
        if payday >= start_date:
            engine.add_transaction(
                user_id, type='INCOME', amount=18000, date=payday, account_id=bank['account_id'],
                category_id=categories.get('Salary'), merchant=employer, note="Monthly salary",
            )
            count += 1
        payday = (payday.replace(day=1) + timedelta(days=32)).replace(day=10)

    # Daily spending
    day = start_date
    while day <= today:
        for template in EXPENSE_TEMPLATES:
            if rng.random() < 1.0 / template['frequency']:
                roll = rng.random()
                account = bank if roll < 0.5 else wallet if roll < 0.8 else credit
                engine.add_transaction(
                    user_id, type='EXPENSE', amount=round(rng.uniform(template['min'], template['max']), 2),
                    date=day, account_id=account['account_id'],
                    category_id=categories.get(template['category']),
                    merchant=rng.choice(template['merchants']),
                )
                count += 1
        day += timedelta(days=1)

    # Monthly savings and wallet top-ups
    transfer_day = start_date + timedelta(days=12)
    while transfer_day <= today:
        engine.add_transaction(
            user_id, type='TRANSFER', amount=rng.randint(2000, 5000), date=transfer_day,
            account_id=bank['account_id'], transfer_to_account_id=savings['account_id'], note="Monthly savings",
        )
        engine.add_transaction(
            user_id, type='TRANSFER', amount=1500, date=transfer_day,
            account_id=bank['account_id'], transfer_to_account_id=wallet['account_id'], note="Wallet top-up",
        )
        count += 2
        transfer_day += timedelta(days=30)

    # Investments: a laptop depreciating over three years and an index fund
    _data(engine.add_investment(
        user_id, name="Work Laptop", type='ASSET', initial_amount=12000, purchase_price=12000,
        salvage_value=1000, useful_life=3, depreciation_type='STRAIGHT_LINE',
        start_date=start_date + timedelta(days=3), account_id=bank['account_id'],
    ), "laptop asset")
    _data(engine.add_investment(
        user_id, name="CSI 300 Index Fund", type='FUND', initial_amount=10000, current_amount=10650,
        start_date=start_date + timedelta(days=20), account_id=savings['account_id'],
    ), "index fund")

    # A trip finishing in the past with its own costs
    trip_start = today - timedelta(days=45)
    trip = _data(engine.create_project(
        user_id, name=f"Trip to {fake.city()}", type='TRIP', status='COMPLETED',
        start_date=trip_start, end_date=trip_start + timedelta(days=6), total_budget=8000,
    ), "trip project")
    for offset, merchant, amount in ((0, "Airline", 2600), (0, "Hotel", 2100), (3, "Local Tours", 650)):
        engine.add_transaction(
            user_id, type='EXPENSE', amount=amount, date=trip_start + timedelta(days=offset),
            account_id=credit['account_id'], project_id=trip['project_id'],
            category_id=categories.get('Transport') if merchant == "Airline" else None, merchant=merchant,
        )
        count += 1

    # Recurring bills catch up from the start of the history
    for bill in RECURRING_BILLS:
        _data(engine.add_recurring_rule(
            user_id, name=bill['name'], amount=bill['amount'], frequency=bill['frequency'],
            start_date=start_date, account_id=bank['account_id'], category_id=categories.get(bill['category']),
        ), f"recurring rule '{bill['name']}'")
    fired = _data(engine.process_due_recurring(user_id, today=today), "recurring transactions")
    count += fired['processed']

    print(f"[DEMO] Generated {count} transactions for user {user_id}")
    return {
        "accounts_created": 4,
        "transactions_generated": count,
        "date_range": f"{start_date} to {today}",
        "persona": f"Young professional at {employer}",
    }
