"""
Me Inc. Finance - Report Summarizer

Aggregations over already-loaded records, all converted to the user's base
currency through an injected `to_base(amount, currency)`:

- dashboard_summary: balances, this-month / all-time flows, category split
- investment_summary: value vs cost of the active portfolio
- project_stats: totals, budget use, amortized cost and ROI of one project
- export_transactions_csv: the ledger as CSV text
"""

import datetime

from valuation import asset_book_value, asset_schedule, project_duration_days


# Internal money movements that are not spending or earning
NON_OPERATING_CATEGORIES = ('Investment', 'Depreciation')

CSV_HEADERS = ['Date', 'Type', 'Category', 'Amount', 'Currency', 'Merchant', 'Note', 'Source']


def month_bounds(today):
    """First and last day of the month containing `today`."""
    first = today.replace(day=1)
    if first.month == 12:
        next_first = first.replace(year=first.year + 1, month=1)
    else:
        next_first = first.replace(month=first.month + 1)
    return first, next_first - datetime.timedelta(days=1)


def dashboard_summary(accounts, transactions, investments, categories, to_base, base_currency, today=None):
    today = today or datetime.date.today()
    month_start, month_end = month_bounds(today)
    category_names = {c.category_id: c.name for c in categories}

    total_cash = sum(to_base(a.current_balance, a.currency_code) for a in accounts if a.is_cash)

    active = [inv for inv in investments if inv.is_active]
    total_financial = sum(
        to_base(inv.market_value(), inv.currency_code) for inv in active if not inv.is_asset
    )

    total_fixed = 0.0
    asset_details = []
    for asset in (inv for inv in active if inv.is_asset):
        value = to_base(asset_book_value(asset, today), asset.currency_code)
        schedule = asset_schedule(asset, today)
        daily = to_base(schedule.daily_rate, asset.currency_code) if schedule else 0.0
        total_fixed += value
        asset_details.append({
            'investment_id': asset.investment_id,
            'name': asset.name,
            'startDate': asset.start_date.isoformat() if asset.start_date else None,
            'currentValue': value,
            'dailyDepreciation': daily,
            'originalCurrency': asset.currency_code,
        })
    asset_details.sort(key=lambda d: d['currentValue'], reverse=True)

    month_income = month_expense = 0.0
    all_income = all_expense = 0.0
    expense_by_category = {}
    for tx in transactions:
        if not tx.counts_in_analytics:
            continue
        category = category_names.get(tx.category_id)
        if category in NON_OPERATING_CATEGORIES:
            continue
        in_month = month_start <= tx.date <= month_end
        amount = to_base(tx.amount, tx.currency_code)
        if tx.type == 'INCOME':
            all_income += amount
            if in_month:
                month_income += amount
        elif tx.type == 'EXPENSE':
            all_expense += amount
            if in_month:
                month_expense += amount
                name = category or 'Other'
                expense_by_category[name] = expense_by_category.get(name, 0.0) + amount

    return {
        'baseCurrency': base_currency,
        'totalCash': total_cash,
        'totalFinancialInvested': total_financial,
        'totalFixedAssets': total_fixed,
        'totalNetWorth': total_cash + total_financial + total_fixed,
        'thisMonthIncome': month_income,
        'thisMonthExpenses': month_expense,
        'thisMonthNet': month_income - month_expense,
        'allTimeIncome': all_income,
        'allTimeExpenses': all_expense,
        'allTimeNet': all_income - all_expense,
        'assetDetails': asset_details[:5],
        'expenseByCategory': expense_by_category,
    }


def investment_summary(investments, to_base, base_currency, today=None):
    """Value against cost of every active investment."""
    today = today or datetime.date.today()
    total_value = 0.0
    total_cost = 0.0
    for inv in investments:
        if not inv.is_active:
            continue
        if inv.is_asset:
            value = asset_book_value(inv, today)
            cost = inv.cost
        else:
            value = inv.market_value()
            cost = inv.initial_amount
        total_value += to_base(value, inv.currency_code)
        total_cost += to_base(cost, inv.currency_code)
    return {
        'baseCurrency': base_currency,
        'totalValue': total_value,
        'totalCost': total_cost,
        'totalProfit': total_value - total_cost,
    }


def project_stats(project, transactions, investments, to_base, base_currency):
    """
    Figures for a project page.

    Depreciation counts what linked assets have already lost on the ledger
    (cost minus carrying amount). Amortized daily cost applies to TRIP and
    EVENT projects with an end date, ROI to JOB and SIDE_HUSTLE projects.
    """
    totals = {'INCOME': 0.0, 'EXPENSE': 0.0, 'TRANSFER': 0.0}
    for tx in transactions:
        if not tx.counts_in_analytics:
            continue
        totals[tx.type] += to_base(tx.amount, tx.currency_code)
    income = totals['INCOME']
    expenses = totals['EXPENSE']

    depreciation = 0.0
    for inv in investments:
        if inv.is_asset and inv.purchase_price and inv.current_amount is not None:
            depreciation += to_base(inv.purchase_price - inv.current_amount, inv.currency_code)

    project_days = None
    amortized_daily_cost = None
    if project.type in ('TRIP', 'EVENT') and project.start_date and project.end_date:
        project_days = project_duration_days(project.start_date, project.end_date)
        amortized_daily_cost = expenses / project_days

    roi = None
    if project.type in ('SIDE_HUSTLE', 'JOB'):
        total_cost = expenses + depreciation
        if total_cost > 0:
            roi = (income - total_cost) / total_cost * 100

    budget = project.total_budget
    return {
        'projectId': project.project_id,
        'projectType': project.type,
        'baseCurrency': base_currency,
        'totalExpenses': expenses,
        'totalIncome': income,
        'totalTransfers': totals['TRANSFER'],
        'totalDepreciation': depreciation,
        'netResult': income - expenses - depreciation,
        'transactionCount': len(transactions),
        'assetCount': len(investments),
        'budget': budget,
        'budgetUtilization': expenses / budget * 100 if budget else None,
        'budgetRemaining': budget - expenses if budget else None,
        'projectDays': project_days,
        'amortizedDailyCost': amortized_daily_cost,
        'roi': roi,
    }


def _quoted(text):
    return '"' + (text or '').replace('"', '""') + '"'


def export_transactions_csv(transactions, categories):
    """Ledger as CSV, newest first, text columns always quoted."""
    category_names = {c.category_id: c.name for c in categories}
    lines = [','.join(CSV_HEADERS)]
    for tx in sorted(transactions, key=lambda t: (t.date, t.transaction_id), reverse=True):
        lines.append(','.join([
            tx.date.isoformat(),
            tx.type,
            _quoted(category_names.get(tx.category_id) or 'Unknown'),
            f"{tx.amount:.2f}",
            tx.currency_code,
            _quoted(tx.merchant),
            _quoted(tx.note),
            tx.source,
        ]))
    return '\n'.join(lines)
