"""
Me Inc. Finance - Flask REST API

JSON API over FinanceEngine with session-cookie authentication.

Authentication:
- Registration, login, demo login, logout (Flask-Login sessions)

Ledger & Holdings:
- Accounts, categories, transactions (splits, CSV export, recognized imports)
- Investments and fixed assets (depreciation, close, write-off)
- Projects and recurring rules

Analytics:
- Dashboard summary, capital / burn-rate metrics series, project stats

Every engine result is answered as JSON; failed results map their error code
to an HTTP status (unauthorized 401, not_found 404, validation 400,
internal 500).
"""

import datetime
import os
import uuid
from decimal import Decimal

from dotenv import load_dotenv
from flask import Blueprint, Flask, Response, current_app, jsonify, request, session
from flask.json.provider import DefaultJSONProvider
from flask_cors import CORS
from flask_login import LoginManager, UserMixin, current_user, login_required, login_user, logout_user

from engine import FinanceEngine
from setup_sqlite import create_database

load_dotenv()


STATUS_CODES = {
    'unauthorized': 401,
    'not_found': 404,
    'validation': 400,
    'internal': 500,
}


class CustomJSONProvider(DefaultJSONProvider):
    """Serialize Decimal as float and dates as ISO strings."""

    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime.date, datetime.datetime)):
            return obj.isoformat()
        return super().default(obj)


# --- FLASK-LOGIN SETUP ---
login_manager = LoginManager()


class User(UserMixin):
    def __init__(self, id, username):
        self.id = id
        self.username = username


@login_manager.user_loader
def load_user(user_id):
    user = engine().get_user(int(user_id))
    if user:
        return User(id=str(user['user_id']), username=user['username'])
    return None


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(success=False, error="Authorization required. Please log in.", code='unauthorized'), 401


api = Blueprint('api', __name__, url_prefix='/api')


def engine():
    return current_app.extensions['meinc_engine']


def uid():
    return int(current_user.id)


def payload():
    return request.get_json(silent=True) or {}


def pick(data, *fields):
    """Only the given keys of a request body, so unknown keys never reach the engine."""
    return {field: data[field] for field in fields if field in data}


def respond(result, created=False):
    """Turn an engine result into a JSON response with the matching status code."""
    if result['success']:
        return jsonify(result), 201 if created else 200
    return jsonify(result), STATUS_CODES.get(result.get('code'), 500)


TRANSACTION_FIELDS = (
    'amount', 'currency_code', 'type', 'date', 'account_id', 'transfer_to_account_id',
    'target_amount', 'target_currency_code', 'fee', 'fee_currency_code', 'category_id',
    'project_id', 'investment_id', 'exclude_from_analytics', 'merchant', 'note',
)
ACCOUNT_FIELDS = ('name', 'type', 'initial_balance', 'currency_code', 'color', 'icon', 'is_default')
INVESTMENT_FIELDS = (
    'name', 'type', 'initial_amount', 'start_date', 'currency_code', 'account_id', 'project_id',
    'interest_rate', 'note', 'current_amount', 'purchase_price', 'salvage_value', 'useful_life',
    'depreciation_type',
)
PROJECT_FIELDS = ('name', 'type', 'status', 'start_date', 'end_date', 'total_budget', 'currency_code', 'description')
RULE_FIELDS = (
    'name', 'amount', 'frequency', 'interval', 'start_date', 'next_run_date', 'currency_code',
    'category_id', 'account_id', 'merchant', 'project_id', 'is_active',
)
SETTINGS_FIELDS = ('base_currency', 'exchange_rate_api_key', 'default_account_id', 'language')


# --- AUTHENTICATION API ROUTES ---

@api.route('/register', methods=['POST'])
def register_user_api():
    data = payload()
    username = data.get('username')
    password = data.get('password')
    if not username or not password or len(password) < 8:
        return jsonify(success=False, error="Username and a password of at least 8 characters are required.",
                       code='validation'), 400

    result = engine().register_user(username, password)
    if result['success']:
        login_user(User(id=str(result['data']['user_id']), username=username))
        return jsonify(result), 201
    status = 409 if "exists" in result['error'] else STATUS_CODES.get(result['code'], 500)
    return jsonify(result), status


@api.route('/login', methods=['POST'])
def login_user_api():
    data = payload()
    result = engine().login_user(data.get('username'), data.get('password'))
    if not result['success']:
        return respond(result)

    user_id = result['data']['user_id']
    login_user(User(id=str(user_id), username=result['data']['username']))
    # Bills that fell due while the user was away land in the ledger on login
    fired = engine().process_due_recurring(user_id)
    if not fired['success']:
        print(f"[API] Recurring processing failed for user {user_id}: {fired['error']}")
    return respond(result)


def _remove_demo_user():
    demo_user_id = session.pop('demo_user_id', None)
    session.pop('is_demo', None)
    if demo_user_id:
        result = engine().delete_user(demo_user_id)
        if result['success']:
            print(f"[DEMO] Cleaned up demo user {demo_user_id}")
        else:
            print(f"[DEMO] Error cleaning up demo user {demo_user_id}: {result['error']}")


@api.route('/demo_login', methods=['POST'])
def demo_login():
    """Create a throwaway demo user with generated history for this session."""
    from demo_data import generate_demo_data

    _remove_demo_user()

    username = f"demo_{uuid.uuid4().hex[:8]}"
    result = engine().register_user(username, uuid.uuid4().hex)
    if not result['success']:
        return jsonify(success=False, error="Failed to create demo user.", code='internal'), 500
    user_id = result['data']['user_id']
    session['demo_user_id'] = user_id
    session['is_demo'] = True

    try:
        demo_info = generate_demo_data(engine(), user_id)
    except RuntimeError as e:
        print(f"[API] {e}")
        return jsonify(success=False, error="Failed to generate demo data.", code='internal'), 500

    login_user(User(id=str(user_id), username=username))
    return jsonify(success=True, data={"username": username, "demo_info": demo_info})


@api.route('/logout', methods=['POST'])
@login_required
def logout():
    if session.get('is_demo'):
        _remove_demo_user()
    logout_user()
    return jsonify(success=True, data=None)


@api.route('/check_session', methods=['GET'])
@login_required
def check_session():
    return jsonify(success=True, data={
        "logged_in": True,
        "user_id": uid(),
        "username": current_user.username,
        "is_demo": session.get('is_demo', False),
    })


# --- SETTINGS & CATEGORIES ---

@api.route('/settings', methods=['GET', 'PUT'])
@login_required
def settings_api():
    if request.method == 'GET':
        return respond(engine().get_settings(uid()))
    return respond(engine().update_settings(uid(), **pick(payload(), *SETTINGS_FIELDS)))


@api.route('/categories', methods=['GET', 'POST'])
@login_required
def categories_api():
    if request.method == 'GET':
        return respond(engine().get_categories(uid()))
    return respond(engine().add_category(uid(), **pick(payload(), 'name', 'type', 'icon')), created=True)


@api.route('/categories/<int:category_id>', methods=['PUT', 'DELETE'])
@login_required
def category_api(category_id):
    if request.method == 'DELETE':
        return respond(engine().delete_category(uid(), category_id))
    return respond(engine().update_category(uid(), category_id, **pick(payload(), 'name', 'type', 'icon')))


# --- ACCOUNTS ---

@api.route('/accounts', methods=['GET', 'POST'])
@login_required
def accounts_api():
    if request.method == 'GET':
        return respond(engine().get_accounts(uid()))
    return respond(engine().create_account(uid(), **pick(payload(), *ACCOUNT_FIELDS)), created=True)


@api.route('/accounts/<int:account_id>', methods=['PUT', 'DELETE'])
@login_required
def account_api(account_id):
    if request.method == 'DELETE':
        return respond(engine().delete_account(uid(), account_id))
    return respond(engine().update_account(uid(), account_id, **pick(payload(), *ACCOUNT_FIELDS)))


@api.route('/accounts/<int:account_id>/recalculate', methods=['POST'])
@login_required
def recalculate_account_api(account_id):
    return respond(engine().recalculate_account_balance(uid(), account_id))


@api.route('/sync_balances', methods=['POST'])
@login_required
def sync_balances_api():
    return respond(engine().sync_account_balances(uid()))


# --- TRANSACTIONS ---

@api.route('/transactions', methods=['GET', 'POST'])
@login_required
def transactions_api():
    if request.method == 'POST':
        return respond(engine().add_transaction(uid(), **pick(payload(), *TRANSACTION_FIELDS)), created=True)

    args = request.args
    filters = {}
    for key in ('account_id', 'category_id', 'project_id', 'investment_id', 'limit', 'offset'):
        if args.get(key):
            filters[key] = args.get(key, type=int)
    for key in ('type', 'start_date', 'end_date', 'search'):
        if args.get(key):
            filters[key] = args[key]
    return respond(engine().get_transactions(uid(), **filters))


@api.route('/transactions/<int:transaction_id>', methods=['PUT', 'DELETE'])
@login_required
def transaction_api(transaction_id):
    if request.method == 'DELETE':
        return respond(engine().delete_transaction(uid(), transaction_id))
    return respond(engine().update_transaction(uid(), transaction_id, **pick(payload(), *TRANSACTION_FIELDS)))


@api.route('/transactions/<int:transaction_id>/split', methods=['POST'])
@login_required
def split_transaction_api(transaction_id):
    return respond(engine().split_transaction(uid(), transaction_id, payload().get('splits') or []), created=True)


@api.route('/transactions/<int:transaction_id>/unsplit', methods=['POST'])
@login_required
def unsplit_transaction_api(transaction_id):
    return respond(engine().unsplit_transaction(uid(), transaction_id))


@api.route('/transactions/<int:transaction_id>/children', methods=['GET'])
@login_required
def split_children_api(transaction_id):
    return respond(engine().get_split_children(uid(), transaction_id))


@api.route('/transactions/import', methods=['POST'])
@login_required
def import_transactions_api():
    return respond(engine().import_recognized_transactions(uid(), payload().get('transactions') or []), created=True)


@api.route('/transactions/export.csv', methods=['GET'])
@login_required
def export_transactions_api():
    result = engine().export_transactions_csv(uid())
    if not result['success']:
        return respond(result)
    filename = f"transactions_{datetime.date.today().isoformat()}.csv"
    return Response(
        result['data'],
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'},
    )


# --- INVESTMENTS ---

@api.route('/investments', methods=['GET', 'POST'])
@login_required
def investments_api():
    if request.method == 'GET':
        return respond(engine().get_investments(uid(), status=request.args.get('status')))
    data = payload()
    if not data.get('name') or not data.get('type') or data.get('initial_amount') in (None, ''):
        return jsonify(success=False, error="Name, type and initial amount are required.", code='validation'), 400
    return respond(engine().add_investment(uid(), **pick(data, *INVESTMENT_FIELDS)), created=True)


@api.route('/investments/summary', methods=['GET'])
@login_required
def investment_summary_api():
    return respond(engine().get_investment_summary(uid()))


@api.route('/investments/<int:investment_id>', methods=['PUT', 'DELETE'])
@login_required
def investment_api(investment_id):
    if request.method == 'DELETE':
        return respond(engine().delete_investment(uid(), investment_id))
    return respond(engine().update_investment(uid(), investment_id, **pick(payload(), *INVESTMENT_FIELDS)))


@api.route('/investments/<int:investment_id>/depreciation', methods=['POST'])
@login_required
def record_depreciation_api(investment_id):
    data = payload()
    return respond(engine().record_depreciation(uid(), investment_id, data.get('amount'), data.get('date')))


@api.route('/investments/<int:investment_id>/close', methods=['POST'])
@login_required
def close_investment_api(investment_id):
    data = payload()
    return respond(engine().close_investment(
        uid(), investment_id, data.get('final_amount'),
        account_id=data.get('account_id'), end_date=data.get('end_date'),
    ))


@api.route('/investments/<int:investment_id>/write_off', methods=['POST'])
@login_required
def write_off_investment_api(investment_id):
    data = payload()
    return respond(engine().write_off_investment(uid(), investment_id, reason=data.get('reason'), date=data.get('date')))


# --- PROJECTS ---

@api.route('/projects', methods=['GET', 'POST'])
@login_required
def projects_api():
    if request.method == 'GET':
        return respond(engine().get_projects(uid()))
    data = payload()
    if not data.get('name'):
        return jsonify(success=False, error="Project name is required.", code='validation'), 400
    return respond(engine().create_project(uid(), **pick(data, *PROJECT_FIELDS)), created=True)


@api.route('/projects/<int:project_id>', methods=['GET', 'PUT', 'DELETE'])
@login_required
def project_api(project_id):
    if request.method == 'GET':
        return respond(engine().get_project(uid(), project_id))
    if request.method == 'DELETE':
        return respond(engine().delete_project(uid(), project_id))
    return respond(engine().update_project(uid(), project_id, **pick(payload(), *PROJECT_FIELDS)))


@api.route('/projects/<int:project_id>/stats', methods=['GET'])
@login_required
def project_stats_api(project_id):
    return respond(engine().get_project_stats(uid(), project_id))


# --- RECURRING RULES ---

@api.route('/recurring', methods=['GET', 'POST'])
@login_required
def recurring_api():
    if request.method == 'GET':
        return respond(engine().get_recurring_rules(uid()))
    data = payload()
    if not data.get('name') or data.get('amount') in (None, ''):
        return jsonify(success=False, error="Name and amount are required.", code='validation'), 400
    return respond(engine().add_recurring_rule(uid(), **pick(data, *RULE_FIELDS)), created=True)


@api.route('/recurring/<int:rule_id>', methods=['PUT', 'DELETE'])
@login_required
def recurring_rule_api(rule_id):
    if request.method == 'DELETE':
        return respond(engine().delete_recurring_rule(uid(), rule_id))
    return respond(engine().update_recurring_rule(uid(), rule_id, **pick(payload(), *RULE_FIELDS)))


@api.route('/recurring/process', methods=['POST'])
@login_required
def process_recurring_api():
    return respond(engine().process_due_recurring(uid(), today=payload().get('today')))


# --- ANALYTICS ---

@api.route('/dashboard', methods=['GET'])
@login_required
def dashboard_api():
    return respond(engine().get_dashboard_summary(uid()))


@api.route('/metrics', methods=['GET'])
@login_required
def metrics_api():
    args = request.args
    return respond(engine().get_metrics(
        uid(),
        start_date=args.get('start_date'),
        end_date=args.get('end_date'),
        granularity=args.get('granularity', 'DAILY').upper(),
    ))


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(db_path=None, finance_engine=None, config=None):
    """
    Build the Flask application.

    The database is created on first start. Tests pass their own database
    path (or a ready engine) and config overrides.
    """
    app = Flask(__name__)
    app.json = CustomJSONProvider(app)

    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['SESSION_COOKIE_SAMESITE'] = "Lax"
    if config:
        app.config.update(config)

    # Enable CORS for the web interface
    CORS(app, supports_credentials=True)

    if finance_engine is None:
        finance_engine = FinanceEngine(db_path)
    if not finance_engine.db_path.exists():
        print("[API] Database not found - creating fresh database...")
        create_database(finance_engine.db_path)
    app.extensions['meinc_engine'] = finance_engine

    login_manager.init_app(app)
    app.register_blueprint(api)

    @app.errorhandler(404)
    def not_found(e):
        return jsonify(success=False, error="Not found", code='not_found'), 404

    return app


if __name__ == '__main__':
    create_app().run(debug=True, port=int(os.getenv('PORT', 5001)), use_reloader=False)
