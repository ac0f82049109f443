import pytest

from api import create_app


@pytest.fixture
def client(engine):
    app = create_app(finance_engine=engine, config={'TESTING': True, 'SECRET_KEY': 'test-secret'})
    return app.test_client()


@pytest.fixture
def logged_in(client):
    response = client.post('/api/register', json={'username': 'carol', 'password': 'password123'})
    assert response.status_code == 201
    return client


def test_api_requires_login(client):
    response = client.get('/api/accounts')
    assert response.status_code == 401
    assert response.get_json()['code'] == 'unauthorized'


def test_register_validation_and_duplicates(client):
    assert client.post('/api/register', json={'username': 'dan', 'password': 'short'}).status_code == 400
    assert client.post('/api/register', json={'username': 'dan', 'password': 'password123'}).status_code == 201
    assert client.post('/api/register', json={'username': 'dan', 'password': 'password123'}).status_code == 409


def test_login_and_session(client, user_id):
    assert client.post('/api/login', json={'username': 'alice', 'password': 'nope'}).status_code == 401

    response = client.post('/api/login', json={'username': 'alice', 'password': 'password123'})
    assert response.status_code == 200

    session = client.get('/api/check_session').get_json()['data']
    assert session['username'] == 'alice'
    assert session['is_demo'] is False

    assert client.post('/api/logout').status_code == 200
    assert client.get('/api/check_session').status_code == 401


def test_account_and_transaction_flow(logged_in):
    account = logged_in.post('/api/accounts', json={'name': 'Bank', 'type': 'BANK', 'initial_balance': 100})
    assert account.status_code == 201
    account_id = account.get_json()['data']['account_id']

    tx = logged_in.post('/api/transactions', json={'type': 'EXPENSE', 'amount': 30, 'account_id': account_id,
                                                    'merchant': 'Cafe'})
    assert tx.status_code == 201

    accounts = logged_in.get('/api/accounts').get_json()['data']
    assert accounts[0]['current_balance'] == 70

    listed = logged_in.get(f'/api/transactions?account_id={account_id}&search=caf').get_json()['data']
    assert len(listed) == 1


def test_error_codes_map_to_status(logged_in):
    assert logged_in.delete('/api/transactions/999').status_code == 404

    account_id = logged_in.post('/api/accounts', json={'name': 'Bank'}).get_json()['data']['account_id']
    tx_id = logged_in.post('/api/transactions', json={'type': 'EXPENSE', 'amount': 90,
                                                       'account_id': account_id}).get_json()['data']['transaction_id']
    response = logged_in.post(f'/api/transactions/{tx_id}/split',
                              json={'splits': [{'amount': 30}, {'amount': 30}, {'amount': 29}]})
    assert response.status_code == 400
    assert response.get_json()['code'] == 'validation'

    response = logged_in.post(f'/api/transactions/{tx_id}/split',
                              json={'splits': [{'amount': 30}, {'amount': 30}, {'amount': 30}]})
    assert response.status_code == 201
    children = logged_in.get(f'/api/transactions/{tx_id}/children').get_json()['data']
    assert len(children) == 3


def test_csv_export(logged_in):
    logged_in.post('/api/accounts', json={'name': 'Bank'})
    logged_in.post('/api/transactions', json={'type': 'INCOME', 'amount': 10})
    response = logged_in.get('/api/transactions/export.csv')
    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    assert 'attachment' in response.headers['Content-Disposition']
    assert response.get_data(as_text=True).startswith('Date,Type,Category')


def test_investment_routes(logged_in):
    account_id = logged_in.post('/api/accounts', json={'name': 'Bank', 'initial_balance': 1000}) \
        .get_json()['data']['account_id']
    assert logged_in.post('/api/investments', json={'name': 'Fund'}).status_code == 400

    created = logged_in.post('/api/investments', json={
        'name': 'Fund', 'type': 'FUND', 'initial_amount': 400, 'account_id': account_id,
    })
    assert created.status_code == 201
    investment_id = created.get_json()['data']['investment_id']

    closed = logged_in.post(f'/api/investments/{investment_id}/close', json={'final_amount': 450})
    assert closed.get_json()['data']['gain'] == 50
    summary = logged_in.get('/api/investments/summary').get_json()['data']
    assert summary['totalValue'] == 0


def test_metrics_and_dashboard(logged_in):
    logged_in.post('/api/accounts', json={'name': 'Bank', 'initial_balance': 500})
    metrics = logged_in.get('/api/metrics?start_date=2024-01-01&end_date=2024-01-31&granularity=weekly')
    assert metrics.status_code == 200
    assert metrics.get_json()['data']['granularity'] == 'WEEKLY'

    dashboard = logged_in.get('/api/dashboard').get_json()['data']
    assert dashboard['totalCash'] == 500

    assert logged_in.get('/api/metrics?granularity=hourly').status_code == 400


def test_demo_login_is_cleaned_up_on_logout(client, engine):
    response = client.post('/api/demo_login')
    assert response.status_code == 200
    username = response.get_json()['data']['username']
    assert username.startswith('demo_')

    session = client.get('/api/check_session').get_json()['data']
    assert session['is_demo'] is True
    assert len(client.get('/api/accounts').get_json()['data']) >= 4

    client.post('/api/logout')
    assert engine.get_user(session['user_id']) is None
