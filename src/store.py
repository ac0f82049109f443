"""
Me Inc. Finance - Client Store

A local mirror of the server collections for UI code. Every mutation is
tracked as a PendingChange:

    PENDING    local optimistic change applied, server call in flight
    CONFIRMED  server accepted; affected collections were refetched
    FAILED     server rejected; local state restored to the snapshot taken
               before the optimistic change, error kept on the change

The backend is anything exposing the engine's actions without the user id
argument; BoundActions adapts a FinanceEngine for one logged-in user.
"""

import copy
import functools
import itertools


PENDING = 'PENDING'
CONFIRMED = 'CONFIRMED'
FAILED = 'FAILED'

# collection name -> backend getter
COLLECTIONS = {
    'accounts': 'get_accounts',
    'transactions': 'get_transactions',
    'categories': 'get_categories',
    'recurring_rules': 'get_recurring_rules',
    'investments': 'get_investments',
    'projects': 'get_projects',
    'settings': 'get_settings',
}

# backend action -> collections refetched after it is confirmed
AFFECTS = {
    'update_settings': ('settings', 'accounts'),
    'add_category': ('categories',),
    'update_category': ('categories',),
    'delete_category': ('categories', 'transactions', 'recurring_rules'),
    'create_account': ('accounts', 'settings'),
    'update_account': ('accounts', 'settings'),
    'delete_account': ('accounts', 'settings'),
    'sync_account_balances': ('accounts',),
    'add_transaction': ('transactions', 'accounts'),
    'update_transaction': ('transactions', 'accounts'),
    'delete_transaction': ('transactions', 'accounts'),
    'split_transaction': ('transactions',),
    'unsplit_transaction': ('transactions',),
    'import_recognized_transactions': ('transactions', 'accounts'),
    'add_investment': ('investments', 'transactions', 'accounts', 'categories'),
    'update_investment': ('investments', 'transactions', 'accounts'),
    'delete_investment': ('investments', 'transactions', 'accounts'),
    'record_depreciation': ('investments', 'transactions', 'accounts', 'categories'),
    'close_investment': ('investments', 'transactions', 'accounts', 'categories'),
    'write_off_investment': ('investments', 'transactions', 'accounts', 'categories'),
    'create_project': ('projects',),
    'update_project': ('projects',),
    'delete_project': ('projects', 'transactions', 'investments', 'recurring_rules'),
    'add_recurring_rule': ('recurring_rules',),
    'update_recurring_rule': ('recurring_rules',),
    'delete_recurring_rule': ('recurring_rules',),
    'process_due_recurring': ('recurring_rules', 'transactions', 'accounts'),
}


class BoundActions:
    """Expose a FinanceEngine's actions for one user, with the user id pre-filled."""

    def __init__(self, engine, user_id):
        self.engine = engine
        self.user_id = user_id

    def __getattr__(self, name):
        method = getattr(self.engine, name)
        return functools.partial(method, self.user_id)


class PendingChange:
    _ids = itertools.count(1)

    def __init__(self, action, args, kwargs, collections):
        self.change_id = next(self._ids)
        self.action = action
        self.args = args
        self.kwargs = kwargs
        self.collections = collections
        self.status = PENDING
        self.error = None
        self.result = None

    def __repr__(self):
        return f"<PendingChange {self.change_id} {self.action} {self.status}>"


class ClientStore:
    def __init__(self, backend):
        self.backend = backend
        self.state = {name: ([] if name != 'settings' else None) for name in COLLECTIONS}
        self.changes = []
        self.errors = {}

    # --- reads ---

    def __getitem__(self, name):
        return self.state[name]

    def refresh(self, *names):
        """Refetch the given collections (all when none given). Returns True if every fetch succeeded."""
        all_ok = True
        for name in names or tuple(COLLECTIONS):
            result = getattr(self.backend, COLLECTIONS[name])()
            if result['success']:
                self.state[name] = result['data']
                self.errors.pop(name, None)
            else:
                self.errors[name] = result['error']
                all_ok = False
        return all_ok

    @property
    def pending(self):
        return [c for c in self.changes if c.status == PENDING]

    # --- writes ---

    def mutate(self, action, *args, optimistic=None, **kwargs):
        """
        Run one backend action as a tracked change.

        `optimistic(state)` may edit the local state before the call; on
        failure the whole state is restored from the snapshot taken first.
        Returns the PendingChange in its final status.
        """
        change = PendingChange(action, args, kwargs, AFFECTS.get(action, tuple(COLLECTIONS)))
        self.changes.append(change)
        snapshot = copy.deepcopy(self.state)
        if optimistic is not None:
            optimistic(self.state)

        result = getattr(self.backend, action)(*args, **kwargs)
        change.result = result
        if result['success']:
            change.status = CONFIRMED
            self.refresh(*change.collections)
        else:
            change.status = FAILED
            change.error = result['error']
            self.state = snapshot
            print(f"[STORE] {action} failed: {result['error']}")
        return change

    # --- common mutations with a local preview ---

    def add_transaction(self, **data):
        def preview(state):
            state['transactions'].insert(0, dict(data, transaction_id=None, pending=True))
        return self.mutate('add_transaction', optimistic=preview, **data)

    def delete_transaction(self, transaction_id):
        def preview(state):
            state['transactions'] = [
                t for t in state['transactions']
                if t['transaction_id'] != transaction_id and t.get('split_parent_id') != transaction_id
            ]
        return self.mutate('delete_transaction', transaction_id, optimistic=preview)

    def update_account(self, account_id, **changes):
        def preview(state):
            for account in state['accounts']:
                if account['account_id'] == account_id:
                    account.update(changes)
        return self.mutate('update_account', account_id, optimistic=preview, **changes)

    def delete_account(self, account_id):
        def preview(state):
            state['accounts'] = [a for a in state['accounts'] if a['account_id'] != account_id]
        return self.mutate('delete_account', account_id, optimistic=preview)
