from decimal import Decimal

from flask import Blueprint, Flask, current_app, jsonify, request
from flask.json.provider import DefaultJSONProvider
from flask_login import LoginManager, current_user, login_required, login_user, logout_user

from balances import BalanceEngine
from config import Config
from errors import Conflict, Forbidden, InvalidInput, LedgerError, NotFound, StoreFailure
from ledger import Ledger
from models import User, db

login_manager = LoginManager()

STATUS_CODES = {
    NotFound: 404,
    Forbidden: 403,
    InvalidInput: 400,
    Conflict: 409,
    StoreFailure: 500,
}


class LedgerJSONProvider(DefaultJSONProvider):
    """Reads JSON numbers as ``Decimal`` so amounts never pass through float."""

    def loads(self, s, **kwargs):
        kwargs.setdefault('parse_float', Decimal)
        return super().loads(s, **kwargs)


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'unauthorized', 'message': 'User not authenticated'}), 401


def status_for(error):
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def _payload():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInput('Malformed request body')
    return data


def _amount(data, required=True):
    # JSON integers arrive as int, fractional numbers as Decimal.
    value = data.get('amount')
    if value is None and required:
        raise InvalidInput('Amount is required')
    return value


def create_api(ledger):
    api = Blueprint('api', __name__, url_prefix='/api')

    @api.errorhandler(LedgerError)
    def handle_ledger_error(error):
        status = status_for(error)
        if status >= 500:
            current_app.logger.error('%s %s failed: %s', request.method, request.path, error.message)
        else:
            current_app.logger.warning('%s %s rejected: %s', request.method, request.path, error.message)
        return jsonify({'error': error.kind, 'message': error.message}), status

    @api.route('/healthcheck')
    def healthcheck():
        return jsonify({'status': 'ok'})

    # Users

    @api.route('/users', methods=['POST'])
    def register():
        data = _payload()
        user = ledger.register_user(data.get('username'), data.get('password'))
        return jsonify(user.to_dict()), 201

    @api.route('/users', methods=['PUT'])
    @login_required
    def change_password():
        data = _payload()
        ledger.change_password(current_user, data.get('password'))
        return '', 204

    @api.route('/login', methods=['POST'])
    def login():
        data = _payload()
        try:
            user = ledger.authenticate(data.get('username'), data.get('password'))
        except (NotFound, Forbidden):
            current_app.logger.info('failed login for %r', data.get('username'))
            return jsonify({'error': 'unauthorized', 'message': 'Invalid credentials'}), 401
        login_user(user)
        return '', 204

    @api.route('/logout', methods=['POST'])
    @login_required
    def logout():
        logout_user()
        return '', 204

    # Groups

    @api.route('/groups', methods=['GET'])
    @login_required
    def list_groups():
        return jsonify([g.to_dict() for g in ledger.list_groups(current_user)])

    @api.route('/groups', methods=['POST'])
    @login_required
    def create_group():
        data = _payload()
        group = ledger.create_group(current_user, data.get('name'))
        return jsonify(group.to_dict()), 201

    @api.route('/groups/<int:group_id>', methods=['PUT'])
    @login_required
    def rename_group(group_id):
        data = _payload()
        group = ledger.rename_group(current_user, group_id, data.get('name'))
        return jsonify(group.to_dict())

    @api.route('/groups/<int:group_id>', methods=['DELETE'])
    @login_required
    def delete_group(group_id):
        ledger.delete_group(current_user, group_id)
        return '', 204

    @api.route('/groups/<int:group_id>/users', methods=['GET'])
    @login_required
    def group_users(group_id):
        return jsonify([u.to_dict() for u in ledger.group_members(current_user, group_id)])

    @api.route('/groups/<int:group_id>/users', methods=['POST'])
    @login_required
    def add_member(group_id):
        data = _payload()
        ledger.add_member(current_user, group_id, data.get('username'))
        return '', 204

    @api.route('/groups/<int:group_id>/users', methods=['DELETE'])
    @login_required
    def remove_member(group_id):
        data = _payload()
        user_id = data.get('id')
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            raise InvalidInput('User id is required')
        ledger.remove_member(current_user, group_id, user_id)
        return '', 204

    # Transactions

    @api.route('/groups/<int:group_id>/expenses', methods=['POST'])
    @login_required
    def create_expense(group_id):
        data = _payload()
        expense = ledger.create_expense(current_user, group_id, data.get('description'),
                                        _amount(data), paid_by=data.get('paid_by') or None)
        return jsonify(expense.to_dict()), 201

    @api.route('/groups/<int:group_id>/expenses/<int:transaction_id>', methods=['PUT'])
    @login_required
    def edit_expense(group_id, transaction_id):
        data = _payload()
        expense = ledger.edit_expense(current_user, group_id, transaction_id,
                                      description=data.get('description'),
                                      amount=_amount(data, required=False),
                                      paid_by=data.get('paid_by') or None)
        return jsonify(expense.to_dict())

    @api.route('/groups/<int:group_id>/payments', methods=['POST'])
    @login_required
    def create_payment(group_id):
        data = _payload()
        payment = ledger.create_payment(current_user, group_id, data.get('paid_by'),
                                        data.get('paid_to'), _amount(data))
        return jsonify(payment.to_dict()), 201

    @api.route('/groups/<int:group_id>/payments/<int:transaction_id>', methods=['PUT'])
    @login_required
    def edit_payment(group_id, transaction_id):
        data = _payload()
        payment = ledger.edit_payment(current_user, group_id, transaction_id,
                                      paid_by=data.get('paid_by'), paid_to=data.get('paid_to'),
                                      amount=_amount(data, required=False))
        return jsonify(payment.to_dict())

    @api.route('/groups/<int:group_id>/transactions', methods=['GET'])
    @login_required
    def group_transactions(group_id):
        return jsonify([tx.to_dict() for tx in ledger.group_transactions(current_user, group_id)])

    @api.route('/groups/<int:group_id>/transactions/<int:transaction_id>', methods=['DELETE'])
    @login_required
    def delete_transaction(group_id, transaction_id):
        ledger.delete_transaction(current_user, group_id, transaction_id)
        return '', 204

    # Balances

    @api.route('/groups/<int:group_id>/balances', methods=['GET'])
    @login_required
    def group_balances(group_id):
        balances = ledger.group_balances(current_user, group_id)
        return jsonify([{'user': b.other.to_dict(), 'amount': str(b.amount)} for b in balances])

    @api.route('/groups/<int:group_id>/balances/<int:user_id>', methods=['GET'])
    @login_required
    def pairwise_balance(group_id, user_id):
        other, amount = ledger.pairwise_balance(current_user, group_id, user_id)
        return jsonify({'user': other.to_dict(), 'amount': str(amount)})

    return api


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.json = LedgerJSONProvider(app)
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(app)
    login_manager.init_app(app)

    with app.app_context():
        db.create_all()

    ledger = Ledger(db.session, balances=BalanceEngine(db.session))
    app.extensions['ledger'] = ledger
    app.register_blueprint(create_api(ledger))
    return app


if __name__ == '__main__':
    create_app().run(debug=True)
