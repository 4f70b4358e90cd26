import logging
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from balances import BalanceEngine
from errors import Conflict, Forbidden, InvalidInput, InvalidPayer, NotFound, StoreFailure
from models import Debt, Expense, Group, GroupMember, Payment, Transaction, User
from splitting import parse_amount, split_expense

log = logging.getLogger(__name__)


@contextmanager
def unit_of_work(session):
    """Run a block of ledger writes as one all-or-nothing transaction."""
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        log.warning('rolled back after constraint violation: %s', exc.orig)
        raise Conflict(f'constraint violation: {exc.orig}') from exc
    except SQLAlchemyError as exc:
        session.rollback()
        log.warning('rolled back after store failure: %s', exc)
        raise StoreFailure(f'store failure: {exc}') from exc
    except Exception:
        session.rollback()
        raise


def _required_text(value, field):
    value = (value or '').strip()
    if not value:
        raise InvalidInput(f'{field} is required')
    return value


class Ledger:
    """Operations on users, groups and their shared transactions.

    Every method takes the acting user first. Writes are wrapped in
    ``unit_of_work`` so a failure at any step leaves the store untouched.
    """

    def __init__(self, session, splitter=split_expense, balances=None):
        self.session = session
        self.splitter = splitter
        self.balances = balances or BalanceEngine(session)

    # Lookups

    def _read(self, fn, what):
        try:
            return fn()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"couldn't get {what}: {exc}") from exc

    def get_user(self, user_id):
        user = self._read(lambda: self.session.get(User, user_id), 'user')
        if user is None:
            raise NotFound(f"Couldn't find user {user_id}")
        return user

    def get_user_by_username(self, username):
        user = self._read(
            lambda: self.session.scalar(select(User).where(User.username == username)), 'user')
        if user is None:
            raise NotFound(f"Couldn't find user `{username}`")
        return user

    def get_group(self, group_id):
        group = self._read(lambda: self.session.get(Group, group_id), 'group')
        if group is None:
            raise NotFound("Couldn't find group")
        return group

    def is_member(self, group_id, user_id):
        membership = self._read(lambda: self.session.scalar(
            select(GroupMember).where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
        ), 'membership')
        return membership is not None

    def _group_for_member(self, caller, group_id):
        group = self.get_group(group_id)
        if not self.is_member(group.id, caller.id):
            raise Forbidden('User does not belong to group')
        return group

    def _group_for_owner(self, caller, group_id):
        group = self.get_group(group_id)
        if group.owner_id != caller.id:
            raise Forbidden('You must be group owner to perform this action')
        return group

    def _member_by_username(self, group, username, error=InvalidInput):
        try:
            user = self.get_user_by_username(username)
        except NotFound:
            raise error(f"Couldn't find user `{username}`")
        if not self.is_member(group.id, user.id):
            raise error(f'User `{username}` not in group')
        return user

    def _transaction(self, caller, group_id, transaction_id, kind=None):
        group = self._group_for_member(caller, group_id)
        tx = self._read(lambda: self.session.get(Transaction, transaction_id), 'transaction')
        if tx is None or tx.group_id != group.id:
            raise NotFound("Couldn't find transaction")
        if kind is not None and not isinstance(tx, kind):
            raise NotFound(f"Couldn't find {kind.__name__.lower()}")
        if not tx.is_editable_by(caller):
            raise Forbidden('You do not own this transaction')
        return tx

    # Users

    def register_user(self, username, password):
        username = _required_text(username, 'Username')
        if not password:
            raise InvalidInput('Password is required')
        with unit_of_work(self.session):
            if self.session.scalar(select(User).where(User.username == username)) is not None:
                raise Conflict('Username taken')
            user = User(username=username)
            user.set_password(password)
            self.session.add(user)
        log.info('created user %s', user.id)
        return user

    def authenticate(self, username, password):
        user = self.get_user_by_username(username)
        if not user.check_password(password or ''):
            raise Forbidden('Username and password do not match')
        return user

    def change_password(self, caller, password):
        if not password:
            raise InvalidInput('Password is required')
        with unit_of_work(self.session):
            caller.set_password(password)
        return caller

    # Groups and memberships

    def list_groups(self, caller):
        return self._read(lambda: self.session.scalars(
            select(Group).join(GroupMember).where(GroupMember.user_id == caller.id).order_by(Group.id)
        ).all(), 'groups')

    def create_group(self, caller, name):
        name = _required_text(name, 'Group name')
        with unit_of_work(self.session):
            group = Group(name=name, owner_id=caller.id)
            self.session.add(group)
            self.session.flush()
            self.session.add(GroupMember(user_id=caller.id, group_id=group.id))
        log.info('created group %s owned by %s', group.id, caller.id)
        return group

    def rename_group(self, caller, group_id, name):
        name = _required_text(name, 'Group name')
        group = self._group_for_owner(caller, group_id)
        with unit_of_work(self.session):
            group.name = name
        return group

    def delete_group(self, caller, group_id):
        group = self._group_for_owner(caller, group_id)
        with unit_of_work(self.session):
            self.session.delete(group)
        log.info('deleted group %s', group_id)

    def group_members(self, caller, group_id):
        group = self._group_for_member(caller, group_id)
        return [m.user for m in group.members]

    def add_member(self, caller, group_id, username):
        group = self._group_for_owner(caller, group_id)
        user = self.get_user_by_username(_required_text(username, 'Username'))
        if self.is_member(group.id, user.id):
            raise Conflict('User already in group')
        with unit_of_work(self.session):
            self.session.add(GroupMember(user_id=user.id, group_id=group.id))
        log.info('added user %s to group %s', user.id, group.id)
        return user

    def remove_member(self, caller, group_id, user_id):
        group = self._group_for_owner(caller, group_id)
        if user_id == group.owner_id:
            raise InvalidInput("Can't remove the group owner")
        membership = self._read(lambda: self.session.scalar(
            select(GroupMember).where(GroupMember.group_id == group.id, GroupMember.user_id == user_id)
        ), 'membership')
        if membership is None:
            raise NotFound('User not in group')
        with unit_of_work(self.session):
            self.session.delete(membership)
        log.info('removed user %s from group %s', user_id, group.id)

    # Expenses

    def recompute_debts(self, expense):
        """Replace every debt of ``expense`` with a fresh split.

        Must run inside a ``unit_of_work``; old debts are deleted and flushed
        before the new split is computed against the group's current members.
        """
        expense.debts.clear()
        self.session.flush()

        members = self.session.scalars(
            select(GroupMember.user_id).where(GroupMember.group_id == expense.group_id)
        ).all()
        shares = self.splitter(expense.amount, expense.paid_by_id, members)
        for share in shares:
            expense.debts.append(Debt(owed_by_id=share.owed_by, owed_to_id=share.owed_to, amount=share.amount))
        self.session.flush()
        return expense.debts

    def create_expense(self, caller, group_id, description, amount, paid_by=None):
        group = self._group_for_member(caller, group_id)
        description = _required_text(description, 'Description')
        amount = parse_amount(amount)
        payer = caller if paid_by is None else self._member_by_username(group, paid_by, InvalidPayer)

        with unit_of_work(self.session):
            expense = Expense(group_id=group.id, created_by_id=caller.id,
                              description=description, amount=amount, paid_by_id=payer.id)
            self.session.add(expense)
            self.session.flush()
            self.recompute_debts(expense)
        log.info('created expense %s in group %s', expense.id, group.id)
        return expense

    def edit_expense(self, caller, group_id, transaction_id, description=None, amount=None, paid_by=None):
        expense = self._transaction(caller, group_id, transaction_id, Expense)
        if description is not None:
            description = _required_text(description, 'Description')
        if amount is not None:
            amount = parse_amount(amount)

        with unit_of_work(self.session):
            if paid_by is not None:
                expense.paid_by_id = self._member_by_username(expense.group, paid_by, InvalidPayer).id
            if description is not None:
                expense.description = description
            if amount is not None:
                expense.amount = amount
            expense.touch()
            self.recompute_debts(expense)
        log.info('updated expense %s', expense.id)
        return expense

    # Payments

    def _payment_parties(self, group, paid_by, paid_to):
        payer = self._member_by_username(group, paid_by)
        payee = self._member_by_username(group, paid_to)
        if payer.id == payee.id:
            raise InvalidInput("A member can't pay themselves")
        return payer, payee

    def create_payment(self, caller, group_id, paid_by, paid_to, amount):
        group = self._group_for_member(caller, group_id)
        payer, payee = self._payment_parties(group, _required_text(paid_by, 'Payer'),
                                             _required_text(paid_to, 'Payee'))
        amount = parse_amount(amount)

        with unit_of_work(self.session):
            payment = Payment(group_id=group.id, created_by_id=caller.id,
                              paid_by_id=payer.id, paid_to_id=payee.id, amount=amount)
            self.session.add(payment)
        log.info('created payment %s in group %s', payment.id, group.id)
        return payment

    def edit_payment(self, caller, group_id, transaction_id, paid_by=None, paid_to=None, amount=None):
        payment = self._transaction(caller, group_id, transaction_id, Payment)
        payer, payee = payment.paid_by, payment.paid_to
        if paid_by:
            payer = self._member_by_username(payment.group, paid_by)
        if paid_to:
            payee = self._member_by_username(payment.group, paid_to)
        if payer is not None and payee is not None and payer.id == payee.id:
            raise InvalidInput("A member can't pay themselves")
        if amount is not None:
            amount = parse_amount(amount)

        with unit_of_work(self.session):
            payment.paid_by_id = payer.id if payer is not None else None
            payment.paid_to_id = payee.id if payee is not None else None
            if amount is not None:
                payment.amount = amount
            payment.touch()
        log.info('updated payment %s', payment.id)
        return payment

    # Transactions

    def delete_transaction(self, caller, group_id, transaction_id):
        tx = self._transaction(caller, group_id, transaction_id)
        kind = tx.kind
        with unit_of_work(self.session):
            self.session.delete(tx)
        log.info('deleted %s %s', kind, transaction_id)

    def group_transactions(self, caller, group_id):
        group = self._group_for_member(caller, group_id)
        return self._read(lambda: self.session.scalars(
            select(Transaction)
            .where(Transaction.group_id == group.id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        ).all(), 'transactions')

    # Balances

    def pairwise_balance(self, caller, group_id, other_id):
        group = self._group_for_member(caller, group_id)
        other = self.get_user(other_id)
        if not self.is_member(group.id, other.id):
            raise NotFound('User not in group')
        return other, self.balances.pairwise_balance(group.id, caller.id, other.id)

    def group_balances(self, caller, group_id):
        group = self._group_for_member(caller, group_id)
        return self.balances.group_balances(group.id, caller.id)
