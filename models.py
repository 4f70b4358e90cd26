import enum
from datetime import datetime, timezone
from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash
from flask_login import UserMixin
from sqlalchemy.types import BigInteger, TypeDecorator

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value is not None else None


class Money(TypeDecorator):
    """Decimal amounts stored as integer cents, so sums stay exact on every backend."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int(Decimal(value).scaleb(2))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-2)


class TransactionKind(str, enum.Enum):
    EXPENSE = 'expense'
    PAYMENT = 'payment'


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(150), unique=True, nullable=False)
    password = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    memberships = db.relationship('GroupMember', back_populates='user', lazy=True)

    def set_password(self, password):
        self.password = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Group(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    owner = db.relationship('User')
    # Membership order is insertion order.
    members = db.relationship('GroupMember', back_populates='group', lazy=True,
                              order_by='GroupMember.id', cascade='all, delete-orphan')
    transactions = db.relationship('Transaction', back_populates='group', lazy=True,
                                   cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'owner_id': self.owner_id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class GroupMember(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'group_id', name='uq_group_member_user_group'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    group_id = db.Column(db.Integer, db.ForeignKey('group.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    user = db.relationship('User', back_populates='memberships')
    group = db.relationship('Group', back_populates='members')


class Transaction(db.Model):
    """Envelope shared by expenses and payments.

    Rows are loaded as ``Expense`` or ``Payment`` instances according to
    ``kind``; the detail table for the other kind never exists.
    """

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('group.id'), nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    kind = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    group = db.relationship('Group', back_populates='transactions')
    created_by = db.relationship('User', foreign_keys=[created_by_id])

    __mapper_args__ = {'polymorphic_on': kind}

    def is_editable_by(self, user):
        return self.created_by_id is not None and self.created_by_id == user.id

    def touch(self):
        self.updated_at = utcnow()

    def to_dict(self):
        return {
            'id': self.id,
            'group_id': self.group_id,
            'created_by': self.created_by.username if self.created_by else None,
            'kind': self.kind,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Expense(Transaction):
    id = db.Column(db.Integer, db.ForeignKey('transaction.id'), primary_key=True)
    description = db.Column(db.String(200), nullable=False)
    amount = db.Column(Money(), nullable=False)
    paid_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    paid_by = db.relationship('User', foreign_keys=[paid_by_id])
    debts = db.relationship('Debt', back_populates='expense', lazy=True,
                            order_by='Debt.id', cascade='all, delete-orphan')

    __mapper_args__ = {'polymorphic_identity': TransactionKind.EXPENSE.value}

    def to_dict(self):
        data = super().to_dict()
        data['expense'] = {
            'description': self.description,
            'amount': str(self.amount),
            'paid_by': self.paid_by.username if self.paid_by else None,
            'debts': [d.to_dict() for d in self.debts],
        }
        return data


class Payment(Transaction):
    id = db.Column(db.Integer, db.ForeignKey('transaction.id'), primary_key=True)
    amount = db.Column(Money(), nullable=False)
    paid_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    paid_to_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    paid_by = db.relationship('User', foreign_keys=[paid_by_id])
    paid_to = db.relationship('User', foreign_keys=[paid_to_id])

    __mapper_args__ = {'polymorphic_identity': TransactionKind.PAYMENT.value}

    def to_dict(self):
        data = super().to_dict()
        data['payment'] = {
            'amount': str(self.amount),
            'paid_by': self.paid_by.username if self.paid_by else None,
            'paid_to': self.paid_to.username if self.paid_to else None,
        }
        return data


class Debt(db.Model):
    __table_args__ = (db.CheckConstraint('owed_by_id != owed_to_id', name='ck_debt_not_self'),)

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey('expense.id'), nullable=False)
    owed_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    owed_to_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    amount = db.Column(Money(), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    expense = db.relationship('Expense', back_populates='debts')
    owed_by = db.relationship('User', foreign_keys=[owed_by_id])
    owed_to = db.relationship('User', foreign_keys=[owed_to_id])

    def to_dict(self):
        return {
            'amount': str(self.amount),
            'owed_by': self.owed_by.username if self.owed_by else None,
            'owed_to': self.owed_to.username if self.owed_to else None,
        }
