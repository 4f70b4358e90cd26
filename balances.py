from collections import namedtuple
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from errors import StoreFailure
from models import Debt, Expense, GroupMember, Payment

ZERO = Decimal('0.00')

Balance = namedtuple('Balance', ['other', 'amount'])


class BalanceEngine:
    """Nets debts and payments between members of a group.

    A positive balance from ``user_a`` to ``user_b`` means ``user_a`` owes
    ``user_b`` that amount. Only pairwise netting is done here; no
    settlement plan across more than two members is produced.
    """

    def __init__(self, session):
        self.session = session

    def _sum(self, stmt):
        try:
            total = self.session.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"couldn't sum ledger entries: {exc}") from exc
        return ZERO if total is None else Decimal(total).quantize(ZERO)

    def total_debts(self, group_id, owed_by, owed_to):
        stmt = (
            select(func.sum(Debt.amount))
            .select_from(Debt)
            .join(Debt.expense)
            .where(Expense.group_id == group_id,
                   Debt.owed_by_id == owed_by,
                   Debt.owed_to_id == owed_to)
        )
        return self._sum(stmt)

    def total_payments(self, group_id, paid_by, paid_to):
        stmt = (
            select(func.sum(Payment.amount))
            .select_from(Payment)
            .where(Payment.group_id == group_id,
                   Payment.paid_by_id == paid_by,
                   Payment.paid_to_id == paid_to)
        )
        return self._sum(stmt)

    def pairwise_balance(self, group_id, user_a, user_b):
        owed = self.total_debts(group_id, user_a, user_b) - self.total_debts(group_id, user_b, user_a)
        paid = self.total_payments(group_id, user_a, user_b) - self.total_payments(group_id, user_b, user_a)
        return owed - paid

    def group_balances(self, group_id, user_id):
        try:
            others = self.session.scalars(
                select(GroupMember)
                .where(GroupMember.group_id == group_id, GroupMember.user_id != user_id)
                .order_by(GroupMember.id)
            ).all()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"couldn't find users in group: {exc}") from exc

        return [Balance(m.user, self.pairwise_balance(group_id, user_id, m.user_id)) for m in others]
