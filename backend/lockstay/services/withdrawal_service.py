"""
分销提现服务
申请：可用佣金冻结 + 待审核提现单，同一事务
通过：冻结 -> 已提现
拒绝：冻结 -> 可用
只有待审核的提现单可以处理，状态更新同样是带源状态谓词的条件更新
"""
import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Optional, Callable, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from lockstay.config import settings
from lockstay.models.ontology import Withdrawal, WithdrawalStatus
from lockstay.models.events import EventType, WithdrawalEventData
from lockstay.services.event_bus import event_bus, Event
from lockstay.services.errors import ConflictError, NotFoundError, LedgerValidationError, store_guard
from lockstay.services.ledger_service import CommissionLedger, _positive_amount

logger = logging.getLogger(__name__)


def generate_withdrawal_no() -> str:
    return "W" + datetime.now().strftime("%Y%m%d%H%M%S") + f"{secrets.randbelow(1_000_000):06d}"


class WithdrawalService:
    """提现服务"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None):
        self.db = db
        self._publish_event = event_publisher or event_bus.publish

    def get_withdrawal(self, withdrawal_id: int) -> Optional[Withdrawal]:
        return self.db.get(Withdrawal, withdrawal_id)

    def list_withdrawals(self, distributor_id: Optional[int] = None,
                         status: Optional[WithdrawalStatus] = None) -> List[Withdrawal]:
        query = select(Withdrawal)
        if distributor_id is not None:
            query = query.where(Withdrawal.distributor_id == distributor_id)
        if status is not None:
            query = query.where(Withdrawal.status == status)
        return self.db.execute(query.order_by(Withdrawal.created_at.desc())).scalars().all()

    def apply(self, distributor_id: int, amount) -> Withdrawal:
        """
        申请提现

        Raises:
            LedgerValidationError: 金额非法或低于最低提现额
            NotFoundError: 佣金账户不存在
            InsufficientBalanceError: 可用佣金不足
        """
        value = _positive_amount(amount)
        if value < Decimal(str(settings.WITHDRAW_MIN_AMOUNT)):
            raise LedgerValidationError(f"最低提现金额为 {settings.WITHDRAW_MIN_AMOUNT:.2f} 元")

        withdrawal = Withdrawal(
            withdrawal_no=generate_withdrawal_no(),
            distributor_id=distributor_id,
            amount=value,
            status=WithdrawalStatus.PENDING,
        )
        try:
            with store_guard(self.db, "withdrawal.apply"):
                CommissionLedger(self.db, auto_commit=False).freeze(distributor_id, value)
                self.db.add(withdrawal)
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(withdrawal)
        logger.info(f"Withdrawal {withdrawal.withdrawal_no} applied: {distributor_id} {value}")
        self._publish(withdrawal, EventType.WITHDRAWAL_APPLIED)
        return withdrawal

    def _process(self, withdrawal_id: int, target: WithdrawalStatus,
                 operator_id: int, ledger_op: str, reject_reason: Optional[str] = None) -> Withdrawal:
        withdrawal = self.get_withdrawal(withdrawal_id)
        if not withdrawal:
            raise NotFoundError(f"提现申请 {withdrawal_id} 不存在")

        stmt = (
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status == WithdrawalStatus.PENDING)
            .values(status=target, operator_id=operator_id,
                    processed_at=datetime.now(), reject_reason=reject_reason)
            .execution_options(synchronize_session=False)
        )
        try:
            with store_guard(self.db, f"withdrawal.{target.value}"):
                if self.db.execute(stmt).rowcount != 1:
                    raise ConflictError("该提现申请已处理", resource_id=withdrawal_id)
                ledger = CommissionLedger(self.db, auto_commit=False)
                getattr(ledger, ledger_op)(withdrawal.distributor_id, withdrawal.amount)
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(withdrawal)
        logger.info(f"Withdrawal {withdrawal.withdrawal_no} {target.value} by {operator_id}")
        return withdrawal

    def approve(self, withdrawal_id: int, operator_id: int) -> Withdrawal:
        """审核通过并打款：冻结 -> 已提现"""
        withdrawal = self._process(withdrawal_id, WithdrawalStatus.APPROVED,
                                   operator_id, "confirm_withdraw")
        self._publish(withdrawal, EventType.WITHDRAWAL_APPROVED)
        return withdrawal

    def reject(self, withdrawal_id: int, operator_id: int, reason: str = "") -> Withdrawal:
        """审核拒绝：解冻"""
        withdrawal = self._process(withdrawal_id, WithdrawalStatus.REJECTED,
                                   operator_id, "unfreeze", reject_reason=reason)
        self._publish(withdrawal, EventType.WITHDRAWAL_REJECTED)
        return withdrawal

    def _publish(self, withdrawal: Withdrawal, event_type: EventType) -> None:
        self._publish_event(Event(
            event_type=event_type,
            timestamp=datetime.now(),
            data=WithdrawalEventData(
                withdrawal_id=withdrawal.id,
                withdrawal_no=withdrawal.withdrawal_no,
                distributor_id=withdrawal.distributor_id,
                amount=float(withdrawal.amount),
                status=withdrawal.status.value,
                operator_id=withdrawal.operator_id,
            ).to_dict(),
            source="withdrawal_service"
        ))
