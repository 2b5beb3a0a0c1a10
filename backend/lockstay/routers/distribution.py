"""
分销路由
佣金入账 / 提现申请 / 审核
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from lockstay.database import get_db
from lockstay.models.ontology import Account, AccountRole, WithdrawalStatus
from lockstay.models.schemas import (
    WithdrawalApply, WithdrawalReject, WithdrawalResponse,
    CommissionCredit, CommissionAccountResponse,
)
from lockstay.services.ledger_service import CommissionLedger
from lockstay.services.withdrawal_service import WithdrawalService
from lockstay.services.errors import BookingDomainError
from lockstay.routers.errors import to_http_exception
from lockstay.security.auth import get_current_user, require_manager, require_system

router = APIRouter(prefix="/distribution", tags=["分销"])


@router.get("/accounts/me", response_model=CommissionAccountResponse)
def get_my_account(
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """当前账号的佣金账户"""
    account = CommissionLedger(db).get_account(current_user.id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="佣金账户不存在")
    return account


@router.post("/accounts/{distributor_id}/commission", response_model=CommissionAccountResponse)
def credit_commission(
    distributor_id: int,
    data: CommissionCredit,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_system)
):
    """订单结算后佣金入账（账户不存在时自动开户）"""
    ledger = CommissionLedger(db)
    try:
        ledger.open_account(distributor_id)
        ledger.add_commission(distributor_id, data.amount)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
    account = ledger.get_account(distributor_id)
    db.refresh(account)
    return account


@router.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED)
def apply_withdrawal(
    data: WithdrawalApply,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """申请提现"""
    try:
        return WithdrawalService(db).apply(current_user.id, data.amount)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)


@router.get("/withdrawals", response_model=List[WithdrawalResponse])
def list_withdrawals(
    status_filter: Optional[WithdrawalStatus] = None,
    db: Session = Depends(get_db),
    current_user: Account = Depends(get_current_user)
):
    """提现列表，管理员看全部"""
    distributor_id = None if current_user.role == AccountRole.MANAGER else current_user.id
    return WithdrawalService(db).list_withdrawals(distributor_id, status_filter)


@router.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalResponse)
def approve_withdrawal(
    withdrawal_id: int,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_manager)
):
    """审核通过"""
    try:
        return WithdrawalService(db).approve(withdrawal_id, current_user.id)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)


@router.post("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalResponse)
def reject_withdrawal(
    withdrawal_id: int,
    data: WithdrawalReject,
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_manager)
):
    """审核拒绝"""
    try:
        return WithdrawalService(db).reject(withdrawal_id, current_user.id, data.reason)
    except (BookingDomainError, ValueError) as e:
        raise to_http_exception(e)
