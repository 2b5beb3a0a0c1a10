"""
对账路由
手动触发一轮对账 / 查看定时任务
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from lockcore.scheduler import SchedulerRegistry
from lockstay.database import get_db
from lockstay.models.ontology import Account
from lockstay.models.schemas import SweepResponse
from lockstay.services.reconciliation_service import ReconciliationService
from lockstay.security.auth import require_manager

router = APIRouter(prefix="/reconciliation", tags=["对账"])


@router.post("/run", response_model=SweepResponse)
def run_reconciliation(
    db: Session = Depends(get_db),
    current_user: Account = Depends(require_manager)
):
    """立即执行一轮对账"""
    return ReconciliationService(db).run_sweep().to_dict()


@router.get("/jobs")
def list_jobs(current_user: Account = Depends(require_manager)):
    """已注册的对账任务"""
    return SchedulerRegistry().jobs()
