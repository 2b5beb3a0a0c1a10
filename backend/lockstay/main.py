"""
LockStay 主应用入口
时段型资源预订、核销码 / 开锁码、计数账本、对账任务
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from lockcore.scheduler import SchedulerRegistry
from lockstay.config import settings
from lockstay.database import init_db
from lockstay.routers import auth, bookings, payments, devices, distribution, coupons, reconciliation

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    init_db()

    if settings.SCHEDULER_ENABLED:
        from lockstay.system.scheduler_backend import APSchedulerBackend
        from lockstay.services.reconciliation_service import register_reconciliation_jobs

        backend = APSchedulerBackend()
        SchedulerRegistry().set_backend(backend)
        register_reconciliation_jobs(backend)
        backend.start()

    yield

    if settings.SCHEDULER_ENABLED:
        SchedulerRegistry().shutdown()


# 创建应用
app = FastAPI(
    title="LockStay - 智能门锁预订服务",
    description="时段型资源预订与门锁核销",
    version="1.0.0",
    lifespan=lifespan
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(auth.router)
app.include_router(bookings.router)
app.include_router(payments.router)
app.include_router(devices.router)
app.include_router(distribution.router)
app.include_router(coupons.router)
app.include_router(reconciliation.router)


@app.get("/")
def root():
    """根路径"""
    return {
        "name": settings.APP_NAME,
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    """健康检查"""
    return {"status": "healthy"}
