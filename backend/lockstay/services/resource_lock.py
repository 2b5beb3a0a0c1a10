"""
资源级排他锁 - 基于租约行

resource_locks 表每个资源一行。获取锁是一条条件更新：

    UPDATE resource_locks SET holder = :token, expires_at = :now + ttl
    WHERE resource_key = :key AND (holder IS NULL OR expires_at < :now)

受影响 1 行即持有锁。租约到期后其他调用方可以接管，持锁进程崩溃不会永久卡住房间。
获取失败会在超时时间内轮询，超时抛出 LockTimeoutError，不无限排队。
锁状态保存在存储里，多进程 / 多实例之间同样生效。
"""
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update, select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lockstay.config import settings
from lockstay.models.ontology import ResourceLock as ResourceLockRow
from lockstay.services.errors import LockLostError, LockTimeoutError, store_guard

logger = logging.getLogger(__name__)


def room_lock_key(room_id: int) -> str:
    return f"room:{room_id}"


class ResourceLock:
    """
    房间级租约锁

    用法：
        with ResourceLock(db, room_lock_key(room_id)):
            ...  # 检查 + 写入
    """

    def __init__(self, db: Session, resource_key: str,
                 timeout: Optional[float] = None,
                 ttl_seconds: Optional[int] = None,
                 poll_interval: Optional[float] = None):
        self.db = db
        self.resource_key = resource_key
        self.timeout = settings.RESOURCE_LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self.ttl_seconds = settings.RESOURCE_LOCK_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.poll_interval = (
            settings.RESOURCE_LOCK_POLL_INTERVAL if poll_interval is None else poll_interval
        )
        self.token = uuid.uuid4().hex
        self.acquired = False

    def _ensure_row(self) -> None:
        exists = self.db.execute(
            select(ResourceLockRow.resource_key).where(
                ResourceLockRow.resource_key == self.resource_key
            )
        ).first()
        if exists:
            return
        self.db.add(ResourceLockRow(resource_key=self.resource_key))
        try:
            self.db.commit()
        except IntegrityError:
            # 并发创建，同一行已由别人插入
            self.db.rollback()

    def try_acquire(self) -> bool:
        """尝试一次，不等待"""
        now = datetime.now()
        stmt = (
            update(ResourceLockRow)
            .where(
                ResourceLockRow.resource_key == self.resource_key,
                or_(ResourceLockRow.holder.is_(None), ResourceLockRow.expires_at < now),
            )
            .values(holder=self.token, expires_at=now + timedelta(seconds=self.ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        with store_guard(self.db, f"lock.acquire {self.resource_key}"):
            self._ensure_row()
            result = self.db.execute(stmt)
            self.db.commit()
        self.acquired = result.rowcount == 1
        return self.acquired

    def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout
        while True:
            if self.try_acquire():
                logger.debug(f"Lock {self.resource_key} acquired by {self.token}")
                return
            if time.monotonic() >= deadline:
                logger.warning(f"Lock {self.resource_key} timed out after {self.timeout}s")
                raise LockTimeoutError(self.resource_key, self.timeout)
            time.sleep(self.poll_interval)

    def ensure_held(self) -> None:
        """
        在调用方当前事务内续租，与临界区写入一起提交

        租约已被他人接管时抛 LockLostError，调用方回滚即可撤销本次写入
        """
        now = datetime.now()
        stmt = (
            update(ResourceLockRow)
            .where(
                ResourceLockRow.resource_key == self.resource_key,
                ResourceLockRow.holder == self.token,
            )
            .values(expires_at=now + timedelta(seconds=self.ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.acquired = False
            logger.warning(f"Lock {self.resource_key} lease taken over during critical section")
            raise LockLostError(self.resource_key)

    def release(self) -> None:
        if not self.acquired:
            return
        stmt = (
            update(ResourceLockRow)
            .where(
                ResourceLockRow.resource_key == self.resource_key,
                ResourceLockRow.holder == self.token,
            )
            .values(holder=None, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        with store_guard(self.db, f"lock.release {self.resource_key}"):
            result = self.db.execute(stmt)
            self.db.commit()
        self.acquired = False
        if result.rowcount == 0:
            # 租约已过期并被他人接管
            logger.warning(f"Lock {self.resource_key} lease lost before release")

    def __enter__(self) -> "ResourceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.db.rollback()
        self.release()
