"""
认证与授权模块
JWT 承载令牌 + 角色校验；前台、设备网关、支付回调都以账号身份调用
"""
import bcrypt
import logging
from datetime import datetime, timedelta, UTC
from typing import List
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from lockstay.config import settings
from lockstay.database import get_db
from lockstay.models.ontology import Account, AccountRole

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_password_hash(password: str) -> str:
    """密码哈希"""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """验证密码"""
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def create_access_token(account_id: int, role: AccountRole) -> str:
    """创建 JWT token"""
    expire = datetime.now(UTC) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {
        "sub": str(account_id),
        "role": role.value if isinstance(role, AccountRole) else str(role),
        "exp": expire
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """解码 JWT token"""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭证"
        )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> Account:
    """获取当前登录账号"""
    payload = decode_token(credentials.credentials)

    account = db.get(Account, int(payload.get("sub")))
    if not account:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="用户不存在"
        )

    if not account.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="账号已停用"
        )

    return account


def require_role(allowed_roles: List[AccountRole]):
    """角色权限校验"""
    async def role_checker(current_user: Account = Depends(get_current_user)):
        if current_user.role not in allowed_roles:
            logger.info(f"Account {current_user.id} ({current_user.role.value}) denied")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="权限不足"
            )
        return current_user
    return role_checker


# 便捷的角色检查器
require_manager = require_role([AccountRole.MANAGER])
require_staff = require_role([AccountRole.STAFF, AccountRole.MANAGER])
require_device = require_role([AccountRole.DEVICE])
require_system = require_role([AccountRole.SYSTEM])
require_customer = require_role([AccountRole.CUSTOMER])
