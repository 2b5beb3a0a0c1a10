"""
认证路由
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from lockstay.database import get_db
from lockstay.models.ontology import Account
from lockstay.models.schemas import LoginRequest, LoginResponse, AccountResponse
from lockstay.services.account_service import AccountService
from lockstay.security.auth import get_current_user

router = APIRouter(prefix="/auth", tags=["认证"])


@router.post("/login", response_model=LoginResponse)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    """账号登录"""
    service = AccountService(db)
    try:
        result = service.authenticate(data.username, data.password)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    if not result:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="用户名或密码错误"
        )
    return result


@router.get("/me", response_model=AccountResponse)
def get_current_account(current_user: Account = Depends(get_current_user)):
    """当前账号信息"""
    return current_user
