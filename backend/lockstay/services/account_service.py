"""
账号服务 - 登录认证与账号创建
"""
from typing import Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from lockstay.models.ontology import Account, AccountRole
from lockstay.security.auth import get_password_hash, verify_password, create_access_token


class AccountService:
    """账号服务"""

    def __init__(self, db: Session):
        self.db = db

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self.db.execute(
            select(Account).where(Account.username == username)
        ).scalar_one_or_none()

    def create_account(self, username: str, password: str, name: str,
                       role: AccountRole = AccountRole.CUSTOMER) -> Account:
        if self.get_account_by_username(username):
            raise ValueError(f"用户名 {username} 已存在")
        account = Account(
            username=username,
            password_hash=get_password_hash(password),
            name=name,
            role=role,
        )
        self.db.add(account)
        self.db.commit()
        self.db.refresh(account)
        return account

    def authenticate(self, username: str, password: str) -> Optional[dict]:
        """认证登录，失败返回 None"""
        account = self.get_account_by_username(username)
        if not account:
            return None

        if not account.is_active:
            raise ValueError("账号已停用")

        if not verify_password(password, account.password_hash):
            return None

        return {
            'access_token': create_access_token(account.id, account.role),
            'token_type': 'bearer',
            'account': {
                'id': account.id,
                'username': account.username,
                'name': account.name,
                'role': account.role,
                'is_active': account.is_active,
            }
        }
