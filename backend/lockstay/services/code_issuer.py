"""
核销码 / 开锁码服务

- 核销码：V + 19 位十六进制，前台扫码核销
- 开锁码：6 位数字，用户在门锁设备上输入
- 二维码：核销地址，包含预订号与核销码

编码在创建预订时一次性生成，之后不可变；与预订行一起持久化，不放在独立缓存里。
唯一性在生成时查库校验并重试，数据库唯一索引兜底。
"""
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lockstay.config import settings
from lockstay.models.ontology import Booking, BookingStatus
from lockstay.services.errors import CodeGenerationError

logger = logging.getLogger(__name__)

VERIFICATION_CODE_PATTERN = re.compile(r"^V[0-9a-f]{19}$")
UNLOCK_CODE_PATTERN = re.compile(r"^[0-9]{6}$")

# 只有这两个状态的预订可以开锁，使用中允许设备重试开锁
UNLOCKABLE_STATUSES = (BookingStatus.VERIFIED, BookingStatus.IN_USE)


@dataclass(frozen=True)
class IssuedCodes:
    verification_code: str
    unlock_code: str
    qr_code: str


def generate_verification_code() -> str:
    return "V" + secrets.token_hex(10)[:19]


def generate_unlock_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def is_valid_verification_code(code: Optional[str]) -> bool:
    return bool(code) and VERIFICATION_CODE_PATTERN.match(code) is not None


def is_valid_unlock_code(code: Optional[str]) -> bool:
    return bool(code) and UNLOCK_CODE_PATTERN.match(code) is not None


class CodeIssuer:
    """编码签发与解析"""

    def __init__(self, db: Session, max_attempts: Optional[int] = None):
        self.db = db
        self.max_attempts = max_attempts or settings.CODE_MAX_ATTEMPTS

    def _code_taken(self, column, code: str) -> bool:
        # 历史预订也参与校验，编码全局唯一
        return self.db.execute(select(Booking.id).where(column == code)).first() is not None

    def _unique(self, generator, column, label: str) -> str:
        for attempt in range(1, self.max_attempts + 1):
            code = generator()
            if not self._code_taken(column, code):
                return code
            logger.info(f"{label} collision on attempt {attempt}, regenerating")
        raise CodeGenerationError(f"{label} 连续 {self.max_attempts} 次冲突")

    @staticmethod
    def build_qr_code(booking_no: str, verification_code: str) -> str:
        return f"{settings.QR_CODE_PATH}/{booking_no}?code={verification_code}"

    def issue_codes(self, booking_no: str) -> IssuedCodes:
        """为一个预订签发三种编码"""
        verification_code = self._unique(
            generate_verification_code, Booking.verification_code, "verification_code"
        )
        unlock_code = self._unique(generate_unlock_code, Booking.unlock_code, "unlock_code")
        return IssuedCodes(
            verification_code=verification_code,
            unlock_code=unlock_code,
            qr_code=self.build_qr_code(booking_no, verification_code),
        )

    def resolve_by_verification_code(self, code: str) -> Optional[Booking]:
        """前台核销：任意状态都可以解析出预订"""
        if not is_valid_verification_code(code):
            logger.info("Verification code rejected: malformed")
            return None
        booking = self.db.execute(
            select(Booking).where(Booking.verification_code == code)
        ).scalar_one_or_none()
        if booking is None:
            logger.info("Verification code rejected: no match")
        return booking

    def resolve_by_unlock_code(self, code: str, device_id: int) -> Optional[Booking]:
        """设备开锁：仅已核销 / 使用中且设备匹配的预订"""
        if not is_valid_unlock_code(code):
            logger.info(f"Unlock code rejected on device {device_id}: malformed")
            return None
        booking = self.db.execute(
            select(Booking).where(
                Booking.unlock_code == code,
                Booking.device_id == device_id,
                Booking.status.in_(UNLOCKABLE_STATUSES),
            )
        ).scalar_one_or_none()
        if booking is None:
            logger.info(f"Unlock code rejected on device {device_id}: no match")
        return booking
