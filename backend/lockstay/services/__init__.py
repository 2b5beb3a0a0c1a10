# Business Services
from lockstay.services.ledger_service import ResourceLedger, CouponLedger, CommissionLedger
from lockstay.services.interval_allocator import IntervalAllocator
from lockstay.services.resource_lock import ResourceLock
from lockstay.services.code_issuer import CodeIssuer
from lockstay.services.booking_service import BookingService
from lockstay.services.reconciliation_service import ReconciliationService
from lockstay.services.withdrawal_service import WithdrawalService
from lockstay.services.coupon_service import CouponService

__all__ = [
    'ResourceLedger', 'CouponLedger', 'CommissionLedger', 'IntervalAllocator',
    'ResourceLock', 'CodeIssuer', 'BookingService', 'ReconciliationService',
    'WithdrawalService', 'CouponService'
]
