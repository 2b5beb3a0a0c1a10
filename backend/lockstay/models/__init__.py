# Ontology Models
from lockstay.models.ontology import (
    Account, Hotel, Device, Room, Booking, ResourceLock,
    CommissionAccount, Withdrawal, Coupon, UserCoupon
)

__all__ = [
    'Account', 'Hotel', 'Device', 'Room', 'Booking', 'ResourceLock',
    'CommissionAccount', 'Withdrawal', 'Coupon', 'UserCoupon'
]
