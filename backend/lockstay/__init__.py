"""
LockStay - 时段型资源预订与门锁核销服务
"""
