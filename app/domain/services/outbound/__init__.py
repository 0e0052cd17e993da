"""
Outbound API clients (ordering platform + courier network)
"""
from app.domain.services.outbound.base import FixedWindowRateLimiter, RateLimitedClient
from app.domain.services.outbound.courier import CourierClient, CourierDelivery, DoorDashJwtAuth
from app.domain.services.outbound.ordering_platform import OrderingPlatformClient, TenantKeyAuth

__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitedClient",
    "CourierClient",
    "CourierDelivery",
    "DoorDashJwtAuth",
    "OrderingPlatformClient",
    "TenantKeyAuth",
]
