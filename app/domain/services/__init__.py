"""
Domain Services
"""
from app.domain.services.dispatch_scheduler import DispatchScheduler
from app.domain.services.dispatch_service import DispatchService
from app.domain.services.merchant_registry import MerchantRegistry, TenantProfile
from app.domain.services.retry_executor import ExecutionOutcome, RetryExecutor
from app.domain.services.webhook_log_service import WebhookLogService
from app.domain.services.webhook_processor import WebhookProcessor
from app.domain.services.webhook_security import WebhookSecurityValidator
from app.domain.services.worker_pool import EventWorkerPool

__all__ = [
    "DispatchScheduler",
    "DispatchService",
    "MerchantRegistry",
    "TenantProfile",
    "ExecutionOutcome",
    "RetryExecutor",
    "WebhookLogService",
    "WebhookProcessor",
    "WebhookSecurityValidator",
    "EventWorkerPool",
]
