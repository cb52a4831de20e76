"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.payment_gateway import PaymentGateway, RazorpayGateway
from app.core.redis_client import CacheManager, get_redis_client
from app.database import get_db
from app.services.appointment_service import AppointmentService
from app.services.queue_service import QueueService
from app.services.refund_service import RefundService
from app.services.notification_service import Notifier
from app.services.scheduler_service import MeetLinkScheduler


def get_cache_manager() -> CacheManager:
    """Get the Redis-backed cache used for duration averages."""
    return CacheManager(get_redis_client())


def get_payment_gateway() -> PaymentGateway:
    """Get the payment gateway used for refunds."""
    return RazorpayGateway()


def get_link_scheduler(request: Request) -> MeetLinkScheduler:
    """Get the process-wide meet-link scheduler."""
    return request.app.state.link_scheduler


def get_notifier(request: Request) -> Notifier:
    """Get the push notifier shared by the scheduler and the queue."""
    return request.app.state.notifier


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Cache = Annotated[CacheManager, Depends(get_cache_manager)]
Gateway = Annotated[PaymentGateway, Depends(get_payment_gateway)]
LinkScheduler = Annotated[MeetLinkScheduler, Depends(get_link_scheduler)]
PushNotifier = Annotated[Notifier, Depends(get_notifier)]


def get_refund_service(db: DatabaseSession, gateway: Gateway) -> RefundService:
    """Build a refund service for the request."""
    return RefundService(db, gateway=gateway)


def get_queue_service(db: DatabaseSession, cache: Cache, notifier: PushNotifier) -> QueueService:
    """Build a queue service for the request."""
    return QueueService(db, cache, notifier=notifier)


def get_appointment_service(
    db: DatabaseSession,
    scheduler: LinkScheduler,
    refunds: Annotated[RefundService, Depends(get_refund_service)],
) -> AppointmentService:
    """Build an appointment service for the request."""
    return AppointmentService(db, scheduler=scheduler, refunds=refunds)


Refunds = Annotated[RefundService, Depends(get_refund_service)]
Queue = Annotated[QueueService, Depends(get_queue_service)]
Appointments = Annotated[AppointmentService, Depends(get_appointment_service)]
