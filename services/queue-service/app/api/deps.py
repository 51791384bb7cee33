import redis
from fastapi import Depends
from sqlalchemy.orm import Session
from app.core.config import Settings, settings
from app.core.db import get_db
from app.services.notifications import NotificationDispatcher, build_dispatcher
from app.services.payments import AfricasTalkingPurchases
from app.services.queue_engine import QueueEngine
from app.services.rate_limit import PhoneRateLimiter
from app.services.ussd import PurchaseGateway, UssdStateMachine

_dispatcher = None
_purchases = None
_redis = None
_rate_limiter = None


def get_settings() -> Settings:
    return settings


def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(settings)
    return _dispatcher


def get_purchase_gateway() -> PurchaseGateway:
    global _purchases
    if _purchases is None:
        _purchases = AfricasTalkingPurchases(settings)
    return _purchases


def get_rate_limiter() -> PhoneRateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = PhoneRateLimiter(get_redis(), settings.USSD_RATE_LIMIT_SECONDS)
    return _rate_limiter


def close_clients() -> None:
    """Release the outbound HTTP and Redis connections held by the singletons."""
    global _dispatcher, _purchases, _redis, _rate_limiter
    if _dispatcher is not None:
        _dispatcher.close()
    if _purchases is not None:
        _purchases.close()
    if _redis is not None:
        _redis.close()
    _dispatcher = _purchases = _redis = _rate_limiter = None


def get_queue_engine(
    db: Session = Depends(get_db),
    app_settings: Settings = Depends(get_settings),
) -> QueueEngine:
    return QueueEngine(db, app_settings)


def get_ussd_machine(
    engine: QueueEngine = Depends(get_queue_engine),
    purchases: PurchaseGateway = Depends(get_purchase_gateway),
    rate_limiter: PhoneRateLimiter = Depends(get_rate_limiter),
    app_settings: Settings = Depends(get_settings),
) -> UssdStateMachine:
    return UssdStateMachine(engine, purchases, rate_limiter, app_settings)
