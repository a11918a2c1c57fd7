from kiln.core.config import settings
from kiln.core.exceptions import (
    KilnBaseError,
    StoreUnavailableError,
    BackorderConfirmationRequired,
    PaymentSessionError,
    CMSError,
)
from kiln.core.redis_client import get_redis, close_redis
