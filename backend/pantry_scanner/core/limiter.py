from slowapi import Limiter
from slowapi.util import get_remote_address

from pantry_scanner.core.config import settings

# Shared so endpoint modules can decorate routes without importing main
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)
