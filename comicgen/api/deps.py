from fastapi import Depends, Request

from comicgen.core.exceptions import RateLimitExceededError
from comicgen.core.factory import get_rate_limiter
from comicgen.services.rate_limiter import client_key


def enforce_rate_limit(request: Request) -> None:
    peer = request.client.host if request.client else None
    decision = get_rate_limiter().check(client_key(request.headers, peer))
    if not decision.allowed:
        raise RateLimitExceededError(decision.retry_after_seconds)


RateLimitDep = Depends(enforce_rate_limit)
