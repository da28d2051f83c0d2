from fastapi import APIRouter

from comicgen.api.deps import RateLimitDep
from comicgen.api.v1 import comics, scripts

api_router = APIRouter(prefix="/v1", dependencies=[RateLimitDep])

api_router.include_router(scripts.router)
api_router.include_router(comics.router)
