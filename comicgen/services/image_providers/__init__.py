from comicgen.services.image_providers.base import (
    ImageGenerationRequest,
    ImageProvider,
    ImmediateImage,
    PendingTask,
    PollResult,
    SubmitResult,
    TaskStatus,
    normalize_task_status,
)
from comicgen.services.image_providers.dashscope import DashScopeImageProvider
from comicgen.services.image_providers.poller import AsyncPoller
from comicgen.services.image_providers.qiniu import QiniuImageProvider
from comicgen.services.image_providers.volcanoark import VolcanoArkImageProvider

__all__ = [
    "AsyncPoller",
    "DashScopeImageProvider",
    "ImageGenerationRequest",
    "ImageProvider",
    "ImmediateImage",
    "PendingTask",
    "PollResult",
    "QiniuImageProvider",
    "SubmitResult",
    "TaskStatus",
    "VolcanoArkImageProvider",
    "normalize_task_status",
]
