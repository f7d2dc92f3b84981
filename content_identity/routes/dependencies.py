from typing import Optional

from content_identity.service.identity_service import ContentIdentityService

_service: Optional[ContentIdentityService] = None


def get_service() -> ContentIdentityService:
    global _service
    if _service is None:
        _service = ContentIdentityService.from_config()
    return _service
